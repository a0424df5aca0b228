"""Metric points, batches, resource quantities and API result types."""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum

log = logging.getLogger(__name__)

MAX_INT64 = 2**63 - 1
MAX_UINT64 = 2**64 - 1

RESOURCE_CPU = "cpu"
RESOURCE_MEMORY = "memory"


class QuantityFormat(Enum):
    DECIMAL_SI = "DecimalSI"
    BINARY_SI = "BinarySI"
    DECIMAL_EXPONENT = "DecimalExponent"


@dataclass(frozen=True)
class Quantity:
    """A resource amount: value * 10**scale, with a display format."""

    value: int
    scale: int = 0
    format: QuantityFormat = QuantityFormat.DECIMAL_SI

    @property
    def amount(self) -> Decimal:
        return Decimal(self.value).scaleb(self.scale)


@dataclass(frozen=True)
class TimeInfo:
    timestamp: datetime
    window: timedelta


@dataclass
class MetricsPoint:
    """Metrics of a container or node at one moment.

    start_time of None means the start time is unknown.
    cumulative_cpu_used is in nano-core-seconds, memory_usage in bytes.
    """

    start_time: datetime | None
    timestamp: datetime
    cumulative_cpu_used: int = 0
    memory_usage: int = 0


@dataclass
class PodMetricsPoint:
    containers: dict[str, MetricsPoint] = field(default_factory=dict)


@dataclass(frozen=True, order=True)
class NamespacedName:
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}" if self.namespace else self.name


@dataclass
class MetricsBatch:
    """One scrape's worth of node and pod metrics."""

    nodes: dict[str, MetricsPoint] = field(default_factory=dict)
    pods: dict[NamespacedName, PodMetricsPoint] = field(default_factory=dict)


class NodeAddressType(Enum):
    HOSTNAME = "Hostname"
    INTERNAL_DNS = "InternalDNS"
    INTERNAL_IP = "InternalIP"
    EXTERNAL_DNS = "ExternalDNS"
    EXTERNAL_IP = "ExternalIP"


@dataclass(frozen=True)
class NodeAddress:
    type: NodeAddressType
    address: str


@dataclass
class Node:
    name: str
    labels: dict[str, str] = field(default_factory=dict)
    addresses: list[NodeAddress] = field(default_factory=list)


@dataclass
class PodMetadata:
    name: str
    namespace: str = ""
    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class ContainerMetrics:
    name: str
    usage: dict[str, Quantity]


@dataclass
class NodeMetrics:
    name: str
    labels: dict[str, str]
    creation_timestamp: datetime
    timestamp: datetime
    window: timedelta
    usage: dict[str, Quantity]


@dataclass
class PodMetrics:
    name: str
    namespace: str
    labels: dict[str, str]
    creation_timestamp: datetime
    timestamp: datetime
    window: timedelta
    containers: list[ContainerMetrics]


class Storage(abc.ABC):
    """Keeps scraped batches and serves node and pod metrics."""

    @abc.abstractmethod
    def get_node_metrics(self, *nodes: Node) -> list[NodeMetrics]:
        ...

    @abc.abstractmethod
    def get_pod_metrics(self, *pods: PodMetadata) -> list[PodMetrics]:
        ...

    @abc.abstractmethod
    def store(self, batch: MetricsBatch) -> None:
        ...

    @abc.abstractmethod
    def ready(self) -> bool:
        ...


def uint64_quantity(val: int, fmt: QuantityFormat, scale: int) -> Quantity:
    """Build a Quantity from an unsigned 64-bit value.

    Values above the signed 64-bit range lose one decimal digit of precision.
    """
    if not 0 <= val <= MAX_UINT64:
        raise ValueError(f"value {val} is outside the unsigned 64-bit range")
    if val > MAX_INT64:
        log.debug("Found unexpectedly large resource value, losing precision: %d", val)
        return Quantity(val // 10, scale + 1, fmt)
    return Quantity(val, scale, fmt)


def resource_usage(last: MetricsPoint, prev: MetricsPoint) -> tuple[dict[str, Quantity], TimeInfo]:
    """CPU rate and memory usage between two points of the same series."""
    if last.cumulative_cpu_used < prev.cumulative_cpu_used:
        raise ValueError("unexpected decrease in cumulative CPU usage value")
    window = last.timestamp - prev.timestamp
    seconds = window.total_seconds()
    if seconds == 0:
        raise ValueError("zero time window between metric points")
    cpu_usage = (last.cumulative_cpu_used - prev.cumulative_cpu_used) / seconds
    usage = {
        RESOURCE_CPU: uint64_quantity(int(cpu_usage), QuantityFormat.DECIMAL_SI, -9),
        RESOURCE_MEMORY: uint64_quantity(last.memory_usage, QuantityFormat.BINARY_SI, 0),
    }
    return usage, TimeInfo(timestamp=last.timestamp, window=window)