"""Thread-safe storage of the last two metric batches for nodes and pods."""

from __future__ import annotations

import dataclasses
import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from kmetrics.monitoring import GaugeVec
from kmetrics.types import (
    ContainerMetrics,
    MetricsBatch,
    MetricsPoint,
    NamespacedName,
    Node,
    NodeMetrics,
    PodMetadata,
    PodMetrics,
    PodMetricsPoint,
    Storage,
    TimeInfo,
    resource_usage,
)

log = logging.getLogger(__name__)

# A fresh container needs at least this long between its start time and the
# measurement before the start time can serve as a previous point.
FRESH_CONTAINER_MIN_METRICS_RESOLUTION = timedelta(seconds=10)

# Timestamp reported for a pod whose containers all failed to yield usage.
ZERO_TIME = datetime.min.replace(tzinfo=timezone.utc)

POINTS_STORED = GaugeVec(
    "points",
    ("type",),
    help_text="Number of metrics points stored.",
    namespace="metrics_server",
    subsystem="storage",
)


def register_storage_metrics(registration_func: Callable[[GaugeVec], object]):
    """Register the gauge counting stored metric points."""
    return registration_func(POINTS_STORED)


def _as_timedelta(value: timedelta | float) -> timedelta:
    return value if isinstance(value, timedelta) else timedelta(seconds=value)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class NodeStorage:
    """Keeps the last two node points and derives CPU and memory usage."""

    def __init__(self) -> None:
        self.last: dict[str, MetricsPoint] = {}
        self.prev: dict[str, MetricsPoint] = {}

    def get_metrics(self, *nodes: Node) -> list[NodeMetrics]:
        results = []
        for node in nodes:
            last = self.last.get(node.name)
            prev = self.prev.get(node.name)
            if last is None or prev is None:
                continue
            try:
                usage, info = resource_usage(last, prev)
            except ValueError as err:
                log.error("Skipping node usage metric for node %s: %s", node.name, err)
                continue
            results.append(NodeMetrics(
                name=node.name,
                labels=dict(node.labels),
                creation_timestamp=_now(),
                timestamp=info.timestamp,
                window=info.window,
                usage=usage,
            ))
        return results

    def store(self, batch: MetricsBatch) -> None:
        last_nodes: dict[str, MetricsPoint] = {}
        prev_nodes: dict[str, MetricsPoint] = {}
        for node_name, new_point in batch.nodes.items():
            last_nodes[node_name] = new_point
            stored_last = self.last.get(node_name)
            if stored_last is None:
                continue
            if new_point.timestamp > stored_last.timestamp:
                prev_nodes[node_name] = stored_last
                continue
            stored_prev = self.prev.get(node_name)
            if stored_prev is None:
                continue
            if stored_prev.timestamp < new_point.timestamp:
                prev_nodes[node_name] = stored_prev
            else:
                log.debug(
                    "New node metrics point for %s is older than stored previous "
                    "(%s <= %s), dropping previous",
                    node_name, new_point.timestamp, stored_prev.timestamp,
                )
        self.last = last_nodes
        self.prev = prev_nodes
        POINTS_STORED.with_label_values("node").set(len(prev_nodes))


class PodStorage:
    """Keeps the last two pod points and derives per-container usage."""

    def __init__(self, metric_resolution: timedelta | float) -> None:
        self.metric_resolution = _as_timedelta(metric_resolution)
        self.last: dict[NamespacedName, PodMetricsPoint] = {}
        self.prev: dict[NamespacedName, PodMetricsPoint] = {}

    def get_metrics(self, *pods: PodMetadata) -> list[PodMetrics]:
        results = []
        for pod in pods:
            ref = NamespacedName(namespace=pod.namespace, name=pod.name)
            last_pod = self.last.get(ref)
            prev_pod = self.prev.get(ref)
            if last_pod is None or prev_pod is None:
                continue
            if not all(name in prev_pod.containers for name in last_pod.containers):
                continue

            containers = []
            earliest: TimeInfo | None = None
            for name, last_container in last_pod.containers.items():
                try:
                    usage, info = resource_usage(last_container, prev_pod.containers[name])
                except ValueError as err:
                    log.error("Skipping container usage metric for container %s in pod %s: %s",
                              name, ref, err)
                    continue
                containers.append(ContainerMetrics(name=name, usage=usage))
                if earliest is None or earliest.timestamp > info.timestamp:
                    earliest = info
            if earliest is None:
                earliest = TimeInfo(timestamp=ZERO_TIME, window=timedelta(0))
            results.append(PodMetrics(
                name=pod.name,
                namespace=pod.namespace,
                labels=dict(pod.labels),
                creation_timestamp=_now(),
                timestamp=earliest.timestamp,
                window=earliest.window,
                containers=containers,
            ))
        return results

    def _is_fresh(self, point: MetricsPoint) -> bool:
        if point.start_time is None or not point.start_time < point.timestamp:
            return False
        age = point.timestamp - point.start_time
        return FRESH_CONTAINER_MIN_METRICS_RESOLUTION <= age < self.metric_resolution

    def _previous_point(self, ref: NamespacedName, name: str,
                        new_point: MetricsPoint) -> MetricsPoint | None:
        if self._is_fresh(new_point):
            return dataclasses.replace(new_point, timestamp=new_point.start_time,
                                       cumulative_cpu_used=0)
        last_pod = self.last.get(ref)
        if last_pod is None:
            return None
        last_container = last_pod.containers.get(name)
        if last_container is None:
            return None
        # A start time after the stored point means the container restarted.
        if new_point.start_time is not None and not new_point.start_time < last_container.timestamp:
            return None
        if new_point.timestamp > last_container.timestamp:
            return last_container
        prev_pod = self.prev.get(ref)
        if prev_pod is None:
            return None
        prev_container = prev_pod.containers.get(name)
        if prev_container is not None and prev_container.timestamp < new_point.timestamp:
            return prev_container
        log.debug(
            "New metrics point for container %s in pod %s is older than stored previous, "
            "dropping previous", name, ref,
        )
        return None

    def store(self, batch: MetricsBatch) -> None:
        last_pods: dict[NamespacedName, PodMetricsPoint] = {}
        prev_pods: dict[NamespacedName, PodMetricsPoint] = {}
        container_count = 0
        for pod_ref, new_pod in batch.pods.items():
            ref = NamespacedName(namespace=pod_ref.namespace, name=pod_ref.name)
            new_last = PodMetricsPoint(containers=dict(new_pod.containers))
            new_prev = PodMetricsPoint()
            for name, new_point in new_pod.containers.items():
                previous = self._previous_point(ref, name, new_point)
                if previous is not None:
                    new_prev.containers[name] = previous
            if new_prev.containers:
                prev_pods[ref] = new_prev
            last_pods[ref] = new_last
            container_count += len(new_prev.containers)
        self.last = last_pods
        self.prev = prev_pods
        POINTS_STORED.with_label_values("container").set(container_count)


class MetricsStorage(Storage):
    """Thread-safe storage for node and pod metrics."""

    def __init__(self, metric_resolution: timedelta | float) -> None:
        self._lock = threading.Lock()
        self.nodes = NodeStorage()
        self.pods = PodStorage(metric_resolution)

    def ready(self) -> bool:
        """True once enough points are stored to serve any metrics."""
        with self._lock:
            return bool(self.nodes.prev) or bool(self.pods.prev)

    def get_node_metrics(self, *nodes: Node) -> list[NodeMetrics]:
        with self._lock:
            return self.nodes.get_metrics(*nodes)

    def get_pod_metrics(self, *pods: PodMetadata) -> list[PodMetrics]:
        with self._lock:
            return self.pods.get_metrics(*pods)

    def store(self, batch: MetricsBatch) -> None:
        with self._lock:
            self.nodes.store(batch)
            self.pods.store(batch)