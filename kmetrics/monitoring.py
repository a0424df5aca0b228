"""Metric primitives (histograms, gauges, registries) and bucket helpers."""

from __future__ import annotations

import bisect
import itertools
import threading
from datetime import timedelta

# Default histogram buckets, in seconds.
DEF_BUCKETS: tuple[float, ...] = (
    0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0,
)


def _to_seconds(duration: timedelta | float) -> float:
    if isinstance(duration, timedelta):
        return duration.total_seconds()
    return float(duration)


class _Collector:
    """Common naming for every metric collector."""

    def __init__(self, name: str = "", help_text: str = "",
                 namespace: str = "", subsystem: str = "") -> None:
        self.name = name
        self.help_text = help_text
        self.namespace = namespace
        self.subsystem = subsystem
        self._lock = threading.Lock()

    @property
    def fq_name(self) -> str:
        """Fully qualified metric name: namespace_subsystem_name."""
        return "_".join(p for p in (self.namespace, self.subsystem, self.name) if p)


class Histogram(_Collector):
    """A histogram that counts observations into fixed upper-bound buckets."""

    def __init__(self, name: str = "", help_text: str = "", namespace: str = "",
                 subsystem: str = "", buckets=DEF_BUCKETS) -> None:
        super().__init__(name, help_text, namespace, subsystem)
        self.buckets: tuple[float, ...] = tuple(buckets)
        self._per_bucket = [0] * len(self.buckets)
        self.count = 0
        self.sum = 0.0

    def observe(self, value: float) -> None:
        """Record one observation."""
        index = bisect.bisect_left(self.buckets, value)
        with self._lock:
            if index < len(self._per_bucket):
                self._per_bucket[index] += 1
            self.count += 1
            self.sum += value

    @property
    def bucket_counts(self) -> dict[float, int]:
        """Cumulative count of observations at or below each bucket bound."""
        with self._lock:
            return dict(zip(self.buckets, itertools.accumulate(self._per_bucket)))


class Gauge(_Collector):
    """A single value that can go up and down."""

    def __init__(self, name: str = "", help_text: str = "",
                 namespace: str = "", subsystem: str = "") -> None:
        super().__init__(name, help_text, namespace, subsystem)
        self._value = 0.0

    def set(self, value: float) -> None:
        with self._lock:
            self._value = float(value)

    @property
    def value(self) -> float:
        with self._lock:
            return self._value


class GaugeVec(_Collector):
    """A family of gauges partitioned by label values."""

    def __init__(self, name: str = "", label_names=(), help_text: str = "",
                 namespace: str = "", subsystem: str = "") -> None:
        super().__init__(name, help_text, namespace, subsystem)
        self.label_names: tuple[str, ...] = tuple(label_names)
        self._children: dict[tuple[str, ...], Gauge] = {}

    def with_label_values(self, *args: str) -> Gauge:
        """Return the gauge for the given label values, creating it if needed."""
        if len(args) != len(self.label_names):
            raise ValueError(
                f"{self.fq_name}: expected {len(self.label_names)} label values, got {len(args)}"
            )
        key = tuple(args)
        with self._lock:
            child = self._children.get(key)
            if child is None:
                child = Gauge(self.name, self.help_text, self.namespace, self.subsystem)
                self._children[key] = child
            return child

    def reset(self) -> None:
        """Drop every labelled gauge."""
        with self._lock:
            self._children.clear()

    def samples(self) -> dict[tuple[str, ...], float]:
        """Current values keyed by label values, in label order."""
        with self._lock:
            children = sorted(self._children.items())
        return {labels: gauge.value for labels, gauge in children}


class Registry:
    """Holds collectors by their fully qualified name."""

    def __init__(self) -> None:
        self._collectors: dict[str, _Collector] = {}
        self._lock = threading.Lock()

    def register(self, collector: _Collector) -> None:
        """Add a collector; raise ValueError if its name is already taken."""
        name = collector.fq_name
        with self._lock:
            if name in self._collectors:
                raise ValueError(f"duplicate metrics collector registration attempted: {name}")
            self._collectors[name] = collector

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._collectors

    @property
    def collectors(self) -> dict[str, _Collector]:
        with self._lock:
            return dict(self._collectors)


def buckets_for_scrape_duration(scrape_timeout: timedelta | float) -> list[float]:
    """Default histogram buckets, extended with buckets around the scrape timeout."""
    timeout = _to_seconds(scrape_timeout)
    buckets = list(DEF_BUCKETS)
    max_bucket = buckets[-1]
    if timeout > max_bucket:
        halfway = max_bucket + (timeout - max_bucket) / 2
        buckets.extend((halfway, timeout, timeout * 1.5, timeout * 2.0))
    elif timeout < max_bucket:
        index = bisect.bisect_right(buckets, timeout)
        smallest = buckets[0]
        too_close_above = buckets[index] - timeout < smallest
        too_close_below = index > 0 and timeout - buckets[index - 1] < smallest
        if too_close_above or too_close_below:
            return buckets
        buckets.insert(index, timeout)
    return buckets