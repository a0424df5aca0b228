"""Scrape loop, health probes and metric registration for the metrics server."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta, timezone
from typing import Protocol

from kmetrics.monitoring import Histogram, Registry, buckets_for_scrape_duration
from kmetrics.storage import register_storage_metrics
from kmetrics.types import MetricsBatch, Storage

log = logging.getLogger(__name__)

_SYNC_POLL_SECONDS = 0.1

# Replaced by register_server_metrics; until then observations go nowhere visible.
_tick_duration = Histogram()


class HealthCheckError(Exception):
    """Raised by a health check that does not pass."""


class Scraper(Protocol):
    def scrape(self, timeout: timedelta) -> MetricsBatch:
        ...


class Informer(Protocol):
    def run(self, stop_event: threading.Event) -> None:
        ...

    def has_synced(self) -> bool:
        ...


class CacheSyncWaiter(Protocol):
    def wait_for_cache_sync(self, stop_event: threading.Event) -> Mapping[str, bool]:
        ...


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_timedelta(value: timedelta | float) -> timedelta:
    return value if isinstance(value, timedelta) else timedelta(seconds=value)


class HealthCheck:
    """A named check that raises HealthCheckError when it fails."""

    def __init__(self, name: str, func: Callable[[], None]) -> None:
        self.name = name
        self._func = func

    def check(self) -> None:
        self._func()


class MetadataInformerSync:
    """Passes only when every informer of the waiter has synced."""

    def __init__(self, name: str, cache_sync_waiter: CacheSyncWaiter) -> None:
        self.name = name
        self.cache_sync_waiter = cache_sync_waiter

    def check(self) -> None:
        stopped = threading.Event()
        # A stopped event asks the waiter for the current state without blocking.
        stopped.set()
        synced = self.cache_sync_waiter.wait_for_cache_sync(stopped)
        not_started = [str(kind) for kind, started in synced.items() if not started]
        if not_started:
            raise HealthCheckError(
                f"{len(not_started)} informers not started yet: [{' '.join(not_started)}]"
            )


def register_server_metrics(registration_func: Callable[[Histogram], object],
                            resolution: timedelta | float):
    """Create the tick-duration histogram and register it."""
    global _tick_duration
    _tick_duration = Histogram(
        "tick_duration_seconds",
        help_text="The total time spent collecting and storing metrics in seconds.",
        namespace="metrics_server",
        subsystem="manager",
        buckets=buckets_for_scrape_duration(resolution),
    )
    return registration_func(_tick_duration)


def register_metrics(registry: Registry, metric_resolution: timedelta | float) -> None:
    """Register the server and storage metrics in the registry."""
    try:
        register_server_metrics(registry.register, metric_resolution)
    except ValueError as err:
        raise ValueError(f"unable to register server metrics: {err}") from err
    try:
        register_storage_metrics(registry.register)
    except ValueError as err:
        raise ValueError(f"unable to register storage metrics: {err}") from err


class MetricsServer:
    """Scrapes metrics periodically into storage and exposes health probes."""

    def __init__(self, storage: Storage, scraper: Scraper,
                 resolution: timedelta | float,
                 nodes: Informer | None = None, pods: Informer | None = None) -> None:
        self.storage = storage
        self.scraper = scraper
        self.resolution = _as_timedelta(resolution)
        self.nodes = nodes
        self.pods = pods
        self.healthz_checks: list = []
        self.livez_checks: list = []
        self.readyz_checks: list = []
        self._tick_lock = threading.Lock()
        self._tick_last_start: datetime | None = None

    @property
    def tick_last_start(self) -> datetime | None:
        with self._tick_lock:
            return self._tick_last_start

    def run(self, stop_event: threading.Event) -> None:
        """Start informers, wait for them to sync, then scrape until stopped."""
        informers = [i for i in (self.nodes, self.pods) if i is not None]
        for informer in informers:
            threading.Thread(target=informer.run, args=(stop_event,), daemon=True).start()
        for informer in informers:
            if not self._wait_for_sync(informer, stop_event):
                return
        self._run_scrape(stop_event)

    @staticmethod
    def _wait_for_sync(informer: Informer, stop_event: threading.Event) -> bool:
        while not informer.has_synced():
            if stop_event.wait(_SYNC_POLL_SECONDS):
                return False
        return True

    def _run_scrape(self, stop_event: threading.Event) -> None:
        period = self.resolution.total_seconds()
        next_at = time.monotonic()
        while True:
            self.tick(_now())
            next_at += period
            current = time.monotonic()
            while period > 0 and next_at <= current:
                next_at += period
            if stop_event.wait(max(0.0, next_at - current)):
                return

    def tick(self, start_time: datetime) -> None:
        """Run one scrape-and-store cycle that started at start_time."""
        with self._tick_lock:
            self._tick_last_start = start_time
        log.debug("Scraping metrics")
        data = self.scraper.scrape(self.resolution)
        log.debug("Storing metrics")
        self.storage.store(data)
        collect_time = _now() - start_time
        _tick_duration.observe(collect_time.total_seconds())
        log.debug("Scraping cycle complete")

    @staticmethod
    def _add(checks: list, check) -> None:
        if any(existing.name == check.name for existing in checks):
            raise ValueError(f"health check {check.name!r} is already registered")
        checks.append(check)

    def register_probes(self, waiter: CacheSyncWaiter) -> None:
        """Add readiness, liveness and informer-sync probes."""
        self._add(self.readyz_checks, self.probe_metric_storage_ready("metric-storage-ready"))
        self._add(self.livez_checks,
                  self.probe_metric_collection_timely("metric-collection-timely"))
        sync = MetadataInformerSync("metadata-informer-sync", waiter)
        for checks in (self.healthz_checks, self.livez_checks, self.readyz_checks):
            self._add(checks, sync)

    def probe_metric_collection_timely(self, name: str) -> HealthCheck:
        """Fails when the last tick started more than 1.5 resolutions ago."""
        def check() -> None:
            last_start = self.tick_last_start
            max_wait = self.resolution * 1.5
            if last_start is None:
                return
            waited = _now() - last_start
            if waited > max_wait:
                err = HealthCheckError("metric collection didn't finish on time")
                log.info("Failed probe %s: %s (duration %s, max %s)", name, err, waited, max_wait)
                raise err
        return HealthCheck(name, check)

    def probe_metric_storage_ready(self, name: str) -> HealthCheck:
        """Fails until storage has metrics to serve."""
        def check() -> None:
            if not self.storage.ready():
                err = HealthCheckError("no metrics to serve")
                log.info("Failed probe %s: %s", name, err)
                raise err
        return HealthCheck(name, check)