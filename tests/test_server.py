import threading
from datetime import datetime, timedelta, timezone

import pytest

from kmetrics.monitoring import Registry
from kmetrics.server import (
    HealthCheckError,
    MetadataInformerSync,
    MetricsServer,
    register_metrics,
    register_server_metrics,
)
from kmetrics.types import MetricsBatch, MetricsPoint, Storage

RESOLUTION = timedelta(seconds=60)


def now():
    return datetime.now(timezone.utc)


class ScraperMock:
    def __init__(self, result, on_scrape=None):
        self.result = result
        self.calls = []
        self.on_scrape = on_scrape

    def scrape(self, timeout):
        self.calls.append(timeout)
        if self.on_scrape is not None:
            self.on_scrape()
        return self.result


class StorageMock(Storage):
    def __init__(self):
        self.is_ready = False
        self.stored = []

    def store(self, batch):
        self.stored.append(batch)

    def get_pod_metrics(self, *pods):
        return []

    def get_node_metrics(self, *nodes):
        return []

    def ready(self):
        return self.is_ready


class InformerMock:
    def __init__(self, synced):
        self.synced = synced

    def run(self, stop_event):
        pass

    def has_synced(self):
        return self.synced


class WaiterMock:
    def __init__(self, state):
        self.state = state
        self.stop_was_set = None

    def wait_for_cache_sync(self, stop_event):
        self.stop_was_set = stop_event.is_set()
        return self.state


@pytest.fixture
def batch():
    return MetricsBatch(nodes={"node1": MetricsPoint(None, now(), 0, 0)})


@pytest.fixture
def scraper(batch):
    return ScraperMock(batch)


@pytest.fixture
def store():
    return StorageMock()


@pytest.fixture
def server(store, scraper):
    return MetricsServer(store, scraper, RESOLUTION)


def test_timely_probe_passes_before_first_tick(server):
    check = server.probe_metric_collection_timely("")
    assert check.check() is None
    assert server.tick_last_start is None


def test_timely_probe_passes_after_recent_tick(server):
    start = now()
    server.tick(start)
    assert server.tick_last_start == start
    assert server.probe_metric_collection_timely("").check() is None


def test_timely_probe_passes_if_scrape_succeeds(server):
    server.tick(now() - RESOLUTION)
    assert server.probe_metric_collection_timely("").check() is None


def test_timely_probe_fails_if_last_scrape_too_old(server):
    server.tick(now() - 2 * RESOLUTION)
    with pytest.raises(HealthCheckError, match="didn't finish on time"):
        server.probe_metric_collection_timely("").check()


def test_storage_ready_probe_fails_when_not_ready(server):
    with pytest.raises(HealthCheckError, match="no metrics to serve"):
        server.probe_metric_storage_ready("").check()


def test_storage_ready_probe_passes_when_ready(server, store):
    store.is_ready = True
    assert server.probe_metric_storage_ready("").check() is None


def test_tick_stores_scraped_batch(server, store, scraper, batch):
    server.tick(now())
    assert store.stored == [batch]
    assert scraper.calls == [RESOLUTION]


def test_tick_observes_duration_in_registered_histogram(server):
    registry = Registry()
    register_server_metrics(registry.register, RESOLUTION)
    histogram = registry.collectors["metrics_server_manager_tick_duration_seconds"]
    server.tick(now())
    assert histogram.count == 1
    assert 60.0 in histogram.buckets


def test_register_metrics_registers_server_and_storage():
    registry = Registry()
    register_metrics(registry, RESOLUTION)
    assert "metrics_server_manager_tick_duration_seconds" in registry
    assert "metrics_server_storage_points" in registry


def test_register_metrics_twice_fails():
    registry = Registry()
    register_metrics(registry, RESOLUTION)
    with pytest.raises(ValueError, match="unable to register server metrics"):
        register_metrics(registry, RESOLUTION)


def test_informer_sync_passes_when_all_started():
    waiter = WaiterMock({"pods": True, "nodes": True})
    check = MetadataInformerSync("sync", waiter)
    assert check.check() is None
    assert waiter.stop_was_set is True
    assert check.name == "sync"


def test_informer_sync_fails_when_some_not_started():
    check = MetadataInformerSync("sync", WaiterMock({"pods": False, "nodes": True}))
    with pytest.raises(HealthCheckError, match=r"^1 informers not started yet: \[pods\]$"):
        check.check()


def test_register_probes_adds_named_checks(server):
    server.register_probes(WaiterMock({}))
    assert [c.name for c in server.readyz_checks] == ["metric-storage-ready", "metadata-informer-sync"]
    assert [c.name for c in server.livez_checks] == ["metric-collection-timely", "metadata-informer-sync"]
    assert [c.name for c in server.healthz_checks] == ["metadata-informer-sync"]


def test_register_probes_twice_fails(server):
    server.register_probes(WaiterMock({}))
    with pytest.raises(ValueError):
        server.register_probes(WaiterMock({}))


def test_run_scrapes_until_stopped(store, batch):
    stop = threading.Event()
    scraper = ScraperMock(batch, on_scrape=stop.set)
    srv = MetricsServer(store, scraper, RESOLUTION,
                        nodes=InformerMock(True), pods=InformerMock(True))
    srv.run(stop)
    assert store.stored == [batch]
    assert srv.tick_last_start is not None


def test_run_returns_without_scraping_if_stopped_before_sync(store, scraper):
    stop = threading.Event()
    stop.set()
    srv = MetricsServer(store, scraper, RESOLUTION,
                        nodes=InformerMock(False), pods=InformerMock(True))
    srv.run(stop)
    assert store.stored == []
    assert scraper.calls == []