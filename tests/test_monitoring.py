from datetime import timedelta

import pytest

from kmetrics.monitoring import (
    DEF_BUCKETS,
    Gauge,
    GaugeVec,
    Histogram,
    Registry,
    buckets_for_scrape_duration,
)


@pytest.mark.parametrize("timeout", [timedelta(seconds=15), timedelta(seconds=5),
                                     timedelta(seconds=DEF_BUCKETS[-1])])
def test_buckets_strictly_increasing(timeout):
    buckets = buckets_for_scrape_duration(timeout)
    assert len(buckets) >= len(DEF_BUCKETS)
    assert buckets[0] > 0
    pairs = list(zip(buckets, buckets[1:]))
    assert [a < b for a, b in pairs] == [True] * len(pairs)


def test_long_timeout_includes_buckets_around_it():
    buckets = buckets_for_scrape_duration(timedelta(seconds=15))
    assert 15.0 in buckets
    assert 30.0 in buckets


def test_short_timeout_includes_its_bucket():
    assert 5.0 in buckets_for_scrape_duration(timedelta(seconds=5))


def test_timeout_equal_to_max_bucket_is_included():
    max_bucket = DEF_BUCKETS[-1]
    assert max_bucket in buckets_for_scrape_duration(timedelta(seconds=max_bucket))


def test_timeout_equal_to_max_bucket_keeps_defaults():
    assert buckets_for_scrape_duration(timedelta(seconds=DEF_BUCKETS[-1])) == list(DEF_BUCKETS)


def test_timeout_close_to_existing_bucket_is_skipped():
    assert buckets_for_scrape_duration(timedelta(seconds=1.001)) == list(DEF_BUCKETS)


def test_short_timeout_inserted_once():
    buckets = buckets_for_scrape_duration(7)
    assert buckets.count(7.0) == 1
    assert len(buckets) == len(DEF_BUCKETS) + 1


def test_long_timeout_appends_four_buckets():
    buckets = buckets_for_scrape_duration(timedelta(seconds=60))
    assert buckets[: len(DEF_BUCKETS)] == list(DEF_BUCKETS)
    assert buckets[len(DEF_BUCKETS):] == [35.0, 60.0, 90.0, 120.0]


def test_histogram_observe_counts_cumulatively():
    hist = Histogram("h", buckets=(1.0, 2.0, 4.0))
    for value in (0.5, 1.5, 3.0, 10.0):
        hist.observe(value)
    assert hist.count == 4
    assert hist.sum == pytest.approx(15.0)
    assert hist.bucket_counts == {1.0: 1, 2.0: 2, 4.0: 3}


def test_histogram_value_on_bound_counts_in_that_bucket():
    hist = Histogram("h", buckets=(1.0, 2.0))
    hist.observe(1.0)
    assert hist.bucket_counts[1.0] == 1


def test_histogram_fq_name():
    hist = Histogram("tick_duration_seconds", namespace="metrics_server", subsystem="manager")
    assert hist.fq_name == "metrics_server_manager_tick_duration_seconds"


def test_gauge_set():
    gauge = Gauge("g")
    gauge.set(3)
    assert gauge.value == 3.0


def test_gauge_vec_with_label_values_returns_same_child():
    vec = GaugeVec("points", ["type"], namespace="metrics_server", subsystem="storage")
    vec.with_label_values("node").set(1)
    vec.with_label_values("container").set(2)
    assert vec.with_label_values("node") is vec.with_label_values("node")
    assert vec.samples() == {("container",): 2.0, ("node",): 1.0}


def test_gauge_vec_wrong_label_count():
    vec = GaugeVec("points", ["type"])
    with pytest.raises(ValueError):
        vec.with_label_values("a", "b")


def test_gauge_vec_reset():
    vec = GaugeVec("points", ["type"])
    vec.with_label_values("node").set(5)
    vec.reset()
    assert vec.samples() == {}


def test_registry_register_and_duplicate():
    registry = Registry()
    gauge = Gauge("g", namespace="ns")
    registry.register(gauge)
    assert "ns_g" in registry
    assert registry.collectors == {"ns_g": gauge}
    with pytest.raises(ValueError):
        registry.register(Gauge("g", namespace="ns"))