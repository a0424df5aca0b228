# kmetrics

`kmetrics` stores CPU and memory samples for nodes and containers. It keeps
the two most recent samples for each one and turns them into usage rates. It
also has a periodic scrape loop, health probes and a small in-process metric
registry.

## Installation

```
pip install .
```

To run the tests, install the `test` extra and run `pytest`:

```
pip install ".[test]"
pytest
```

## Concepts

The data types live in `kmetrics.types`.

- **`MetricsPoint`** is one sample. It has these fields:
  - `start_time`: a `datetime`, or `None` when the start time is unknown.
  - `timestamp`.
  - `cumulative_cpu_used`: in nano-core-seconds.
  - `memory_usage`: the working set, in bytes.
- **`MetricsBatch`** is one scrape. It has two fields:
  - `nodes` maps node names to points.
  - `pods` maps `NamespacedName` references to `PodMetricsPoint` objects, and
    each of those holds one point per container.
- **`resource_usage(last, prev)`** takes two samples. It returns a usage dict,
  with `"cpu"` and `"memory"` `Quantity` values, and a `TimeInfo` holding the
  timestamp and the window. It raises `ValueError` in two cases: cumulative
  CPU went down, or the window between the samples is zero.
- **`uint64_quantity(val, fmt, scale)`** builds a `Quantity` from an unsigned
  64-bit value.
  - A value above the signed 64-bit range is divided by ten, and its scale
    goes up by one.
  - A value outside the unsigned range raises `ValueError`.

## Storage

`kmetrics.storage.MetricsStorage(metric_resolution)` is a thread-safe
implementation of `kmetrics.types.Storage`. It is built from `NodeStorage`
and `PodStorage`.

- `store(batch)` stores a new batch. For each series it keeps the latest point
  and, where one is usable, an earlier point to compare against:
  - Out-of-order and repeated points are handled.
  - A container whose start time is after its stored point has restarted, and
    its older point is dropped.
  - A container that started at least 10 seconds but less than one resolution
    before its sample uses its start time, with zero CPU, as the earlier point.
- `get_node_metrics(*nodes)` returns a `NodeMetrics` for every node that has
  both points.
- `get_pod_metrics(*pods)` returns a `PodMetrics` for every pod whose
  containers all have both points. The pod's timestamp and window come from
  its earliest container.
- `ready()` is true once any node or pod has an earlier point.

Each `store` sets the gauge `metrics_server_storage_points`, labelled `node`
or `container`. `register_storage_metrics(registration_func)` registers that
gauge.

```python
from datetime import datetime, timedelta, timezone

from kmetrics.storage import MetricsStorage
from kmetrics.types import MetricsBatch, MetricsPoint, Node

CORE_SECOND = 1_000_000_000
MIB = 1024 * 1024

storage = MetricsStorage(timedelta(seconds=60))
start = datetime.now(timezone.utc)

storage.store(MetricsBatch(nodes={
    "node1": MetricsPoint(start, start + timedelta(seconds=10), 10 * CORE_SECOND, 2 * MIB),
}))
storage.store(MetricsBatch(nodes={
    "node1": MetricsPoint(start, start + timedelta(seconds=20), 20 * CORE_SECOND, 3 * MIB),
}))

assert storage.ready()
(metrics,) = storage.get_node_metrics(Node(name="node1"))
print(metrics.window, metrics.usage)
```

## Node addresses

`kmetrics.address.PriorityNodeAddressResolver(type_priority)` picks the
address to use for a node.

- It goes through the address types in priority order and returns the first
  address of the first type that matches.
- The default order is hostname, internal DNS, internal IP, external DNS,
  external IP.
- `node_address(node)` raises `LookupError` when no type matches.

## Scrape loop and probes

`kmetrics.server.MetricsServer(storage, scraper, resolution, nodes=None, pods=None)`
ties a scraper to a storage.

- **Scraper:** any object with a `scrape(timeout)` method. The method is given
  the resolution as a `timedelta` and returns a `MetricsBatch`.
- **`nodes` and `pods`:** optional informers, with `run(stop_event)` and
  `has_synced()`.
- **`run(stop_event)`:**
  1. Starts the informers in threads.
  2. Waits until they have synced.
  3. Calls `tick` once per resolution until `stop_event` is set.
- **`tick(start_time)`:** scrapes once, stores the result, and records how
  long that took in the `metrics_server_manager_tick_duration_seconds`
  histogram.

Probes return a `HealthCheck`. Its `check()` method raises `HealthCheckError`
when the probe fails.

- `probe_metric_collection_timely(name)` fails when the last tick started more
  than 1.5 resolutions ago.
- `probe_metric_storage_ready(name)` fails while the storage is not ready.
- `MetadataInformerSync(name, waiter)` fails while any informer that the
  waiter reports has not synced.
- `register_probes(waiter)` adds these checks to the lists `readyz_checks`,
  `livez_checks` and `healthz_checks`.

## Instrumentation

`kmetrics.monitoring` provides `Registry`, `Histogram`, `Gauge` and
`GaugeVec`.

- `buckets_for_scrape_duration(scrape_timeout)` extends the default histogram
  buckets with buckets around a scrape timeout.
- `kmetrics.server.register_metrics(registry, metric_resolution)` registers the
  tick-duration histogram and the storage gauge.
- Registering the same name twice raises `ValueError`.

## What this package does not do

`kmetrics` is a library only:

- It has no command-line program.
- It does not contact nodes to collect samples; the scraper is yours to
  supply.
- It does not serve the metrics or the probes over HTTP.
- It does not watch a cluster's nodes and pods.
- Its metric registry keeps values in memory and does not render them in any
  exposition format.