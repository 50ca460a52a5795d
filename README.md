# keplermeter

keplermeter is a library that keeps account of the energy a node uses,
splits it into idle and dynamic parts, and shares it out among containers
and processes. It can turn node and container figures into Prometheus
metrics in the text exposition format. It uses only the standard library.

All energy values are kept in millijoules. The exporter converts them to
joules when it writes its output.

## Modules

- `keplermeter.config` holds the metric name constants and the runtime
  settings. `get_config(key, default, config_dir)` reads the file
  `config_dir/key`; the default directory is `/etc/kepler/kepler.config`.
  The file content is used exactly as it is, with no trimming. When there is
  no such file, the function falls back to the environment variable `key`,
  and then to `default`. `get_bool_config` returns true only when the value
  is `true`, in any letter case. `load_settings()` builds a `Settings`
  object from all keys. The module also has these helpers:
  - `parse_kernel_version` returns `major.minor` as a float, or `-1.0` when
    the version cannot be read.
  - `is_cgroup_v2` and `cgroup_version` check whether the cgroup v2
    controllers file exists.
  - `parse_model_config` reads whitespace-separated `KEY=VALUE` entries, and
    `Settings.model_config(item)` returns a `ModelConfig` built from them.
  - `model_server_request_endpoint` builds the model server URL.
- `keplermeter.stats` has the counters. `UInt64Stat` is an unsigned 64-bit
  counter with a `delta` and an `aggr` value. `UInt64StatCollection` holds
  such counters by key. When the aggregate reaches the 64-bit maximum, it is
  reset to 0 and `StatOverflowError` is raised. The collection methods log
  this error instead of raising it.
- `keplermeter.features` has `FeatureRegistry`, which lists the eBPF
  counters, hardware counters, cgroup metrics and kubelet metrics that are
  available. From these it builds the feature, estimator and
  `curr_`/`total_` label lists (`enable_metrics`, `prometheus_metrics`,
  `estimator_metrics`). The module also has:
  - `node_name()`, which returns the host name.
  - `cpu_architecture()`, which returns the override when one is given.
    Otherwise it runs `cpuid`, `archspec` or `lscpu`, depending on the
    machine, and matches the result against a CSV file of architectures
    (`match_cpu_model`). The default file is
    `/var/lib/kepler/data/normalized_cpu_arch.csv`.
- `keplermeter.process_metric` and `keplermeter.container_metric` hold the
  per-process and per-container usage and energy statistics. Create them
  with `new_process_metrics()` and `new_container_metrics()`.
  `int_delta_and_aggr(metric)` raises `MetricNotFoundError` for a metric
  that is not tracked.
- `keplermeter.node_metric` has `NodeMetrics`, which holds the total, idle
  and dynamic energy for each `Component` and for each package or sensor.
  It also holds the node's resource usage, summed from the containers.
  `NodeComponentsEnergy` carries one package's aggregated readings.
- `keplermeter.descriptors` has the metric descriptors (`MetricDesc`), the
  samples (`Sample`) and `render_samples`, which writes samples in the text
  format, grouped into families and sorted by name.
- `keplermeter.exporter` has `PrometheusExporter`. `describe()` lists the
  descriptors that the current settings enable. `collect()` returns the
  node and container samples. `render()` returns the exposition text.

## Example

```python
from keplermeter.node_metric import NodeMetrics, NodeComponentsEnergy

node = NodeMetrics()
node.set_node_components_energy({0: NodeComponentsEnergy(pkg=10, core=10, dram=10)})
node.set_node_components_energy({0: NodeComponentsEnergy(pkg=18, core=15, dram=11)})
node.update_idle_energy()          # first delta (8 mJ) becomes the idle baseline
node.set_node_components_energy({0: NodeComponentsEnergy(pkg=30, core=20, dram=12)})
node.update_idle_energy()
node.update_dyn_energy()
print(node.sum_delta_dyn_energy("pkg"))  # 12 - 8 = 4
```

Exporting container metrics:

```python
from keplermeter.container_metric import new_container_metrics
from keplermeter.exporter import PrometheusExporter

exporter = PrometheusExporter(node_name="node-1", cpu_architecture="unknown")
exporter.containers_metrics["c1"] = new_container_metrics("c1", "pod1", "default")
print(exporter.render())
```

If you do not pass `node_name` and `cpu_architecture`, the exporter detects
them with `node_name()` and `cpu_architecture()`. When the architecture
cannot be detected, it uses `unknown`.

## What it does not do

keplermeter does not read any figures from the system by itself. It has no
eBPF probes, no RAPL or ACPI readers, no cgroup or kubelet readers and no
GPU readers. All readings must be fed in by the caller. It does not include
power models for estimating energy. It has no HTTP server and no command
line program; `render()` returns text for the caller to serve. The exporter
writes node and container series only. Process metrics are kept, but they
are not exported.

## Running the tests

```
pip install -e .[test]
pytest
```