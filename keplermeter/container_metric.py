"""Per-container resource usage and energy metrics."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from keplermeter.config import (
    BLOCK_DEVICES_IO,
    BYTES_READ_IO,
    BYTES_WRITE_IO,
    GPU_MEM_UTILIZATION,
    GPU_SM_UTILIZATION,
)
from keplermeter.features import AGGR_PREFIX, DELTA_PREFIX, FeatureRegistry
from keplermeter.process_metric import (
    COMMAND_LEN_LIMIT,
    IRQ_BLOCK,
    IRQ_NET_RX,
    IRQ_NET_TX,
    MetricNotFoundError,
    ProcessMetrics,
)
from keplermeter.stats import UInt64Stat, UInt64StatCollection

log = logging.getLogger(__name__)


def _format_map(values: dict) -> str:
    return "map[" + " ".join(f"{key}:{value}" for key, value in sorted(values.items())) + "]"


@dataclass
class ContainerMetrics(ProcessMetrics):
    """Resource usage and energy of a container, aggregated over its processes."""

    cgroup_pid: int = 0
    pids: list[int] = field(default_factory=list)
    container_name: str = ""
    pod_name: str = ""
    namespace: str = ""

    curr_processes: int = 0
    disks: int = 0

    cgroup_fs_stats: dict[str, UInt64StatCollection] = field(default_factory=dict)
    kubelet_stats: dict[str, UInt64Stat] = field(default_factory=dict)
    bytes_read: UInt64StatCollection = field(default_factory=UInt64StatCollection)
    bytes_write: UInt64StatCollection = field(default_factory=UInt64StatCollection)

    def reset_delta_values(self) -> None:
        """Set every delta and the process count to 0, keeping the aggregates."""
        self.curr_processes = 0
        super().reset_delta_values()
        for collection in self.cgroup_fs_stats.values():
            collection.reset_delta_values()
        self.bytes_read.reset_delta_values()
        self.bytes_write.reset_delta_values()
        for stat in self.kubelet_stats.values():
            stat.reset_delta_values()

    def set_latest_process(self, cgroup_pid: int, pid: int, command: str) -> None:
        """Record the most recently seen process of the container."""
        self.cgroup_pid = cgroup_pid
        if pid not in self.pids:
            self.pids.append(pid)
        self.command = command

    def int_delta_and_aggr(self, metric: str) -> tuple[int, int]:
        """Return ``(delta, aggr)`` of ``metric``; raise MetricNotFoundError if unknown."""
        stat = self.counter_stats.get(metric)
        if stat is not None:
            return stat.delta, stat.aggr
        collection = self.cgroup_fs_stats.get(metric)
        if collection is not None:
            return collection.sum_all_delta_values(), collection.sum_all_aggr_values()
        stat = self.kubelet_stats.get(metric)
        if stat is not None:
            return stat.delta, stat.aggr
        try:
            return super().int_delta_and_aggr(metric)
        except MetricNotFoundError:
            pass
        if metric == BLOCK_DEVICES_IO:
            return self.disks, self.disks
        if metric == BYTES_READ_IO:
            return self.bytes_read.sum_all_delta_values(), self.bytes_read.sum_all_aggr_values()
        if metric == BYTES_WRITE_IO:
            return self.bytes_write.sum_all_delta_values(), self.bytes_write.sum_all_aggr_values()
        raise MetricNotFoundError(metric)

    def to_estimator_values(self, registry: FeatureRegistry) -> list[float]:
        """Return the current feature values followed by the number of disks."""
        values = super().to_estimator_values(registry)
        values.append(float(self.disks))
        return values

    def basic_values(self) -> list[str]:
        return [self.pod_name, self.namespace, self.command[:COMMAND_LEN_LIMIT]]

    def to_prometheus_value(self, metric: str) -> str:
        """Return the delta (``curr_`` label) or aggregate of a metric as text."""
        current = DELTA_PREFIX in metric
        if current:
            metric = metric.replace(DELTA_PREFIX, "")
        metric = metric.replace(AGGR_PREFIX, "")
        try:
            delta, aggr = self.int_delta_and_aggr(metric)
        except MetricNotFoundError:
            pass
        else:
            return str(delta if current else aggr)
        curr_f, aggr_f = self._float_delta_and_aggr(metric)
        return f"{curr_f if current else aggr_f:f}"

    def __str__(self) -> str:
        irq_tx = self.soft_irq_count[IRQ_NET_TX]
        irq_rx = self.soft_irq_count[IRQ_NET_RX]
        irq_block = self.soft_irq_count[IRQ_BLOCK]
        pids = "[" + " ".join(str(pid) for pid in self.pids) + "]"
        return (
            f"energy from pod/container ({self.curr_processes} active processes): "
            f"name: {self.pod_name}/{self.container_name} namespace: {self.namespace} \n"
            f"\tcgrouppid: {self.cgroup_pid} pid: {pids} comm: {self.command}\n"
            f"\tDyn ePkg (mJ): {self.dyn_energy_in_pkg} (eCore: {self.dyn_energy_in_core} "
            f"eDram: {self.dyn_energy_in_dram} eUncore: {self.dyn_energy_in_uncore}) "
            f"eGPU (mJ): {self.dyn_energy_in_gpu} eOther (mJ): {self.dyn_energy_in_other} \n"
            f"\tIdle ePkg (mJ): {self.idle_energy_in_pkg} (eCore: {self.idle_energy_in_core} "
            f"eDram: {self.idle_energy_in_dram} eUncore: {self.idle_energy_in_uncore}) "
            f"eGPU (mJ): {self.idle_energy_in_gpu} eOther (mJ): {self.idle_energy_in_other} \n"
            f"\tCPUTime:  {self.cpu_time.delta} ({self.cpu_time.aggr})\n"
            f"\tNetTX IRQ: {irq_tx.delta} ({irq_tx.aggr})\n"
            f"\tNetRX IRQ: {irq_rx.delta} ({irq_rx.aggr})\n"
            f"\tBlock IRQ: {irq_block.delta} ({irq_block.aggr})\n"
            f"\tcounters: {_format_map(self.counter_stats)}\n"
            f"\tcgroupfs: {_format_map(self.cgroup_fs_stats)}\n"
            f"\tkubelets: {_format_map(self.kubelet_stats)}\n"
        )


def new_container_metrics(
    container_name: str,
    pod_name: str,
    namespace: str,
    registry: FeatureRegistry | None = None,
) -> ContainerMetrics:
    """Create the metrics of a container with a stat for every available feature."""
    if registry is None:
        registry = FeatureRegistry()
    metrics = ContainerMetrics(
        container_name=container_name, pod_name=pod_name, namespace=namespace
    )
    for name in registry.available_hw_counters:
        metrics.counter_stats[name] = UInt64Stat()
    if registry.gpu_collection_supported:
        metrics.counter_stats[GPU_SM_UTILIZATION] = UInt64Stat()
        metrics.counter_stats[GPU_MEM_UTILIZATION] = UInt64Stat()
    for name in registry.available_cgroup_metrics:
        metrics.cgroup_fs_stats[name] = UInt64StatCollection()
    for name in registry.available_kubelet_metrics:
        metrics.kubelet_stats[name] = UInt64Stat()
    return metrics