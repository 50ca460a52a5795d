"""Per-process resource usage and energy metrics."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from keplermeter.config import (
    CPU_TIME,
    GPU_MEM_UTILIZATION,
    GPU_SM_UTILIZATION,
    IRQ_BLOCK_LABEL,
    IRQ_NET_RX_LABEL,
    IRQ_NET_TX_LABEL,
    MAX_IRQ,
)
from keplermeter.features import AGGR_PREFIX, DELTA_PREFIX, FeatureRegistry
from keplermeter.stats import UINT64_MAX, UInt64Stat

log = logging.getLogger(__name__)

# Kernel softirq vector numbers.
IRQ_NET_TX = 2
IRQ_NET_RX = 3
IRQ_BLOCK = 4

COMMAND_LEN_LIMIT = 10

_IRQ_INDEX = {
    IRQ_BLOCK_LABEL: IRQ_BLOCK,
    IRQ_NET_TX_LABEL: IRQ_NET_TX,
    IRQ_NET_RX_LABEL: IRQ_NET_RX,
}


class MetricNotFoundError(LookupError):
    """The requested metric is not tracked."""

    def __init__(self, metric: str) -> None:
        super().__init__(f"cannot extract: {metric}")
        self.metric = metric


def _irq_counts() -> list[UInt64Stat]:
    return [UInt64Stat() for _ in range(MAX_IRQ)]


@dataclass
class ProcessMetrics:
    """Resource usage and energy of a single process."""

    pid: int = 0
    command: str = ""
    counter_stats: dict[str, UInt64Stat] = field(default_factory=dict)
    cpu_time: UInt64Stat = field(default_factory=UInt64Stat)
    soft_irq_count: list[UInt64Stat] = field(default_factory=_irq_counts)
    gpu_stats: dict[str, UInt64Stat] = field(default_factory=dict)

    dyn_energy_in_core: UInt64Stat = field(default_factory=UInt64Stat)
    dyn_energy_in_dram: UInt64Stat = field(default_factory=UInt64Stat)
    dyn_energy_in_uncore: UInt64Stat = field(default_factory=UInt64Stat)
    dyn_energy_in_pkg: UInt64Stat = field(default_factory=UInt64Stat)
    dyn_energy_in_gpu: UInt64Stat = field(default_factory=UInt64Stat)
    dyn_energy_in_other: UInt64Stat = field(default_factory=UInt64Stat)

    idle_energy_in_core: UInt64Stat = field(default_factory=UInt64Stat)
    idle_energy_in_dram: UInt64Stat = field(default_factory=UInt64Stat)
    idle_energy_in_uncore: UInt64Stat = field(default_factory=UInt64Stat)
    idle_energy_in_pkg: UInt64Stat = field(default_factory=UInt64Stat)
    idle_energy_in_gpu: UInt64Stat = field(default_factory=UInt64Stat)
    idle_energy_in_other: UInt64Stat = field(default_factory=UInt64Stat)

    def _energy_stats(self) -> tuple[UInt64Stat, ...]:
        return (
            self.dyn_energy_in_core,
            self.dyn_energy_in_dram,
            self.dyn_energy_in_uncore,
            self.dyn_energy_in_pkg,
            self.dyn_energy_in_other,
            self.dyn_energy_in_gpu,
            self.idle_energy_in_core,
            self.idle_energy_in_dram,
            self.idle_energy_in_uncore,
            self.idle_energy_in_pkg,
            self.idle_energy_in_other,
            self.idle_energy_in_gpu,
        )

    def reset_delta_values(self) -> None:
        """Set every delta to 0, keeping the aggregates."""
        self.cpu_time.reset_delta_values()
        for stat in self.counter_stats.values():
            stat.reset_delta_values()
        for stat in self.soft_irq_count:
            stat.reset_delta_values()
        for stat in self._energy_stats():
            stat.reset_delta_values()

    def _float_delta_and_aggr(self, metric: str) -> tuple[float, float]:
        return 0.0, 0.0

    def int_delta_and_aggr(self, metric: str) -> tuple[int, int]:
        """Return ``(delta, aggr)`` of ``metric``; raise MetricNotFoundError if unknown."""
        stat = self.counter_stats.get(metric)
        if stat is not None:
            return stat.delta, stat.aggr
        if metric == CPU_TIME:
            return self.cpu_time.delta, self.cpu_time.aggr
        if metric in _IRQ_INDEX:
            irq = self.soft_irq_count[_IRQ_INDEX[metric]]
            return irq.delta, irq.aggr
        log.debug("cannot extract: %s", metric)
        raise MetricNotFoundError(metric)

    def _int_delta_or_zero(self, metric: str) -> int:
        try:
            return self.int_delta_and_aggr(metric)[0]
        except MetricNotFoundError:
            return 0

    def to_estimator_values(self, registry: FeatureRegistry) -> list[float]:
        """Return the current values of the registry's features, in order."""
        values = [
            self._float_delta_and_aggr(metric)[0]
            for metric in registry.container_float_feature_names
        ]
        values += [
            float(self._int_delta_or_zero(metric))
            for metric in registry.container_uint_feature_names
        ]
        return values

    def basic_values(self) -> list[str]:
        return [self.command[:COMMAND_LEN_LIMIT]]

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

    def sum_all_dyn_delta_values(self) -> int:
        return (
            self.dyn_energy_in_pkg.delta
            + self.dyn_energy_in_gpu.delta
            + self.dyn_energy_in_other.delta
        ) & UINT64_MAX

    def sum_all_dyn_aggr_values(self) -> int:
        return (
            self.dyn_energy_in_pkg.aggr
            + self.dyn_energy_in_gpu.aggr
            + self.dyn_energy_in_other.aggr
        ) & UINT64_MAX

    def __str__(self) -> str:
        return (
            f"energy from process pid: {self.pid} comm: {self.command}\n"
            f"\tDyn ePkg (mJ): {self.dyn_energy_in_pkg} (eCore: {self.dyn_energy_in_core} "
            f"eDram: {self.dyn_energy_in_dram} eUncore: {self.dyn_energy_in_uncore}) "
            f"eGPU (mJ): {self.dyn_energy_in_gpu} eOther (mJ): {self.dyn_energy_in_other} \n"
            f"\tIdle ePkg (mJ): {self.idle_energy_in_pkg} (eCore: {self.idle_energy_in_core} "
            f"eDram: {self.idle_energy_in_dram} eUncore: {self.idle_energy_in_uncore}) "
            f"eGPU (mJ): {self.idle_energy_in_gpu} eOther (mJ): {self.idle_energy_in_other} \n"
            f"\tCPUTime:  {self.cpu_time.delta} ({self.cpu_time.aggr})\n"
            f"\tcounters: {{{', '.join(f'{k}: {v}' for k, v in self.counter_stats.items())}}}\n"
        )


def new_process_metrics(
    pid: int, command: str, registry: FeatureRegistry | None = None
) -> ProcessMetrics:
    """Create the metrics of a process with a counter for every available feature."""
    if registry is None:
        registry = FeatureRegistry()
    metrics = ProcessMetrics(pid=pid, command=command)
    for name in registry.available_hw_counters:
        metrics.counter_stats[name] = UInt64Stat()
    if registry.gpu_collection_supported:
        metrics.counter_stats[GPU_SM_UTILIZATION] = UInt64Stat()
        metrics.counter_stats[GPU_MEM_UTILIZATION] = UInt64Stat()
    return metrics