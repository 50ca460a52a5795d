"""Prometheus exporter for node and container energy and resource usage."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Iterator

from keplermeter.config import (
    CACHE_MISS,
    CGROUPFS_CPU,
    CGROUPFS_MEMORY,
    CGROUPFS_SYSTEM_CPU,
    CGROUPFS_USER_CPU,
    CPU_CYCLE,
    CPU_INSTRUCTION,
    KUBELET_CONTAINER_CPU,
    KUBELET_CONTAINER_MEMORY,
    Settings,
)
from keplermeter.container_metric import ContainerMetrics
from keplermeter.descriptors import (
    MILI_JOULE_TO_JOULE,
    NODE_METRICS_STAT_LABELS,
    POD_ENERGY_STAT_LABELS,
    ContainerDescriptors,
    MetricDesc,
    MetricType,
    NodeDescriptors,
    PodDescriptors,
    Sample,
    container_descriptors,
    node_descriptors,
    pod_descriptors,
    render_samples,
)
from keplermeter.features import FeatureRegistry, cpu_architecture, node_name
from keplermeter.node_metric import Component, NodeMetrics
from keplermeter.process_metric import COMMAND_LEN_LIMIT, IRQ_BLOCK, IRQ_NET_RX, IRQ_NET_TX
from keplermeter.stats import UInt64Stat, UInt64StatCollection

log = logging.getLogger(__name__)

# Cgroup metrics that must all be available for the cgroup counters to be exported.
CGROUP_EXPORT_METRICS: tuple[str, ...] = (
    CGROUPFS_CPU,
    CGROUPFS_MEMORY,
    CGROUPFS_SYSTEM_CPU,
    CGROUPFS_USER_CPU,
)

COUNTER = MetricType.COUNTER
GAUGE = MetricType.GAUGE


def _has_cgroup_export_metrics(available: list[str]) -> bool:
    return all(metric in available for metric in CGROUP_EXPORT_METRICS)


def _detect_cpu_architecture() -> str:
    try:
        return cpu_architecture()
    except (OSError, RuntimeError, LookupError) as err:
        log.debug("cannot detect cpu architecture: %s", err)
        return "unknown"


def _delta_text(collection: UInt64StatCollection, ident: str) -> str:
    stat = collection.stat.get(ident)
    return str(stat.delta if stat is not None else 0)


def _joules(value: int) -> float:
    return float(value) / MILI_JOULE_TO_JOULE


@dataclass
class PrometheusExporter:
    """Turns the collected node and container metrics into Prometheus samples."""

    settings: Settings = field(default_factory=Settings)
    registry: FeatureRegistry = field(default_factory=FeatureRegistry)
    node_metrics: NodeMetrics = field(default_factory=NodeMetrics)
    containers_metrics: dict[str, ContainerMetrics] = field(default_factory=dict)
    node_cpu_frequency: dict[int, int] = field(default_factory=dict)
    sample_period_sec: float = 3.0
    node_name: str = field(default_factory=node_name)
    cpu_architecture: str = field(default_factory=_detect_cpu_architecture)
    have_kubelet_metric: bool = False
    have_cgroups_metric: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)
    node_desc: NodeDescriptors = field(default_factory=node_descriptors, repr=False)
    container_desc: ContainerDescriptors = field(default_factory=container_descriptors, repr=False)
    pod_desc: PodDescriptors = field(default_factory=pod_descriptors, repr=False)

    def describe(self) -> list[MetricDesc]:
        """Return the descriptors of every exported metric, given the current settings."""
        s = self.settings
        n = self.node_desc
        c = self.container_desc
        descs: list[MetricDesc] = [
            n.node_info,
            n.core_joules_total,
            n.uncore_joules_total,
            n.dram_joules_total,
            n.package_joules_total,
            n.platform_joules_total,
            n.other_components_joules_total,
        ]
        if s.enabled_gpu:
            descs.append(n.gpu_joules_total)
        descs += [n.cpu_frequency, n.package_millijoules_total, n.energy_stat]

        descs += [
            c.core_joules_total,
            c.uncore_joules_total,
            c.dram_joules_total,
            c.package_joules_total,
            c.other_components_joules_total,
        ]
        if s.enabled_gpu:
            descs.append(c.gpu_joules_total)
        descs.append(c.joules_total)

        if s.expose_hardware_counter_metrics and self.registry.cpu_hardware_counter_enabled:
            descs += [c.cpu_cycles_total, c.cpu_instr_total, c.cache_miss_total]

        if s.expose_cgroup_metrics:
            self.have_cgroups_metric = _has_cgroup_export_metrics(
                self.registry.available_cgroup_metrics
            )
            if self.have_cgroups_metric:
                descs += [
                    c.cgroup_cpu_usage_us_total,
                    c.cgroup_memory_usage_bytes_total,
                    c.cgroup_system_cpu_usage_us_total,
                    c.cgroup_user_cpu_usage_us_total,
                ]

        if s.expose_kubelet_metrics:
            if self.registry.available_kubelet_metrics:
                descs += [c.kubelet_cpu_usage_total, c.kubelet_memory_bytes_total]
                self.have_kubelet_metric = True
            else:
                self.have_kubelet_metric = False

        descs += [c.cpu_time, self.pod_desc.energy_stat]

        if s.expose_irq_counter_metrics:
            descs += [c.net_tx_irq_total, c.net_rx_irq_total, c.block_irq_total]
        return descs

    def collect(self) -> list[Sample]:
        """Return a sample for every node and container metric."""
        with self.lock:
            samples = list(self._node_samples())
            for container in list(self.containers_metrics.values()):
                samples.extend(self._container_samples(container))
            return samples

    def render(self) -> str:
        """Return the collected samples in the Prometheus text format."""
        return render_samples(self.collect())

    def _node_samples(self) -> Iterator[Sample]:
        node = self.node_metrics
        d = self.node_desc
        instance = self.node_name
        total = node.total_energy

        for cpu_id, freq in self.node_cpu_frequency.items():
            yield Sample(d.cpu_frequency, GAUGE, float(freq), (str(cpu_id), instance))

        for pkg_id, stat in total[Component.PKG].stat.items():
            yield Sample(
                d.package_millijoules_total,
                COUNTER,
                float(stat.delta),
                (
                    instance,
                    pkg_id,
                    _delta_text(total[Component.CORE], pkg_id),
                    _delta_text(total[Component.DRAM], pkg_id),
                    _delta_text(total[Component.UNCORE], pkg_id),
                ),
            )

        stat_values = [instance, self.cpu_architecture]
        stat_values += [
            str(int(node.resource_usage.get(label, 0.0)))
            for label in NODE_METRICS_STAT_LABELS[2:]
        ]
        yield Sample(
            d.energy_stat,
            COUNTER,
            _joules(total[Component.PLATFORM].sum_all_delta_values()) / self.sample_period_sec,
            stat_values,
        )
        yield Sample(d.node_info, COUNTER, 1.0, (self.cpu_architecture,))

        per_package = (
            (d.package_joules_total, Component.PKG),
            (d.core_joules_total, Component.CORE),
            (d.uncore_joules_total, Component.UNCORE),
            (d.dram_joules_total, Component.DRAM),
        )
        for pkg_id in list(total[Component.CORE].stat):
            for desc, component in per_package:
                yield Sample(
                    desc,
                    COUNTER,
                    _joules(node.aggr_dyn_energy_per_id(component, pkg_id)),
                    (pkg_id, instance, "rapl", "dynamic"),
                )
                yield Sample(
                    desc,
                    COUNTER,
                    _joules(node.aggr_idle_energy_per_id(component, pkg_id)),
                    (pkg_id, instance, "rapl", "idle"),
                )

        # The idle series of other and platform report the dynamic aggregate.
        other = _joules(node.sum_aggr_dyn_energy(Component.OTHER))
        yield Sample(d.other_components_joules_total, COUNTER, other, (instance, "dynamic"))
        yield Sample(d.other_components_joules_total, COUNTER, other, (instance, "idle"))

        platform = _joules(node.sum_aggr_dyn_energy(Component.PLATFORM))
        yield Sample(d.platform_joules_total, COUNTER, platform, (instance, "acpi", "dynamic"))
        yield Sample(d.platform_joules_total, COUNTER, platform, (instance, "acpi", "idle"))

        if self.settings.enabled_gpu:
            for gpu_id in list(total[Component.GPU].stat):
                yield Sample(
                    d.gpu_joules_total,
                    COUNTER,
                    _joules(node.aggr_dyn_energy_per_id(Component.GPU, gpu_id)),
                    (gpu_id, instance, "nvidia", "dynamic"),
                )
                yield Sample(
                    d.gpu_joules_total,
                    COUNTER,
                    _joules(node.aggr_idle_energy_per_id(Component.GPU, gpu_id)),
                    (gpu_id, instance, "nvidia", "idle"),
                )

    def _container_samples(self, container: ContainerMetrics) -> Iterator[Sample]:
        s = self.settings
        c = self.container_desc
        command = container.command[:COMMAND_LEN_LIMIT]
        ident = (container.pod_name, container.container_name, container.namespace)
        labels = (*ident, command)

        stat_values = [*labels]
        stat_values += [container.to_prometheus_value(label) for label in POD_ENERGY_STAT_LABELS[4:]]
        yield Sample(
            self.pod_desc.energy_stat,
            GAUGE,
            float(container.sum_all_dyn_delta_values()),
            stat_values,
        )
        yield Sample(c.cpu_time, COUNTER, float(container.cpu_time.aggr), ident)

        energy = [
            (c.core_joules_total, container.dyn_energy_in_core, container.idle_energy_in_core),
            (
                c.uncore_joules_total,
                container.dyn_energy_in_uncore,
                container.idle_energy_in_uncore,
            ),
            (c.dram_joules_total, container.dyn_energy_in_dram, container.idle_energy_in_dram),
            (c.package_joules_total, container.dyn_energy_in_pkg, container.idle_energy_in_pkg),
            (
                c.other_components_joules_total,
                container.dyn_energy_in_other,
                container.idle_energy_in_other,
            ),
        ]
        if s.enabled_gpu:
            energy.append(
                (c.gpu_joules_total, container.dyn_energy_in_gpu, container.idle_energy_in_gpu)
            )
        for desc, dyn, idle in energy:
            yield Sample(desc, COUNTER, _joules(dyn.aggr), (*labels, "dynamic"))
            yield Sample(desc, COUNTER, _joules(idle.aggr), (*labels, "idle"))

        dyn_parts = (
            container.dyn_energy_in_pkg,
            container.dyn_energy_in_uncore,
            container.dyn_energy_in_dram,
            container.dyn_energy_in_gpu,
            container.dyn_energy_in_other,
        )
        idle_parts = (
            container.idle_energy_in_pkg,
            container.idle_energy_in_uncore,
            container.idle_energy_in_dram,
            container.idle_energy_in_gpu,
            container.idle_energy_in_other,
        )
        yield Sample(
            c.joules_total,
            COUNTER,
            sum(_joules(stat.aggr) for stat in dyn_parts),
            (*labels, "dynamic"),
        )
        yield Sample(
            c.joules_total,
            COUNTER,
            sum(_joules(stat.aggr) for stat in idle_parts),
            (*labels, "idle"),
        )

        if s.expose_hardware_counter_metrics and self.registry.cpu_hardware_counter_enabled:
            for desc, key in (
                (c.cpu_cycles_total, CPU_CYCLE),
                (c.cpu_instr_total, CPU_INSTRUCTION),
                (c.cache_miss_total, CACHE_MISS),
            ):
                stat = container.counter_stats.get(key)
                if stat is not None:
                    yield Sample(desc, COUNTER, float(stat.aggr), labels)

        if s.expose_cgroup_metrics and self.have_cgroups_metric:
            for desc, key in (
                (c.cgroup_cpu_usage_us_total, CGROUPFS_CPU),
                (c.cgroup_memory_usage_bytes_total, CGROUPFS_MEMORY),
                (c.cgroup_system_cpu_usage_us_total, CGROUPFS_SYSTEM_CPU),
                (c.cgroup_user_cpu_usage_us_total, CGROUPFS_USER_CPU),
            ):
                collection = container.cgroup_fs_stats.get(key, UInt64StatCollection())
                yield Sample(desc, COUNTER, float(collection.sum_all_aggr_values()), labels)

        if s.expose_kubelet_metrics and self.have_kubelet_metric:
            for desc, key in (
                (c.kubelet_cpu_usage_total, KUBELET_CONTAINER_CPU),
                (c.kubelet_memory_bytes_total, KUBELET_CONTAINER_MEMORY),
            ):
                stat = container.kubelet_stats.get(key, UInt64Stat())
                yield Sample(desc, COUNTER, float(stat.aggr), labels)

        if s.expose_irq_counter_metrics:
            for desc, index in (
                (c.net_tx_irq_total, IRQ_NET_TX),
                (c.net_rx_irq_total, IRQ_NET_RX),
                (c.block_irq_total, IRQ_BLOCK),
            ):
                yield Sample(
                    desc, COUNTER, float(container.soft_irq_count[index].aggr), ident
                )