"""Node-level resource usage and energy, split into idle and dynamic parts."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Sequence

from keplermeter.config import CPU_INSTRUCTION
from keplermeter.process_metric import MetricNotFoundError, ProcessMetrics
from keplermeter.stats import UINT64_MAX, UInt64StatCollection

log = logging.getLogger(__name__)


class Component(str, Enum):
    """Node components whose energy is tracked."""

    CORE = "core"
    DRAM = "dram"
    UNCORE = "uncore"
    PKG = "pkg"
    GPU = "gpu"
    OTHER = "other"
    PLATFORM = "platform"
    FREQUENCY = "frequency"


_ENERGY_COMPONENTS = (
    Component.CORE,
    Component.DRAM,
    Component.UNCORE,
    Component.PKG,
    Component.GPU,
    Component.OTHER,
    Component.PLATFORM,
)

_IDLE_COMPONENTS = (
    Component.CORE,
    Component.DRAM,
    Component.UNCORE,
    Component.PKG,
    Component.GPU,
    Component.PLATFORM,
)


@dataclass(frozen=True)
class NodeComponentsEnergy:
    """Aggregated energy (mJ) of one CPU package and its parts."""

    core: int = 0
    dram: int = 0
    uncore: int = 0
    pkg: int = 0


def _energy_table() -> dict[Component, UInt64StatCollection]:
    return {component: UInt64StatCollection() for component in _ENERGY_COMPONENTS}


def dyn_energy(total: int, idle: int) -> int:
    """Return the dynamic part of ``total``, or 0 if it cannot be told apart."""
    if total == 0 or idle == 0 or total < idle:
        return 0
    return total - idle


@dataclass
class NodeMetrics:
    """Energy of every node component plus the node's total resource usage."""

    resource_usage: dict[str, float] = field(default_factory=dict)
    total_energy: dict[Component, UInt64StatCollection] = field(default_factory=_energy_table)
    dyn_energy: dict[Component, UInt64StatCollection] = field(default_factory=_energy_table)
    idle_energy: dict[Component, UInt64StatCollection] = field(default_factory=_energy_table)
    cpu_frequency: dict[int, int] = field(default_factory=dict)
    idle_cpu_utilization: int = 0
    found_new_idle_state: bool = False

    @staticmethod
    def _lookup(
        table: dict[Component, UInt64StatCollection], component: str | Component, kind: str
    ) -> UInt64StatCollection:
        try:
            collection = table.get(Component(component))
        except ValueError:
            collection = None
        if collection is None:
            raise ValueError(f"{kind} component type {component} is unknown")
        return collection

    def _total(self, component: str | Component) -> UInt64StatCollection:
        return self._lookup(self.total_energy, component, "TotalEnergy")

    def _dyn(self, component: str | Component) -> UInt64StatCollection:
        return self._lookup(self.dyn_energy, component, "DynEnergy")

    def _idle(self, component: str | Component) -> UInt64StatCollection:
        return self._lookup(self.idle_energy, component, "IdleEnergy")

    def reset_delta_values(self) -> None:
        """Clear the resource usage and the total and dynamic energy deltas."""
        self.resource_usage = {}
        for component in (
            Component.CORE,
            Component.DRAM,
            Component.UNCORE,
            Component.PKG,
            Component.GPU,
            Component.PLATFORM,
        ):
            self.total_energy[component].reset_delta_values()
            self.dyn_energy[component].reset_delta_values()

    def add_node_res_usage_from_container_res_usage(
        self,
        containers: Mapping[str, ProcessMetrics],
        metric_names: Sequence[str],
    ) -> None:
        """Set the node resource usage to the sum of the containers' deltas."""
        idle_cpu_utilization = 0
        usage: dict[str, float] = {}
        for metric in metric_names:
            usage[metric] = 0.0
            for container in containers.values():
                try:
                    delta = container.int_delta_and_aggr(metric)[0]
                except MetricNotFoundError:
                    delta = 0
                usage[metric] += float(delta)
                if metric == CPU_INSTRUCTION:
                    idle_cpu_utilization = (idle_cpu_utilization + delta) & UINT64_MAX
        self.resource_usage = usage
        if self.idle_cpu_utilization > idle_cpu_utilization or self.idle_cpu_utilization == 0:
            self.found_new_idle_state = True
            self.idle_cpu_utilization = idle_cpu_utilization

    def set_latest_platform_energy(self, platform_energy: Mapping[str, float]) -> None:
        """Record the latest energy read from each platform sensor."""
        platform = self.total_energy[Component.PLATFORM]
        for sensor_id, energy in platform_energy.items():
            platform.set_delta_stat(sensor_id, int(math.ceil(energy)))

    def set_node_components_energy(
        self, components_energy: Mapping[int, NodeComponentsEnergy]
    ) -> None:
        """Record the latest aggregated energy of each CPU package."""
        for pkg_id, energy in components_energy.items():
            key = str(pkg_id)
            self.total_energy[Component.CORE].set_aggr_stat(key, energy.core)
            self.total_energy[Component.DRAM].set_aggr_stat(key, energy.dram)
            self.total_energy[Component.UNCORE].set_aggr_stat(key, energy.uncore)
            self.total_energy[Component.PKG].set_aggr_stat(key, energy.pkg)

    def add_node_gpu_energy(self, gpu_energy: Sequence[int]) -> None:
        """Add the latest energy of each GPU, keyed by its index."""
        gpu = self.total_energy[Component.GPU]
        for gpu_id, energy in enumerate(gpu_energy):
            gpu.add_delta_stat(str(gpu_id), energy)

    def update_idle_energy(self) -> None:
        """Update the idle energy of every measured component."""
        for component in _IDLE_COMPONENTS:
            self.calc_idle_energy(component)
        self.found_new_idle_state = False

    def calc_idle_energy(self, component: str | Component) -> None:
        """Lower the idle energy of ``component`` when a quieter period is seen."""
        total = self._total(component)
        idle = self._idle(component)
        for ident, stat in total.stat.items():
            delta = stat.delta
            if ident not in idle.stat:
                idle.set_delta_stat(ident, delta)
                continue
            idle_delta = idle.stat[ident].delta
            lower = idle_delta == 0 or idle_delta > delta
            quiet = self.found_new_idle_state or self.idle_cpu_utilization == 0
            idle.set_delta_stat(ident, delta if lower and quiet else idle_delta)

    def update_dyn_energy(self) -> None:
        """Compute the dynamic energy of every package and platform sensor."""
        for pkg_id in list(self.total_energy[Component.PKG].stat):
            for component in (Component.PKG, Component.CORE, Component.UNCORE, Component.DRAM):
                self.calc_dyn_energy(component, pkg_id)
        for sensor_id in list(self.total_energy[Component.PLATFORM].stat):
            self.calc_dyn_energy(Component.PLATFORM, sensor_id)

    def calc_dyn_energy(self, component: str | Component, ident: str) -> None:
        """Set the dynamic energy of ``component`` for ``ident`` as total minus idle."""
        total = self._total(component).stat[ident].delta
        idle = self._idle(component).stat[ident].delta
        self._dyn(component).set_delta_stat(ident, dyn_energy(total, idle))

    def set_node_other_components_energy(self) -> None:
        """Derive the energy of components other than CPU, DRAM and GPU."""
        dyn_cpu = (
            self.dyn_energy[Component.PKG].sum_all_delta_values()
            + self.dyn_energy[Component.DRAM].sum_all_delta_values()
            + self.dyn_energy[Component.GPU].sum_all_delta_values()
        ) & UINT64_MAX
        dyn_platform = self.dyn_energy[Component.PLATFORM].sum_all_delta_values()
        if dyn_platform > dyn_cpu:
            self.dyn_energy[Component.OTHER].set_delta_stat(
                Component.OTHER.value, dyn_platform - dyn_cpu
            )

        idle_cpu = (
            self.idle_energy[Component.PKG].sum_all_delta_values()
            + self.idle_energy[Component.DRAM].sum_all_delta_values()
            + self.idle_energy[Component.GPU].sum_all_delta_values()
        ) & UINT64_MAX
        idle_platform = self.idle_energy[Component.PLATFORM].sum_all_delta_values()
        if idle_platform > idle_cpu:
            self.idle_energy[Component.OTHER].set_delta_stat(
                Component.OTHER.value, idle_platform - idle_cpu
            )

    def resource_usage_for(self, resource: str) -> float:
        return self.resource_usage.get(resource, 0.0)

    def aggr_dyn_energy_per_id(self, component: str | Component, ident: str) -> int:
        stat = self._dyn(component).stat.get(ident)
        return stat.aggr if stat is not None else 0

    def delta_dyn_energy_per_id(self, component: str | Component, ident: str) -> int:
        stat = self._dyn(component).stat.get(ident)
        return stat.delta if stat is not None else 0

    def sum_aggr_dyn_energy(self, component: str | Component) -> int:
        return self._dyn(component).sum_all_aggr_values()

    def sum_delta_dyn_energy(self, component: str | Component) -> int:
        return self._dyn(component).sum_all_delta_values()

    def aggr_idle_energy_per_id(self, component: str | Component, ident: str) -> int:
        stat = self._idle(component).stat.get(ident)
        return stat.aggr if stat is not None else 0

    def delta_idle_energy_per_id(self, component: str | Component, ident: str) -> int:
        stat = self._idle(component).stat.get(ident)
        return stat.delta if stat is not None else 0

    def sum_delta_idle_energy(self, component: str | Component) -> int:
        return self._idle(component).sum_all_delta_values()

    def sum_aggr_idle_energy(self, component: str | Component) -> int:
        return self._idle(component).sum_all_aggr_values()

    def __str__(self) -> str:
        total = self.total_energy
        return (
            "node delta energy (mJ): \n"
            f"\tePkg: {total[Component.PKG].sum_all_delta_values()} "
            f"(eCore: {total[Component.CORE].sum_all_delta_values()} "
            f"eDram: {total[Component.DRAM].sum_all_delta_values()} "
            f"eUncore: {total[Component.UNCORE].sum_all_delta_values()}) "
            f"eGPU: {total[Component.GPU].sum_all_delta_values()} "
            f"eOther: {total[Component.OTHER].sum_all_delta_values()} \n"
        )