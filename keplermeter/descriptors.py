"""Metric descriptors and the Prometheus text exposition of samples."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field, fields
from decimal import Decimal
from enum import Enum
from typing import Iterable, Iterator

NAMESPACE = "kepler"
MILI_JOULE_TO_JOULE = 1000

# Labels of the node energy stat metric used by the model server for training.
NODE_METRICS_STAT_LABELS: tuple[str, ...] = (
    "node_name",
    "cpu_architecture",
    "node_curr_cpu_time",
    "node_curr_cpu_cycles",
    "node_curr_cpu_instr",
    "node_curr_cache_miss",
    "node_curr_container_cpu_usage_seconds_total",
    "node_curr_container_memory_working_set_bytes",
    "node_curr_bytes_read",
    "node_curr_bytes_writes",
    "node_block_devices_used",
    "node_curr_energy_in_core_joule",
    "node_curr_energy_in_dram_joule",
    "node_curr_energy_in_gpu_joule",
    "node_curr_energy_in_other_joule",
    "node_curr_energy_in_pkg_joule",
    "node_curr_energy_in_uncore_joule",
)

# Labels of the pod energy stat metric used by the model server for training.
POD_ENERGY_STAT_LABELS: tuple[str, ...] = (
    "pod_name",
    "container_name",
    "pod_namespace",
    "command",
    "curr_cpu_time",
    "total_cpu_time",
    "curr_cpu_cycles",
    "total_cpu_cycles",
    "curr_cpu_instr",
    "total_cpu_instr",
    "curr_cache_miss",
    "total_cache_miss",
    "curr_container_cpu_usage_seconds_total",
    "total_container_cpu_usage_seconds_total",
    "curr_container_memory_working_set_bytes",
    "total_container_memory_working_set_bytes",
    "curr_bytes_read",
    "total_bytes_read",
    "curr_bytes_writes",
    "total_bytes_writes",
    "block_devices_used",
    "curr_irq_net_rx",
    "total_irq_net_rx",
    "curr_irq_net_tx",
    "total_irq_net_tx",
    "curr_irq_block",
    "total_irq_block",
)

_METRIC_NAME_RE = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")
_LABEL_NAME_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


class MetricType(str, Enum):
    """Kind of value a sample carries."""

    COUNTER = "counter"
    GAUGE = "gauge"


def build_fq_name(namespace: str, subsystem: str, name: str) -> str:
    """Join the non-empty parts with ``_``; an empty name gives an empty result."""
    if not name:
        return ""
    return "_".join(part for part in (namespace, subsystem, name) if part)


@dataclass(frozen=True)
class MetricDesc:
    """Name, help text and variable label names of a metric."""

    fq_name: str
    help: str
    variable_labels: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "variable_labels", tuple(self.variable_labels))
        if not _METRIC_NAME_RE.match(self.fq_name):
            raise ValueError(f"{self.fq_name!r} is not a valid metric name")
        seen: set[str] = set()
        for label in self.variable_labels:
            if not _LABEL_NAME_RE.match(label):
                raise ValueError(f"{label!r} is not a valid label name")
            if label in seen:
                raise ValueError(f"duplicate label name {label!r} in {self.fq_name}")
            seen.add(label)


def _format_value(value: float) -> str:
    """Format a float the way the Prometheus text format does."""
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value == 0:
        return "0"
    number = Decimal(repr(float(value))).normalize()
    sign, digits, exponent = number.as_tuple()
    point_exp = len(digits) - 1 + exponent
    if point_exp < -4 or point_exp >= 6:
        mantissa = str(digits[0])
        if len(digits) > 1:
            mantissa += "." + "".join(str(d) for d in digits[1:])
        exp_sign = "-" if point_exp < 0 else "+"
        return f"{'-' if sign else ''}{mantissa}e{exp_sign}{abs(point_exp):02d}"
    return format(number, "f")


def _escape_label_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _escape_help(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n")


@dataclass(frozen=True)
class Sample:
    """One value of a metric with its label values."""

    desc: MetricDesc
    value_type: MetricType
    value: float
    label_values: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "label_values", tuple(self.label_values))
        expected = len(self.desc.variable_labels)
        got = len(self.label_values)
        if expected != got:
            raise ValueError(
                f"inconsistent label cardinality: expected {expected} label values "
                f"but got {got} in {self.label_values!r}"
            )

    @property
    def labels(self) -> dict[str, str]:
        return dict(zip(self.desc.variable_labels, self.label_values))

    def _sorted_pairs(self) -> list[tuple[str, str]]:
        return sorted(self.labels.items())

    def render(self) -> str:
        """Return the exposition line of this sample, labels sorted by name."""
        pairs = self._sorted_pairs()
        if pairs:
            body = ",".join(f'{k}="{_escape_label_value(v)}"' for k, v in pairs)
            head = f"{self.desc.fq_name}{{{body}}}"
        else:
            head = self.desc.fq_name
        return f"{head} {_format_value(self.value)}"


def render_samples(samples: Iterable[Sample]) -> str:
    """Render samples as Prometheus text, grouped into families sorted by name."""
    families: dict[str, list[Sample]] = {}
    for sample in samples:
        families.setdefault(sample.desc.fq_name, []).append(sample)
    lines: list[str] = []
    for name in sorted(families):
        members = sorted(families[name], key=lambda s: s._sorted_pairs())
        first = members[0]
        lines.append(f"# HELP {name} {_escape_help(first.desc.help)}")
        lines.append(f"# TYPE {name} {first.value_type.value}")
        lines.extend(sample.render() for sample in members)
    return "".join(line + "\n" for line in lines)


def _desc(subsystem: str, name: str, help_text: str, labels: Iterable[str]) -> MetricDesc:
    return MetricDesc(build_fq_name(NAMESPACE, subsystem, name), help_text, tuple(labels))


class _DescriptorSet:
    def __iter__(self) -> Iterator[MetricDesc]:
        return (getattr(self, f.name) for f in fields(self))  # type: ignore[arg-type]


_PKG_LABELS = ("package", "instance", "source", "mode")
_CONTAINER_ENERGY_LABELS = ("pod_name", "container_name", "container_namespace", "command", "mode")
_CONTAINER_LABELS = ("pod_name", "container_name", "container_namespace", "command")
_CONTAINER_BPF_LABELS = ("pod_name", "container_name", "container_namespace")


@dataclass(frozen=True)
class NodeDescriptors(_DescriptorSet):
    """Descriptors of the node metrics."""

    node_info: MetricDesc
    core_joules_total: MetricDesc
    uncore_joules_total: MetricDesc
    dram_joules_total: MetricDesc
    package_joules_total: MetricDesc
    platform_joules_total: MetricDesc
    other_components_joules_total: MetricDesc
    gpu_joules_total: MetricDesc
    cpu_frequency: MetricDesc
    package_millijoules_total: MetricDesc
    energy_stat: MetricDesc


@dataclass(frozen=True)
class ContainerDescriptors(_DescriptorSet):
    """Descriptors of the container metrics."""

    core_joules_total: MetricDesc
    uncore_joules_total: MetricDesc
    dram_joules_total: MetricDesc
    package_joules_total: MetricDesc
    other_components_joules_total: MetricDesc
    gpu_joules_total: MetricDesc
    joules_total: MetricDesc
    cpu_cycles_total: MetricDesc
    cpu_instr_total: MetricDesc
    cache_miss_total: MetricDesc
    cgroup_cpu_usage_us_total: MetricDesc
    cgroup_memory_usage_bytes_total: MetricDesc
    cgroup_system_cpu_usage_us_total: MetricDesc
    cgroup_user_cpu_usage_us_total: MetricDesc
    kubelet_cpu_usage_total: MetricDesc
    kubelet_memory_bytes_total: MetricDesc
    cpu_time: MetricDesc
    net_tx_irq_total: MetricDesc
    net_rx_irq_total: MetricDesc
    block_irq_total: MetricDesc


@dataclass(frozen=True)
class PodDescriptors(_DescriptorSet):
    """Descriptors of the pod metrics used by the model server."""

    energy_stat: MetricDesc
    cpu_instr_total: MetricDesc


def node_descriptors() -> NodeDescriptors:
    """Create the node metric descriptors."""
    return NodeDescriptors(
        node_info=_desc("node", "nodeInfo", "Labeled node information", ("cpu_architecture",)),
        core_joules_total=_desc(
            "node", "core_joules_total", "Aggregated RAPL value in core in joules", _PKG_LABELS
        ),
        uncore_joules_total=_desc(
            "node", "uncore_joules_total", "Aggregated RAPL value in uncore in joules", _PKG_LABELS
        ),
        dram_joules_total=_desc(
            "node", "dram_joules_total", "Aggregated RAPL value in dram in joules", _PKG_LABELS
        ),
        package_joules_total=_desc(
            "node",
            "package_joules_total",
            "Aggregated RAPL value in package (socket) in joules",
            _PKG_LABELS,
        ),
        platform_joules_total=_desc(
            "node",
            "platform_joules_total",
            "Aggregated RAPL value in platform (entire node) in joules",
            ("instance", "source", "mode"),
        ),
        other_components_joules_total=_desc(
            "node",
            "other_host_components_joules_total",
            "Aggregated RAPL value in other components (platform - package - dram) in joules",
            ("instance", "mode"),
        ),
        gpu_joules_total=_desc(
            "node",
            "gpu_joules_total",
            "Current GPU value in joules",
            ("index", "instance", "source", "mode"),
        ),
        cpu_frequency=_desc(
            "node",
            "cpu_scaling_frequency_hertz",
            "Current average cpu frequency in hertz",
            ("cpu", "instance"),
        ),
        package_millijoules_total=_desc(
            "node",
            "package_energy_millijoule",
            "Aggregated RAPL value in package (socket) in milijoules (deprecated)",
            ("instance", "pkg_id", "core", "dram", "uncore"),
        ),
        energy_stat=_desc(
            "node", "energy_stat", "Several labeled node metrics", NODE_METRICS_STAT_LABELS
        ),
    )


def container_descriptors() -> ContainerDescriptors:
    """Create the container metric descriptors."""
    return ContainerDescriptors(
        core_joules_total=_desc(
            "container",
            "core_joules_total",
            "Aggregated RAPL value in core in joules",
            _CONTAINER_ENERGY_LABELS,
        ),
        uncore_joules_total=_desc(
            "container",
            "uncore_joules_total",
            "Aggregated RAPL value in uncore in joules",
            _CONTAINER_ENERGY_LABELS,
        ),
        dram_joules_total=_desc(
            "container",
            "dram_joules_total",
            "Aggregated RAPL value in dram in joules",
            _CONTAINER_ENERGY_LABELS,
        ),
        package_joules_total=_desc(
            "container",
            "package_joules_total",
            "Aggregated RAPL value in package (socket) in joules",
            _CONTAINER_ENERGY_LABELS,
        ),
        other_components_joules_total=_desc(
            "container",
            "other_host_components_joules_total",
            "Aggregated value in other host components (platform - package - dram) in joules",
            _CONTAINER_ENERGY_LABELS,
        ),
        gpu_joules_total=_desc(
            "container",
            "gpu_joules_total",
            "Aggregated GPU value in joules",
            _CONTAINER_ENERGY_LABELS,
        ),
        joules_total=_desc(
            "container",
            "joules_total",
            "Aggregated RAPL Package + Uncore + DRAM + GPU + other host components "
            "(platform - package - dram) in joules",
            _CONTAINER_ENERGY_LABELS,
        ),
        cpu_cycles_total=_desc(
            "container", "cpu_cycles_total", "Aggregated CPU cycle value", _CONTAINER_LABELS
        ),
        cpu_instr_total=_desc(
            "container",
            "cpu_instructions_total",
            "Aggregated CPU instruction value",
            _CONTAINER_LABELS,
        ),
        cache_miss_total=_desc(
            "container", "cache_miss_total", "Aggregated cache miss value", _CONTAINER_LABELS
        ),
        cgroup_cpu_usage_us_total=_desc(
            "container",
            "cgroupfs_cpu_usage_us_total",
            "Aggregated cpu usage obtained from cGroups",
            _CONTAINER_LABELS,
        ),
        cgroup_memory_usage_bytes_total=_desc(
            "container",
            "cgroupfs_memory_usage_bytes_total",
            "Aggregated memory bytes obtained from cGroups",
            _CONTAINER_LABELS,
        ),
        cgroup_system_cpu_usage_us_total=_desc(
            "container",
            "cgroupfs_system_cpu_usage_us_total",
            "Aggregated system cpu usage obtained from cGroups",
            _CONTAINER_LABELS,
        ),
        cgroup_user_cpu_usage_us_total=_desc(
            "container",
            "cgroupfs_user_cpu_usage_us_total",
            "Aggregated user cpu usage obtained from cGroups",
            _CONTAINER_LABELS,
        ),
        kubelet_cpu_usage_total=_desc(
            "container",
            "kubelet_cpu_usage_total",
            "Aggregated cpu usage obtained from kubelet",
            _CONTAINER_LABELS,
        ),
        kubelet_memory_bytes_total=_desc(
            "container",
            "kubelet_memory_bytes_total",
            "Aggregated memory bytes obtained from kubelet",
            _CONTAINER_LABELS,
        ),
        cpu_time=_desc(
            "container",
            "bpf_cpu_time_us_total",
            "Aggregated CPU time obtained from BPF",
            _CONTAINER_BPF_LABELS,
        ),
        net_tx_irq_total=_desc(
            "container",
            "bpf_net_tx_irq_total",
            "Aggregated network tx irq value obtained from BPF",
            _CONTAINER_BPF_LABELS,
        ),
        net_rx_irq_total=_desc(
            "container",
            "bpf_net_rx_irq_total",
            "Aggregated network rx irq value obtained from BPF",
            _CONTAINER_BPF_LABELS,
        ),
        block_irq_total=_desc(
            "container",
            "bpf_block_irq_total",
            "Aggregated block irq value obtained from BPF",
            _CONTAINER_BPF_LABELS,
        ),
    )


def pod_descriptors() -> PodDescriptors:
    """Create the pod metric descriptors."""
    return PodDescriptors(
        energy_stat=_desc(
            "pod", "energy_stat", "Several labeled pod metrics", POD_ENERGY_STAT_LABELS
        ),
        cpu_instr_total=_desc(
            "pod",
            "cpu_instructions",
            "Aggregated CPU instruction value (deprecated)",
            _CONTAINER_LABELS,
        ),
    )