"""Registry of the resource usage features that are collected and exported."""

from __future__ import annotations

import csv
import logging
import platform
import socket
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

from keplermeter.config import (
    BLOCK_DEVICES_IO,
    BYTES_READ_IO,
    BYTES_WRITE_IO,
    CPU_INSTRUCTION,
    GPU_MEM_UTILIZATION,
    GPU_SM_UTILIZATION,
)

log = logging.getLogger(__name__)

CPU_MODEL_DATA_PATH = "/var/lib/kepler/data/normalized_cpu_arch.csv"

DELTA_PREFIX = "curr_"
AGGR_PREFIX = "total_"


@dataclass
class FeatureRegistry:
    """The metrics available on this node and the feature lists derived from them."""

    available_ebpf_counters: list[str] = field(default_factory=list)
    available_hw_counters: list[str] = field(default_factory=list)
    available_cgroup_metrics: list[str] = field(default_factory=list)
    available_kubelet_metrics: list[str] = field(default_factory=list)
    container_io_stat_metrics_names: list[str] = field(
        default_factory=lambda: [BYTES_READ_IO, BYTES_WRITE_IO]
    )
    container_float_feature_names: list[str] = field(default_factory=list)
    container_uint_feature_names: list[str] = field(default_factory=list)
    container_feature_names: list[str] = field(default_factory=list)
    container_metric_names: list[str] = field(default_factory=list)
    cpu_hardware_counter_enabled: bool = False
    enabled_gpu: bool = False
    gpu_collection_supported: bool = False

    def uint_feature_names(self) -> list[str]:
        """Return all integer feature names in export order."""
        names = [
            *self.available_ebpf_counters,
            *self.available_hw_counters,
            *self.available_cgroup_metrics,
            *self.available_kubelet_metrics,
            *self.container_io_stat_metrics_names,
        ]
        if self.enabled_gpu and self.gpu_collection_supported:
            names += [GPU_SM_UTILIZATION, GPU_MEM_UTILIZATION]
        log.debug("Available ebpf metrics: %s", self.available_ebpf_counters)
        log.debug("Available counter metrics: %s", self.available_hw_counters)
        log.debug("Available cgroup metrics from cgroup: %s", self.available_cgroup_metrics)
        log.debug("Available cgroup metrics from kubelet: %s", self.available_kubelet_metrics)
        log.debug("Available I/O metrics: %s", self.container_io_stat_metrics_names)
        return names

    def enable_metrics(self) -> list[str]:
        """Rebuild the feature lists and return the container metric names."""
        self.cpu_hardware_counter_enabled = self.is_counter_stat_enabled(CPU_INSTRUCTION)
        self.container_uint_feature_names = self.uint_feature_names()
        self.container_feature_names = [
            *self.container_float_feature_names,
            *self.container_uint_feature_names,
        ]
        self.container_metric_names = self.estimator_metrics()
        return self.container_metric_names

    def prometheus_metrics(self) -> list[str]:
        """Return the delta and aggregate label of every feature."""
        labels = [
            label
            for feature in self.container_feature_names
            for label in (DELTA_PREFIX + feature, AGGR_PREFIX + feature)
        ]
        labels.append(BLOCK_DEVICES_IO)
        return labels

    def estimator_metrics(self) -> list[str]:
        """Return the feature names used by the power estimators."""
        return [*self.container_feature_names, BLOCK_DEVICES_IO]

    def is_counter_stat_enabled(self, label: str) -> bool:
        return label in self.available_hw_counters


def node_name() -> str:
    """Return the host name of this node."""
    name = socket.gethostname()
    if not name:
        raise RuntimeError("could not get the node name")
    return name


def match_cpu_model(model: str, csv_path: str | Path = CPU_MODEL_DATA_PATH) -> str:
    """Return the first normalized architecture in ``csv_path`` contained in ``model``."""
    with open(csv_path, newline="", encoding="utf-8") as handle:
        for row in csv.DictReader(handle):
            architecture = row.get("Architecture") or ""
            if architecture in model:
                return architecture
    raise LookupError(f"no CPU power model found for architecture {model}")


def _run(*command: str) -> str:
    try:
        result = subprocess.run(command, capture_output=True, text=True, check=True)
    except (OSError, subprocess.CalledProcessError) as err:
        raise RuntimeError(f"could not run {command[0]}: {err}") from err
    return result.stdout


def _matching_lines(output: str, needle: str) -> str:
    lines = [line for line in output.splitlines() if needle in line]
    if not lines:
        raise RuntimeError("could not get the CPU Architecture")
    return "\n".join(lines) + "\n"


def _x86_architecture() -> str:
    res = _matching_lines(_run("cpuid", "-1"), "uarch")
    uarch = res.split("=")
    if len(uarch) != 2:
        raise RuntimeError("could not get the CPU Architecture")
    return uarch[1].split("{")[0]


def _arm64_architecture() -> str:
    return _run("archspec", "cpu").removesuffix("\n")


def _s390x_architecture() -> str:
    res = _matching_lines(_run("lscpu"), "Machine type:")
    uarch = res.split(":")
    if len(uarch) != 2:
        raise RuntimeError("could not get the CPU Architecture")
    return f"zSystems model {uarch[1].strip()}"


def cpu_architecture(
    override: str = "", model_data_path: str | Path = CPU_MODEL_DATA_PATH
) -> str:
    """Return the normalized CPU architecture of this node.

    An override is returned as is. Raises RuntimeError or LookupError when the
    architecture cannot be determined, and OSError when the model data cannot be read.
    """
    if override:
        log.info("cpu arch override: %s", override)
        return override
    machine = platform.machine().lower()
    if machine in ("x86_64", "amd64"):
        model = _x86_architecture()
    elif machine == "s390x":
        return _s390x_architecture()
    else:
        model = _arm64_architecture()
    return match_cpu_model(model, model_data_path)