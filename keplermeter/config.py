"""Runtime settings read from a config directory or the environment."""

from __future__ import annotations

import logging
import os
import platform
import re
from dataclasses import dataclass, field
from pathlib import Path

log = logging.getLogger(__name__)

# Metric names.
CPU_CYCLE = "cpu_cycles"
CPU_REF_CYCLE = "cpu_ref_cycles"
CPU_INSTRUCTION = "cpu_instr"
CACHE_MISS = "cache_miss"

CPU_TIME = "cpu_time"
IRQ_NET_TX_LABEL = "irq_net_tx"
IRQ_NET_RX_LABEL = "irq_net_rx"
IRQ_BLOCK_LABEL = "irq_block"

CGROUPFS_MEMORY = "cgroupfs_memory_usage_bytes"
CGROUPFS_KERNEL_MEMORY = "cgroupfs_kernel_memory_usage_bytes"
CGROUPFS_TCP_MEMORY = "cgroupfs_tcp_memory_usage_bytes"
CGROUPFS_CPU = "cgroupfs_cpu_usage_us"
CGROUPFS_SYSTEM_CPU = "cgroupfs_system_cpu_usage_us"
CGROUPFS_USER_CPU = "cgroupfs_user_cpu_usage_us"
CGROUPFS_READ_IO = "cgroupfs_ioread_bytes"
CGROUPFS_WRITE_IO = "cgroupfs_iowrite_bytes"
BYTES_READ_IO = "bytes_read"
BYTES_WRITE_IO = "bytes_writes"
BLOCK_DEVICES_IO = "block_devices_used"

KUBELET_CONTAINER_CPU = "container_cpu_usage_seconds_total"
KUBELET_CONTAINER_MEMORY = "container_memory_working_set_bytes"
KUBELET_NODE_CPU = "node_cpu_usage_seconds_total"
KUBELET_NODE_MEMORY = "node_memory_working_set_bytes"

CPU_FREQUENCY = "avg_cpu_frequency"

GPU_SM_UTILIZATION = "gpu_sm_util"
GPU_MEM_UTILIZATION = "gpu_mem_util"

# Limits and defaults.
MAX_IRQ = 10
CGROUP_ID_MIN_KERNEL_VERSION = 4.18
CGROUP_V2_PATH = "/sys/fs/cgroup/cgroup.controllers"
CONFIG_PATH = "/etc/kepler/kepler.config"

DEFAULT_METRIC_VALUE = ""
DEFAULT_NAMESPACE = "kepler"
DEFAULT_MODEL_SERVER_PORT = "8100"
DEFAULT_MODEL_REQUEST_PATH = "/model"

METRIC_PATH_KEY = "METRIC_PATH"
BIND_ADDRESS_KEY = "BIND_ADDRESS"

# Model config items and attributes.
NODE_TOTAL_KEY = "NODE_TOTAL"
NODE_COMPONENTS_KEY = "NODE_COMPONENTS"
CONTAINER_TOTAL_KEY = "CONTAINER_TOTAL"
CONTAINER_COMPONENTS_KEY = "CONTAINER_COMPONENTS"
PROCESS_TOTAL_KEY = "PROCESS_TOTAL"
PROCESS_COMPONENTS_KEY = "PROCESS_COMPONENTS"

ESTIMATOR_ENABLED_KEY = "ESTIMATOR"
INIT_MODEL_URL_KEY = "INIT_URL"
FIXED_MODEL_NAME_KEY = "MODEL"
MODEL_FILTERS_KEY = "FILTERS"

_VERSION_RE = re.compile(r"^(\d+)\.(\d+).")


def get_config(key: str, default: str, config_dir: str | os.PathLike = CONFIG_PATH) -> str:
    """Return the file ``config_dir/key`` if readable, else the env var, else ``default``."""
    try:
        return (Path(config_dir) / key).read_bytes().decode("utf-8", "replace")
    except OSError:
        return os.environ.get(key, default)


def get_bool_config(key: str, default: bool, config_dir: str | os.PathLike = CONFIG_PATH) -> bool:
    """Return a boolean setting: true only when the value is ``true`` in any case."""
    return get_config(key, "true" if default else "false", config_dir).lower() == "true"


def model_server_request_endpoint(config_dir: str | os.PathLike = CONFIG_PATH) -> str:
    """Build the model server request URL from its settings."""
    namespace = get_config("KELPER_NAMESPACE", DEFAULT_NAMESPACE, config_dir)
    service = f"kepler-model-server.{namespace}.svc.cluster.local"
    url = get_config("MODEL_SERVER_URL", service, config_dir)
    if url == service:
        port = get_config("MODEL_SERVER_PORT", DEFAULT_MODEL_SERVER_PORT, config_dir)
        port = port.removesuffix("\n")
        url = f"http://{url}:{port}"
    path = get_config("MODEL_SERVER_MODEL_REQ_PATH", DEFAULT_MODEL_REQUEST_PATH, config_dir)
    return url + path


def parse_kernel_version(release: str) -> float:
    """Return ``major.minor`` of a kernel release string, or -1.0 if it cannot be read."""
    release = release.split("\x00", 1)[0]
    match = _VERSION_RE.match(release)
    if match is None:
        log.info("got invalid release version %r (expected format '4.3-1 or 4.3.2-1')", release)
        return -1.0
    major, minor = int(match.group(1)), int(match.group(2))
    return float(f"{major}.{minor}")


def is_cgroup_v2(path: str | os.PathLike = CGROUP_V2_PATH) -> bool:
    """Tell whether the cgroup v2 controllers file exists."""
    try:
        os.stat(path)
    except FileNotFoundError:
        return False
    except OSError:
        return True
    return True


def cgroup_version(path: str | os.PathLike = CGROUP_V2_PATH) -> int:
    """Return 2 when cgroup v2 is in use, otherwise 1."""
    return 2 if is_cgroup_v2(path) else 1


def parse_model_config(text: str) -> dict[str, str]:
    """Parse whitespace-separated ``KEY=VALUE`` entries."""
    values: dict[str, str] = {}
    for entry in text.split():
        parts = entry.split("=")
        if len(parts) == 2:
            values[parts[0]] = parts[1]
    return values


def model_config_key(model_item: str, attribute: str) -> str:
    """Return the model config key for an item and attribute."""
    return f"{model_item}_{attribute}"


@dataclass(frozen=True)
class ModelConfig:
    """Model selection for one model item."""

    use_estimator_sidecar: bool = False
    selected_model: str = ""
    select_filter: str = ""
    init_model_url: str = ""


@dataclass
class Settings:
    """All runtime settings of the exporter."""

    config_dir: str = CONFIG_PATH
    kepler_namespace: str = DEFAULT_NAMESPACE
    enabled_msr: bool = False
    enabled_ebpf_cgroup_id: bool = True
    enabled_gpu: bool = False
    enable_process_metrics: bool = False
    expose_hardware_counter_metrics: bool = True
    expose_cgroup_metrics: bool = True
    expose_kubelet_metrics: bool = True
    expose_irq_counter_metrics: bool = True
    cpu_arch_override: str = ""
    estimator_model: str = DEFAULT_METRIC_VALUE
    estimator_select_filter: str = DEFAULT_METRIC_VALUE
    core_usage_metric: str = CPU_INSTRUCTION
    dram_usage_metric: str = CACHE_MISS
    uncore_usage_metric: str = DEFAULT_METRIC_VALUE
    gpu_usage_metric: str = GPU_SM_UTILIZATION
    general_usage_metric: str = CPU_INSTRUCTION
    model_server_enable: bool = False
    model_server_endpoint: str = ""
    model_config_values: dict[str, str] = field(default_factory=dict)

    def set_enabled_ebpf_cgroup_id(
        self,
        enabled: bool,
        release: str | None = None,
        cgroup_v2_file: str | os.PathLike = CGROUP_V2_PATH,
    ) -> None:
        """Enable cgroup ids in eBPF only on kernels >= 4.18 with cgroup v2."""
        enabled = enabled and self.enabled_ebpf_cgroup_id
        if release is None:
            release = platform.release()
        version = parse_kernel_version(release)
        log.info("using cgroup ID in the BPF program: %s", enabled)
        log.info("kernel version: %s", version)
        self.enabled_ebpf_cgroup_id = bool(
            enabled and version >= CGROUP_ID_MIN_KERNEL_VERSION and is_cgroup_v2(cgroup_v2_file)
        )

    def set_enabled_hardware_counter_metrics(self, enabled: bool) -> None:
        """Disable hardware counter metrics if either source disables them."""
        self.expose_hardware_counter_metrics = enabled and self.expose_hardware_counter_metrics

    def set_enabled_gpu(self, enabled: bool) -> None:
        """Enable GPU metrics if either source enables them."""
        self.enabled_gpu = enabled or self.enabled_gpu
        log.info("EnabledGPU: %s", self.enabled_gpu)

    def set_estimator_config(self, model_name: str, select_filter: str) -> None:
        self.estimator_model = model_name
        self.estimator_select_filter = select_filter

    def metric_path(self, default: str) -> str:
        return get_config(METRIC_PATH_KEY, default, self.config_dir)

    def bind_address(self, default: str) -> str:
        return get_config(BIND_ADDRESS_KEY, default, self.config_dir)

    def init_model_config(self) -> None:
        """Load the model config map from ``MODEL_CONFIG``."""
        self.model_config_values = parse_model_config(
            get_config("MODEL_CONFIG", "", self.config_dir)
        )

    def model_config(self, model_item: str) -> ModelConfig:
        """Return the model selection for ``model_item``."""
        values = self.model_config_values

        def lookup(attribute: str) -> str:
            return values.get(model_config_key(model_item, attribute), "")

        return ModelConfig(
            use_estimator_sidecar=lookup(ESTIMATOR_ENABLED_KEY).lower() == "true",
            selected_model=lookup(FIXED_MODEL_NAME_KEY),
            select_filter=lookup(MODEL_FILTERS_KEY),
            init_model_url=lookup(INIT_MODEL_URL_KEY),
        )


def load_settings(config_dir: str | os.PathLike = CONFIG_PATH) -> Settings:
    """Read all settings from ``config_dir`` and the environment."""

    def text(key: str, default: str) -> str:
        return get_config(key, default, config_dir)

    def flag(key: str, default: bool) -> bool:
        return get_bool_config(key, default, config_dir)

    return Settings(
        config_dir=str(config_dir),
        kepler_namespace=text("KELPER_NAMESPACE", DEFAULT_NAMESPACE),
        enabled_ebpf_cgroup_id=flag("ENABLE_EBPF_CGROUPID", True),
        enabled_gpu=flag("ENABLE_GPU", False),
        enable_process_metrics=flag("ENABLE_PROCESS_METRICS", False),
        expose_hardware_counter_metrics=flag("EXPOSE_HW_COUNTER_METRICS", True),
        expose_cgroup_metrics=flag("EXPOSE_CGROUP_METRICS", True),
        expose_kubelet_metrics=flag("EXPOSE_KUBELET_METRICS", True),
        expose_irq_counter_metrics=flag("EXPOSE_IRQ_COUNTER_METRICS", True),
        cpu_arch_override=text("CPU_ARCH_OVERRIDE", ""),
        estimator_model=text("ESTIMATOR_MODEL", DEFAULT_METRIC_VALUE),
        estimator_select_filter=text("ESTIMATOR_SELECT_FILTER", DEFAULT_METRIC_VALUE),
        core_usage_metric=text("CORE_USAGE_METRIC", CPU_INSTRUCTION),
        dram_usage_metric=text("DRAM_USAGE_METRIC", CACHE_MISS),
        uncore_usage_metric=text("UNCORE_USAGE_METRIC", DEFAULT_METRIC_VALUE),
        gpu_usage_metric=text("GPU_USAGE_METRIC", GPU_SM_UTILIZATION),
        general_usage_metric=text("GENERAL_USAGE_METRIC", CPU_INSTRUCTION),
        model_server_enable=flag("MODEL_SERVER_ENABLE", False),
        model_server_endpoint=model_server_request_endpoint(config_dir),
    )