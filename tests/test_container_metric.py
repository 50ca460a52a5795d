import pytest

from keplermeter.config import (
    BLOCK_DEVICES_IO,
    BYTES_READ_IO,
    BYTES_WRITE_IO,
    CACHE_MISS,
    CGROUPFS_MEMORY,
    CPU_INSTRUCTION,
    CPU_TIME,
    GPU_SM_UTILIZATION,
    IRQ_NET_RX_LABEL,
    KUBELET_CONTAINER_CPU,
)
from keplermeter.container_metric import ContainerMetrics, new_container_metrics
from keplermeter.features import FeatureRegistry
from keplermeter.process_metric import IRQ_NET_RX, MetricNotFoundError
from keplermeter.stats import UInt64Stat, UInt64StatCollection


@pytest.fixture
def sample() -> ContainerMetrics:
    def coll(delta, aggr):
        return UInt64StatCollection(stat={"usage": UInt64Stat(delta=delta, aggr=aggr)})

    return ContainerMetrics(
        dyn_energy_in_core=UInt64Stat(delta=1, aggr=2),
        dyn_energy_in_dram=UInt64Stat(delta=3, aggr=4),
        dyn_energy_in_uncore=UInt64Stat(delta=5, aggr=6),
        dyn_energy_in_pkg=UInt64Stat(delta=7, aggr=8),
        dyn_energy_in_gpu=UInt64Stat(delta=9, aggr=10),
        dyn_energy_in_other=UInt64Stat(delta=11, aggr=12),
        cgroup_fs_stats={
            "core": coll(13, 14),
            "dram": coll(15, 16),
            "uncore": coll(17, 18),
            "pkg": coll(19, 20),
            "gpu": coll(21, 22),
            "other": coll(23, 24),
        },
    )


@pytest.mark.parametrize(
    "metric, expected",
    [
        ("core", (13, 14)),
        ("dram", (15, 16)),
        ("uncore", (17, 18)),
        ("pkg", (19, 20)),
        ("gpu", (21, 22)),
        ("other", (23, 24)),
    ],
)
def test_int_delta_and_aggr_from_cgroup_stats(sample, metric, expected):
    assert sample.int_delta_and_aggr(metric) == expected


def test_sum_dyn_values(sample):
    assert sample.sum_all_dyn_delta_values() == 7 + 9 + 11
    assert sample.sum_all_dyn_aggr_values() == 8 + 10 + 12


def test_unknown_metric_raises(sample):
    with pytest.raises(MetricNotFoundError):
        sample.int_delta_and_aggr("no_such_metric")


def _registry() -> FeatureRegistry:
    return FeatureRegistry(
        available_hw_counters=[CPU_INSTRUCTION, CACHE_MISS],
        available_cgroup_metrics=[CGROUPFS_MEMORY],
        available_kubelet_metrics=[KUBELET_CONTAINER_CPU],
        gpu_collection_supported=True,
    )


def test_new_container_metrics_creates_stats():
    metrics = new_container_metrics("c", "p", "ns", _registry())
    assert set(metrics.counter_stats) == {CPU_INSTRUCTION, CACHE_MISS, GPU_SM_UTILIZATION, "gpu_mem_util"}
    assert set(metrics.cgroup_fs_stats) == {CGROUPFS_MEMORY}
    assert set(metrics.kubelet_stats) == {KUBELET_CONTAINER_CPU}
    assert (metrics.container_name, metrics.pod_name, metrics.namespace) == ("c", "p", "ns")


def test_new_container_metrics_default_registry_is_empty():
    metrics = new_container_metrics("c", "p", "ns")
    assert metrics.counter_stats == {}
    assert metrics.cgroup_fs_stats == {}
    assert len(metrics.soft_irq_count) == 10


def test_cgroup_aggr_gives_delta():
    metrics = new_container_metrics("c", "p", "ns", _registry())
    metrics.cgroup_fs_stats[CGROUPFS_MEMORY].set_aggr_stat("c", 10)
    metrics.cgroup_fs_stats[CGROUPFS_MEMORY].set_aggr_stat("c", 20)
    assert metrics.int_delta_and_aggr(CGROUPFS_MEMORY) == (10, 20)


def test_kubelet_and_builtin_metrics():
    metrics = new_container_metrics("c", "p", "ns", _registry())
    metrics.kubelet_stats[KUBELET_CONTAINER_CPU].set_new_aggr(10)
    metrics.kubelet_stats[KUBELET_CONTAINER_CPU].set_new_aggr(25)
    metrics.cpu_time.add_new_delta(7)
    metrics.soft_irq_count[IRQ_NET_RX].add_new_delta(3)
    metrics.disks = 2
    metrics.bytes_read.set_aggr_stat("c", 10)
    metrics.bytes_read.set_aggr_stat("c", 30)
    metrics.bytes_write.set_aggr_stat("c", 5)
    assert metrics.int_delta_and_aggr(KUBELET_CONTAINER_CPU) == (15, 25)
    assert metrics.int_delta_and_aggr(CPU_TIME) == (7, 7)
    assert metrics.int_delta_and_aggr(IRQ_NET_RX_LABEL) == (3, 3)
    assert metrics.int_delta_and_aggr(BLOCK_DEVICES_IO) == (2, 2)
    assert metrics.int_delta_and_aggr(BYTES_READ_IO) == (20, 30)
    assert metrics.int_delta_and_aggr(BYTES_WRITE_IO) == (0, 5)


def test_reset_delta_values_keeps_aggregates():
    metrics = new_container_metrics("c", "p", "ns", _registry())
    metrics.counter_stats[CPU_INSTRUCTION].add_new_delta(5)
    metrics.cgroup_fs_stats[CGROUPFS_MEMORY].set_aggr_stat("c", 10)
    metrics.cgroup_fs_stats[CGROUPFS_MEMORY].set_aggr_stat("c", 20)
    metrics.bytes_read.set_aggr_stat("c", 1)
    metrics.bytes_read.set_aggr_stat("c", 4)
    metrics.kubelet_stats[KUBELET_CONTAINER_CPU].set_new_aggr(1)
    metrics.kubelet_stats[KUBELET_CONTAINER_CPU].set_new_aggr(3)
    metrics.dyn_energy_in_pkg.add_new_delta(9)
    metrics.curr_processes = 4
    metrics.reset_delta_values()
    assert metrics.curr_processes == 0
    assert metrics.int_delta_and_aggr(CPU_INSTRUCTION) == (0, 5)
    assert metrics.int_delta_and_aggr(CGROUPFS_MEMORY) == (0, 20)
    assert metrics.int_delta_and_aggr(BYTES_READ_IO) == (0, 4)
    assert metrics.int_delta_and_aggr(KUBELET_CONTAINER_CPU) == (0, 3)
    assert (metrics.dyn_energy_in_pkg.delta, metrics.dyn_energy_in_pkg.aggr) == (0, 9)


def test_set_latest_process_deduplicates_pids():
    metrics = ContainerMetrics()
    metrics.set_latest_process(100, 1, "bash")
    metrics.set_latest_process(101, 2, "python")
    metrics.set_latest_process(102, 1, "bash")
    assert metrics.pids == [1, 2]
    assert metrics.cgroup_pid == 102
    assert metrics.command == "bash"


def test_to_prometheus_value():
    metrics = new_container_metrics("c", "p", "ns", _registry())
    metrics.counter_stats[CPU_INSTRUCTION].add_new_delta(5)
    metrics.counter_stats[CPU_INSTRUCTION].add_new_delta(5)
    metrics.reset_delta_values()
    metrics.counter_stats[CPU_INSTRUCTION].add_new_delta(3)
    metrics.disks = 4
    assert metrics.to_prometheus_value("curr_cpu_instr") == "3"
    assert metrics.to_prometheus_value("total_cpu_instr") == "13"
    assert metrics.to_prometheus_value("block_devices_used") == "4"
    assert metrics.to_prometheus_value("curr_unknown") == "0.000000"


def test_to_estimator_values_appends_disks():
    registry = FeatureRegistry(
        available_hw_counters=[CPU_INSTRUCTION],
        container_uint_feature_names=[CPU_INSTRUCTION, "missing"],
    )
    metrics = new_container_metrics("c", "p", "ns", registry)
    metrics.counter_stats[CPU_INSTRUCTION].add_new_delta(8)
    metrics.disks = 3
    assert metrics.to_estimator_values(registry) == [8.0, 0.0, 3.0]


def test_basic_values_truncates_command():
    metrics = ContainerMetrics(pod_name="pod", namespace="ns", command="averylongcommandname")
    assert metrics.basic_values() == ["pod", "ns", "averylongc"]


def test_str_mentions_names_and_pids():
    metrics = ContainerMetrics(container_name="c1", pod_name="p1", namespace="ns1")
    metrics.set_latest_process(5, 42, "sleep")
    text = str(metrics)
    assert "name: p1/c1 namespace: ns1" in text
    assert "pid: [42] comm: sleep" in text