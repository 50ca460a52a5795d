import pytest

from keplermeter import config
from keplermeter.config import (
    CGROUP_ID_MIN_KERNEL_VERSION,
    CONTAINER_COMPONENTS_KEY,
    ESTIMATOR_ENABLED_KEY,
    INIT_MODEL_URL_KEY,
    Settings,
    cgroup_version,
    get_bool_config,
    get_config,
    is_cgroup_v2,
    load_settings,
    model_config_key,
    model_server_request_endpoint,
    parse_kernel_version,
    parse_model_config,
)

MODEL_ENV_KEYS = [
    "KELPER_NAMESPACE",
    "MODEL_SERVER_URL",
    "MODEL_SERVER_PORT",
    "MODEL_SERVER_MODEL_REQ_PATH",
]


def test_cgroup_version_with_existing_file(tmp_path):
    controllers = tmp_path / "cgroup.controllers"
    controllers.write_text("")
    assert is_cgroup_v2(controllers) is True
    assert cgroup_version(controllers) == 2


def test_cgroup_version_with_missing_file(tmp_path):
    missing = tmp_path / "this_file_do_not_exist"
    assert is_cgroup_v2(missing) is False
    assert cgroup_version(missing) == 1


@pytest.mark.parametrize(
    "release, newer",
    [
        ("5.10.0-20-generic", True),
        ("5.4.0-20-generic", True),
        ("6.0-rc6", True),
        ("3.10", False),
        ("3.1", False),
    ],
)
def test_kernel_version_compare(release, newer):
    assert (parse_kernel_version(release) > CGROUP_ID_MIN_KERNEL_VERSION) is newer


def test_kernel_version_valid_release_is_not_error():
    assert parse_kernel_version("5.10.0-20-generic") > 0


def test_kernel_version_not_detected():
    assert parse_kernel_version("dummy_test_result_not.found") == -1.0


def test_model_config_map(monkeypatch, tmp_path):
    config_str = (
        "CONTAINER_COMPONENTS_ESTIMATOR=true\n"
        "CONTAINER_COMPONENTS_INIT_URL=http://models.example.com/ScikitMixed.json\n"
    )
    monkeypatch.setenv("MODEL_CONFIG", config_str)
    values = parse_model_config(get_config("MODEL_CONFIG", "", tmp_path))
    item = "CONTAINER_COMPONENTS"
    assert values[model_config_key(item, ESTIMATOR_ENABLED_KEY)] == "true"
    assert values[model_config_key(item, INIT_MODEL_URL_KEY)] != ""


def test_parse_model_config_skips_malformed_entries():
    values = parse_model_config("A=1 B C=2=3 D=")
    assert values == {"A": "1", "D": ""}


def test_model_config_key_format():
    assert model_config_key("NODE_TOTAL", "MODEL") == "NODE_TOTAL_MODEL"


def test_settings_model_config(monkeypatch, tmp_path):
    monkeypatch.setenv(
        "MODEL_CONFIG",
        "CONTAINER_COMPONENTS_ESTIMATOR=TRUE CONTAINER_COMPONENTS_MODEL=m1 "
        "CONTAINER_COMPONENTS_FILTERS=f1",
    )
    settings = Settings(config_dir=str(tmp_path))
    settings.init_model_config()
    selected = settings.model_config(CONTAINER_COMPONENTS_KEY)
    assert selected.use_estimator_sidecar is True
    assert selected.selected_model == "m1"
    assert selected.select_filter == "f1"
    assert selected.init_model_url == ""
    assert settings.model_config("NODE_TOTAL").use_estimator_sidecar is False


def test_get_config_file_takes_precedence(monkeypatch, tmp_path):
    (tmp_path / "SOME_KEY").write_text("from-file")
    monkeypatch.setenv("SOME_KEY", "from-env")
    assert get_config("SOME_KEY", "default", tmp_path) == "from-file"


def test_get_config_env_then_default(monkeypatch, tmp_path):
    monkeypatch.setenv("SOME_KEY", "from-env")
    assert get_config("SOME_KEY", "default", tmp_path) == "from-env"
    monkeypatch.delenv("SOME_KEY")
    assert get_config("SOME_KEY", "default", tmp_path) == "default"


def test_get_bool_config(monkeypatch, tmp_path):
    monkeypatch.delenv("FLAG_KEY", raising=False)
    assert get_bool_config("FLAG_KEY", True, tmp_path) is True
    monkeypatch.setenv("FLAG_KEY", "TRUE")
    assert get_bool_config("FLAG_KEY", False, tmp_path) is True
    monkeypatch.setenv("FLAG_KEY", "yes")
    assert get_bool_config("FLAG_KEY", True, tmp_path) is False


def test_model_server_endpoint_default(monkeypatch, tmp_path):
    for key in MODEL_ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    assert (
        model_server_request_endpoint(tmp_path)
        == "http://kepler-model-server.kepler.svc.cluster.local:8100/model"
    )


def test_model_server_endpoint_port_trims_newline(monkeypatch, tmp_path):
    for key in MODEL_ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    (tmp_path / "MODEL_SERVER_PORT").write_text("9000\n")
    assert model_server_request_endpoint(tmp_path).endswith(":9000/model")


def test_model_server_endpoint_custom_url(monkeypatch, tmp_path):
    for key in MODEL_ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    (tmp_path / "MODEL_SERVER_URL").write_text("http://localhost:1234")
    assert model_server_request_endpoint(tmp_path) == "http://localhost:1234/model"


def test_load_settings_reads_files(tmp_path):
    (tmp_path / "ENABLE_GPU").write_text("true")
    (tmp_path / "EXPOSE_IRQ_COUNTER_METRICS").write_text("false")
    (tmp_path / "CORE_USAGE_METRIC").write_text("cpu_cycles")
    settings = load_settings(tmp_path)
    assert settings.enabled_gpu is True
    assert settings.expose_irq_counter_metrics is False
    assert settings.core_usage_metric == config.CPU_CYCLE


def test_metric_path_and_bind_address(tmp_path):
    (tmp_path / "METRIC_PATH").write_text("/custom")
    settings = Settings(config_dir=str(tmp_path))
    assert settings.metric_path("/metrics") == "/custom"
    (tmp_path / "BIND_ADDRESS").write_text("0.0.0.0:9999")
    assert settings.bind_address("0.0.0.0:8888") == "0.0.0.0:9999"


def test_set_enabled_ebpf_cgroup_id(tmp_path):
    controllers = tmp_path / "cgroup.controllers"
    controllers.write_text("")
    settings = Settings()
    settings.set_enabled_ebpf_cgroup_id(True, "5.10.0-20-generic", controllers)
    assert settings.enabled_ebpf_cgroup_id is True
    settings.set_enabled_ebpf_cgroup_id(True, "3.10", controllers)
    assert settings.enabled_ebpf_cgroup_id is False


def test_set_enabled_ebpf_cgroup_id_needs_cgroup_v2(tmp_path):
    settings = Settings()
    settings.set_enabled_ebpf_cgroup_id(True, "5.10.0-20-generic", tmp_path / "missing")
    assert settings.enabled_ebpf_cgroup_id is False


def test_set_enabled_hardware_counter_metrics():
    settings = Settings()
    settings.set_enabled_hardware_counter_metrics(False)
    assert settings.expose_hardware_counter_metrics is False
    settings.set_enabled_hardware_counter_metrics(True)
    assert settings.expose_hardware_counter_metrics is False


def test_set_enabled_gpu():
    settings = Settings()
    settings.set_enabled_gpu(True)
    assert settings.enabled_gpu is True
    settings.set_enabled_gpu(False)
    assert settings.enabled_gpu is True


def test_set_estimator_config():
    settings = Settings()
    settings.set_estimator_config("model-a", "filter-a")
    assert (settings.estimator_model, settings.estimator_select_filter) == ("model-a", "filter-a")