from pathlib import Path

import pytest

from gpunode.config.settings import AgentAPISettings, AgentSettings, load_settings
from gpunode.utils.diagnostics import ConfigurationError


def test_defaults_when_config_file_is_missing(tmp_path, monkeypatch):
    monkeypatch.delenv("GPUNODE_IDENTITY_FILE_PATH", raising=False)

    settings = load_settings(tmp_path / "missing.yaml")

    assert settings.identity.file_path == Path("/etc/gpunode/node_id")
    assert settings.central_platform.api_url == "http://api.server.com"
    assert settings.tunnel.server_addr == "api.server.com"
    assert settings.tunnel.server_port == 7000
    assert settings.agent_api.listen_address == "127.0.0.1:9200"
    assert settings.reconcile.accelerator_interval_seconds == 10
    assert settings.reconcile.workload_interval_seconds == 30
    assert settings.reconcile.health_interval_seconds == 30
    assert settings.accelerators.backend == "nvml"


def test_identity_path_honours_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("GPUNODE_IDENTITY_FILE_PATH", str(tmp_path / "from-env"))

    settings = AgentSettings.from_config_dict({})

    assert settings.identity.file_path == tmp_path / "from-env"


def test_identity_path_expands_user(monkeypatch):
    monkeypatch.delenv("GPUNODE_IDENTITY_FILE_PATH", raising=False)
    monkeypatch.setenv("HOME", "/home/tester")

    settings = AgentSettings.from_config_dict({"identity": {"file_path": "~/node_id"}})

    assert settings.identity.file_path == Path("/home/tester/node_id")


def test_invalid_values_raise_configuration_error():
    with pytest.raises(ConfigurationError, match="Invalid configuration"):
        AgentSettings.from_config_dict({"tunnel": {"server_port": "not-a-port"}})


def test_empty_api_url_is_rejected():
    with pytest.raises(ConfigurationError):
        AgentSettings.from_config_dict({"central_platform": {"api_url": ""}})


def test_unknown_accelerator_backend_is_rejected():
    with pytest.raises(ConfigurationError):
        AgentSettings.from_config_dict({"accelerators": {"backend": "rocm"}})


@pytest.mark.parametrize(
    "address, expected",
    [
        ("127.0.0.1:9200", ("127.0.0.1", 9200)),
        ("0.0.0.0:9300", ("0.0.0.0", 9300)),
        ("localhost", ("localhost", 9200)),
        ("localhost:abc", ("localhost", 9200)),
    ],
)
def test_split_address(address, expected):
    assert AgentAPISettings(listen_address=address).split_address() == expected
