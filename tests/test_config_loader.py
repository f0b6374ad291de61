import pytest
from pathlib import Path
from gpunode.config.loader import interpolate_env_vars, load_config
from gpunode.utils.diagnostics import ConfigurationError

def test_load_config_no_file(tmp_path):
    # Missing file means built-in defaults apply
    config = load_config(tmp_path / "nonexistent.yaml")
    assert config == {}

def test_load_config_basic(tmp_path):
    config_file = tmp_path / "gpunode.yaml"
    content = """
identity:
  file_path: /tmp/node_id
tunnel:
  server_addr: tunnel.example.com
  server_port: 7001
reconcile:
  accelerator_interval_seconds: 5
"""
    config_file.write_text(content)

    config = load_config(config_file)
    assert config["identity"]["file_path"] == "/tmp/node_id"
    assert config["tunnel"]["server_addr"] == "tunnel.example.com"
    assert config["tunnel"]["server_port"] == 7001
    assert config["reconcile"]["accelerator_interval_seconds"] == 5

def test_load_config_interpolation(tmp_path, monkeypatch):
    monkeypatch.setenv("GPUNODE_TEST_API", "https://platform.example.com")
    monkeypatch.delenv("GPUNODE_TEST_MISSING", raising=False)
    monkeypatch.delenv("GPUNODE_TEST_TOKEN", raising=False)

    config_file = tmp_path / "gpunode.yaml"
    content = """
central_platform:
  api_url: "${GPUNODE_TEST_API}"
  bootstrap_token: ${GPUNODE_TEST_TOKEN:}
tunnel:
  token: "${GPUNODE_TEST_MISSING}"
  binary: "${GPUNODE_TEST_BINARY:frpc}"
"""
    config_file.write_text(content)

    config = load_config(config_file)
    assert config["central_platform"]["api_url"] == "https://platform.example.com"
    assert config["central_platform"]["bootstrap_token"] is None
    assert config["tunnel"]["token"] == ""
    assert config["tunnel"]["binary"] == "frpc"

def test_interpolate_env_vars_prefers_environment_over_default(monkeypatch):
    monkeypatch.setenv("GPUNODE_TEST_PORT", "7100")
    assert interpolate_env_vars("port: ${GPUNODE_TEST_PORT:7000}") == "port: 7100"

def test_load_config_drops_unknown_sections(tmp_path):
    config_file = tmp_path / "gpunode.yaml"
    content = """
unknown_key: true
agent_api:
  listen_address: "0.0.0.0:9300"
"""
    config_file.write_text(content)

    config = load_config(config_file)
    assert "unknown_key" not in config
    assert config["agent_api"]["listen_address"] == "0.0.0.0:9300"

def test_load_config_malformed_yaml_raises(tmp_path):
    config_file = tmp_path / "gpunode.yaml"
    config_file.write_text("tunnel: [unclosed\n")

    with pytest.raises(ConfigurationError):
        load_config(config_file)

def test_load_config_non_mapping_raises(tmp_path):
    config_file = tmp_path / "gpunode.yaml"
    config_file.write_text("- just\n- a list\n")

    with pytest.raises(ConfigurationError, match="mapping"):
        load_config(config_file)
