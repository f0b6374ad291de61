import pytest
import sys
from pathlib import Path

# Ensure src/ is in the python path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from gpunode.config.settings import AgentSettings


@pytest.fixture
def settings(tmp_path):
    """
    Agent settings pointing every on-disk path into tmp_path, with an
    ephemeral control API port and short reconcile intervals.
    """
    return AgentSettings.from_config_dict({
        "identity": {"file_path": str(tmp_path / "node_id")},
        "central_platform": {"api_url": "http://platform.test", "bootstrap_token": "boot"},
        "tunnel": {
            "binary": "frpc",
            "config_path": str(tmp_path / "tunnel.toml"),
            "grace_period_seconds": 0,
            "settle_delay_seconds": 0,
            "stop_timeout_seconds": 1,
        },
        "agent_api": {"listen_address": "127.0.0.1:0", "auth_token": "secret"},
        "reconcile": {
            "accelerator_interval_seconds": 0.05,
            "workload_interval_seconds": 0.05,
            "health_interval_seconds": 0.05,
            "drain_timeout_seconds": 1,
            "listener_stop_timeout_seconds": 1,
        },
    })
