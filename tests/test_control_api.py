import json
import socket
import threading

import pytest

from fakes import make_device
from gpunode.core.contracts import ProcessState
from gpunode.core.models import SupervisorStatus, WorkloadInfo
from gpunode.runtime.control_api import ControlServer, send_control_command
from gpunode.utils.diagnostics import PlacementError, ProviderError, WorkloadNotFoundError

TOKEN = "secret"


class FakeAgent:
    def __init__(self):
        self.node_id = "node-1"
        self.healthy = (True, "")
        self.devices = [make_device(0), make_device(1, used_mb=9000)]
        self.workloads = {"wl-1": WorkloadInfo(id="wl-1", claim_id="c1", status="running", device_indices=[0])}
        self.created = []
        self.removed = []
        self.create_error = None
        self.restarts = 0
        self.metrics_error = None

    def health(self):
        return self.healthy

    def accelerator_snapshot(self):
        return list(self.devices)

    def available_accelerator_ids(self):
        return [device.index for device in self.devices if not device.busy]

    def workload_snapshot(self):
        return list(self.workloads.values())

    def get_workload(self, workload_id):
        return self.workloads.get(workload_id)

    def create_workload(self, spec):
        if self.create_error is not None:
            raise self.create_error
        self.created.append(spec)
        return "wl-new"

    def remove_workload(self, workload_id):
        if workload_id not in self.workloads:
            raise WorkloadNotFoundError(workload_id)
        self.removed.append(workload_id)

    def supervisor_status(self):
        return SupervisorStatus(running=True, pid=4321, state=ProcessState.RUNNING)

    def restart_tunnel(self):
        self.restarts += 1

    def metrics(self):
        if self.metrics_error is not None:
            raise self.metrics_error
        return {"node_id": self.node_id, "cpu_usage_percent": 1.5}


@pytest.fixture
def agent():
    return FakeAgent()


@pytest.fixture
def server(agent):
    control = ControlServer("127.0.0.1", 0, agent, TOKEN)
    control.bind()
    thread = threading.Thread(target=control.serve_forever, daemon=True)
    thread.start()
    yield control
    control.shutdown()
    thread.join(timeout=2)


def _send(server, command, args=None, token=TOKEN):
    host, port = server.address[:2]
    return send_control_command(host, port, command, args=args, token=token)


def test_health_needs_no_token(server):
    response = _send(server, "health", token=None)

    assert response.ok is True
    assert response.status == 200
    assert response.data == {"status": "healthy", "node_id": "node-1"}


def test_health_reports_unavailable_provider(server, agent):
    agent.healthy = (False, "NVML gone")

    response = _send(server, "health", token=None)

    assert response.ok is False
    assert response.status == 503
    assert "NVML gone" in response.error


def test_missing_token_is_unauthorized(server):
    response = _send(server, "accelerators", token=None)
    assert response.status == 401


def test_wrong_token_is_unauthorized(server):
    response = _send(server, "accelerators", token="nope")
    assert response.status == 401


def test_unknown_command_is_not_found(server):
    response = _send(server, "reboot")
    assert response.status == 404


def test_accelerators_and_available_ids(server):
    devices = _send(server, "accelerators")
    available = _send(server, "accelerators.available")

    assert [device["index"] for device in devices.data] == [0, 1]
    assert devices.data[1]["busy"] is True
    assert available.data == [0]


def test_workload_listing_and_lookup(server):
    listing = _send(server, "workloads")
    found = _send(server, "workloads.get", {"id": "wl-1"})
    missing = _send(server, "workloads.get", {"id": "nope"})
    no_id = _send(server, "workloads.get")

    assert [item["id"] for item in listing.data] == ["wl-1"]
    assert found.data["claim_id"] == "c1"
    assert missing.status == 404
    assert no_id.status == 400


def test_create_workload_returns_201(server, agent):
    response = _send(server, "workloads.create", {"claim_id": "c2", "image": "busybox", "device_indices": [0]})

    assert response.status == 201
    assert response.data == {"id": "wl-new"}
    assert agent.created[0].device_indices == [0]


def test_create_workload_validation_error_is_400(server):
    response = _send(server, "workloads.create", {"image": "busybox", "device_indices": [0, 0]})
    assert response.status == 400


def test_create_workload_placement_conflict_is_409(server, agent):
    agent.create_error = PlacementError("busy", device_indices=[1])

    response = _send(server, "workloads.create", {"claim_id": "c2", "image": "busybox", "device_indices": [1]})

    assert response.status == 409


def test_provider_failure_is_500(server, agent):
    agent.create_error = ProviderError("docker down", provider="docker")

    response = _send(server, "workloads.create", {"claim_id": "c2", "image": "busybox"})

    assert response.status == 500
    assert "docker down" in response.error


def test_remove_workload(server, agent):
    removed = _send(server, "workloads.remove", {"id": "wl-1"})
    missing = _send(server, "workloads.remove", {"id": "ghost"})

    assert removed.status == 204
    assert agent.removed == ["wl-1"]
    assert missing.status == 404


def test_supervisor_commands(server, agent):
    status = _send(server, "supervisor.status")
    restarted = _send(server, "supervisor.restart")

    assert status.data == {"running": True, "pid": 4321, "state": "running"}
    assert restarted.ok is True
    assert agent.restarts == 1


def test_metrics(server):
    response = _send(server, "metrics")
    assert response.data["cpu_usage_percent"] == 1.5


def test_unexpected_agent_error_still_gets_a_500_reply(server, agent, caplog):
    agent.metrics_error = RuntimeError("psutil exploded")

    response = _send(server, "metrics")
    followup = _send(server, "health")

    assert response.status == 500
    assert "psutil exploded" in response.error
    assert "Control command 'metrics' raised unexpectedly" in caplog.text
    assert followup.ok is True


def test_invalid_json_line_is_400(server):
    host, port = server.address[:2]
    with socket.create_connection((host, port), timeout=2) as sock:
        sock.sendall(b"{not json}\n")
        line = sock.makefile("rb").readline()

    payload = json.loads(line)
    assert payload["ok"] is False
    assert payload["status"] == 400


def test_shutdown_before_serving_does_not_block(agent):
    control = ControlServer("127.0.0.1", 0, agent, TOKEN)
    control.shutdown()
    control.serve_forever()


def test_bind_conflict_raises_os_error(server, agent):
    host, port = server.address[:2]
    other = ControlServer(host, port, agent, TOKEN)

    with pytest.raises(OSError):
        other.bind()
