from __future__ import annotations

import hmac
import json
import logging
import socket
import socketserver
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional

from pydantic import BaseModel, Field, ValidationError

from gpunode.core.models import WorkloadSpec
from gpunode.utils.diagnostics import NodeAgentError, PlacementError, WorkloadNotFoundError

if TYPE_CHECKING:
    from gpunode.runtime.agent import NodeAgent

log = logging.getLogger(__name__)

PUBLIC_COMMANDS = {"health"}


class ControlRequest(BaseModel):
    command: str
    token: Optional[str] = None
    args: Dict[str, Any] = Field(default_factory=dict)


class ControlResponse(BaseModel):
    ok: bool
    status: int = 200
    data: Any = None
    error: Optional[str] = None


def send_control_command(
    host: str,
    port: int,
    command: str,
    args: Optional[Dict[str, Any]] = None,
    token: Optional[str] = None,
    timeout_seconds: float = 5.0,
) -> ControlResponse:
    request = ControlRequest(command=command, token=token, args=args or {})
    payload = request.model_dump_json() + "\n"

    with socket.create_connection((host, port), timeout=timeout_seconds) as sock:
        sock.sendall(payload.encode("utf-8"))
        sock_file = sock.makefile("rb")
        line = sock_file.readline()

    if not line:
        return ControlResponse(ok=False, status=503, error="No response from agent.")

    try:
        response_payload = json.loads(line.decode("utf-8"))
        return ControlResponse.model_validate(response_payload)
    except Exception as exc:
        return ControlResponse(ok=False, status=500, error=f"Invalid agent response: {exc}")


@dataclass
class _ControlContext:
    handle: Callable[[ControlRequest], ControlResponse]


class _ControlHandler(socketserver.StreamRequestHandler):
    def handle(self) -> None:
        context = self.server.control_context
        line = self.rfile.readline()
        if not line:
            return

        try:
            request_payload = json.loads(line.decode("utf-8"))
            request = ControlRequest.model_validate(request_payload)
        except (ValueError, ValidationError) as exc:
            response = ControlResponse(ok=False, status=400, error=f"Invalid request: {exc}")
        else:
            response = context.handle(request)

        self.wfile.write((response.model_dump_json() + "\n").encode("utf-8"))


class _ThreadingTCPServer(socketserver.ThreadingTCPServer):
    allow_reuse_address = True
    daemon_threads = True


def _ok(data: Any = None, status: int = 200) -> ControlResponse:
    return ControlResponse(ok=True, status=status, data=data)


def _error(status: int, message: str) -> ControlResponse:
    return ControlResponse(ok=False, status=status, error=message)


class ControlServer:
    """JSON-lines control API through which the remote orchestrator drives the node."""

    def __init__(self, host: str, port: int, agent: "NodeAgent", auth_token: str) -> None:
        self.host = host
        self.port = port
        self.agent = agent
        self.auth_token = auth_token
        self._server = _ThreadingTCPServer((host, port), _ControlHandler, bind_and_activate=False)
        self._server.control_context = _ControlContext(handle=self.handle_request)
        self._state_lock = threading.Lock()
        self._bound = False
        self._serving = False
        self._closed = False
        self._commands: Dict[str, Callable[[Dict[str, Any]], ControlResponse]] = {
            "health": self._health,
            "accelerators": self._accelerators,
            "accelerators.available": self._available_accelerators,
            "workloads": self._workloads,
            "workloads.get": self._get_workload,
            "workloads.create": self._create_workload,
            "workloads.remove": self._remove_workload,
            "supervisor.status": self._supervisor_status,
            "supervisor.restart": self._supervisor_restart,
            "metrics": self._metrics,
        }

    @property
    def address(self) -> tuple:
        return self._server.server_address

    def bind(self) -> None:
        """Bind and listen; raises OSError when the address is unavailable."""
        if self._bound:
            return
        try:
            self._server.server_bind()
            self._server.server_activate()
        except OSError:
            self._server.server_close()
            raise
        self._bound = True

    def serve_forever(self) -> None:
        """Block serving requests until shutdown() is called; returns at once if already shut down."""
        with self._state_lock:
            if self._closed:
                return
            self.bind()
            self._serving = True
        log.info("Control API listening on %s:%s", *self.address[:2])
        self._server.serve_forever(poll_interval=0.2)

    def shutdown(self) -> None:
        """Stop serving and close the listening socket."""
        with self._state_lock:
            if self._closed:
                return
            self._closed = True
            serving = self._serving
        if serving:
            self._server.shutdown()
        self._server.server_close()

    def _authorized(self, request: ControlRequest) -> bool:
        if request.command in PUBLIC_COMMANDS:
            return True
        if request.token is None:
            return False
        return hmac.compare_digest(request.token.encode("utf-8"), self.auth_token.encode("utf-8"))

    def handle_request(self, request: ControlRequest) -> ControlResponse:
        handler = self._commands.get(request.command)
        if handler is None:
            return _error(404, f"Unknown command '{request.command}'.")

        if not self._authorized(request):
            return _error(401, "Invalid or missing token.")

        try:
            return handler(request.args)
        except ValidationError as exc:
            return _error(400, f"Invalid arguments: {exc}")
        except PlacementError as exc:
            return _error(409, str(exc))
        except WorkloadNotFoundError as exc:
            return _error(404, str(exc))
        except NodeAgentError as exc:
            log.error("Control command '%s' failed: %s", request.command, exc)
            return _error(500, str(exc))
        except Exception as exc:
            log.exception("Control command '%s' raised unexpectedly", request.command)
            return _error(500, str(exc))

    def _health(self, args: Dict[str, Any]) -> ControlResponse:
        healthy, detail = self.agent.health()
        if not healthy:
            return _error(503, f"Accelerator provider not available: {detail}")
        return _ok({"status": "healthy", "node_id": self.agent.node_id})

    def _accelerators(self, args: Dict[str, Any]) -> ControlResponse:
        return _ok([device.model_dump(mode="json") for device in self.agent.accelerator_snapshot()])

    def _available_accelerators(self, args: Dict[str, Any]) -> ControlResponse:
        return _ok(self.agent.available_accelerator_ids())

    def _workloads(self, args: Dict[str, Any]) -> ControlResponse:
        return _ok([info.model_dump(mode="json") for info in self.agent.workload_snapshot()])

    def _get_workload(self, args: Dict[str, Any]) -> ControlResponse:
        workload_id = args.get("id")
        if not workload_id:
            return _error(400, "Workload id is required.")
        info = self.agent.get_workload(str(workload_id))
        if info is None:
            return _error(404, f"Workload '{workload_id}' not found.")
        return _ok(info.model_dump(mode="json"))

    def _create_workload(self, args: Dict[str, Any]) -> ControlResponse:
        spec = WorkloadSpec.model_validate(args)
        workload_id = self.agent.create_workload(spec)
        return _ok({"id": workload_id}, status=201)

    def _remove_workload(self, args: Dict[str, Any]) -> ControlResponse:
        workload_id = args.get("id")
        if not workload_id:
            return _error(400, "Workload id is required.")
        self.agent.remove_workload(str(workload_id))
        return _ok(status=204)

    def _supervisor_status(self, args: Dict[str, Any]) -> ControlResponse:
        return _ok(self.agent.supervisor_status().model_dump(mode="json"))

    def _supervisor_restart(self, args: Dict[str, Any]) -> ControlResponse:
        self.agent.restart_tunnel()
        return _ok(self.agent.supervisor_status().model_dump(mode="json"))

    def _metrics(self, args: Dict[str, Any]) -> ControlResponse:
        return _ok(self.agent.metrics())
