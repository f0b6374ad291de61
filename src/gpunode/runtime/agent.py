from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

from gpunode.config.settings import AgentSettings
from gpunode.core.models import DeviceInfo, SupervisorStatus, SystemMetrics, WorkloadInfo, WorkloadSpec
from gpunode.providers.base import AcceleratorProvider, IdentityStore, Registrar, WorkloadProvider
from gpunode.providers.docker import DockerWorkloadProvider
from gpunode.providers.identity import FileIdentityStore, HttpRegistrar, build_registration_request
from gpunode.providers.nvidia_smi import NvidiaSmiAcceleratorProvider
from gpunode.providers.system import collect_system_metrics
from gpunode.runtime.control_api import ControlServer
from gpunode.runtime.scheduler import PeriodicTask, ReconciliationScheduler, tunnel_health_action
from gpunode.runtime.supervisor import ProcessSupervisor
from gpunode.runtime.tunnel_config import TunnelConfig, build_tunnel_config
from gpunode.state.cache import AcceleratorCache, WorkloadCache
from gpunode.utils.diagnostics import (
    BootstrapError,
    ComponentDiagnostic,
    NodeAgentError,
    PlacementError,
    ProviderError,
    WorkloadNotFoundError,
)

log = logging.getLogger(__name__)

ServerFactory = Callable[[str, int, "NodeAgent", str], ControlServer]


def default_accelerator_factory(settings: AgentSettings) -> Callable[[], AcceleratorProvider]:
    def factory() -> AcceleratorProvider:
        if settings.accelerators.backend == "nvidia-smi":
            return NvidiaSmiAcceleratorProvider(binary=settings.accelerators.nvidia_smi_binary)
        from gpunode.providers.nvml import NvmlAcceleratorProvider

        return NvmlAcceleratorProvider()

    return factory


class NodeAgent:
    """Composition root that sequences startup and shutdown of every node subsystem.

    Startup order: identity bootstrap, accelerator cache, workload cache,
    tunnel supervisor, control API listener, reconciliation scheduler.
    Shutdown reverses it with bounded waits and reports failures instead of
    raising them.
    """

    def __init__(
        self,
        settings: AgentSettings,
        identity_store: IdentityStore,
        registrar: Registrar,
        accelerator_provider_factory: Callable[[], AcceleratorProvider],
        workload_provider_factory: Callable[[], WorkloadProvider],
        supervisor: Optional[ProcessSupervisor] = None,
        server_factory: Optional[ServerFactory] = None,
        metrics_collector: Callable[[], SystemMetrics] = collect_system_metrics,
    ) -> None:
        self.settings = settings
        self.identity_store = identity_store
        self.registrar = registrar
        self._accelerator_provider_factory = accelerator_provider_factory
        self._workload_provider_factory = workload_provider_factory
        self._server_factory: ServerFactory = server_factory or ControlServer
        self._metrics_collector = metrics_collector

        tunnel = settings.tunnel
        self.supervisor = supervisor or ProcessSupervisor(
            binary=tunnel.binary,
            config_path=tunnel.config_path,
            grace_period_seconds=tunnel.grace_period_seconds,
            stop_timeout_seconds=tunnel.stop_timeout_seconds,
            settle_delay_seconds=tunnel.settle_delay_seconds,
        )

        self.stop_event = threading.Event()
        self.accelerators: Optional[AcceleratorCache] = None
        self.workloads: Optional[WorkloadCache] = None
        self.scheduler: Optional[ReconciliationScheduler] = None
        self.server: Optional[ControlServer] = None

        self._node_id: Optional[str] = None
        self._listener_thread: Optional[threading.Thread] = None
        self._listener_errors: "queue.Queue[BaseException]" = queue.Queue()
        self._placement_lock = threading.Lock()
        self._lifecycle_lock = threading.Lock()
        self._started = False
        self._stopped = False

    @classmethod
    def from_settings(cls, settings: AgentSettings) -> "NodeAgent":
        """Wire the production adapters selected by the settings."""
        return cls(
            settings=settings,
            identity_store=FileIdentityStore(settings.identity.file_path),
            registrar=HttpRegistrar(
                settings.central_platform.api_url,
                timeout_seconds=settings.central_platform.timeout_seconds,
            ),
            accelerator_provider_factory=default_accelerator_factory(settings),
            workload_provider_factory=DockerWorkloadProvider,
        )

    @property
    def node_id(self) -> Optional[str]:
        return self._node_id

    def start(self) -> None:
        """Run the startup sequence; any step failure aborts the rest and propagates."""
        with self._lifecycle_lock:
            if self._started:
                raise NodeAgentError("Node agent has already been started.")
            self._started = True

        log.info("Starting node agent...")
        self.bootstrap()
        self._initialize_accelerators()
        self._initialize_workloads()
        self._start_supervisor()
        self._start_listener()
        self._start_scheduler()
        log.info("Node agent started as node %s", self._node_id)

    def bootstrap(self) -> str:
        """Load the persisted node identity, registering and persisting a new one when absent."""
        log.info("Checking for existing node ID at %s...", self.settings.identity.file_path)
        node_id = self.identity_store.load()
        if node_id:
            self._node_id = node_id
            log.info("Loaded existing node ID: %s", node_id)
            return node_id

        request = build_registration_request(self.settings.central_platform.bootstrap_token)
        log.info("No node ID found, registering host %s with platform", request.machine_id)
        node_id = self.registrar.register(request)
        if not node_id:
            raise BootstrapError("Platform returned an empty node ID.")

        self.identity_store.persist(node_id)
        self._node_id = node_id
        log.info("Successfully registered as node: %s", node_id)
        return node_id

    def _initialize_accelerators(self) -> None:
        provider = self._accelerator_provider_factory()
        self.accelerators = AcceleratorCache(provider)
        self.accelerators.refresh()
        log.info("Detected %d accelerator(s)", self.accelerators.count())

    def _initialize_workloads(self) -> None:
        # zero pre-existing workloads is a valid start state, so nothing here is fatal
        try:
            provider = self._workload_provider_factory()
        except NodeAgentError as exc:
            log.warning("Workload provider unavailable, continuing without it: %s", exc)
            return

        self.workloads = WorkloadCache(provider)
        try:
            self.workloads.refresh()
        except NodeAgentError as exc:
            log.warning("Failed to refresh existing workloads: %s", exc)

    def tunnel_config(self) -> TunnelConfig:
        """Derive the tunnel configuration from identity, accelerator count, and listen port."""
        if self._node_id is None or self.accelerators is None:
            raise NodeAgentError("Tunnel configuration requires a bootstrapped identity and accelerator snapshot.")

        _, api_port = self.settings.agent_api.split_address()
        tunnel = self.settings.tunnel
        return build_tunnel_config(
            node_id=self._node_id,
            accelerator_count=self.accelerators.count(),
            control_local_port=api_port,
            server_addr=tunnel.server_addr,
            server_port=tunnel.server_port,
            token=tunnel.token,
            port_base=tunnel.port_base,
            port_stride=tunnel.port_stride,
        )

    def _start_supervisor(self) -> None:
        self.supervisor.start(self.tunnel_config())
        log.info("Tunnel started (pid=%s)", self.supervisor.pid)

    def _start_listener(self) -> None:
        host, port = self.settings.agent_api.split_address()
        self.server = self._server_factory(host, port, self, self.settings.agent_api.auth_token)
        server = self.server

        def serve() -> None:
            try:
                server.serve_forever()
            except Exception as exc:
                log.error("Control API error: %s", exc)
                self._listener_errors.put(exc)

        self._listener_thread = threading.Thread(target=serve, name="control-api", daemon=True)
        self._listener_thread.start()

    def _start_scheduler(self) -> None:
        reconcile = self.settings.reconcile
        tasks: List[PeriodicTask] = []

        if self.accelerators is not None:
            tasks.append(PeriodicTask("accelerators", reconcile.accelerator_interval_seconds, self.accelerators.refresh))
        if self.workloads is not None:
            tasks.append(PeriodicTask("workloads", reconcile.workload_interval_seconds, self.workloads.refresh))
        tasks.append(PeriodicTask("tunnel-health", reconcile.health_interval_seconds, tunnel_health_action(self.supervisor)))

        self.scheduler = ReconciliationScheduler(self.stop_event, tasks)
        self.scheduler.start()

    def wait_for_listener_error(self, timeout: Optional[float] = None) -> Optional[BaseException]:
        """Return the listener's startup/serve failure, or None if none arrived within the timeout."""
        try:
            return self._listener_errors.get(timeout=timeout)
        except queue.Empty:
            return None

    def stop(self) -> List[ComponentDiagnostic]:
        """Stop every component in reverse order; never raises, returns what went wrong."""
        with self._lifecycle_lock:
            if self._stopped:
                return []
            self._stopped = True

        log.info("Stopping node agent...")
        diagnostics: List[ComponentDiagnostic] = []
        reconcile = self.settings.reconcile

        self.stop_event.set()

        if self.scheduler is not None:
            if self.scheduler.join(timeout=reconcile.drain_timeout_seconds):
                log.info("All background tasks stopped gracefully")
            else:
                log.warning("Timeout waiting for background tasks to stop")
                diagnostics.append(ComponentDiagnostic(
                    component="scheduler",
                    error_code="DRAIN_TIMEOUT",
                    message=f"Background tasks still running after {reconcile.drain_timeout_seconds:.1f}s.",
                    severity="warning",
                ))

        if self.server is not None:
            self._stop_listener(reconcile.listener_stop_timeout_seconds, diagnostics)

        self._shutdown_step("supervisor", "SUPERVISOR_STOP_FAILED", self.supervisor.stop, diagnostics)
        if self.supervisor.config is not None:
            self._shutdown_step("supervisor", "CONFIG_CLEANUP_FAILED", self.supervisor.cleanup_config, diagnostics)

        if self.accelerators is not None:
            self._shutdown_step("accelerators", "PROVIDER_CLOSE_FAILED", self.accelerators.provider.close, diagnostics)
        if self.workloads is not None:
            self._shutdown_step("workloads", "PROVIDER_CLOSE_FAILED", self.workloads.provider.close, diagnostics)

        log.info("Node agent stopped")
        return diagnostics

    def _shutdown_step(
        self,
        component: str,
        error_code: str,
        step: Callable[[], None],
        diagnostics: List[ComponentDiagnostic],
    ) -> None:
        try:
            step()
        except Exception as exc:
            log.error("Error stopping %s: %s", component, exc)
            diagnostics.append(ComponentDiagnostic(component=component, error_code=error_code, message=str(exc)))

    def _stop_listener(self, timeout: float, diagnostics: List[ComponentDiagnostic]) -> None:
        server = self.server
        failure: List[BaseException] = []

        def shutdown() -> None:
            try:
                server.shutdown()
            except Exception as exc:
                failure.append(exc)

        stopper = threading.Thread(target=shutdown, name="control-api-stop", daemon=True)
        stopper.start()
        stopper.join(timeout=timeout)

        if stopper.is_alive():
            log.warning("Control API did not stop within %.1fs", timeout)
            diagnostics.append(ComponentDiagnostic(
                component="control_api",
                error_code="STOP_TIMEOUT",
                message=f"Listener still running after {timeout:.1f}s.",
                severity="warning",
            ))
            return

        if failure:
            log.error("Error stopping control API: %s", failure[0])
            diagnostics.append(ComponentDiagnostic(component="control_api", error_code="STOP_FAILED", message=str(failure[0])))
            return

        if self._listener_thread is not None:
            self._listener_thread.join(timeout=timeout)
        log.info("Control API stopped")

    def _require_accelerators(self) -> AcceleratorCache:
        if self.accelerators is None:
            raise ProviderError("accelerator provider is not initialized", provider="accelerators")
        return self.accelerators

    def _require_workloads(self) -> WorkloadCache:
        if self.workloads is None:
            raise ProviderError("workload provider is not available", provider="workloads")
        return self.workloads

    def accelerator_snapshot(self) -> List[DeviceInfo]:
        return self.accelerators.snapshot() if self.accelerators is not None else []

    def available_accelerator_ids(self) -> List[int]:
        return self.accelerators.available_ids() if self.accelerators is not None else []

    def workload_snapshot(self) -> List[WorkloadInfo]:
        return self.workloads.snapshot() if self.workloads is not None else []

    def get_workload(self, workload_id: str) -> Optional[WorkloadInfo]:
        return self.workloads.get(workload_id) if self.workloads is not None else None

    def create_workload(self, spec: WorkloadSpec) -> str:
        """Create a workload after re-validating its accelerators against a fresh snapshot."""
        accelerators = self._require_accelerators()
        workloads = self._require_workloads()

        with self._placement_lock:
            accelerators.refresh()
            unavailable = [
                index for index in spec.device_indices
                if not accelerators.is_available(index) or workloads.device_in_use(index)
            ]
            if unavailable:
                raise PlacementError(
                    f"Accelerators not available for claim {spec.claim_id}: {unavailable}",
                    device_indices=unavailable,
                )
            workload_id = workloads.provider.create(spec)

        try:
            workloads.refresh_one(workload_id)
        except NodeAgentError as exc:
            log.warning("Created workload %s but failed to refresh it: %s", workload_id, exc)
        return workload_id

    def remove_workload(self, workload_id: str) -> None:
        workloads = self._require_workloads()
        try:
            workloads.provider.remove(workload_id)
        except WorkloadNotFoundError:
            workloads.discard(workload_id)
            raise
        workloads.discard(workload_id)

    def supervisor_status(self) -> SupervisorStatus:
        return self.supervisor.status()

    def restart_tunnel(self) -> None:
        self.supervisor.restart()

    def health(self) -> Tuple[bool, str]:
        """Report whether the accelerator provider is reachable right now."""
        if self.accelerators is None:
            return False, "accelerator provider is not initialized"
        try:
            self.accelerators.provider.count()
        except Exception as exc:
            return False, str(exc)
        return True, ""

    def metrics(self) -> Dict[str, Any]:
        """Refresh accelerators and combine them with host metrics."""
        accelerators = self._require_accelerators()
        accelerators.refresh()
        system = self._metrics_collector()
        return {
            "node_id": self._node_id,
            "cpu_usage_percent": system.cpu_usage_percent,
            "memory_usage_percent": system.memory_usage_percent,
            "accelerators": [device.model_dump(mode="json") for device in accelerators.snapshot()],
            "system": system.model_dump(mode="json"),
        }
