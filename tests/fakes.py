import threading
from typing import Dict, List, Optional

from gpunode.core.models import DeviceInfo, WorkloadInfo, WorkloadSpec
from gpunode.runtime.supervisor import TerminationKind
from gpunode.utils.diagnostics import ProviderError, WorkloadNotFoundError


def make_device(index: int, used_mb: int = 0, utilization: float = 0.0, total_mb: int = 16000) -> DeviceInfo:
    return DeviceInfo(
        index=index,
        name="Test GPU",
        uuid=f"GPU-{index:04d}",
        temperature_c=40,
        memory_total_mb=total_mb,
        memory_used_mb=used_mb,
        utilization_percent=utilization,
    )


class FakeIdentityStore:
    def __init__(self, node_id: Optional[str] = None):
        self.node_id = node_id
        self.persisted: List[str] = []

    def load(self) -> Optional[str]:
        return self.node_id

    def persist(self, node_id: str) -> None:
        self.persisted.append(node_id)
        self.node_id = node_id


class FakeRegistrar:
    def __init__(self, node_id: str = "node-42"):
        self.node_id = node_id
        self.requests = []

    def register(self, request) -> str:
        self.requests.append(request)
        return self.node_id


class FakeAcceleratorProvider:
    def __init__(self, devices: Optional[List[DeviceInfo]] = None):
        self.devices = list(devices or [])
        self.fail = False
        self.refresh_calls = 0
        self.closed = False

    def count(self) -> int:
        if self.fail:
            raise ProviderError("device query failed", provider="fake")
        return len(self.devices)

    def refresh_all(self) -> List[DeviceInfo]:
        self.refresh_calls += 1
        if self.fail:
            raise ProviderError("device query failed", provider="fake")
        return list(self.devices)

    def close(self) -> None:
        self.closed = True


class FakeWorkloadProvider:
    def __init__(self, workloads: Optional[List[WorkloadInfo]] = None):
        self.workloads: Dict[str, WorkloadInfo] = {info.id: info for info in workloads or []}
        self.created: List[WorkloadSpec] = []
        self.removed: List[str] = []
        self.broken_ids: set = set()
        self.missing_on_remove: set = set()
        self.fail_list = False
        self.closed = False

    def create(self, spec: WorkloadSpec) -> str:
        workload_id = f"wl-{len(self.created) + 1}"
        self.created.append(spec)
        self.workloads[workload_id] = WorkloadInfo(
            id=workload_id,
            claim_id=spec.claim_id,
            image=spec.image,
            status="running",
            device_indices=list(spec.device_indices),
        )
        return workload_id

    def remove(self, workload_id: str) -> None:
        if workload_id in self.missing_on_remove:
            raise WorkloadNotFoundError(workload_id)
        self.removed.append(workload_id)
        self.workloads.pop(workload_id, None)

    def refresh_one(self, workload_id: str) -> Optional[WorkloadInfo]:
        if workload_id in self.broken_ids:
            raise ProviderError(f"inspect {workload_id} failed", provider="fake")
        info = self.workloads.get(workload_id)
        if info is None:
            raise WorkloadNotFoundError(workload_id)
        return info.model_copy(deep=True)

    def list_ids(self) -> List[str]:
        if self.fail_list:
            raise ProviderError("list failed", provider="fake")
        return list(self.workloads)

    def close(self) -> None:
        self.closed = True


class FakeHandle:
    def __init__(self, pid: int, argv: List[str]):
        self.pid = pid
        self.argv = argv
        self.exit_code: Optional[int] = None
        self.ignores_graceful = False


class FakeLauncher:
    """Launcher that never spawns anything; tests flip exit codes by hand."""

    def __init__(self):
        self.handles: List[FakeHandle] = []
        self.signals: List[TerminationKind] = []
        self.exit_immediately = False
        self.ignore_graceful = False
        self._lock = threading.Lock()

    @property
    def live_count(self) -> int:
        with self._lock:
            return sum(1 for handle in self.handles if handle.exit_code is None)

    def launch(self, argv: List[str]) -> FakeHandle:
        with self._lock:
            handle = FakeHandle(pid=1000 + len(self.handles), argv=list(argv))
            handle.ignores_graceful = self.ignore_graceful
            if self.exit_immediately:
                handle.exit_code = 1
            self.handles.append(handle)
            return handle

    def pid(self, handle: FakeHandle) -> int:
        return handle.pid

    def poll(self, handle: FakeHandle) -> Optional[int]:
        return handle.exit_code

    def signal(self, handle: FakeHandle, kind: TerminationKind) -> None:
        self.signals.append(kind)
        if kind == TerminationKind.GRACEFUL and handle.ignores_graceful:
            return
        if handle.exit_code is None:
            handle.exit_code = -15 if kind == TerminationKind.GRACEFUL else -9

    def wait(self, handle: FakeHandle, timeout: Optional[float]) -> Optional[int]:
        return handle.exit_code

    def crash(self, handle: FakeHandle, exit_code: int = 1) -> None:
        handle.exit_code = exit_code
