from __future__ import annotations

from typing import List, Optional, Protocol, runtime_checkable

from gpunode.core.models import DeviceInfo, RegistrationRequest, WorkloadInfo, WorkloadSpec


@runtime_checkable
class IdentityStore(Protocol):
    """Durable storage for the node identifier."""

    def load(self) -> Optional[str]:
        """Return the persisted identifier, or None when the node is not registered yet."""
        ...

    def persist(self, node_id: str) -> None:
        """Persist the identifier so a crash mid-write never corrupts the stored value."""
        ...


@runtime_checkable
class Registrar(Protocol):
    """Issues a node identifier for a host that has none."""

    def register(self, request: RegistrationRequest) -> str:
        ...


@runtime_checkable
class AcceleratorProvider(Protocol):
    """Source of accelerator device snapshots."""

    def count(self) -> int:
        ...

    def refresh_all(self) -> List[DeviceInfo]:
        ...

    def close(self) -> None:
        ...


@runtime_checkable
class WorkloadProvider(Protocol):
    """Creates, removes, and inspects managed workloads."""

    def create(self, spec: WorkloadSpec) -> str:
        ...

    def remove(self, workload_id: str) -> None:
        ...

    def refresh_one(self, workload_id: str) -> Optional[WorkloadInfo]:
        """Return current workload state, or None when the workload is not managed by this agent."""
        ...

    def list_ids(self) -> List[str]:
        ...

    def close(self) -> None:
        ...
