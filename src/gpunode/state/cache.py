from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from gpunode.core.locks import ReadWriteLock
from gpunode.core.models import DeviceInfo, WorkloadInfo
from gpunode.providers.base import AcceleratorProvider, WorkloadProvider
from gpunode.utils.diagnostics import WorkloadNotFoundError

log = logging.getLogger(__name__)


class AcceleratorCache:
    """Last-known accelerator snapshot, replaced wholesale on every refresh."""

    def __init__(self, provider: AcceleratorProvider) -> None:
        self.provider = provider
        self._lock = ReadWriteLock()
        self._devices: List[DeviceInfo] = []
        self._generation = 0

    @property
    def generation(self) -> int:
        """Number of successful refreshes applied so far."""
        with self._lock.read():
            return self._generation

    def refresh(self) -> None:
        """Fetch a full snapshot and swap it in; the previous snapshot survives any provider error."""
        devices = sorted(self.provider.refresh_all(), key=lambda device: device.index)

        with self._lock.write():
            self._devices = devices
            self._generation += 1

        log.debug("Accelerator snapshot refreshed: %d device(s)", len(devices))

    def snapshot(self) -> List[DeviceInfo]:
        """Return a copy of the current device list."""
        with self._lock.read():
            return [device.model_copy() for device in self._devices]

    def count(self) -> int:
        with self._lock.read():
            return len(self._devices)

    def get(self, index: int) -> Optional[DeviceInfo]:
        with self._lock.read():
            for device in self._devices:
                if device.index == index:
                    return device.model_copy()
        return None

    def is_available(self, index: int) -> bool:
        device = self.get(index)
        return device is not None and not device.busy

    def available_ids(self) -> List[int]:
        """Return indices of devices that are not busy in the current snapshot."""
        with self._lock.read():
            return [device.index for device in self._devices if not device.busy]


class WorkloadCache:
    """Last-known set of managed workloads keyed by provider-assigned id."""

    def __init__(self, provider: WorkloadProvider) -> None:
        self.provider = provider
        self._lock = ReadWriteLock()
        self._workloads: Dict[str, WorkloadInfo] = {}
        # id -> (sequence, info or None for a discard), kept while a full refresh is in flight
        self._mutations: Dict[str, Tuple[int, Optional[WorkloadInfo]]] = {}
        self._sequence = 0
        self._active_refreshes = 0

    def _record(self, workload_id: str, info: Optional[WorkloadInfo]) -> None:
        # caller holds the write lock
        self._sequence += 1
        if self._active_refreshes:
            self._mutations[workload_id] = (self._sequence, info)

    def refresh(self) -> None:
        """Rebuild the whole set from the provider.

        Workloads are inspected one at a time into a scratch map; an entry that
        fails to inspect is skipped, while a failed listing keeps the previous set.
        Upserts and discards made while the rebuild runs are replayed onto the
        scratch map before it is swapped in.
        """
        with self._lock.write():
            started_at = self._sequence
            self._active_refreshes += 1

        try:
            scratch = self._build_scratch()
            with self._lock.write():
                for workload_id, (sequence, info) in self._mutations.items():
                    if sequence <= started_at:
                        continue
                    if info is None:
                        scratch.pop(workload_id, None)
                    else:
                        scratch[workload_id] = info
                self._workloads = scratch
        finally:
            with self._lock.write():
                self._active_refreshes -= 1
                if not self._active_refreshes:
                    self._mutations.clear()

        log.debug("Workload snapshot refreshed: %d workload(s)", len(scratch))

    def _build_scratch(self) -> Dict[str, WorkloadInfo]:
        workload_ids = self.provider.list_ids()

        scratch: Dict[str, WorkloadInfo] = {}
        for workload_id in workload_ids:
            try:
                info = self.provider.refresh_one(workload_id)
            except Exception as exc:
                log.warning("Failed to refresh workload %s: %s", workload_id, exc)
                continue
            if info is not None:
                scratch[info.id] = info
        return scratch

    def refresh_one(self, workload_id: str) -> WorkloadInfo:
        """Fetch one workload and upsert it without touching other entries."""
        info = self.provider.refresh_one(workload_id)
        if info is None:
            raise WorkloadNotFoundError(workload_id)

        with self._lock.write():
            if info.id != workload_id:
                self._workloads.pop(workload_id, None)
                self._record(workload_id, None)
            self._workloads[info.id] = info
            self._record(info.id, info)

        return info.model_copy(deep=True)

    def discard(self, workload_id: str) -> None:
        with self._lock.write():
            self._workloads.pop(workload_id, None)
            self._record(workload_id, None)

    def snapshot(self) -> List[WorkloadInfo]:
        """Return deep copies of every cached workload."""
        with self._lock.read():
            return [info.model_copy(deep=True) for info in self._workloads.values()]

    def get(self, workload_id: str) -> Optional[WorkloadInfo]:
        with self._lock.read():
            info = self._workloads.get(workload_id)
            return info.model_copy(deep=True) if info is not None else None

    def by_device(self, index: int) -> List[WorkloadInfo]:
        with self._lock.read():
            return [
                info.model_copy(deep=True)
                for info in self._workloads.values()
                if index in info.device_indices
            ]

    def device_in_use(self, index: int) -> bool:
        """Return True when a running workload is bound to the device."""
        return any(info.is_running for info in self.by_device(index))
