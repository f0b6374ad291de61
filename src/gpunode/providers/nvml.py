"""
NVML accelerator provider
=========================

Reads device state through pynvml (the NVIDIA Management Library bindings).
NVML is initialised once when the provider is opened and shut down by close().
Per-device readings that NVML cannot supply fall back to neutral values so a
single unsupported query never drops the whole device from the snapshot.
"""

from __future__ import annotations

import logging
import threading
from typing import List

from gpunode.core.models import DeviceInfo
from gpunode.utils.diagnostics import ProviderError

log = logging.getLogger(__name__)


def _decode(value: object) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


class NvmlAcceleratorProvider:
    """Accelerator provider backed by pynvml."""

    name = "nvml"

    def __init__(self) -> None:
        try:
            import pynvml  # type: ignore
        except ImportError as exc:
            raise ProviderError(
                "pynvml is not installed; install the 'nvml' extra or use the nvidia-smi backend",
                provider=self.name,
            ) from exc

        self._nvml = pynvml
        self._lock = threading.Lock()
        self._closed = False
        try:
            self._nvml.nvmlInit()
        except self._nvml.NVMLError as exc:
            raise ProviderError(f"failed to initialize NVML: {exc}", provider=self.name) from exc

    def count(self) -> int:
        with self._lock:
            if self._closed:
                raise ProviderError("NVML provider is closed", provider=self.name)
            try:
                return int(self._nvml.nvmlDeviceGetCount())
            except self._nvml.NVMLError as exc:
                raise ProviderError(f"failed to get device count: {exc}", provider=self.name) from exc

    def refresh_all(self) -> List[DeviceInfo]:
        count = self.count()
        devices: List[DeviceInfo] = []

        with self._lock:
            for index in range(count):
                try:
                    handle = self._nvml.nvmlDeviceGetHandleByIndex(index)
                except self._nvml.NVMLError as exc:
                    raise ProviderError(
                        f"failed to get device handle for accelerator {index}: {exc}",
                        provider=self.name,
                    ) from exc
                devices.append(self._read_device(index, handle))

        return devices

    def _read_device(self, index: int, handle: object) -> DeviceInfo:
        nvml = self._nvml

        try:
            name = _decode(nvml.nvmlDeviceGetName(handle))
        except nvml.NVMLError:
            name = "Unknown"

        try:
            uuid = _decode(nvml.nvmlDeviceGetUUID(handle))
        except nvml.NVMLError:
            uuid = "Unknown"

        try:
            temperature = int(nvml.nvmlDeviceGetTemperature(handle, nvml.NVML_TEMPERATURE_GPU))
        except nvml.NVMLError:
            temperature = 0

        try:
            memory = nvml.nvmlDeviceGetMemoryInfo(handle)
            total_mb = int(memory.total // (1024 * 1024))
            used_mb = int(memory.used // (1024 * 1024))
        except nvml.NVMLError:
            total_mb, used_mb = 0, 0

        try:
            utilization = float(nvml.nvmlDeviceGetUtilizationRates(handle).gpu)
        except nvml.NVMLError:
            utilization = 0.0

        return DeviceInfo(
            index=index,
            name=name,
            uuid=uuid,
            temperature_c=temperature,
            memory_total_mb=total_mb,
            memory_used_mb=used_mb,
            utilization_percent=utilization,
        )

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            try:
                self._nvml.nvmlShutdown()
            except self._nvml.NVMLError as exc:
                raise ProviderError(f"failed to shutdown NVML: {exc}", provider=self.name) from exc
