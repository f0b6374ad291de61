from __future__ import annotations

import logging
import subprocess
from typing import Callable, List, Sequence

from gpunode.core.models import DeviceInfo
from gpunode.utils.diagnostics import ProviderError

log = logging.getLogger(__name__)

QUERY_FIELDS = "index,name,uuid,temperature.gpu,memory.total,memory.used,utilization.gpu"

Runner = Callable[[Sequence[str]], "subprocess.CompletedProcess[str]"]


def _run(args: Sequence[str]) -> "subprocess.CompletedProcess[str]":
    return subprocess.run(list(args), capture_output=True, text=True, timeout=10)


def _as_int(raw: str) -> int:
    try:
        return int(float(raw))
    except ValueError:
        return 0


def _as_float(raw: str) -> float:
    try:
        return float(raw)
    except ValueError:
        return 0.0


def parse_query_output(stdout: str) -> List[DeviceInfo]:
    """Parse `nvidia-smi --query-gpu` CSV output (noheader, nounits) into devices."""
    devices: List[DeviceInfo] = []
    for line in stdout.strip().splitlines():
        parts = [part.strip() for part in line.split(",")]
        if len(parts) < 7:
            continue
        index, name, uuid, temperature, total, used, utilization = parts[:7]
        if not index.isdigit():
            log.debug("Skipping unparseable nvidia-smi line %r", line)
            continue
        devices.append(
            DeviceInfo(
                index=int(index),
                name=name or "Unknown",
                uuid=uuid or "Unknown",
                temperature_c=_as_int(temperature),
                memory_total_mb=_as_int(total),
                memory_used_mb=_as_int(used),
                utilization_percent=_as_float(utilization),
            )
        )
    return devices


class NvidiaSmiAcceleratorProvider:
    """Accelerator provider that shells out to nvidia-smi."""

    name = "nvidia-smi"

    def __init__(self, binary: str = "nvidia-smi", runner: Runner = _run) -> None:
        self.binary = binary
        self.runner = runner

    def _query(self, args: List[str]) -> str:
        try:
            result = self.runner([self.binary, *args])
        except (OSError, subprocess.SubprocessError) as exc:
            raise ProviderError(f"failed to run {self.binary}: {exc}", provider=self.name) from exc

        if result.returncode != 0:
            raise ProviderError(
                f"{self.binary} exit {result.returncode}: {result.stderr.strip()}",
                provider=self.name,
            )
        return result.stdout

    def count(self) -> int:
        stdout = self._query(["--query-gpu=index", "--format=csv,noheader,nounits"])
        return len([line for line in stdout.splitlines() if line.strip()])

    def refresh_all(self) -> List[DeviceInfo]:
        stdout = self._query([f"--query-gpu={QUERY_FIELDS}", "--format=csv,noheader,nounits"])
        return parse_query_output(stdout)

    def close(self) -> None:
        return None
