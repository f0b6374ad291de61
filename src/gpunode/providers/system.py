from __future__ import annotations

import logging
import os
import time

import psutil

from gpunode.core.models import SystemMetrics

log = logging.getLogger(__name__)


def collect_system_metrics(disk_path: str = "/") -> SystemMetrics:
    """Collect host CPU, memory, disk, load, and uptime; readings that fail are left at zero."""
    metrics = SystemMetrics()

    try:
        metrics.cpu_usage_percent = float(psutil.cpu_percent(interval=None))
    except (OSError, psutil.Error) as exc:
        log.debug("CPU usage unavailable: %s", exc)

    try:
        memory = psutil.virtual_memory()
        metrics.memory_total_mb = int(memory.total // (1024 * 1024))
        metrics.memory_used_mb = int(memory.used // (1024 * 1024))
        metrics.memory_usage_percent = float(memory.percent)
    except (OSError, psutil.Error) as exc:
        log.debug("Memory usage unavailable: %s", exc)

    try:
        metrics.disk_usage_percent = float(psutil.disk_usage(disk_path).percent)
    except (OSError, psutil.Error) as exc:
        log.debug("Disk usage unavailable: %s", exc)

    try:
        metrics.load_average = float(os.getloadavg()[0])
    except (OSError, AttributeError) as exc:
        log.debug("Load average unavailable: %s", exc)

    try:
        metrics.uptime_seconds = int(time.time() - psutil.boot_time())
    except (OSError, psutil.Error) as exc:
        log.debug("Uptime unavailable: %s", exc)

    return metrics
