from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from gpunode.runtime.supervisor import ProcessSupervisor

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class PeriodicTask:
    """One independently scheduled reconciliation job."""

    name: str
    interval_seconds: float
    action: Callable[[], None]


class ReconciliationScheduler:
    """Runs periodic tasks on their own threads until the shared stop event is set.

    Ticks are counted from the end of the previous action, so a slow action
    only delays its own next run. An in-flight action is never interrupted.
    """

    def __init__(self, stop_event: threading.Event, tasks: Optional[List[PeriodicTask]] = None) -> None:
        self.stop_event = stop_event
        self.tasks: List[PeriodicTask] = list(tasks or [])
        self._threads: List[threading.Thread] = []

    def add_task(self, task: PeriodicTask) -> None:
        if self._threads:
            raise RuntimeError("ReconciliationScheduler is already started. Add tasks before start().")
        self.tasks.append(task)

    def start(self) -> None:
        """Spawn one daemon thread per task."""
        if self._threads:
            return

        for task in self.tasks:
            thread = threading.Thread(target=self._run_task, args=(task,), name=f"reconcile-{task.name}", daemon=True)
            self._threads.append(thread)
            thread.start()
            log.debug("Started periodic task '%s' every %.1fs", task.name, task.interval_seconds)

    def _run_task(self, task: PeriodicTask) -> None:
        while not self.stop_event.wait(task.interval_seconds):
            try:
                task.action()
            except Exception as exc:
                log.error("Periodic task '%s' failed: %s", task.name, exc)
        log.debug("Periodic task '%s' observed cancellation", task.name)

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for every task thread to return; False if any is still running at the deadline."""
        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in self._threads:
            remaining = None if deadline is None else max(deadline - time.monotonic(), 0.0)
            thread.join(timeout=remaining)
        return not any(thread.is_alive() for thread in self._threads)

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)


def tunnel_health_action(supervisor: ProcessSupervisor) -> Callable[[], None]:
    """Build the self-healing action: restart the tunnel whenever it is found not running."""

    def check() -> None:
        if supervisor.is_running():
            return
        log.warning("Tunnel process is not running, restarting...")
        try:
            supervisor.restart()
        except Exception as exc:
            log.error("Failed to restart tunnel process: %s", exc)
        else:
            log.info("Tunnel process restarted successfully")

    return check
