from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
import threading
import time
from enum import Enum
from pathlib import Path
from typing import IO, Callable, List, Optional, Protocol

from gpunode.core.models import SupervisorStatus
from gpunode.core.contracts import ProcessEvent, ProcessState, transition_process_state
from gpunode.runtime.tunnel_config import TunnelConfig, render_tunnel_config
from gpunode.utils.diagnostics import ProcessStartError, ProcessStopError

log = logging.getLogger(__name__)
tunnel_log = logging.getLogger("gpunode.tunnel")


class TerminationKind(str, Enum):
    """Intent of a termination signal, mapped to platform signals by the launcher."""

    GRACEFUL = "graceful"
    FORCEFUL = "forceful"


class ProcessLauncher(Protocol):
    """Capability to run and signal one external process."""

    def launch(self, argv: List[str]) -> object:
        ...

    def pid(self, handle: object) -> int:
        ...

    def poll(self, handle: object) -> Optional[int]:
        """Return the exit status, or None while the process is alive."""
        ...

    def signal(self, handle: object, kind: TerminationKind) -> None:
        ...

    def wait(self, handle: object, timeout: Optional[float]) -> Optional[int]:
        """Wait for exit; returns None if the timeout elapsed first."""
        ...


def _drain_pipe(pipe: IO[bytes], level: int) -> None:
    try:
        for line_bytes in iter(pipe.readline, b""):
            line = line_bytes.decode("utf-8", errors="replace").rstrip()
            if line:
                tunnel_log.log(level, line)
    except (OSError, ValueError) as exc:
        tunnel_log.debug("Tunnel output reader exited: %s", exc)
    finally:
        pipe.close()


class PopenLauncher:
    """Launches processes with subprocess.Popen in their own session and process group."""

    _SIGNALS = {
        TerminationKind.GRACEFUL: signal.SIGTERM,
        TerminationKind.FORCEFUL: signal.SIGKILL,
    }

    def launch(self, argv: List[str]) -> subprocess.Popen:
        process = subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=True,
        )
        if process.stdout is not None:
            threading.Thread(target=_drain_pipe, args=(process.stdout, logging.INFO), daemon=True).start()
        if process.stderr is not None:
            threading.Thread(target=_drain_pipe, args=(process.stderr, logging.WARNING), daemon=True).start()
        return process

    def pid(self, handle: subprocess.Popen) -> int:
        return handle.pid

    def poll(self, handle: subprocess.Popen) -> Optional[int]:
        return handle.poll()

    def signal(self, handle: subprocess.Popen, kind: TerminationKind) -> None:
        if handle.poll() is not None:
            return
        try:
            os.killpg(handle.pid, self._SIGNALS[kind])
        except ProcessLookupError:
            pass

    def wait(self, handle: subprocess.Popen, timeout: Optional[float]) -> Optional[int]:
        try:
            return handle.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None


class ProcessSupervisor:
    """Owns the lifecycle of the single tunnel process.

    Every mutating entry point runs under one re-entrant lock, so the health
    loop and an operator-triggered restart can never start two instances.
    `is_running()` deliberately skips the lock to stay non-blocking.
    """

    def __init__(
        self,
        binary: str,
        config_path: Path,
        launcher: Optional[ProcessLauncher] = None,
        grace_period_seconds: float = 2.0,
        stop_timeout_seconds: float = 10.0,
        settle_delay_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.binary = binary
        self.config_path = config_path
        self.launcher: ProcessLauncher = launcher or PopenLauncher()
        self.grace_period_seconds = grace_period_seconds
        self.stop_timeout_seconds = stop_timeout_seconds
        self.settle_delay_seconds = settle_delay_seconds
        self._sleep = sleep

        self.state: ProcessState = ProcessState.STOPPED
        self.config: Optional[TunnelConfig] = None
        self._handle: Optional[object] = None
        self._lock = threading.RLock()

    def _transition(self, event: ProcessEvent) -> None:
        self.state = transition_process_state(self.state, event)

    def _resolve_binary(self) -> str:
        resolved = shutil.which(self.binary)
        if resolved is None:
            raise ProcessStartError(f"Tunnel binary '{self.binary}' not found in PATH.")
        return resolved

    def _write_config(self, config: TunnelConfig) -> None:
        rendered = render_tunnel_config(config)
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            self.config_path.write_text(rendered, encoding="utf-8")
        except OSError as exc:
            raise ProcessStartError(f"Failed to write tunnel config '{self.config_path}': {exc}") from exc
        log.info("Generated tunnel config at %s", self.config_path)

    def _reap_exited(self) -> None:
        """Forget a handle whose process already exited on its own."""
        if self._handle is None:
            return
        exit_code = self.launcher.poll(self._handle)
        if exit_code is None:
            return
        log.warning("Tunnel process pid=%s exited with status %s", self.launcher.pid(self._handle), exit_code)
        self._handle = None
        self._transition(ProcessEvent.EXITED)

    def start(self, config: Optional[TunnelConfig] = None) -> None:
        """Render the config, launch the tunnel, and confirm it survives the grace period."""
        with self._lock:
            if config is not None:
                self.config = config
            if self.config is None:
                raise ProcessStartError("No tunnel configuration supplied.")

            self._reap_exited()
            if self._handle is not None:
                raise ProcessStartError(
                    f"Tunnel process already running (pid={self.launcher.pid(self._handle)})."
                )

            self._transition(ProcessEvent.START)
            try:
                self._write_config(self.config)
                argv = [self._resolve_binary(), "-c", str(self.config_path)]
                handle = self.launcher.launch(argv)
            except ProcessStartError:
                self._transition(ProcessEvent.LAUNCH_FAILED)
                raise
            except OSError as exc:
                self._transition(ProcessEvent.LAUNCH_FAILED)
                raise ProcessStartError(f"Failed to launch tunnel process: {exc}") from exc

            self._handle = handle
            pid = self.launcher.pid(handle)
            log.info("Started tunnel process (pid=%s)", pid)

            self._sleep(self.grace_period_seconds)

            exit_code = self.launcher.poll(handle)
            if exit_code is not None:
                self._handle = None
                self._transition(ProcessEvent.LAUNCH_FAILED)
                raise ProcessStartError(
                    f"Tunnel process pid={pid} exited with status {exit_code} during startup."
                )

            self._transition(ProcessEvent.LAUNCHED)

    def stop(self) -> None:
        """Terminate gracefully, escalate to a forceful kill after the stop timeout.

        Stopping an already stopped supervisor is a no-op.
        """
        with self._lock:
            self._reap_exited()
            handle = self._handle
            if handle is None:
                return

            pid = self.launcher.pid(handle)
            log.info("Stopping tunnel process (pid=%s)...", pid)
            if self.state == ProcessState.RUNNING:
                self._transition(ProcessEvent.STOP)

            try:
                self.launcher.signal(handle, TerminationKind.GRACEFUL)
            except OSError as exc:
                log.warning("Failed to send graceful termination to tunnel pid=%s: %s", pid, exc)

            if self.launcher.wait(handle, self.stop_timeout_seconds) is not None:
                log.info("Tunnel process stopped gracefully")
            else:
                log.warning("Tunnel process did not stop within %.1fs, force killing...", self.stop_timeout_seconds)
                try:
                    self.launcher.signal(handle, TerminationKind.FORCEFUL)
                except OSError as exc:
                    raise ProcessStopError(f"Failed to kill tunnel process pid={pid}: {exc}") from exc
                # unconditional wait reaps the child
                self.launcher.wait(handle, None)
                log.info("Tunnel process killed")

            self._handle = None
            self._transition(ProcessEvent.EXITED)

    def restart(self, config: Optional[TunnelConfig] = None) -> None:
        """Stop, wait the settle delay, then start; a failed stop does not prevent the start attempt."""
        with self._lock:
            log.info("Restarting tunnel process...")
            try:
                self.stop()
            except ProcessStopError as exc:
                log.warning("Error stopping tunnel process: %s", exc)

            self._sleep(self.settle_delay_seconds)
            self.start(config)

    def update_config(self, config: TunnelConfig) -> None:
        """Apply a new configuration; a running process is always restarted, never reconfigured live."""
        self.restart(config)

    def is_running(self) -> bool:
        handle = self._handle
        return handle is not None and self.launcher.poll(handle) is None

    @property
    def pid(self) -> Optional[int]:
        handle = self._handle
        if handle is None:
            return None
        return self.launcher.pid(handle)

    def status(self) -> SupervisorStatus:
        running = self.is_running()
        state = self.state
        if not running and state == ProcessState.RUNNING:
            state = ProcessState.STOPPED
        return SupervisorStatus(running=running, pid=self.pid if running else None, state=state)

    def cleanup_config(self) -> None:
        """Remove the rendered config file if present."""
        try:
            self.config_path.unlink(missing_ok=True)
        except OSError as exc:
            raise ProcessStopError(f"Failed to remove tunnel config '{self.config_path}': {exc}") from exc
