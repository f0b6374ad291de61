from __future__ import annotations

from enum import Enum


class ProcessState(str, Enum):
    """Lifecycle states of the supervised tunnel process."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class ProcessEvent(str, Enum):
    """Events that drive supervised process state transitions."""

    START = "start"
    LAUNCHED = "launched"
    LAUNCH_FAILED = "launch_failed"
    STOP = "stop"
    EXITED = "exited"


def transition_process_state(current: ProcessState, event: ProcessEvent) -> ProcessState:
    """Compute the next supervised process state for a given event.

    A crashed process is never modelled as its own state: health checks observe
    it through liveness probes and the supervisor treats it as stopped.
    Invalid transitions raise ValueError.
    """

    if current == ProcessState.STOPPED:
        if event == ProcessEvent.START:
            return ProcessState.STARTING
        if event in {ProcessEvent.STOP, ProcessEvent.EXITED}:
            return ProcessState.STOPPED
        raise ValueError(f"Invalid process transition: {current} -> {event}")

    if current == ProcessState.STARTING:
        if event == ProcessEvent.LAUNCHED:
            return ProcessState.RUNNING
        if event in {ProcessEvent.LAUNCH_FAILED, ProcessEvent.EXITED}:
            return ProcessState.STOPPED
        raise ValueError(f"Invalid process transition: {current} -> {event}")

    if current == ProcessState.RUNNING:
        if event == ProcessEvent.STOP:
            return ProcessState.STOPPING
        if event == ProcessEvent.EXITED:
            return ProcessState.STOPPED
        raise ValueError(f"Invalid process transition: {current} -> {event}")

    if current == ProcessState.STOPPING:
        if event == ProcessEvent.EXITED:
            return ProcessState.STOPPED
        raise ValueError(f"Invalid process transition: {current} -> {event}")

    raise ValueError(f"Unknown process state: {current}")
