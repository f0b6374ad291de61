"""Runtime orchestration: tunnel supervision, reconciliation, control API, and the node agent."""

from gpunode.runtime.agent import NodeAgent
from gpunode.core.contracts import ProcessEvent, ProcessState, transition_process_state
from gpunode.runtime.control_api import ControlServer, send_control_command
from gpunode.runtime.scheduler import PeriodicTask, ReconciliationScheduler, tunnel_health_action
from gpunode.runtime.supervisor import PopenLauncher, ProcessSupervisor, TerminationKind
from gpunode.runtime.tunnel_config import TunnelConfig, build_tunnel_config, render_tunnel_config

__all__ = [
	"ControlServer",
	"NodeAgent",
	"PeriodicTask",
	"PopenLauncher",
	"ProcessEvent",
	"ProcessState",
	"ProcessSupervisor",
	"ReconciliationScheduler",
	"TerminationKind",
	"TunnelConfig",
	"build_tunnel_config",
	"render_tunnel_config",
	"send_control_command",
	"transition_process_state",
	"tunnel_health_action",
]
