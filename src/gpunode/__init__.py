"""Host-resident agent that exposes a machine's accelerators to a remote orchestrator."""

__version__ = "0.1.0"

__all__ = [
	"__version__",
]
