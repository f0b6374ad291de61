from typing import Optional
from pydantic import BaseModel

class ComponentDiagnostic(BaseModel):
    """
    Standardized report for a component-level failure that was handled, not raised.
    Shutdown collects one of these per failed step.
    """
    component: str
    error_code: str
    message: str
    severity: str = "error" # 'error', 'warning', 'critical'

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.component}: {self.message}"


class NodeAgentError(Exception):
    """Base class for all errors raised by the node agent."""


class ConfigurationError(NodeAgentError):
    """Raised when required configuration is missing or invalid."""


class BootstrapError(NodeAgentError):
    """Raised when the node identity cannot be loaded, registered, or persisted."""


class ProviderError(NodeAgentError):
    """
    Raised when an accelerator or workload provider call fails.
    """
    def __init__(self, message: str, provider: Optional[str] = None):
        self.message = message
        self.provider = provider
        ctx = f" ({provider})" if provider else ""
        super().__init__(f"Provider Error{ctx}: {message}")


class ProcessStartError(NodeAgentError):
    """Raised when the supervised process cannot be located, launched, or exits during its grace period."""


class ProcessStopError(NodeAgentError):
    """Raised when the supervised process could not be signalled to exit."""


class PlacementError(NodeAgentError):
    """Raised when requested accelerators are unknown or busy at commit time."""

    def __init__(self, message: str, device_indices: Optional[list] = None):
        self.message = message
        self.device_indices = list(device_indices or [])
        super().__init__(message)


class WorkloadNotFoundError(NodeAgentError):
    """Raised when a workload id is not known to the provider or the cache."""

    def __init__(self, workload_id: str):
        self.workload_id = workload_id
        super().__init__(f"Workload '{workload_id}' not found.")
