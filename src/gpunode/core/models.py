from typing import Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from gpunode.core.contracts import ProcessState


# Fixed placement heuristic: a device above this share of memory or compute is busy.
BUSY_THRESHOLD_PERCENT = 10.0


def is_device_busy(memory_total_mb: int, memory_used_mb: int, utilization_percent: float) -> bool:
    """Return True when a device should not be offered for new workload placement."""
    if memory_total_mb <= 0:
        return False
    memory_percent = memory_used_mb * 100 / memory_total_mb
    return memory_percent > BUSY_THRESHOLD_PERCENT or utilization_percent > BUSY_THRESHOLD_PERCENT


class DeviceInfo(BaseModel):
    """
    Point-in-time state of one accelerator.
    """
    model_config = ConfigDict(frozen=True)

    index: int = Field(ge=0)
    name: str = "Unknown"
    uuid: str = "Unknown"
    temperature_c: int = 0
    memory_total_mb: int = Field(default=0, ge=0)
    memory_used_mb: int = Field(default=0, ge=0)
    utilization_percent: float = Field(default=0.0, ge=0.0)

    @computed_field  # type: ignore[misc]
    @property
    def busy(self) -> bool:
        return is_device_busy(self.memory_total_mb, self.memory_used_mb, self.utilization_percent)


class PortMapping(BaseModel):
    """
    Host-to-workload port binding requested at creation time.
    """
    model_config = ConfigDict(extra='forbid')

    host_port: int = Field(ge=1, le=65535)
    container_port: int = Field(ge=1, le=65535)
    protocol: Literal["tcp", "udp"] = "tcp"


class WorkloadSpec(BaseModel):
    """
    Request to create one managed workload bound to a set of accelerators.
    """
    model_config = ConfigDict(extra='forbid')

    claim_id: str = Field(min_length=1)
    image: str = Field(min_length=1)
    device_indices: List[int] = Field(default_factory=list)
    port_mappings: List[PortMapping] = Field(default_factory=list)
    env: List[str] = Field(default_factory=list)
    command: List[str] = Field(default_factory=list)
    working_dir: Optional[str] = None
    volumes: Dict[str, str] = Field(default_factory=dict)

    @field_validator("device_indices")
    @classmethod
    def _validate_device_indices(cls, value: List[int]) -> List[int]:
        if any(index < 0 for index in value):
            raise ValueError("device indices must be non-negative")
        if len(set(value)) != len(value):
            raise ValueError("device indices must be unique")
        return value


class WorkloadInfo(BaseModel):
    """
    State of one managed workload as last reported by the workload provider.
    """
    id: str
    claim_id: str = ""
    image: str = ""
    status: str = ""
    device_indices: List[int] = Field(default_factory=list)
    ports: Dict[str, str] = Field(default_factory=dict)
    created_at: int = 0
    started_at: int = 0
    labels: Dict[str, str] = Field(default_factory=dict)

    @property
    def is_running(self) -> bool:
        lowered = self.status.lower()
        return "running" in lowered or lowered.startswith("up")


class SupervisorStatus(BaseModel):
    """Externally visible state of the tunnel supervisor."""

    running: bool
    pid: Optional[int] = None
    state: ProcessState = ProcessState.STOPPED


class RegistrationRequest(BaseModel):
    """Payload sent to the central platform when a node registers for the first time."""

    machine_id: str = Field(min_length=1)
    bootstrap_token: Optional[str] = None


class RegistrationResponse(BaseModel):
    """Central platform reply to a registration request."""

    model_config = ConfigDict(extra='ignore')

    node_id: str
    message: str = ""
    timestamp: int = 0

    @field_validator("node_id", mode="before")
    @classmethod
    def _coerce_node_id(cls, value: object) -> str:
        if isinstance(value, bool) or value is None:
            raise ValueError("node_id must be a string or integer")
        node_id = str(value).strip()
        if not node_id:
            raise ValueError("node_id must not be empty")
        return node_id


class SystemMetrics(BaseModel):
    """Host-level resource usage reported alongside accelerator state."""

    cpu_usage_percent: float = 0.0
    memory_usage_percent: float = 0.0
    memory_total_mb: int = 0
    memory_used_mb: int = 0
    disk_usage_percent: float = 0.0
    load_average: float = 0.0
    uptime_seconds: int = 0
