import os
from pathlib import Path
from typing import Any, Dict, Literal, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from gpunode.config.loader import load_config
from gpunode.utils.diagnostics import ConfigurationError

DEFAULT_API_PORT = 9200


class IdentitySettings(BaseSettings):
    """
    Node identity persistence (the 'identity' section in gpunode.yaml).
    """
    model_config = SettingsConfigDict(env_prefix='GPUNODE_IDENTITY_', extra='ignore')

    file_path: Path = Path("/etc/gpunode/node_id")

    @field_validator("file_path", mode="before")
    @classmethod
    def _expand_path(cls, value: Any) -> Any:
        if isinstance(value, (str, Path)):
            return Path(os.path.expanduser(os.path.expandvars(str(value))))
        return value


class CentralPlatformSettings(BaseModel):
    """
    Central platform used for first-time registration (the 'central_platform' section).
    """
    model_config = ConfigDict(extra='ignore')

    api_url: str = Field(default="http://api.server.com", min_length=1)
    bootstrap_token: Optional[str] = None
    timeout_seconds: float = Field(default=30.0, gt=0)


class TunnelSettings(BaseModel):
    """
    Outbound tunnel process settings (the 'tunnel' section).
    """
    model_config = ConfigDict(extra='ignore')

    binary: str = Field(default="frpc", min_length=1)
    server_addr: str = Field(default="api.server.com", min_length=1)
    server_port: int = Field(default=7000, gt=0, le=65535)
    token: str = "frp_connection_token"
    config_path: Path = Path("/var/run/gpunode/tunnel.toml")
    port_base: int = Field(default=8000, ge=1, le=65535)
    port_stride: int = Field(default=10, ge=2)
    grace_period_seconds: float = Field(default=2.0, ge=0)
    stop_timeout_seconds: float = Field(default=10.0, gt=0)
    settle_delay_seconds: float = Field(default=1.0, ge=0)


class AgentAPISettings(BaseModel):
    """
    Control API listener settings (the 'agent_api' section).
    """
    model_config = ConfigDict(extra='ignore')

    listen_address: str = Field(default="127.0.0.1:9200", min_length=1)
    auth_token: str = Field(default="a_very_secret_agent_api_token", min_length=1)

    def split_address(self) -> Tuple[str, int]:
        """Return (host, port); the port falls back to 9200 when it cannot be parsed."""
        host, sep, port = self.listen_address.rpartition(":")
        if not sep:
            return self.listen_address, DEFAULT_API_PORT
        try:
            return host, int(port)
        except ValueError:
            return host, DEFAULT_API_PORT


class ReconcileSettings(BaseModel):
    """
    Background loop cadences and shutdown bounds (the 'reconcile' section).
    """
    model_config = ConfigDict(extra='ignore')

    accelerator_interval_seconds: float = Field(default=10.0, gt=0)
    workload_interval_seconds: float = Field(default=30.0, gt=0)
    health_interval_seconds: float = Field(default=30.0, gt=0)
    drain_timeout_seconds: float = Field(default=15.0, gt=0)
    listener_stop_timeout_seconds: float = Field(default=5.0, gt=0)


class AcceleratorSettings(BaseModel):
    """
    Accelerator provider selection (the 'accelerators' section).
    """
    model_config = ConfigDict(extra='ignore')

    backend: Literal["nvml", "nvidia-smi"] = "nvml"
    nvidia_smi_binary: str = "nvidia-smi"


class AgentSettings(BaseModel):
    """Validated agent configuration assembled from every gpunode.yaml section."""

    identity: IdentitySettings = Field(default_factory=IdentitySettings)
    central_platform: CentralPlatformSettings = Field(default_factory=CentralPlatformSettings)
    tunnel: TunnelSettings = Field(default_factory=TunnelSettings)
    agent_api: AgentAPISettings = Field(default_factory=AgentAPISettings)
    reconcile: ReconcileSettings = Field(default_factory=ReconcileSettings)
    accelerators: AcceleratorSettings = Field(default_factory=AcceleratorSettings)

    @classmethod
    def from_config_dict(cls, config_dict: Dict[str, Any]) -> "AgentSettings":
        """Build settings from a loaded config dict, raising ConfigurationError on invalid values."""
        try:
            return cls(
                identity=IdentitySettings(**(config_dict.get("identity") or {})),
                central_platform=CentralPlatformSettings(**(config_dict.get("central_platform") or {})),
                tunnel=TunnelSettings(**(config_dict.get("tunnel") or {})),
                agent_api=AgentAPISettings(**(config_dict.get("agent_api") or {})),
                reconcile=ReconcileSettings(**(config_dict.get("reconcile") or {})),
                accelerators=AcceleratorSettings(**(config_dict.get("accelerators") or {})),
            )
        except (TypeError, ValidationError) as exc:
            raise ConfigurationError(f"Invalid configuration: {exc}") from exc


def load_settings(path: Path) -> AgentSettings:
    """Load and validate gpunode.yaml; a missing file yields the built-in defaults."""
    return AgentSettings.from_config_dict(load_config(path))
