from __future__ import annotations

import re
from typing import List

from jinja2 import BaseLoader, Environment, StrictUndefined
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from gpunode.utils.diagnostics import ConfigurationError

# node ids become part of TOML table names, which only allow bare-key characters
NODE_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")

TUNNEL_TEMPLATE = """\
[common]
serverAddr = {{ config.server_addr | tojson }}
serverPort = {{ config.server_port }}
token = {{ config.token | tojson }}
meta_node_id = {{ config.node_id | tojson }}

# control tunnel
[control_{{ config.node_id }}]
type = "tcp"
localIP = "127.0.0.1"
localPort = {{ config.control_local_port }}
remotePort = 0
meta_tunnel_type = "agent-control"
{% for accelerator in config.accelerators %}
# data tunnels for accelerator {{ accelerator.index }}
[data_{{ config.node_id }}_gpu{{ accelerator.index }}_web]
type = "tcp"
localIP = "127.0.0.1"
localPort = {{ accelerator.web_local_port }}
remotePort = 0
meta_tunnel_type = "container-data"
meta_gpu_id = {{ accelerator.index }}
meta_port_name = "web"

[data_{{ config.node_id }}_gpu{{ accelerator.index }}_ssh]
type = "tcp"
localIP = "127.0.0.1"
localPort = {{ accelerator.ssh_local_port }}
remotePort = 0
meta_tunnel_type = "container-data"
meta_gpu_id = {{ accelerator.index }}
meta_port_name = "ssh"
{% endfor %}"""

_ENVIRONMENT = Environment(
    loader=BaseLoader(),
    undefined=StrictUndefined,
    keep_trailing_newline=True,
    autoescape=False,
)


class AcceleratorTunnel(BaseModel):
    """Local ports of the web and ssh data tunnels for one accelerator."""

    model_config = ConfigDict(frozen=True)

    index: int = Field(ge=0)
    web_local_port: int = Field(ge=1, le=65535)
    ssh_local_port: int = Field(ge=1, le=65535)


class TunnelConfig(BaseModel):
    """Inputs for one rendering of the tunnel process configuration."""

    model_config = ConfigDict(frozen=True)

    server_addr: str
    server_port: int
    token: str
    node_id: str
    control_local_port: int
    accelerators: List[AcceleratorTunnel] = Field(default_factory=list)

    @field_validator("node_id")
    @classmethod
    def _validate_node_id(cls, value: str) -> str:
        if not NODE_ID_PATTERN.match(value):
            raise ValueError("node id may only contain letters, digits, '-' and '_'")
        return value


def accelerator_ports(index: int, port_base: int = 8000, port_stride: int = 10) -> AcceleratorTunnel:
    """Derive the data tunnel ports for an accelerator index.

    Each accelerator owns a block of `port_stride` ports starting at
    `port_base + index * port_stride`; web takes the first, ssh the second.
    """
    web_port = port_base + index * port_stride
    return AcceleratorTunnel(index=index, web_local_port=web_port, ssh_local_port=web_port + 1)


def build_tunnel_config(
    *,
    node_id: str,
    accelerator_count: int,
    control_local_port: int,
    server_addr: str,
    server_port: int,
    token: str,
    port_base: int = 8000,
    port_stride: int = 10,
) -> TunnelConfig:
    """Assemble a TunnelConfig with one control tunnel and two data tunnels per accelerator."""
    if accelerator_count < 0:
        raise ValueError("accelerator_count must be non-negative")

    try:
        return TunnelConfig(
            server_addr=server_addr,
            server_port=server_port,
            token=token,
            node_id=node_id,
            control_local_port=control_local_port,
            accelerators=[
                accelerator_ports(index, port_base=port_base, port_stride=port_stride)
                for index in range(accelerator_count)
            ],
        )
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid tunnel configuration: {exc}") from exc


def render_tunnel_config(config: TunnelConfig) -> str:
    """Render the tunnel configuration file; identical inputs always yield identical text."""
    template = _ENVIRONMENT.from_string(TUNNEL_TEMPLATE)
    return template.render(config=config)
