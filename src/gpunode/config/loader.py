import os
import re
import yaml
from pathlib import Path
from typing import Any, Dict

from gpunode.utils.diagnostics import ConfigurationError

ENV_VAR_PATTERN = re.compile(r"\$\{([^}:]+)(?::([^}]*))?\}")

ALLOWED_SECTIONS = {"identity", "central_platform", "tunnel", "agent_api", "reconcile", "accelerators"}

def interpolate_env_vars(content: str) -> str:
    """Replace ${VAR} or ${VAR:default} with environment variables."""
    def replace_match(match: re.Match) -> str:
        var_name = match.group(1)
        default_value = match.group(2) if match.group(2) is not None else ""
        return os.environ.get(var_name, default_value)

    return ENV_VAR_PATTERN.sub(replace_match, content)

def load_config(path: Path) -> Dict[str, Any]:
    """
    Load gpunode.yaml with environment variable interpolation.

    A missing file yields an empty dict so built-in defaults apply. Unknown
    top-level sections are dropped; unreadable or malformed YAML raises
    ConfigurationError because the agent cannot start on a config it cannot parse.
    """
    if not path.exists():
        return {}

    try:
        content = path.read_text()
        interpolated_content = interpolate_env_vars(content)
        full_config = yaml.safe_load(interpolated_content) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"Failed to parse config file '{path}': {exc}") from exc

    if not isinstance(full_config, dict):
        raise ConfigurationError(f"Config file '{path}' must contain a mapping at the top level.")

    filtered_config = {k: v for k, v in full_config.items() if k in ALLOWED_SECTIONS}

    return filtered_config
