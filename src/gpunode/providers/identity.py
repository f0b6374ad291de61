from __future__ import annotations

import logging
import os
import socket
from pathlib import Path
from typing import Optional

import requests
from pydantic import ValidationError

from gpunode.core.models import RegistrationRequest, RegistrationResponse
from gpunode.utils.diagnostics import BootstrapError

log = logging.getLogger(__name__)

REGISTER_PATH = "/api/v1/nodes/register"


class FileIdentityStore:
    """Plain-text node identifier persisted at a fixed path."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> Optional[str]:
        """Return the stored identifier; a missing or blank file means not registered."""
        try:
            content = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise BootstrapError(f"Failed to read node identity file '{self.path}': {exc}") from exc

        node_id = content.strip()
        return node_id or None

    def persist(self, node_id: str) -> None:
        """Write the identifier to a temp file beside the target, then rename over it."""
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as handle:
                handle.write(node_id)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self.path)
        except OSError as exc:
            if tmp_path.exists():
                tmp_path.unlink()
            raise BootstrapError(f"Failed to persist node identity to '{self.path}': {exc}") from exc


def build_registration_request(bootstrap_token: Optional[str] = None) -> RegistrationRequest:
    """Build a registration request identifying this host by its hostname."""
    hostname = socket.gethostname().strip()
    if not hostname:
        raise BootstrapError("Unable to determine hostname for registration.")
    return RegistrationRequest(machine_id=hostname, bootstrap_token=bootstrap_token or None)


class HttpRegistrar:
    """Registers the node with the central platform over HTTP."""

    def __init__(self, api_url: str, timeout_seconds: float = 30.0, session: Optional[requests.Session] = None) -> None:
        self.api_url = api_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()

    def register(self, request: RegistrationRequest) -> str:
        url = f"{self.api_url}{REGISTER_PATH}"
        try:
            resp = self.session.post(
                url,
                json=request.model_dump(exclude_none=True),
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise BootstrapError(f"Failed to send registration request: {exc}") from exc

        if resp.status_code != 200:
            raise BootstrapError(f"Registration failed with status {resp.status_code}: {resp.text[:200]}")

        try:
            payload = RegistrationResponse.model_validate(resp.json())
        except (ValueError, ValidationError) as exc:
            raise BootstrapError(f"Invalid registration response: {exc}") from exc

        log.info("Registered with platform as node %s", payload.node_id)
        return payload.node_id
