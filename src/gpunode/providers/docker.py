"""
Docker workload provider
========================

Runs and inspects workloads through the docker CLI. Every workload created here
carries a fixed set of labels; those labels are how a restarted agent finds its
own containers again and recovers which claim and accelerators each one serves.
The labels never leave this module: callers only see typed WorkloadInfo fields.
"""

from __future__ import annotations

import json
import logging
import subprocess
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

from gpunode.core.models import WorkloadInfo, WorkloadSpec
from gpunode.utils.diagnostics import ProviderError, WorkloadNotFoundError

log = logging.getLogger(__name__)

LABEL_PREFIX = "gpunode"
LABEL_MANAGED = f"{LABEL_PREFIX}.managed"
LABEL_CLAIM_ID = f"{LABEL_PREFIX}.claim_id"
LABEL_DEVICES = f"{LABEL_PREFIX}.device_indices"
LABEL_NODE_TYPE = f"{LABEL_PREFIX}.node_type"

STOP_TIMEOUT_SECONDS = 30

Runner = Callable[[Sequence[str]], "subprocess.CompletedProcess[str]"]


def _run(args: Sequence[str]) -> "subprocess.CompletedProcess[str]":
    return subprocess.run(list(args), capture_output=True, text=True, timeout=120)


def container_name(claim_id: str) -> str:
    return f"gpunode-claim-{claim_id}"


def build_run_args(spec: WorkloadSpec) -> List[str]:
    """Translate a workload spec into `docker run` arguments."""
    args = ["run", "-d"]

    if spec.device_indices:
        devices = ",".join(str(index) for index in spec.device_indices)
        args.extend(["--gpus", f"device={devices}"])

    for mapping in spec.port_mappings:
        args.extend(["-p", f"{mapping.host_port}:{mapping.container_port}/{mapping.protocol}"])

    for env in spec.env:
        args.extend(["-e", env])

    for host_path, container_path in sorted(spec.volumes.items()):
        args.extend(["-v", f"{host_path}:{container_path}"])

    args.extend([
        "--label", f"{LABEL_CLAIM_ID}={spec.claim_id}",
        "--label", f"{LABEL_DEVICES}={','.join(str(i) for i in spec.device_indices)}",
        "--label", f"{LABEL_MANAGED}=true",
        "--label", f"{LABEL_NODE_TYPE}=gpu",
    ])

    args.extend(["--name", container_name(spec.claim_id)])
    args.extend(["--restart", "unless-stopped"])

    if spec.working_dir:
        args.extend(["--workdir", spec.working_dir])

    args.append(spec.image)
    args.extend(spec.command)
    return args


def _parse_timestamp(raw: Optional[str]) -> int:
    if not raw or raw.startswith("0001-01-01"):
        return 0
    value = raw.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    # docker emits nanoseconds; fromisoformat accepts at most microseconds
    if "." in value:
        head, _, tail = value.partition(".")
        digits = "".join(ch for ch in tail if ch.isdigit())
        zone = tail[len(digits):]
        value = f"{head}.{digits[:6]}{zone}"
    try:
        return int(datetime.fromisoformat(value).timestamp())
    except ValueError:
        return 0


def _parse_device_indices(raw: str) -> List[int]:
    indices: List[int] = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            indices.append(int(part))
        except ValueError:
            log.debug("Ignoring malformed device index label value %r", part)
    return indices


def parse_inspect_payload(payload: Dict) -> Optional[WorkloadInfo]:
    """Convert one `docker inspect` record into WorkloadInfo; None for containers we do not manage."""
    config = payload.get("Config") or {}
    labels: Dict[str, str] = config.get("Labels") or {}
    if labels.get(LABEL_MANAGED) != "true":
        return None

    state = payload.get("State") or {}
    ports: Dict[str, str] = {}
    network_ports = (payload.get("NetworkSettings") or {}).get("Ports") or {}
    for port, bindings in network_ports.items():
        if bindings and bindings[0].get("HostPort"):
            ports[port] = f"{bindings[0].get('HostIp', '')}:{bindings[0]['HostPort']}"

    return WorkloadInfo(
        id=payload.get("Id", ""),
        claim_id=labels.get(LABEL_CLAIM_ID, ""),
        image=config.get("Image", ""),
        status=state.get("Status", ""),
        device_indices=_parse_device_indices(labels.get(LABEL_DEVICES, "")),
        ports=ports,
        created_at=_parse_timestamp(payload.get("Created")),
        started_at=_parse_timestamp(state.get("StartedAt")),
        labels=dict(labels),
    )


class DockerWorkloadProvider:
    """Workload provider backed by the docker CLI."""

    name = "docker"

    def __init__(self, binary: str = "docker", runner: Runner = _run, verify: bool = True) -> None:
        self.binary = binary
        self.runner = runner
        if verify:
            self._docker(["version"])

    def _docker(self, args: List[str]) -> "subprocess.CompletedProcess[str]":
        try:
            result = self.runner([self.binary, *args])
        except (OSError, subprocess.SubprocessError) as exc:
            raise ProviderError(f"failed to run {self.binary} {args[0]}: {exc}", provider=self.name) from exc

        if result.returncode != 0:
            raise ProviderError(
                f"{self.binary} {args[0]} exit {result.returncode}: {result.stderr.strip()[:200]}",
                provider=self.name,
            )
        return result

    def create(self, spec: WorkloadSpec) -> str:
        result = self._docker(build_run_args(spec))
        workload_id = result.stdout.strip()
        if not workload_id:
            raise ProviderError("docker run returned no container id", provider=self.name)
        log.info("Created workload %s for claim %s", workload_id[:12], spec.claim_id)
        return workload_id

    def remove(self, workload_id: str) -> None:
        try:
            self._docker(["stop", "-t", str(STOP_TIMEOUT_SECONDS), workload_id])
        except ProviderError as exc:
            log.warning("Failed to stop workload %s: %s", workload_id, exc)

        try:
            self._docker(["rm", "-f", "-v", workload_id])
        except ProviderError as exc:
            if "no such" in str(exc).lower():
                raise WorkloadNotFoundError(workload_id) from exc
            raise
        log.info("Removed workload %s", workload_id[:12])

    def refresh_one(self, workload_id: str) -> Optional[WorkloadInfo]:
        try:
            result = self._docker(["inspect", workload_id])
        except ProviderError as exc:
            if "no such" in str(exc).lower():
                raise WorkloadNotFoundError(workload_id) from exc
            raise

        try:
            records = json.loads(result.stdout)
        except json.JSONDecodeError as exc:
            raise ProviderError(f"failed to parse inspect output: {exc}", provider=self.name) from exc

        if not records:
            raise WorkloadNotFoundError(workload_id)
        return parse_inspect_payload(records[0])

    def list_ids(self) -> List[str]:
        result = self._docker([
            "ps", "-a",
            "--no-trunc",
            "--filter", f"label={LABEL_MANAGED}=true",
            "--format", "{{.ID}}",
        ])
        return result.stdout.split()

    def close(self) -> None:
        return None
