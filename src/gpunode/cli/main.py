import logging
import os
import signal
import threading
from pathlib import Path
from typing import List, Optional

import typer
from rich.logging import RichHandler

from gpunode import __version__
from gpunode.cli.formatter import OutputFormatter, error_console
from gpunode.config.settings import AgentSettings, load_settings
from gpunode.runtime.agent import NodeAgent
from gpunode.runtime.control_api import send_control_command
from gpunode.runtime.tunnel_config import build_tunnel_config, render_tunnel_config
from gpunode.utils.diagnostics import ComponentDiagnostic, ConfigurationError, NodeAgentError

app = typer.Typer(name="gpunode", help="GPU node agent", rich_markup_mode=None)

DEFAULT_CONFIG_PATH = Path("gpunode.yaml")
SHUTDOWN_TIMEOUT_SECONDS = 20.0
LISTENER_POLL_SECONDS = 0.5

ConfigOption = typer.Option(
    DEFAULT_CONFIG_PATH,
    "--config",
    "-c",
    envvar="GPUNODE_CONFIG",
    help="Path to gpunode.yaml.",
)


def _configure_logging(verbose: bool) -> None:
    handler = RichHandler(console=error_console, show_path=False, rich_tracebacks=False)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(name)s: %(message)s",
        datefmt="[%X]",
        handlers=[handler],
        force=True,
    )


def _load_settings_or_exit(config: Path) -> AgentSettings:
    try:
        return load_settings(config)
    except ConfigurationError as exc:
        OutputFormatter.log(str(exc), severity="error")
        raise typer.Exit(code=1)


def _stop_with_bound(agent: NodeAgent, timeout: float) -> Optional[List[ComponentDiagnostic]]:
    """Run agent.stop() on a helper thread; None means it did not finish in time."""
    result: List[List[ComponentDiagnostic]] = []
    stopper = threading.Thread(target=lambda: result.append(agent.stop()), name="agent-stop", daemon=True)
    stopper.start()
    stopper.join(timeout=timeout)
    if stopper.is_alive():
        return None
    return result[0] if result else []


@app.command()
def run(
    config: Path = ConfigOption,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
):
    """
    Start the node agent and block until SIGINT or SIGTERM.
    """
    _configure_logging(verbose)
    settings = _load_settings_or_exit(config)
    agent = NodeAgent.from_settings(settings)

    shutdown_requested = threading.Event()

    def _handle_signal(signum, frame):
        if shutdown_requested.is_set():
            OutputFormatter.log("Received second signal, forcing exit.", severity="critical")
            os._exit(1)
        OutputFormatter.log(f"Received {signal.Signals(signum).name}, shutting down...", severity="info")
        shutdown_requested.set()

    previous_handlers = {
        signum: signal.signal(signum, _handle_signal) for signum in (signal.SIGINT, signal.SIGTERM)
    }

    exit_code = 0
    try:
        try:
            agent.start()
        except NodeAgentError as exc:
            OutputFormatter.log(f"Failed to start agent: {exc}", severity="error")
            exit_code = 1
        else:
            OutputFormatter.log(f"Node agent running as node {agent.node_id}.", severity="success")
            while not shutdown_requested.is_set():
                listener_error = agent.wait_for_listener_error(timeout=LISTENER_POLL_SECONDS)
                if listener_error is not None:
                    OutputFormatter.log(f"Control API failed: {listener_error}", severity="error")
                    exit_code = 1
                    break

        diagnostics = _stop_with_bound(agent, SHUTDOWN_TIMEOUT_SECONDS)
        if diagnostics is None:
            OutputFormatter.log(
                f"Shutdown did not complete within {SHUTDOWN_TIMEOUT_SECONDS:.0f}s.",
                severity="critical",
            )
            exit_code = 1
        else:
            OutputFormatter.print_diagnostics(diagnostics)
            OutputFormatter.log("Node agent stopped.", severity="info")
    finally:
        for signum, handler in previous_handlers.items():
            signal.signal(signum, handler)

    if exit_code:
        raise typer.Exit(code=exit_code)


@app.command()
def status(
    config: Path = ConfigOption,
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON instead of tables."),
):
    """
    Query a running agent over its control API.
    """
    settings = _load_settings_or_exit(config)
    host, port = settings.agent_api.split_address()
    token = settings.agent_api.auth_token

    results = {}
    for command in ("health", "accelerators", "workloads", "supervisor.status"):
        try:
            response = send_control_command(host, port, command, token=token)
        except OSError as exc:
            OutputFormatter.log(f"Unable to reach agent at {host}:{port}: {exc}", severity="error")
            raise typer.Exit(code=1)

        if not response.ok:
            OutputFormatter.log(f"{command} failed ({response.status}): {response.error}", severity="error")
            raise typer.Exit(code=1)
        results[command] = response.data

    if as_json:
        OutputFormatter.print_data(results)
        return

    OutputFormatter.log(f"Node {results['health'].get('node_id')} is healthy.", severity="success")
    OutputFormatter.print_accelerators(results["accelerators"])
    OutputFormatter.print_workloads(results["workloads"])
    OutputFormatter.print_supervisor(results["supervisor.status"])


@app.command("render-tunnel-config")
def render_tunnel_config_command(
    config: Path = ConfigOption,
    node_id: str = typer.Option(..., "--node-id", help="Node id to render tunnels for."),
    accelerators: int = typer.Option(0, "--accelerators", min=0, help="Number of accelerators."),
):
    """
    Print the tunnel configuration the agent would write for this node.
    """
    settings = _load_settings_or_exit(config)
    _, api_port = settings.agent_api.split_address()
    tunnel = settings.tunnel

    try:
        tunnel_config = build_tunnel_config(
            node_id=node_id,
            accelerator_count=accelerators,
            control_local_port=api_port,
            server_addr=tunnel.server_addr,
            server_port=tunnel.server_port,
            token=tunnel.token,
            port_base=tunnel.port_base,
            port_stride=tunnel.port_stride,
        )
    except ConfigurationError as exc:
        OutputFormatter.log(str(exc), severity="error")
        raise typer.Exit(code=1)
    OutputFormatter.print_data(render_tunnel_config(tunnel_config))


@app.command()
def version():
    """Print the gpunode version."""
    typer.echo(f"gpunode {__version__}")


if __name__ == "__main__":
    app()
