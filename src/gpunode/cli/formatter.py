import json
import typer
from typing import Any, Dict, List
from pydantic import BaseModel
from rich.console import Console
from rich.table import Table
from gpunode.utils.diagnostics import ComponentDiagnostic

# Create a stderr console for logging
error_console = Console(stderr=True)
console = Console()

SEVERITY_STYLES = {
    "warning": "yellow",
    "error": "red",
    "critical": "bold red",
    "success": "green",
}


class OutputFormatter:
    """
    Handles output formatting for the gpunode CLI.
    System messages go to stderr, tables and data to stdout.
    """

    @staticmethod
    def log(message: str, severity: str = "info") -> None:
        """
        Print system messages to stderr with color coding.
        """
        style = SEVERITY_STYLES.get(severity, "white")
        error_console.print(f"[{style}][gpunode] {message}[/{style}]")

    @staticmethod
    def print_diagnostics(diagnostics: List[ComponentDiagnostic]) -> None:
        """
        Prints one row per component failure collected during shutdown.
        """
        if not diagnostics:
            return

        table = Table(title="Shutdown Diagnostics", border_style="red", header_style="bold red")
        table.add_column("Severity", style="bold")
        table.add_column("Component")
        table.add_column("Code")
        table.add_column("Message")

        for diag in diagnostics:
            color = SEVERITY_STYLES.get(diag.severity, "red")
            table.add_row(
                f"[{color}]{diag.severity.upper()}[/{color}]",
                diag.component,
                diag.error_code,
                diag.message,
            )

        error_console.print(table)
        error_console.print()

    @staticmethod
    def print_accelerators(devices: List[Dict[str, Any]]) -> None:
        table = Table(title="Accelerators", header_style="bold cyan")
        table.add_column("Index", justify="right")
        table.add_column("Name")
        table.add_column("UUID")
        table.add_column("Temp (C)", justify="right")
        table.add_column("Memory (MB)", justify="right")
        table.add_column("Util %", justify="right")
        table.add_column("Busy")

        for device in devices:
            busy = device.get("busy", False)
            table.add_row(
                str(device.get("index", "")),
                str(device.get("name", "")),
                str(device.get("uuid", "")),
                str(device.get("temperature_c", "")),
                f"{device.get('memory_used_mb', 0)}/{device.get('memory_total_mb', 0)}",
                f"{float(device.get('utilization_percent', 0.0)):.0f}",
                "[yellow]yes[/yellow]" if busy else "[green]no[/green]",
            )

        console.print(table)

    @staticmethod
    def print_workloads(workloads: List[Dict[str, Any]]) -> None:
        table = Table(title="Workloads", header_style="bold cyan")
        table.add_column("ID")
        table.add_column("Claim")
        table.add_column("Image")
        table.add_column("Status")
        table.add_column("Accelerators")
        table.add_column("Ports")

        for workload in workloads:
            ports = ", ".join(f"{port}->{host}" for port, host in (workload.get("ports") or {}).items())
            table.add_row(
                str(workload.get("id", ""))[:12],
                str(workload.get("claim_id", "")),
                str(workload.get("image", "")),
                str(workload.get("status", "")),
                ",".join(str(index) for index in workload.get("device_indices") or []),
                ports,
            )

        console.print(table)

    @staticmethod
    def print_supervisor(status: Dict[str, Any]) -> None:
        running = status.get("running", False)
        color = "green" if running else "red"
        pid = status.get("pid")
        console.print(
            f"Tunnel: [{color}]{status.get('state', 'unknown')}[/{color}]"
            + (f" (pid={pid})" if pid is not None else "")
        )

    @staticmethod
    def print_data(data: Any) -> None:
        """
        Print a result to stdout. Strings are echoed as-is, everything else as JSON.
        """
        if isinstance(data, str):
            typer.echo(data)
            return

        def json_serializer(obj):
            if isinstance(obj, BaseModel):
                return obj.model_dump(mode='json')
            return str(obj)

        typer.echo(json.dumps(data, indent=2, default=json_serializer))
