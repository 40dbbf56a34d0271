"""Proxy service commands."""

from typing import Annotated

import typer

from vxrelay.cli import client
from vxrelay.cli import config as cli_config
from vxrelay.cli.commands.tunnel import resolve_tunnel_id
from vxrelay.cli.formatters import (
    format_batch_report,
    format_service_table,
    format_usage_table,
)
from vxrelay.cli.output import console, print_error, print_json

app = typer.Typer(help="Proxy service commands")


def _batch(operation: str) -> None:
    try:
        report = client.service_batch(operation)
        if cli_config.OUTPUT_FORMAT == "json":
            print_json(report)
        elif report["items"]:
            console.print(format_batch_report(report))
        else:
            console.print(f"[dim]{operation}: nothing to do.[/dim]")
        if report["failed"]:
            raise typer.Exit(1)
    except client.APIError as e:
        print_error(str(e))
        raise typer.Exit(1)


@app.command("list")
def list_services():
    """List deployed proxy services."""
    try:
        services = client.get_services()
        if cli_config.OUTPUT_FORMAT == "json":
            print_json(services)
            return
        if not services:
            console.print("[yellow]No proxy services deployed.[/yellow]")
            return
        console.print(format_service_table(services))
    except client.APIError as e:
        print_error(str(e))
        raise typer.Exit(1)


@app.command("cleanup")
def cleanup_orphans():
    """Remove proxy services that no tunnel owns."""
    _batch("cleanup-orphans")


@app.command("restart-all")
def restart_all():
    """Restart every active or failed tunnel."""
    _batch("restart-all")


@app.command("health")
def health_check():
    """Reconcile active tunnels with the host and refresh counters."""
    _batch("health-check")


@app.command("usage")
def resource_usage():
    """Show CPU, memory and connections of each proxy daemon."""
    try:
        usage = client.get_resource_usage()
        if cli_config.OUTPUT_FORMAT == "json":
            print_json(usage)
            return
        if not usage:
            console.print("[yellow]No proxy services deployed.[/yellow]")
            return
        console.print(format_usage_table(usage))
    except client.APIError as e:
        print_error(str(e))
        raise typer.Exit(1)


@app.command("logs")
def service_logs(
    tunnel_id: Annotated[str, typer.Argument(help="Tunnel id, id prefix or name")],
    lines: Annotated[
        int, typer.Option("--lines", "-n", help="Number of trailing lines")
    ] = 50,
):
    """Print the tail of a proxy daemon's log."""
    try:
        content = client.get_service_logs(resolve_tunnel_id(tunnel_id), lines)
        if content:
            console.print(content, markup=False, highlight=False, end="")
        else:
            console.print("[dim]Log is empty.[/dim]")
    except client.APIError as e:
        print_error(str(e))
        raise typer.Exit(1)
