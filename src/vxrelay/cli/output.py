"""Rich console and message helpers shared by CLI commands."""

import json

from rich.console import Console

console = Console()
err_console = Console(stderr=True)


def print_error(message: str) -> None:
    err_console.print(f"[bold red]Error:[/bold red] {message}")


def print_success(message: str) -> None:
    console.print(f"[green]{message}[/green]")


def print_warning(message: str) -> None:
    console.print(f"[yellow]Warning:[/yellow] {message}")


def print_json(data) -> None:
    console.print_json(json.dumps(data, default=str))


def format_status(status: str) -> str:
    """Colorize a tunnel status for tables."""
    colors = {"active": "green", "inactive": "dim", "error": "red"}
    color = colors.get(status, "white")
    return f"[{color}]{status}[/{color}]"


def format_bytes(num: float | int | None) -> str:
    """Human-readable byte count, e.g. ``1.5 MiB``."""
    if num is None:
        return "-"
    value = float(num)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if abs(value) < 1024:
            return f"{value:.1f} {unit}" if unit != "B" else f"{int(value)} B"
        value /= 1024
    return f"{value:.1f} TiB"
