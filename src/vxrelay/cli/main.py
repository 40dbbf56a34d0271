"""
vxrelay CLI entry point.

Usage:
    vxrelay [OPTIONS] COMMAND [ARGS]...

Commands:
    tunnel    Tunnel management
    service   Proxy service management
    serve     Run the API server
    version   Show version information
"""

from typing import Annotated

import typer

from vxrelay.cli import config as cli_config
from vxrelay.cli.commands import service, tunnel
from vxrelay.cli.output import console
from vxrelay.models.enums import LogLevel
from vxrelay.utils.logger import configure_logging

app = typer.Typer(
    name="vxrelay",
    help="VXLAN + SOCKS5 tunnel manager",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

# Register command groups
app.add_typer(tunnel.app, name="tunnel", help="Tunnel management")
app.add_typer(service.app, name="service", help="Proxy service management")


@app.callback()
def main(
    host: Annotated[
        str | None,
        typer.Option("--host", "-H", help="API address", envvar="VXRELAY_HOST"),
    ] = None,
    port: Annotated[
        int | None,
        typer.Option("--port", "-P", help="API port", envvar="VXRELAY_PORT"),
    ] = None,
    output_format: Annotated[
        str,
        typer.Option("--format", "-f", help="Output format: table|json"),
    ] = "table",
):
    """
    vxrelay tunnel manager.

    Create, start and monitor VXLAN tunnels between an origin and a relay.
    """
    if host:
        cli_config.HOST_ADDRESS = host
    if port:
        cli_config.HOST_PORT = port
    cli_config.OUTPUT_FORMAT = output_format
    configure_logging(LogLevel.WARNING)


@app.command("serve")
def serve(
    bind: Annotated[
        str | None, typer.Option("--bind", "-b", help="Bind address")
    ] = None,
    listen_port: Annotated[
        int | None, typer.Option("--listen-port", "-l", help="Listen port")
    ] = None,
):
    """Run the API server (needs root on Linux to manage tunnels)."""
    from vxrelay.api.app import run

    run(host=bind, port=listen_port)


@app.command("version")
def version():
    """Show version information."""
    from vxrelay import __version__

    console.print(f"vxrelay v{__version__}")


if __name__ == "__main__":
    app()
