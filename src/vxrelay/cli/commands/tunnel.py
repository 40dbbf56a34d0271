"""Tunnel management commands."""

from typing import Annotated

import typer

from vxrelay.cli import client
from vxrelay.cli import config as cli_config
from vxrelay.cli.formatters import (
    format_connectivity,
    format_tunnel_detail,
    format_tunnel_table,
)
from vxrelay.cli.output import (
    console,
    print_error,
    print_json,
    print_success,
    print_warning,
)

app = typer.Typer(help="Tunnel management commands")


def resolve_tunnel_id(prefix: str) -> str:
    """Expand a unique id prefix (as shown in tables) to the full id."""
    tunnels = client.get_tunnels()
    matches = [t["id"] for t in tunnels if t["id"].startswith(prefix)]
    if len(matches) == 1:
        return matches[0]
    if not matches:
        by_name = [t["id"] for t in tunnels if t["name"] == prefix]
        if len(by_name) == 1:
            return by_name[0]
        print_error(f"No tunnel matches '{prefix}'.")
    else:
        print_error(f"'{prefix}' is ambiguous ({len(matches)} tunnels).")
    raise typer.Exit(1)


def _show(tunnel: dict) -> None:
    if cli_config.OUTPUT_FORMAT == "json":
        print_json(tunnel)
    else:
        console.print(format_tunnel_detail(tunnel))


# =============================================================================
# Queries
# =============================================================================


@app.command("list")
def list_tunnels(
    status: Annotated[
        str | None,
        typer.Option("--status", "-s", help="Filter by status"),
    ] = None,
    role: Annotated[
        str | None,
        typer.Option("--role", "-r", help="Filter by role (origin/relay)"),
    ] = None,
):
    """List all tunnels."""
    try:
        tunnels = client.get_tunnels()
        if status:
            tunnels = [t for t in tunnels if t["status"] == status]
        if role:
            tunnels = [t for t in tunnels if t["role"] == role]

        if cli_config.OUTPUT_FORMAT == "json":
            print_json(tunnels)
            return
        if not tunnels:
            console.print("[yellow]No tunnels found.[/yellow]")
            return
        console.print(format_tunnel_table(tunnels))

    except client.APIError as e:
        print_error(str(e))
        raise typer.Exit(1)


@app.command("show")
def show_tunnel(
    tunnel_id: Annotated[str, typer.Argument(help="Tunnel id, id prefix or name")],
):
    """Show details for a tunnel."""
    try:
        _show(client.get_tunnel(resolve_tunnel_id(tunnel_id)))
    except client.APIError as e:
        print_error(str(e))
        raise typer.Exit(1)


# =============================================================================
# Creation / Editing
# =============================================================================


@app.command("create-relay")
def create_relay(
    name: Annotated[str, typer.Option("--name", "-n", help="Tunnel name")],
    relay_address: Annotated[
        str, typer.Option("--relay-address", help="Public IPv4 of this relay")
    ],
    origin_address: Annotated[
        str, typer.Option("--origin-address", help="Public IPv4 of the origin")
    ],
    tunnel_port: Annotated[
        int | None, typer.Option("--tunnel-port", help="VXLAN UDP port")
    ] = None,
    proxy_port: Annotated[
        int | None, typer.Option("--proxy-port", help="SOCKS5 port")
    ] = None,
):
    """Create a relay tunnel and print its connection code."""
    try:
        tunnel = client.create_relay(
            name, relay_address, origin_address, tunnel_port, proxy_port
        )
        print_success(f"Relay tunnel '{tunnel['name']}' created ({tunnel['id']}).")
        _show(tunnel)

        code = client.get_descriptor(tunnel["id"])
        console.print("\n[bold]Connection code for the origin host:[/bold]")
        console.print(code, soft_wrap=True)

    except client.APIError as e:
        print_error(str(e))
        raise typer.Exit(1)


@app.command("create-origin")
def create_origin(
    code: Annotated[
        str | None,
        typer.Option("--code", "-c", help="Connection code from the relay"),
    ] = None,
    name: Annotated[
        str | None, typer.Option("--name", "-n", help="Tunnel name")
    ] = None,
    origin_address: Annotated[
        str | None, typer.Option("--origin-address", help="Public IPv4 of this host")
    ] = None,
    relay_address: Annotated[
        str | None, typer.Option("--relay-address", help="Relay public IPv4")
    ] = None,
    vni: Annotated[int | None, typer.Option("--vni", help="VXLAN network id")] = None,
    origin_overlay: Annotated[
        str | None, typer.Option("--origin-overlay", help="Origin overlay address")
    ] = None,
    relay_overlay: Annotated[
        str | None, typer.Option("--relay-overlay", help="Relay overlay address")
    ] = None,
    tunnel_port: Annotated[
        int | None, typer.Option("--tunnel-port", help="VXLAN UDP port")
    ] = None,
    proxy_port: Annotated[
        int | None, typer.Option("--proxy-port", help="SOCKS5 port")
    ] = None,
):
    """
    Create an origin tunnel.

    Pass --code with the relay's connection code, or every manual option
    (--name, --relay-address, --vni, --origin-overlay, --relay-overlay).
    """
    manual = (relay_address, vni, origin_overlay, relay_overlay)
    if code and any(value is not None for value in manual):
        raise typer.BadParameter("--code cannot be combined with manual parameters.")

    try:
        tunnel = client.create_origin(
            code=code,
            name=name,
            origin_address=origin_address,
            relay_address=relay_address,
            vni=vni,
            origin_overlay_address=origin_overlay,
            relay_overlay_address=relay_overlay,
            tunnel_port=tunnel_port,
            proxy_port=proxy_port,
        )
        print_success(f"Origin tunnel '{tunnel['name']}' created ({tunnel['id']}).")
        _show(tunnel)

    except client.APIError as e:
        print_error(str(e))
        raise typer.Exit(1)


@app.command("edit")
def edit_tunnel(
    tunnel_id: Annotated[str, typer.Argument(help="Tunnel id, id prefix or name")],
    name: Annotated[str | None, typer.Option("--name", "-n", help="New name")] = None,
    origin_address: Annotated[
        str | None, typer.Option("--origin-address", help="Origin public IPv4")
    ] = None,
    relay_address: Annotated[
        str | None, typer.Option("--relay-address", help="Relay public IPv4")
    ] = None,
    tunnel_port: Annotated[
        int | None, typer.Option("--tunnel-port", help="VXLAN UDP port")
    ] = None,
    proxy_port: Annotated[
        int | None, typer.Option("--proxy-port", help="SOCKS5 port")
    ] = None,
):
    """Edit a tunnel. Active tunnels apply changes on their next restart."""
    changes = {
        "name": name,
        "origin_address": origin_address,
        "relay_address": relay_address,
        "tunnel_port": tunnel_port,
        "proxy_port": proxy_port,
    }
    if all(value is None for value in changes.values()):
        print_warning("Nothing to change.")
        return

    try:
        tunnel = client.update_tunnel(resolve_tunnel_id(tunnel_id), **changes)
        print_success(f"Tunnel '{tunnel['name']}' updated.")
        if tunnel["status"] == "active":
            print_warning("Tunnel is active; restart it to apply the changes.")

    except client.APIError as e:
        print_error(str(e))
        raise typer.Exit(1)


@app.command("descriptor")
def show_descriptor(
    tunnel_id: Annotated[str, typer.Argument(help="Relay tunnel id, prefix or name")],
):
    """Print the connection code of a relay tunnel."""
    try:
        code = client.get_descriptor(resolve_tunnel_id(tunnel_id))
        console.print(code, soft_wrap=True)
    except client.APIError as e:
        print_error(str(e))
        raise typer.Exit(1)


# =============================================================================
# Lifecycle
# =============================================================================


def _lifecycle(tunnel_id: str, action: str, past: str) -> None:
    try:
        tunnel = client.tunnel_action(resolve_tunnel_id(tunnel_id), action)
        print_success(f"Tunnel '{tunnel['name']}' {past}.")
    except client.APIError as e:
        print_error(str(e))
        raise typer.Exit(1)


@app.command("start")
def start_tunnel(
    tunnel_id: Annotated[str, typer.Argument(help="Tunnel id, id prefix or name")],
):
    """Bring a tunnel up."""
    _lifecycle(tunnel_id, "start", "started")


@app.command("stop")
def stop_tunnel(
    tunnel_id: Annotated[str, typer.Argument(help="Tunnel id, id prefix or name")],
):
    """Take a tunnel down."""
    _lifecycle(tunnel_id, "stop", "stopped")


@app.command("restart")
def restart_tunnel(
    tunnel_id: Annotated[str, typer.Argument(help="Tunnel id, id prefix or name")],
):
    """Stop and start a tunnel."""
    _lifecycle(tunnel_id, "restart", "restarted")


@app.command("delete")
def delete_tunnel(
    tunnel_id: Annotated[str, typer.Argument(help="Tunnel id, id prefix or name")],
    yes: Annotated[
        bool, typer.Option("--yes", "-y", help="Skip the confirmation prompt")
    ] = False,
):
    """Delete a tunnel, stopping it first when active."""
    try:
        full_id = resolve_tunnel_id(tunnel_id)
        if not yes and not typer.confirm(f"Delete tunnel {full_id}?"):
            raise typer.Abort()
        client.delete_tunnel(full_id)
        print_success(f"Tunnel {full_id} deleted.")
    except client.APIError as e:
        print_error(str(e))
        raise typer.Exit(1)


@app.command("test")
def test_tunnel(
    tunnel_id: Annotated[str, typer.Argument(help="Origin tunnel id, prefix or name")],
):
    """Check that traffic through the origin's proxy egresses at the relay."""
    try:
        result = client.tunnel_action(resolve_tunnel_id(tunnel_id), "test")
        if cli_config.OUTPUT_FORMAT == "json":
            print_json(result)
        else:
            console.print(format_connectivity(result))
        if not result["success"]:
            raise typer.Exit(1)
    except client.APIError as e:
        print_error(str(e))
        raise typer.Exit(1)
