"""Rich tables and panels for tunnel and service data."""

from rich.panel import Panel
from rich.table import Table

from vxrelay.cli.output import format_bytes, format_status


def _short_id(tunnel_id: str) -> str:
    return tunnel_id[:8]


def _timestamp(value: str | None) -> str:
    return value[:19].replace("T", " ") if value else "-"


# =============================================================================
# Tunnels
# =============================================================================


def format_tunnel_table(tunnels: list[dict]) -> Table:
    table = Table(title="Tunnels")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Role")
    table.add_column("Status")
    table.add_column("VNI", justify="right")
    table.add_column("Overlay")
    table.add_column("Relay")
    table.add_column("Origin")
    table.add_column("Proxy", justify="right")
    table.add_column("Conns", justify="right")

    for t in tunnels:
        table.add_row(
            _short_id(t["id"]),
            t["name"],
            t["role"],
            format_status(t["status"]),
            str(t["vni"]),
            t["overlay_subnet"],
            t["relay_address"],
            t.get("origin_address") or "-",
            str(t["proxy_port"]),
            str(t.get("connection_count", 0)),
        )
    return table


def format_tunnel_detail(tunnel: dict) -> Panel:
    lines = [
        f"ID: [cyan]{tunnel['id']}[/cyan]",
        f"Role: {tunnel['role']}",
        f"Status: {format_status(tunnel['status'])}",
        f"Relay address: {tunnel['relay_address']}",
        f"Origin address: {tunnel.get('origin_address') or '-'}",
        f"VXLAN: VNI {tunnel['vni']}, UDP port {tunnel['tunnel_port']}",
        f"Overlay: relay {tunnel['relay_overlay_address']}, "
        f"origin {tunnel['origin_overlay_address']} ({tunnel['overlay_subnet']})",
        f"Proxy port: {tunnel['proxy_port']}",
        f"Connections: {tunnel.get('connection_count', 0)}",
        f"Bandwidth: {format_bytes(tunnel.get('bandwidth_usage'))}/s",
        f"Created: {_timestamp(tunnel.get('created_at'))}",
        f"Last active: {_timestamp(tunnel.get('last_active_at'))}",
    ]
    if tunnel.get("error_message"):
        lines.append(f"Error: [red]{tunnel['error_message']}[/red]")
    return Panel("\n".join(lines), title=tunnel["name"], border_style="blue")


def format_connectivity(result: dict) -> Panel:
    if result["success"]:
        body = (
            f"Egress: [green]{result['egress_ip']}[/green] "
            f"(matches relay {result['expected_ip']})\n"
            f"Latency: {result['latency_ms']} ms"
        )
        style = "green"
    else:
        body = (
            f"Expected egress: {result['expected_ip']}\n"
            f"Observed egress: {result.get('egress_ip') or '-'}\n"
            f"Error: [red]{result.get('error') or 'unknown'}[/red]"
        )
        style = "red"
    return Panel(body, title="Connectivity test", border_style=style)


# =============================================================================
# Services
# =============================================================================


def format_service_table(services: list[dict]) -> Table:
    table = Table(title="Proxy Services")
    table.add_column("Tunnel", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Role")
    table.add_column("Running")
    table.add_column("PID", justify="right")
    table.add_column("Detail")

    for s in services:
        name = s.get("name") or "[yellow]orphaned[/yellow]"
        running = "[green]yes[/green]" if s["running"] else "[red]no[/red]"
        table.add_row(
            _short_id(s["tunnel_id"]),
            name,
            s.get("role") or "-",
            running,
            str(s.get("pid") or "-"),
            s.get("detail", ""),
        )
    return table


def format_batch_report(report: dict) -> Table:
    title = (
        f"{report['operation']}: {report['succeeded']} ok, {report['failed']} failed"
    )
    table = Table(title=title)
    table.add_column("Tunnel", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Result")
    table.add_column("Detail")

    for item in report["items"]:
        result = "[green]ok[/green]" if item["ok"] else "[red]failed[/red]"
        table.add_row(
            _short_id(item["tunnel_id"]), item.get("name", ""), result, item["detail"]
        )
    return table


def format_usage_table(usage: list[dict]) -> Table:
    table = Table(title="Proxy Resource Usage")
    table.add_column("Tunnel", style="cyan", no_wrap=True)
    table.add_column("PID", justify="right")
    table.add_column("CPU %", justify="right")
    table.add_column("Memory", justify="right")
    table.add_column("Conns", justify="right")

    for u in usage:
        table.add_row(
            _short_id(u["tunnel_id"]),
            str(u.get("pid") or "-"),
            f"{u.get('cpu_percent', 0.0):.1f}",
            format_bytes(u.get("memory_rss")),
            str(u.get("connections", 0)),
        )
    return table
