"""
Fleet-wide operations and diagnostics.

Batch operations iterate tunnels one by one and collect a result per tunnel;
a single failure never aborts the batch.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field

import httpx

from vxrelay.errors import TunnelError, TunnelNotFoundError, TunnelValidationError
from vxrelay.models.enums import TunnelRole, TunnelStatus
from vxrelay.orchestrator.lifecycle import TunnelOrchestrator
from vxrelay.utils.logger import format_traceback, get_logger

logger = get_logger(__name__)


# =============================================================================
# Reports
# =============================================================================


@dataclass
class BatchItem:
    tunnel_id: str
    ok: bool
    detail: str = ""
    name: str = ""


@dataclass
class BatchReport:
    """Per-tunnel outcome of a fleet operation."""

    operation: str
    items: list[BatchItem] = field(default_factory=list)

    def add(self, tunnel_id: str, ok: bool, detail: str = "", name: str = "") -> None:
        self.items.append(BatchItem(tunnel_id, ok, detail, name))

    @property
    def succeeded(self) -> list[BatchItem]:
        return [item for item in self.items if item.ok]

    @property
    def failed(self) -> list[BatchItem]:
        return [item for item in self.items if not item.ok]

    def to_dict(self) -> dict:
        return {
            "operation": self.operation,
            "succeeded": len(self.succeeded),
            "failed": len(self.failed),
            "items": [
                {
                    "tunnel_id": item.tunnel_id,
                    "name": item.name,
                    "ok": item.ok,
                    "detail": item.detail,
                }
                for item in self.items
            ],
        }


@dataclass
class ConnectivityResult:
    """Verdict of a request sent through an origin's SOCKS5 listener."""

    tunnel_id: str
    success: bool
    expected_ip: str
    egress_ip: str | None = None
    latency_ms: float | None = None
    error: str | None = None

    @property
    def matches(self) -> bool:
        return self.egress_ip == self.expected_ip

    def to_dict(self) -> dict:
        return {
            "tunnel_id": self.tunnel_id,
            "success": self.success,
            "expected_ip": self.expected_ip,
            "egress_ip": self.egress_ip,
            "matches": self.matches,
            "latency_ms": self.latency_ms,
            "error": self.error,
        }


# =============================================================================
# Fleet Manager
# =============================================================================


class FleetManager:
    """Cross-tunnel operations built on the orchestrator's collaborators."""

    def __init__(
        self,
        orchestrator: TunnelOrchestrator,
        test_url: str = "http://httpbin.org/ip",
        test_timeout: float = 10.0,
    ):
        self.orchestrator = orchestrator
        self.test_url = test_url
        self.test_timeout = test_timeout

        # Last (rx+tx bytes, monotonic time) per tunnel, for bandwidth deltas
        self._traffic_samples: dict[str, tuple[int, float]] = {}

    @property
    def services(self):
        return self.orchestrator.services

    @property
    def provisioner(self):
        return self.orchestrator.provisioner

    # =========================================================================
    # Services
    # =========================================================================

    async def list_services(self) -> list[dict]:
        """Every deployed proxy service with its status and owning tunnel."""
        tunnels = {t.id: t for t in await self.orchestrator.list()}
        service_ids = await asyncio.to_thread(self.services.list_services)

        services = []
        for tunnel_id in service_ids:
            status = await asyncio.to_thread(self.services.status, tunnel_id)
            tunnel = tunnels.get(tunnel_id)
            services.append(
                {
                    **status.to_dict(),
                    "name": tunnel.name if tunnel else None,
                    "role": tunnel.role.value if tunnel else None,
                    "orphaned": tunnel is None,
                }
            )
        return services

    async def cleanup_orphans(self) -> BatchReport:
        """
        Remove proxy services whose tunnel id is not in the registry.

        Only ids that are provably absent from the registry are touched.
        """
        report = BatchReport("cleanup_orphans")
        service_ids = await asyncio.to_thread(self.services.list_services)
        registered = await asyncio.to_thread(self.orchestrator.registry.ids)

        for tunnel_id in service_ids:
            if tunnel_id in registered:
                continue
            try:
                await asyncio.to_thread(self.services.remove, tunnel_id)
                report.add(tunnel_id, True, "removed orphaned service")
                logger.info(f"Removed orphaned proxy service {tunnel_id}")
            except Exception as e:
                report.add(tunnel_id, False, str(e) or type(e).__name__)
                logger.warning(f"Failed to remove orphaned service {tunnel_id}: {e}")
        return report

    async def restart_all(self) -> BatchReport:
        """Restart every tunnel that is active or failed; inactive ones are skipped."""
        report = BatchReport("restart_all")
        for tunnel in await self.orchestrator.list():
            if tunnel.status == TunnelStatus.INACTIVE:
                continue
            try:
                await self.orchestrator.restart(tunnel.id)
                report.add(tunnel.id, True, "restarted", tunnel.name)
            except Exception as e:
                detail = str(e) or type(e).__name__
                report.add(tunnel.id, False, detail, tunnel.name)
                logger.warning(f"Restart of tunnel {tunnel.id} failed: {detail}")
                if not isinstance(e, TunnelError):
                    logger.debug(format_traceback(e))
        logger.info(
            f"Restart-all: {len(report.succeeded)} restarted, "
            f"{len(report.failed)} failed"
        )
        return report

    async def health_check_all(self) -> BatchReport:
        """
        Reconcile active tunnels with host state.

        An active tunnel whose interface is gone or down, or whose proxy is not
        running, becomes ``error``. Healthy tunnels get fresh counters.
        """
        report = BatchReport("health_check")
        for tunnel in await self.orchestrator.list():
            if tunnel.status != TunnelStatus.ACTIVE:
                report.add(tunnel.id, True, tunnel.status.value, tunnel.name)
                continue
            try:
                await self._check_one(tunnel, report)
            except TunnelNotFoundError:
                self._traffic_samples.pop(tunnel.id, None)
                report.add(tunnel.id, True, "deleted during check", tunnel.name)
            except Exception as e:
                detail = f"health check failed: {str(e) or type(e).__name__}"
                logger.warning(f"Health check of tunnel {tunnel.id}: {detail}")
                if not isinstance(e, TunnelError):
                    logger.debug(format_traceback(e))
                report.add(tunnel.id, False, detail, tunnel.name)
        return report

    async def _check_one(self, tunnel, report: BatchReport) -> None:
        try:
            problem = await self._check_tunnel(tunnel)
        except TunnelNotFoundError:
            raise
        except (TunnelError, OSError) as e:
            problem = f"health check failed: {e}"

        if problem:
            await self.orchestrator.mark_unhealthy(tunnel.id, f"health: {problem}")
            report.add(tunnel.id, False, problem, tunnel.name)
        else:
            report.add(tunnel.id, True, "healthy", tunnel.name)

    async def _check_tunnel(self, tunnel) -> str | None:
        overlay = await asyncio.to_thread(self.provisioner.overlay_status, tunnel.vni)
        if not overlay.exists:
            self._traffic_samples.pop(tunnel.id, None)
            return f"interface {overlay.interface} missing"
        if not overlay.is_up:
            return f"interface {overlay.interface} is down"

        status = await asyncio.to_thread(self.services.status, tunnel.id)
        if not status.running:
            return f"proxy not running ({status.detail})"

        connections = await asyncio.to_thread(
            self.services.connection_count, tunnel.id
        )
        bandwidth = self._bandwidth(tunnel.id, overlay.rx_bytes + overlay.tx_bytes)
        await self.orchestrator.record_counters(tunnel.id, connections, bandwidth)
        return None

    def _bandwidth(self, tunnel_id: str, total_bytes: int) -> float | None:
        now = time.monotonic()
        previous = self._traffic_samples.get(tunnel_id)
        self._traffic_samples[tunnel_id] = (total_bytes, now)
        if previous is None:
            return None
        last_bytes, last_time = previous
        elapsed = now - last_time
        if elapsed <= 0 or total_bytes < last_bytes:
            return None
        return (total_bytes - last_bytes) / elapsed

    # =========================================================================
    # Diagnostics
    # =========================================================================

    async def test_connectivity(self, tunnel_id: str) -> ConnectivityResult:
        """
        Send a request through an active origin's SOCKS5 listener.

        The observed egress address is compared with the relay address.

        Raises:
            TunnelValidationError: Not an origin tunnel, or not active.
        """
        tunnel = await self.orchestrator.get(tunnel_id)
        if tunnel.role != TunnelRole.ORIGIN:
            raise TunnelValidationError("Connectivity tests run on origin tunnels only")
        if tunnel.status != TunnelStatus.ACTIVE:
            raise TunnelValidationError(
                f"Tunnel {tunnel_id} must be active to test it "
                f"(currently {tunnel.status.value})"
            )

        proxy_host = tunnel.origin_address or "127.0.0.1"
        proxy_url = f"socks5://{proxy_host}:{tunnel.proxy_port}"
        result = ConnectivityResult(
            tunnel_id=tunnel_id, success=False, expected_ip=tunnel.relay_address
        )

        started = time.perf_counter()
        try:
            async with httpx.AsyncClient(
                proxy=proxy_url, timeout=self.test_timeout
            ) as client:
                response = await client.get(self.test_url)
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPError as e:
            result.error = f"{type(e).__name__}: {e}"
            logger.warning(f"Connectivity test of {tunnel_id} failed: {result.error}")
            return result
        except ValueError as e:
            result.error = f"Unexpected response from {self.test_url}: {e}"
            return result

        result.latency_ms = round((time.perf_counter() - started) * 1000, 1)
        origin = payload.get("origin", "") if isinstance(payload, dict) else ""
        result.egress_ip = origin.split(",")[0].strip() or None
        result.success = result.matches
        if not result.matches:
            result.error = (
                f"Egress address {result.egress_ip} does not match relay "
                f"{result.expected_ip}"
            )
        logger.info(
            f"Connectivity test of {tunnel_id}: egress={result.egress_ip}, "
            f"match={result.matches}, {result.latency_ms} ms"
        )
        return result

    async def resource_usage(self) -> list[dict]:
        """CPU/memory/connections of every deployed proxy daemon."""
        service_ids = await asyncio.to_thread(self.services.list_services)
        usage = []
        for tunnel_id in service_ids:
            snapshot = await asyncio.to_thread(self.services.resource_usage, tunnel_id)
            usage.append(snapshot.to_dict())
        return usage

    async def fetch_logs(self, tunnel_id: str, lines: int = 50) -> str:
        """Tail of a proxy daemon's log."""
        if not 1 <= lines <= 5000:
            raise TunnelValidationError("lines must be between 1 and 5000")
        return await asyncio.to_thread(self.services.read_logs, tunnel_id, lines)
