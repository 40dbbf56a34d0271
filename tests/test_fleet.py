"""Tests for fleet-wide operations and diagnostics."""

import httpx
import pytest

from vxrelay.errors import TunnelNotFoundError, TunnelValidationError
from vxrelay.models.enums import TunnelStatus
from vxrelay.orchestrator import fleet as fleet_module
from vxrelay.orchestrator.fleet import FleetManager


@pytest.fixture
def fleet(orchestrator):
    return FleetManager(orchestrator, test_url="http://check.invalid/ip")


async def _origin(orchestrator, vni=10042):
    block = (vni // 100) % 255
    offset = vni % 100 + 1
    return await orchestrator.create_origin_manual(
        name=f"origin-{vni}",
        relay_address="5.6.7.8",
        vni=vni,
        origin_overlay_address=f"10.100.{block}.{offset + 1}",
        relay_overlay_address=f"10.100.{block}.{offset}",
        origin_address="1.2.3.4",
    )


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            request = httpx.Request("GET", "http://check.invalid/ip")
            raise httpx.HTTPStatusError(
                "bad status", request=request, response=httpx.Response(503)
            )

    def json(self):
        return self._payload


class FakeAsyncClient:
    """Stands in for httpx.AsyncClient; records the proxy it was given."""

    instances: list["FakeAsyncClient"] = []
    response: FakeResponse | None = None
    error: Exception | None = None

    def __init__(self, proxy=None, timeout=None):
        self.proxy = proxy
        self.timeout = timeout
        self.urls = []
        FakeAsyncClient.instances.append(self)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def get(self, url):
        self.urls.append(url)
        if FakeAsyncClient.error is not None:
            raise FakeAsyncClient.error
        return FakeAsyncClient.response


@pytest.fixture
def fake_http(monkeypatch):
    FakeAsyncClient.instances = []
    FakeAsyncClient.response = None
    FakeAsyncClient.error = None
    monkeypatch.setattr(fleet_module.httpx, "AsyncClient", FakeAsyncClient)
    return FakeAsyncClient


# =============================================================================
# Services
# =============================================================================


class TestServices:
    @pytest.mark.asyncio
    async def test_cleanup_removes_only_orphans(self, orchestrator, fleet, services):
        tunnel = await _origin(orchestrator)
        await orchestrator.start(tunnel.id)
        services.deployed["deadbeef"] = {}

        report = await fleet.cleanup_orphans()

        assert [item.tunnel_id for item in report.succeeded] == ["deadbeef"]
        assert "deadbeef" not in services.deployed
        assert tunnel.id in services.deployed

    @pytest.mark.asyncio
    async def test_list_flags_orphans(self, orchestrator, fleet, services):
        tunnel = await _origin(orchestrator)
        await orchestrator.start(tunnel.id)
        services.deployed["deadbeef"] = {}

        listed = {s["tunnel_id"]: s for s in await fleet.list_services()}

        assert listed[tunnel.id]["orphaned"] is False
        assert listed[tunnel.id]["running"] is True
        assert listed[tunnel.id]["name"] == tunnel.name
        assert listed["deadbeef"]["orphaned"] is True

    @pytest.mark.asyncio
    async def test_restart_all_skips_inactive(self, orchestrator, fleet, call_log):
        active = await _origin(orchestrator, 10042)
        idle = await _origin(orchestrator, 20042)
        await orchestrator.start(active.id)
        call_log.clear()

        report = await fleet.restart_all()

        assert [item.tunnel_id for item in report.items] == [active.id]
        assert report.failed == []
        assert (await orchestrator.get(idle.id)).status == TunnelStatus.INACTIVE

    @pytest.mark.asyncio
    async def test_restart_all_collects_failures(
        self, orchestrator, fleet, provisioner
    ):
        first = await _origin(orchestrator, 10042)
        second = await _origin(orchestrator, 20042)
        await orchestrator.start(first.id)
        await orchestrator.start(second.id)
        provisioner.failures["setup_client_route"] = RuntimeError("route table full")

        report = await fleet.restart_all()

        assert len(report.failed) == 2
        assert report.to_dict()["failed"] == 2

    @pytest.mark.asyncio
    async def test_restart_all_survives_unexpected_errors(
        self, orchestrator, fleet, monkeypatch
    ):
        first = await _origin(orchestrator, 10042)
        second = await _origin(orchestrator, 20042)
        await orchestrator.start(first.id)
        await orchestrator.start(second.id)
        restart = orchestrator.restart

        async def flaky_restart(tunnel_id):
            if tunnel_id == first.id:
                raise RuntimeError("database is locked")
            return await restart(tunnel_id)

        monkeypatch.setattr(orchestrator, "restart", flaky_restart)

        report = await fleet.restart_all()

        items = {item.tunnel_id: item for item in report.items}
        assert (items[first.id].ok, items[second.id].ok) == (False, True)
        assert items[first.id].detail == "database is locked"

    @pytest.mark.asyncio
    async def test_restart_all_after_teardown_os_error(
        self, orchestrator, fleet, provisioner
    ):
        tunnel = await _origin(orchestrator)
        await orchestrator.start(tunnel.id)
        provisioner.failures["destroy_overlay"] = OSError("netlink socket closed")

        report = await fleet.restart_all()

        assert report.failed == []
        assert (await orchestrator.get(tunnel.id)).status == TunnelStatus.ACTIVE


# =============================================================================
# Health
# =============================================================================


class TestHealthCheck:
    @pytest.mark.asyncio
    async def test_missing_interface_marks_error(
        self, orchestrator, fleet, provisioner
    ):
        tunnel = await _origin(orchestrator)
        await orchestrator.start(tunnel.id)
        provisioner.interfaces.clear()

        report = await fleet.health_check_all()

        assert len(report.failed) == 1
        record = await orchestrator.get(tunnel.id)
        assert record.status == TunnelStatus.ERROR
        assert "missing" in record.error_message

    @pytest.mark.asyncio
    async def test_dead_proxy_marks_error(self, orchestrator, fleet, services):
        tunnel = await _origin(orchestrator)
        await orchestrator.start(tunnel.id)
        services.running.clear()

        await fleet.health_check_all()

        record = await orchestrator.get(tunnel.id)
        assert record.status == TunnelStatus.ERROR
        assert record.error_message.startswith("health: proxy not running")

    @pytest.mark.asyncio
    async def test_healthy_tunnel_gets_counters(
        self, orchestrator, fleet, provisioner, services
    ):
        tunnel = await _origin(orchestrator)
        await orchestrator.start(tunnel.id)
        services.connections[tunnel.id] = 3

        await fleet.health_check_all()
        provisioner.interfaces[tunnel.vni]["rx"] = 10_000
        report = await fleet.health_check_all()

        assert report.failed == []
        record = await orchestrator.get(tunnel.id)
        assert record.status == TunnelStatus.ACTIVE
        assert record.connection_count == 3
        assert record.bandwidth_usage > 0

    @pytest.mark.asyncio
    async def test_inactive_tunnels_are_left_alone(
        self, orchestrator, fleet, call_log
    ):
        tunnel = await _origin(orchestrator)

        report = await fleet.health_check_all()

        assert report.items[0].ok
        assert (await orchestrator.get(tunnel.id)).status == TunnelStatus.INACTIVE

    @pytest.mark.asyncio
    async def test_tunnel_deleted_mid_check(
        self, orchestrator, fleet, provisioner, monkeypatch
    ):
        gone = await _origin(orchestrator, 10042)
        kept = await _origin(orchestrator, 20042)
        await orchestrator.start(gone.id)
        await orchestrator.start(kept.id)
        provisioner.interfaces.pop(gone.vni)

        async def deleted(tunnel_id, message):
            raise TunnelNotFoundError(tunnel_id)

        monkeypatch.setattr(orchestrator, "mark_unhealthy", deleted)

        report = await fleet.health_check_all()

        items = {item.tunnel_id: item for item in report.items}
        assert set(items) == {gone.id, kept.id}
        assert report.failed == []
        assert items[gone.id].detail == "deleted during check"

    @pytest.mark.asyncio
    async def test_unexpected_check_error_is_reported(
        self, orchestrator, fleet, monkeypatch
    ):
        first = await _origin(orchestrator, 10042)
        second = await _origin(orchestrator, 20042)
        await orchestrator.start(first.id)
        await orchestrator.start(second.id)
        record_counters = orchestrator.record_counters

        async def flaky_counters(tunnel_id, *args):
            if tunnel_id == first.id:
                raise RuntimeError("database is locked")
            return await record_counters(tunnel_id, *args)

        monkeypatch.setattr(orchestrator, "record_counters", flaky_counters)

        report = await fleet.health_check_all()

        items = {item.tunnel_id: item for item in report.items}
        assert (items[first.id].ok, items[second.id].ok) == (False, True)
        assert "database is locked" in items[first.id].detail
        assert (await orchestrator.get(first.id)).status == TunnelStatus.ACTIVE


# =============================================================================
# Diagnostics
# =============================================================================


class TestConnectivity:
    @pytest.mark.asyncio
    async def test_egress_matches_relay(self, orchestrator, fleet, fake_http):
        tunnel = await _origin(orchestrator)
        await orchestrator.start(tunnel.id)
        fake_http.response = FakeResponse({"origin": "5.6.7.8"})

        result = await fleet.test_connectivity(tunnel.id)

        assert result.success
        assert result.egress_ip == "5.6.7.8"
        assert result.latency_ms is not None
        assert fake_http.instances[0].proxy == "socks5://1.2.3.4:1080"
        assert fake_http.instances[0].urls == ["http://check.invalid/ip"]

    @pytest.mark.asyncio
    async def test_egress_mismatch(self, orchestrator, fleet, fake_http):
        tunnel = await _origin(orchestrator)
        await orchestrator.start(tunnel.id)
        fake_http.response = FakeResponse({"origin": "1.2.3.4"})

        result = await fleet.test_connectivity(tunnel.id)

        assert not result.success
        assert result.to_dict()["matches"] is False
        assert "does not match" in result.error

    @pytest.mark.asyncio
    async def test_proxy_error_is_reported(self, orchestrator, fleet, fake_http):
        tunnel = await _origin(orchestrator)
        await orchestrator.start(tunnel.id)
        fake_http.error = httpx.ConnectError("connection refused")

        result = await fleet.test_connectivity(tunnel.id)

        assert not result.success
        assert "ConnectError" in result.error

    @pytest.mark.asyncio
    async def test_requires_active_origin(self, orchestrator, fleet, fake_http):
        origin = await _origin(orchestrator)
        relay = await orchestrator.create_relay("r", "5.6.7.8", "1.2.3.4")

        with pytest.raises(TunnelValidationError):
            await fleet.test_connectivity(origin.id)
        await orchestrator.start(relay.id)
        with pytest.raises(TunnelValidationError):
            await fleet.test_connectivity(relay.id)
        assert fake_http.instances == []


class TestLogs:
    @pytest.mark.asyncio
    async def test_tail(self, fleet, services):
        services.logs["abc"] = "one\ntwo\nthree\n"

        assert await fleet.fetch_logs("abc", lines=2) == "two\nthree\n"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("lines", [0, 5001])
    async def test_line_bounds(self, fleet, lines):
        with pytest.raises(TunnelValidationError):
            await fleet.fetch_logs("abc", lines=lines)
