"""Tests for the tunnel lifecycle orchestrator."""

import asyncio

import pytest

from conftest import CallLog, FakeProvisioner, FakeServiceManager

from vxrelay.core.allocator import VniAllocator
from vxrelay.core.registry import TunnelRegistry
from vxrelay.db.base import initialize_database
from vxrelay.errors import (
    AlreadyInStateError,
    PlatformUnsupportedError,
    PrivilegeRequiredError,
    ProvisioningFailure,
    ServiceStartFailure,
    TeardownFailure,
    TunnelNotFoundError,
    TunnelValidationError,
)
from vxrelay.models.descriptor import TransferDescriptor
from vxrelay.models.enums import TunnelRole, TunnelStatus
from vxrelay.orchestrator.lifecycle import TunnelOrchestrator


async def _relay(orchestrator, name="edge"):
    return await orchestrator.create_relay(
        name=name, relay_address="5.6.7.8", origin_address="1.2.3.4"
    )


# =============================================================================
# Creation
# =============================================================================


class TestCreateRelay:
    @pytest.mark.asyncio
    async def test_allocates_vni_and_overlay_pair(self, orchestrator):
        tunnel = await _relay(orchestrator)

        assert tunnel.role == TunnelRole.RELAY
        assert tunnel.status == TunnelStatus.INACTIVE
        assert 10000 <= tunnel.vni <= 99999
        assert tunnel.tunnel_port == 4789
        assert tunnel.proxy_port == 1080

        relay, origin = VniAllocator().overlay.derive_pair(tunnel.vni)
        assert tunnel.relay_overlay_address == relay
        assert tunnel.origin_overlay_address == origin
        assert tunnel.overlay_subnet.endswith(".0/24")

    @pytest.mark.asyncio
    async def test_creation_makes_no_provisioner_calls(self, orchestrator, call_log):
        await _relay(orchestrator)
        assert call_log.calls == []

    @pytest.mark.asyncio
    async def test_two_relays_get_distinct_resources(self, orchestrator):
        first = await _relay(orchestrator, "a")
        second = await _relay(orchestrator, "b")

        assert first.vni != second.vni
        assert first.overlay_subnet != second.overlay_subnet

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "relay_address,origin_address",
        [("not-an-ip", "1.2.3.4"), ("5.6.7.8", ""), ("5.6.7.8", "5.6.7.8")],
    )
    async def test_rejects_bad_addresses(
        self, orchestrator, relay_address, origin_address
    ):
        with pytest.raises(TunnelValidationError):
            await orchestrator.create_relay("x", relay_address, origin_address)
        assert await orchestrator.list() == []

    @pytest.mark.asyncio
    async def test_rejects_bad_port(self, orchestrator):
        with pytest.raises(TunnelValidationError):
            await orchestrator.create_relay(
                "x", "5.6.7.8", "1.2.3.4", proxy_port=70000
            )


class TestCreateOrigin:
    def test_descriptor_materializes_origin_on_another_host(self, tmp_path):
        """A relay's code rebuilds the same tunnel parameters in a new registry."""
        initialize_database(str(tmp_path / "relay.db"))
        relay_side = TunnelOrchestrator(
            TunnelRegistry(),
            FakeProvisioner(CallLog()),
            FakeServiceManager(CallLog()),
            settle_delay=0,
        )

        async def relay_flow():
            tunnel = await _relay(relay_side)
            return tunnel, await relay_side.transfer_descriptor(tunnel.id)

        relay, code = asyncio.run(relay_flow())

        initialize_database(str(tmp_path / "origin.db"))
        origin_side = TunnelOrchestrator(
            TunnelRegistry(),
            FakeProvisioner(CallLog()),
            FakeServiceManager(CallLog()),
            settle_delay=0,
        )
        origin = asyncio.run(origin_side.create_origin_from_descriptor(code))

        assert origin.role == TunnelRole.ORIGIN
        assert origin.id != relay.id
        assert origin.name == relay.name
        assert origin.vni == relay.vni
        assert origin.relay_address == "5.6.7.8"
        assert origin.origin_address == "1.2.3.4"
        assert origin.origin_overlay_address == relay.origin_overlay_address
        assert origin.relay_overlay_address == relay.relay_overlay_address
        assert origin.overlay_subnet == relay.overlay_subnet
        assert origin.status == TunnelStatus.INACTIVE

    @pytest.mark.asyncio
    async def test_bad_code_writes_nothing(self, orchestrator):
        with pytest.raises(TunnelValidationError):
            await orchestrator.create_origin_from_descriptor("%%% not base64 %%%")
        assert await orchestrator.list() == []

    @pytest.mark.asyncio
    async def test_manual_parameters(self, orchestrator):
        tunnel = await orchestrator.create_origin_manual(
            name="manual",
            relay_address="5.6.7.8",
            vni=10042,
            origin_overlay_address="10.100.100.44",
            relay_overlay_address="10.100.100.43",
        )
        assert tunnel.vni == 10042
        assert tunnel.overlay_subnet == "10.100.100.0/24"
        assert tunnel.origin_address == ""

    @pytest.mark.asyncio
    async def test_manual_pair_must_share_a_block(self, orchestrator):
        with pytest.raises(TunnelValidationError):
            await orchestrator.create_origin_manual(
                name="manual",
                relay_address="5.6.7.8",
                vni=10042,
                origin_overlay_address="10.100.101.44",
                relay_overlay_address="10.100.100.43",
            )


# =============================================================================
# Start
# =============================================================================


class TestStart:
    @pytest.mark.asyncio
    async def test_relay_start_sequence(self, orchestrator, call_log, services):
        tunnel = await _relay(orchestrator)

        started = await orchestrator.start(tunnel.id)

        assert started.status == TunnelStatus.ACTIVE
        assert started.error_message is None
        assert call_log.names() == ["create_overlay", "deploy", "start", "setup_nat"]
        assert call_log.calls[0] == (
            "create_overlay",
            tunnel.vni,
            "5.6.7.8",
            "1.2.3.4",
            4789,
        )
        assert call_log.calls[3] == ("setup_nat", tunnel.relay_overlay_address)

        inbound = services.deployed[tunnel.id]["inbounds"][0]
        assert inbound["listen"] == tunnel.relay_overlay_address
        assert inbound["port"] == 1080

    @pytest.mark.asyncio
    async def test_origin_start_routes_to_relay(self, orchestrator, call_log):
        tunnel = await orchestrator.create_origin_manual(
            name="o",
            relay_address="5.6.7.8",
            vni=10042,
            origin_overlay_address="10.100.100.44",
            relay_overlay_address="10.100.100.43",
            origin_address="1.2.3.4",
        )

        await orchestrator.start(tunnel.id)

        assert call_log.calls[0] == (
            "create_overlay",
            10042,
            "1.2.3.4",
            "5.6.7.8",
            4789,
        )
        assert call_log.calls[-1] == (
            "setup_client_route",
            10042,
            "10.100.100.43",
            1080,
        )

    @pytest.mark.asyncio
    async def test_start_active_tunnel_is_rejected_without_calls(
        self, orchestrator, call_log
    ):
        tunnel = await _relay(orchestrator)
        await orchestrator.start(tunnel.id)
        call_log.clear()

        with pytest.raises(AlreadyInStateError):
            await orchestrator.start(tunnel.id)
        assert call_log.calls == []

    @pytest.mark.asyncio
    async def test_proxy_failure_rolls_back_overlay(
        self, orchestrator, call_log, services, provisioner
    ):
        tunnel = await _relay(orchestrator)
        services.failures["start"] = ServiceStartFailure(
            "unit failed to start", "bind: address already in use"
        )

        with pytest.raises(ServiceStartFailure):
            await orchestrator.start(tunnel.id)

        record = await orchestrator.get(tunnel.id)
        assert record.status == TunnelStatus.ERROR
        assert record.error_message.startswith("proxy_start:")
        assert "address already in use" in record.error_message
        # Undo runs in reverse: proxy stop, then overlay removal
        assert call_log.names()[-2:] == ["stop", "destroy_overlay"]
        assert provisioner.interfaces == {}

    @pytest.mark.asyncio
    async def test_unreachable_relay_fails_origin_start(
        self, orchestrator, provisioner, call_log
    ):
        tunnel = await orchestrator.create_origin_manual(
            name="o",
            relay_address="5.6.7.8",
            vni=10042,
            origin_overlay_address="10.100.100.44",
            relay_overlay_address="10.100.100.43",
        )
        provisioner.failures["setup_client_route"] = ProvisioningFailure(
            "client_route", "10.100.100.43:1080 unreachable"
        )

        with pytest.raises(ProvisioningFailure):
            await orchestrator.start(tunnel.id)

        record = await orchestrator.get(tunnel.id)
        assert record.status == TunnelStatus.ERROR
        assert record.error_message == "client_route: 10.100.100.43:1080 unreachable"
        assert "destroy_overlay" in call_log.names()
        assert provisioner.interfaces == {}

    @pytest.mark.asyncio
    async def test_unexpected_error_is_wrapped_with_step(
        self, orchestrator, provisioner
    ):
        tunnel = await _relay(orchestrator)
        provisioner.failures["setup_nat"] = RuntimeError("boom")

        with pytest.raises(ProvisioningFailure) as excinfo:
            await orchestrator.start(tunnel.id)

        assert excinfo.value.step == "nat"
        record = await orchestrator.get(tunnel.id)
        assert record.error_message == "nat: boom"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            PlatformUnsupportedError("not linux"),
            PrivilegeRequiredError("not root"),
        ],
    )
    async def test_host_rejection_changes_nothing(
        self, orchestrator, provisioner, call_log, error
    ):
        tunnel = await _relay(orchestrator)
        provisioner.host_error = error

        with pytest.raises(type(error)):
            await orchestrator.start(tunnel.id)

        assert call_log.calls == []
        record = await orchestrator.get(tunnel.id)
        assert record.status == TunnelStatus.INACTIVE

    @pytest.mark.asyncio
    async def test_start_recovers_from_error(self, orchestrator, services):
        tunnel = await _relay(orchestrator)
        services.failures["start"] = ServiceStartFailure("down")
        with pytest.raises(ServiceStartFailure):
            await orchestrator.start(tunnel.id)

        del services.failures["start"]
        record = await orchestrator.start(tunnel.id)

        assert record.status == TunnelStatus.ACTIVE
        assert record.error_message is None

    @pytest.mark.asyncio
    async def test_concurrent_starts_run_once(self, orchestrator, call_log):
        tunnel = await _relay(orchestrator)

        results = await asyncio.gather(
            orchestrator.start(tunnel.id),
            orchestrator.start(tunnel.id),
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], AlreadyInStateError)
        assert call_log.names().count("create_overlay") == 1

    @pytest.mark.asyncio
    async def test_unknown_tunnel(self, orchestrator):
        with pytest.raises(TunnelNotFoundError):
            await orchestrator.start("missing")

    @pytest.mark.asyncio
    async def test_unknown_ids_keep_no_locks(self, orchestrator):
        for operation in (orchestrator.start, orchestrator.stop, orchestrator.delete):
            with pytest.raises(TunnelNotFoundError):
                await operation("missing")
        with pytest.raises(TunnelNotFoundError):
            await orchestrator.mark_unhealthy("missing", "health: gone")

        assert orchestrator._locks == {}


# =============================================================================
# Stop / Restart / Delete
# =============================================================================


class TestStop:
    @pytest.mark.asyncio
    async def test_stop_sequence(self, orchestrator, call_log):
        tunnel = await _relay(orchestrator)
        await orchestrator.start(tunnel.id)
        call_log.clear()

        record = await orchestrator.stop(tunnel.id)

        assert record.status == TunnelStatus.INACTIVE
        assert call_log.names() == ["stop", "teardown_nat", "destroy_overlay"]

    @pytest.mark.asyncio
    async def test_stop_inactive_is_rejected_without_calls(
        self, orchestrator, call_log
    ):
        tunnel = await _relay(orchestrator)

        with pytest.raises(AlreadyInStateError):
            await orchestrator.stop(tunnel.id)
        assert call_log.calls == []

    @pytest.mark.asyncio
    async def test_proxy_stop_failure_is_best_effort(self, orchestrator, services):
        tunnel = await _relay(orchestrator)
        await orchestrator.start(tunnel.id)
        services.failures["stop"] = ServiceStartFailure("systemctl unavailable")

        record = await orchestrator.stop(tunnel.id)

        assert record.status == TunnelStatus.INACTIVE

    @pytest.mark.asyncio
    async def test_teardown_failure_marks_error(self, orchestrator, provisioner):
        tunnel = await _relay(orchestrator)
        await orchestrator.start(tunnel.id)
        provisioner.failures["destroy_overlay"] = TeardownFailure("device busy")

        with pytest.raises(TeardownFailure):
            await orchestrator.stop(tunnel.id)

        record = await orchestrator.get(tunnel.id)
        assert record.status == TunnelStatus.ERROR
        assert record.error_message == "teardown: device busy"

    @pytest.mark.asyncio
    async def test_unexpected_teardown_error_is_wrapped(
        self, orchestrator, provisioner
    ):
        tunnel = await _relay(orchestrator)
        await orchestrator.start(tunnel.id)
        provisioner.failures["destroy_overlay"] = OSError("netlink socket closed")

        with pytest.raises(TeardownFailure, match="netlink socket closed"):
            await orchestrator.stop(tunnel.id)

        record = await orchestrator.get(tunnel.id)
        assert record.status == TunnelStatus.ERROR
        assert record.error_message == "teardown: netlink socket closed"


class TestRestart:
    @pytest.mark.asyncio
    async def test_restart_active(self, orchestrator, call_log):
        tunnel = await _relay(orchestrator)
        await orchestrator.start(tunnel.id)
        call_log.clear()

        record = await orchestrator.restart(tunnel.id)

        assert record.status == TunnelStatus.ACTIVE
        names = call_log.names()
        assert names.index("destroy_overlay") < names.index("create_overlay")

    @pytest.mark.asyncio
    async def test_restart_inactive_only_starts(self, orchestrator, call_log):
        tunnel = await _relay(orchestrator)

        await orchestrator.restart(tunnel.id)

        assert "destroy_overlay" not in call_log.names()

    @pytest.mark.asyncio
    async def test_restart_ignores_stop_errors(self, orchestrator, provisioner):
        tunnel = await _relay(orchestrator)
        await orchestrator.start(tunnel.id)
        provisioner.failures["destroy_overlay"] = TeardownFailure("busy")

        record = await orchestrator.restart(tunnel.id)

        assert record.status == TunnelStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_restart_ignores_unexpected_stop_errors(
        self, orchestrator, provisioner
    ):
        tunnel = await _relay(orchestrator)
        await orchestrator.start(tunnel.id)
        provisioner.failures["destroy_overlay"] = OSError("netlink socket closed")

        record = await orchestrator.restart(tunnel.id)

        assert record.status == TunnelStatus.ACTIVE


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_active_stops_first(self, orchestrator, call_log):
        tunnel = await _relay(orchestrator)
        await orchestrator.start(tunnel.id)
        call_log.clear()

        await orchestrator.delete(tunnel.id)

        assert call_log.names() == [
            "stop",
            "teardown_nat",
            "destroy_overlay",
            "remove",
        ]
        with pytest.raises(TunnelNotFoundError):
            await orchestrator.get(tunnel.id)

    @pytest.mark.asyncio
    async def test_delete_inactive_only_forgets(self, orchestrator, call_log):
        tunnel = await _relay(orchestrator)

        await orchestrator.delete(tunnel.id)

        assert call_log.names() == ["remove"]
        assert await orchestrator.list() == []

    @pytest.mark.asyncio
    async def test_failed_stop_keeps_record(self, orchestrator, provisioner):
        tunnel = await _relay(orchestrator)
        await orchestrator.start(tunnel.id)
        provisioner.failures["destroy_overlay"] = TeardownFailure("busy")

        with pytest.raises(TeardownFailure):
            await orchestrator.delete(tunnel.id)

        record = await orchestrator.get(tunnel.id)
        assert record.status == TunnelStatus.ERROR

    @pytest.mark.asyncio
    async def test_delete_errored_tunnel_is_best_effort(
        self, orchestrator, provisioner
    ):
        tunnel = await _relay(orchestrator)
        await orchestrator.start(tunnel.id)
        provisioner.failures["destroy_overlay"] = TeardownFailure("busy")
        with pytest.raises(TeardownFailure):
            await orchestrator.stop(tunnel.id)

        await orchestrator.delete(tunnel.id)

        assert await orchestrator.list() == []

    @pytest.mark.asyncio
    async def test_freed_vni_can_be_reused(self, orchestrator):
        tunnel = await orchestrator.create_origin_manual(
            name="o",
            relay_address="5.6.7.8",
            vni=10042,
            origin_overlay_address="10.100.100.44",
            relay_overlay_address="10.100.100.43",
        )
        await orchestrator.delete(tunnel.id)

        again = await orchestrator.create_origin_manual(
            name="o2",
            relay_address="5.6.7.8",
            vni=10042,
            origin_overlay_address="10.100.100.44",
            relay_overlay_address="10.100.100.43",
        )
        assert again.vni == 10042


# =============================================================================
# Editing / Descriptor
# =============================================================================


class TestUpdate:
    @pytest.mark.asyncio
    async def test_edit_name_and_port(self, orchestrator):
        tunnel = await _relay(orchestrator)

        record = await orchestrator.update(tunnel.id, name="renamed", proxy_port=1081)

        assert record.name == "renamed"
        assert record.proxy_port == 1081
        assert record.vni == tunnel.vni

    @pytest.mark.asyncio
    async def test_allocation_fields_are_immutable(self, orchestrator):
        tunnel = await _relay(orchestrator)

        with pytest.raises(TunnelValidationError):
            await orchestrator.update(tunnel.id, vni=12345)

    @pytest.mark.asyncio
    async def test_relay_keeps_origin_address(self, orchestrator):
        tunnel = await _relay(orchestrator)

        with pytest.raises(TunnelValidationError):
            await orchestrator.update(tunnel.id, relay_address="1.2.3.4")

        record = await orchestrator.get(tunnel.id)
        assert record.relay_address == "5.6.7.8"


class TestTransferDescriptor:
    @pytest.mark.asyncio
    async def test_relay_descriptor_carries_parameters(self, orchestrator):
        tunnel = await _relay(orchestrator)

        code = await orchestrator.transfer_descriptor(tunnel.id)
        descriptor = TransferDescriptor.decode(code)

        assert descriptor.label == "edge"
        assert descriptor.vni == tunnel.vni
        assert descriptor.relay_address == "5.6.7.8"
        assert descriptor.origin_address == "1.2.3.4"

    @pytest.mark.asyncio
    async def test_origin_has_no_descriptor(self, orchestrator):
        tunnel = await orchestrator.create_origin_manual(
            name="o",
            relay_address="5.6.7.8",
            vni=10042,
            origin_overlay_address="10.100.100.44",
            relay_overlay_address="10.100.100.43",
        )
        with pytest.raises(TunnelValidationError):
            await orchestrator.transfer_descriptor(tunnel.id)
