"""
Tunnel Lifecycle Orchestrator.

Composes the registry, the network provisioner and the proxy service manager
into create/start/stop/restart/delete operations.

State Machine:
==============
    start    inactive|error -> active     (failure: error, partial work undone)
    stop     active|error   -> inactive   (failure: error, interface remains)
    restart  any            -> stop (errors ignored) then start
    delete   any            -> stop first when active, then forget the record

Start sequence:
    1. overlay       create the VXLAN interface (settle afterwards)
    2. proxy_deploy  write the daemon config and install the service
    3. proxy_start   start the daemon and verify it stayed up
    4. nat / client_route   role-specific step (see strategy.py)

Each completed step pushes its undo action; on failure the undo stack is
unwound in reverse order (best-effort, logged) before the record is marked
``error`` with a step-labeled message.

Stop sequence:
    1. proxy stop            best-effort
    2. nat / client_route    best-effort
    3. overlay destroy       fatal on failure (TeardownFailure)

Concurrency:
    - Operations on one tunnel id are serialized by a per-id asyncio.Lock
    - Allocation + insert are serialized globally by the registry lock
    - Blocking steps run in worker threads via asyncio.to_thread
"""

from __future__ import annotations

import asyncio
import datetime
import ipaddress
from collections.abc import Callable
from contextlib import asynccontextmanager

from vxrelay.core.registry import TunnelRegistry, new_tunnel_id
from vxrelay.db.tunnel import TunnelRecord
from vxrelay.errors import (
    AlreadyInStateError,
    PlatformUnsupportedError,
    PrivilegeRequiredError,
    ProvisioningFailure,
    TeardownFailure,
    TunnelError,
    TunnelNotFoundError,
    TunnelValidationError,
)
from vxrelay.models.descriptor import TransferDescriptor
from vxrelay.models.enums import TunnelRole, TunnelStatus
from vxrelay.network.base import NetworkProvisioner
from vxrelay.orchestrator.strategy import TunnelStrategy, build_strategies
from vxrelay.proxy.base import ProxyServiceManager
from vxrelay.utils.logger import format_traceback, get_logger

logger = get_logger(__name__)

EDITABLE_FIELDS = (
    "name",
    "origin_address",
    "relay_address",
    "tunnel_port",
    "proxy_port",
)


# =============================================================================
# Input Validation
# =============================================================================


def _check_name(name: str | None) -> str:
    if name is None or not name.strip():
        raise TunnelValidationError("Tunnel name must not be empty")
    if len(name) > 128:
        raise TunnelValidationError("Tunnel name must be at most 128 characters")
    return name.strip()


def _check_address(field: str, value: str | None, required: bool = True) -> str:
    if not value:
        if required:
            raise TunnelValidationError(f"{field} is required")
        return ""
    try:
        return str(ipaddress.IPv4Address(value.strip()))
    except ipaddress.AddressValueError:
        raise TunnelValidationError(f"{field} is not a valid IPv4 address: {value}")


def _check_port(field: str, value: int) -> int:
    if not isinstance(value, int) or not 1 <= value <= 65535:
        raise TunnelValidationError(f"{field} must be between 1 and 65535: {value}")
    return value


# =============================================================================
# Orchestrator
# =============================================================================


class TunnelOrchestrator:
    """Drives tunnels through their lifecycle."""

    def __init__(
        self,
        registry: TunnelRegistry,
        provisioner: NetworkProvisioner,
        services: ProxyServiceManager,
        strategies: dict[TunnelRole, TunnelStrategy] | None = None,
        settle_delay: float = 1.0,
        default_tunnel_port: int = 4789,
        default_proxy_port: int = 1080,
    ):
        self.registry = registry
        self.provisioner = provisioner
        self.services = services
        self.strategies = strategies or build_strategies()
        self.settle_delay = settle_delay
        self.default_tunnel_port = default_tunnel_port
        self.default_proxy_port = default_proxy_port

        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, tunnel_id: str) -> asyncio.Lock:
        lock = self._locks.get(tunnel_id)
        if lock is None:
            lock = self._locks[tunnel_id] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def _locked(self, tunnel_id: str):
        """Hold the tunnel's lock; an id that turns out unknown keeps no lock."""
        lock = self._lock_for(tunnel_id)
        async with lock:
            try:
                yield
            except TunnelNotFoundError:
                if self._locks.get(tunnel_id) is lock:
                    del self._locks[tunnel_id]
                raise

    def strategy_for(self, tunnel: TunnelRecord) -> TunnelStrategy:
        return self.strategies[tunnel.role]

    async def _settle(self) -> None:
        if self.settle_delay > 0:
            await asyncio.sleep(self.settle_delay)

    # =========================================================================
    # Queries
    # =========================================================================

    async def list(self) -> list[TunnelRecord]:
        return await asyncio.to_thread(self.registry.list)

    async def get(self, tunnel_id: str) -> TunnelRecord:
        return await asyncio.to_thread(self.registry.get, tunnel_id)

    # =========================================================================
    # Creation
    # =========================================================================

    async def create_relay(
        self,
        name: str,
        relay_address: str,
        origin_address: str,
        tunnel_port: int | None = None,
        proxy_port: int | None = None,
    ) -> TunnelRecord:
        """
        Create a relay tunnel with a freshly allocated VNI and overlay pair.

        Raises:
            TunnelValidationError: Bad name, address or port.
            ResourceExhaustedError: No free VNI left.
        """
        name = _check_name(name)
        relay_address = _check_address("relay_address", relay_address)
        origin_address = _check_address("origin_address", origin_address)
        if relay_address == origin_address:
            raise TunnelValidationError("relay_address and origin_address must differ")
        tunnel_port = _check_port(
            "tunnel_port", tunnel_port or self.default_tunnel_port
        )
        proxy_port = _check_port("proxy_port", proxy_port or self.default_proxy_port)

        def build(allocation) -> TunnelRecord:
            return TunnelRecord(
                id=new_tunnel_id(),
                name=name,
                role=TunnelRole.RELAY,
                relay_address=relay_address,
                origin_address=origin_address,
                tunnel_port=tunnel_port,
                proxy_port=proxy_port,
                vni=allocation.vni,
                origin_overlay_address=allocation.origin_overlay_address,
                relay_overlay_address=allocation.relay_overlay_address,
                overlay_subnet=allocation.overlay_subnet,
            )

        record = await asyncio.to_thread(self.registry.create, build)
        logger.info(
            f"Created relay tunnel {record.id} ({record.name}): vni={record.vni}, "
            f"relay={record.relay_overlay_address}, "
            f"origin={record.origin_overlay_address}"
        )
        return record

    async def create_origin_from_descriptor(
        self,
        code: str,
        name: str | None = None,
        origin_address: str | None = None,
    ) -> TunnelRecord:
        """
        Materialize an origin tunnel from a relay's transfer descriptor.

        The descriptor is decoded and validated completely before anything
        is written; the new record keeps no link to the relay record.
        """
        descriptor = TransferDescriptor.decode(code)
        return await self._insert_origin(
            descriptor,
            name=name or descriptor.label,
            origin_address=origin_address or descriptor.origin_address,
        )

    async def create_origin_manual(
        self,
        name: str,
        relay_address: str,
        vni: int,
        origin_overlay_address: str,
        relay_overlay_address: str,
        origin_address: str | None = None,
        tunnel_port: int | None = None,
        proxy_port: int | None = None,
    ) -> TunnelRecord:
        """Create an origin tunnel from individually entered parameters."""
        descriptor = TransferDescriptor.build(
            label=_check_name(name),
            relay_address=relay_address,
            origin_address=origin_address or None,
            tunnel_port=tunnel_port or self.default_tunnel_port,
            proxy_port=proxy_port or self.default_proxy_port,
            vni=vni,
            origin_overlay_address=origin_overlay_address,
            relay_overlay_address=relay_overlay_address,
        )
        return await self._insert_origin(
            descriptor, name=descriptor.label, origin_address=origin_address
        )

    async def _insert_origin(
        self,
        descriptor: TransferDescriptor,
        name: str,
        origin_address: str | None,
    ) -> TunnelRecord:
        record = TunnelRecord(
            id=new_tunnel_id(),
            name=_check_name(name),
            role=TunnelRole.ORIGIN,
            relay_address=descriptor.relay_address,
            origin_address=_check_address(
                "origin_address", origin_address, required=False
            ),
            tunnel_port=descriptor.tunnel_port,
            proxy_port=descriptor.proxy_port,
            vni=descriptor.vni,
            origin_overlay_address=descriptor.origin_overlay_address,
            relay_overlay_address=descriptor.relay_overlay_address,
            overlay_subnet="",
        )
        record = await asyncio.to_thread(self.registry.insert, record)
        logger.info(
            f"Created origin tunnel {record.id} ({record.name}): vni={record.vni}, "
            f"relay={record.relay_address}"
        )
        return record

    # =========================================================================
    # Edit / Descriptor
    # =========================================================================

    async def update(self, tunnel_id: str, **changes) -> TunnelRecord:
        """
        Edit name, addresses or ports. VNI and overlay addresses never change.

        Changes to an active tunnel take effect on its next restart.
        """
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise TunnelValidationError(
                f"Fields cannot be edited: {', '.join(sorted(unknown))}"
            )

        checked = {}
        for field, value in changes.items():
            if value is None:
                continue
            if field == "name":
                checked[field] = _check_name(value)
            elif field == "origin_address":
                checked[field] = _check_address(field, value, required=False)
            elif field == "relay_address":
                checked[field] = _check_address(field, value)
            else:
                checked[field] = _check_port(field, value)

        def apply(record: TunnelRecord) -> None:
            for field, value in checked.items():
                setattr(record, field, value)
            if record.role == TunnelRole.RELAY and not record.origin_address:
                raise TunnelValidationError("Relay tunnels need an origin_address")
            if record.origin_address and record.origin_address == record.relay_address:
                raise TunnelValidationError(
                    "relay_address and origin_address must differ"
                )

        async with self._locked(tunnel_id):
            record = await asyncio.to_thread(self.registry.update, tunnel_id, apply)
        logger.info(f"Updated tunnel {tunnel_id}: {', '.join(checked) or 'no changes'}")
        return record

    async def transfer_descriptor(self, tunnel_id: str) -> str:
        """
        Encode a relay tunnel's networking parameters as a connection code.

        Raises:
            TunnelValidationError: The tunnel is not a relay.
        """
        record = await self.get(tunnel_id)
        if record.role != TunnelRole.RELAY:
            raise TunnelValidationError(
                f"Tunnel {tunnel_id} is an origin; only relays produce descriptors"
            )
        return TransferDescriptor.build(
            label=record.name,
            relay_address=record.relay_address,
            origin_address=record.origin_address or None,
            tunnel_port=record.tunnel_port,
            proxy_port=record.proxy_port,
            vni=record.vni,
            origin_overlay_address=record.origin_overlay_address,
            relay_overlay_address=record.relay_overlay_address,
        ).encode()

    # =========================================================================
    # Lifecycle Operations
    # =========================================================================

    async def start(self, tunnel_id: str) -> TunnelRecord:
        """
        Bring a tunnel up.

        Raises:
            AlreadyInStateError: The tunnel is already active (nothing called).
            PlatformUnsupportedError / PrivilegeRequiredError: Host rejected.
            TunnelError: A step failed; the record is now ``error``.
        """
        async with self._locked(tunnel_id):
            record = await self.get(tunnel_id)
            if record.status == TunnelStatus.ACTIVE:
                raise AlreadyInStateError(tunnel_id, TunnelStatus.ACTIVE.value)
            return await self._start_locked(record)

    async def stop(self, tunnel_id: str) -> TunnelRecord:
        """
        Take a tunnel down.

        Raises:
            AlreadyInStateError: The tunnel is already inactive (nothing called).
            TeardownFailure: The interface could not be removed; record is
                now ``error``.
        """
        async with self._locked(tunnel_id):
            record = await self.get(tunnel_id)
            if record.status == TunnelStatus.INACTIVE:
                raise AlreadyInStateError(tunnel_id, TunnelStatus.INACTIVE.value)
            return await self._stop_locked(record)

    async def restart(self, tunnel_id: str) -> TunnelRecord:
        """Stop (ignoring its errors) and start again, from any state."""
        async with self._locked(tunnel_id):
            record = await self.get(tunnel_id)
            if record.status != TunnelStatus.INACTIVE:
                try:
                    record = await self._stop_locked(record)
                except (PlatformUnsupportedError, PrivilegeRequiredError):
                    raise
                except TunnelError as e:
                    logger.warning(f"Restart of {tunnel_id}: stop failed ({e})")
                    record = await self.get(tunnel_id)
            return await self._start_locked(record)

    async def delete(self, tunnel_id: str) -> None:
        """
        Delete a tunnel, stopping it first when active.

        A failed stop aborts the delete and keeps the record. An ``error``
        tunnel gets a best-effort stop; an ``inactive`` one is only
        forgotten (its deployed service files are removed).
        """
        async with self._locked(tunnel_id):
            record = await self.get(tunnel_id)

            if record.status == TunnelStatus.ACTIVE:
                await self._stop_locked(record)
            elif record.status == TunnelStatus.ERROR:
                try:
                    await self._stop_locked(record)
                except TunnelError as e:
                    logger.warning(
                        f"Delete of {tunnel_id}: cleanup of failed tunnel "
                        f"incomplete ({e})"
                    )

            try:
                await asyncio.to_thread(self.services.remove, tunnel_id)
            except Exception as e:
                logger.warning(f"Delete of {tunnel_id}: service removal failed: {e}")

            await asyncio.to_thread(self.registry.delete, tunnel_id)

        self._locks.pop(tunnel_id, None)
        logger.info(f"Deleted tunnel {tunnel_id} ({record.name})")

    # =========================================================================
    # Sequences (caller holds the tunnel lock)
    # =========================================================================

    async def _start_locked(self, record: TunnelRecord) -> TunnelRecord:
        self.provisioner.check_host()

        strategy = self.strategy_for(record)
        local, remote = strategy.endpoints(record)
        own_overlay, peer_overlay = strategy.overlay_addresses(record)
        undo: list[tuple[str, Callable[[], object]]] = []

        logger.info(
            f"Starting {record.role.value} tunnel {record.id} ({record.name}), "
            f"vni={record.vni}"
        )
        step = "overlay"
        try:
            await asyncio.to_thread(
                self.provisioner.create_overlay,
                record.vni,
                local,
                remote,
                record.tunnel_port,
                own_overlay,
            )
            undo.append(
                (
                    "overlay",
                    lambda: self.provisioner.destroy_overlay(
                        record.vni, own_overlay, peer_overlay
                    ),
                )
            )
            await self._settle()

            step = "proxy_deploy"
            await asyncio.to_thread(
                self.services.deploy, record, strategy.proxy_descriptor(record)
            )

            step = "proxy_start"
            # Registered before start: a unit that failed to come up may
            # still be flapping under its supervisor
            undo.append(("proxy", lambda: self.services.stop(record.id)))
            await asyncio.to_thread(self.services.start, record.id)

            step = strategy.provision_step
            await asyncio.to_thread(strategy.provision, record, self.provisioner)

        except (PlatformUnsupportedError, PrivilegeRequiredError):
            await self._rollback(record.id, undo)
            raise
        except Exception as e:
            message = self._failure_message(step, e)
            logger.error(f"Start of tunnel {record.id} failed at {message}")
            if not isinstance(e, TunnelError):
                logger.debug(format_traceback(e))

            await self._rollback(record.id, undo)
            await asyncio.to_thread(
                self.registry.update, record.id, lambda r: r.mark_error(message)
            )
            if isinstance(e, TunnelError):
                raise
            raise ProvisioningFailure(step, str(e)) from e

        updated = await asyncio.to_thread(
            self.registry.update, record.id, lambda r: r.mark_active()
        )
        logger.info(f"Tunnel {record.id} is active")
        return updated

    async def _stop_locked(self, record: TunnelRecord) -> TunnelRecord:
        self.provisioner.check_host()

        strategy = self.strategy_for(record)
        own_overlay, peer_overlay = strategy.overlay_addresses(record)
        logger.info(f"Stopping {record.role.value} tunnel {record.id} ({record.name})")

        await self._best_effort(
            record.id, "proxy_stop", self.services.stop, record.id
        )
        await self._best_effort(
            record.id,
            strategy.provision_step,
            strategy.deprovision,
            record,
            self.provisioner,
        )

        try:
            await asyncio.to_thread(
                self.provisioner.destroy_overlay, record.vni, own_overlay, peer_overlay
            )
        except (PlatformUnsupportedError, PrivilegeRequiredError):
            raise
        except Exception as e:
            message = f"teardown: {e}" if str(e) else f"teardown: {type(e).__name__}"
            logger.error(f"Stop of tunnel {record.id} failed: {message}")
            if not isinstance(e, TunnelError):
                logger.debug(format_traceback(e))

            await asyncio.to_thread(
                self.registry.update, record.id, lambda r: r.mark_error(message)
            )
            if isinstance(e, TunnelError):
                raise
            raise TeardownFailure(message) from e

        await self._settle()
        updated = await asyncio.to_thread(
            self.registry.update, record.id, lambda r: r.mark_inactive()
        )
        logger.info(f"Tunnel {record.id} is inactive")
        return updated

    async def _best_effort(self, tunnel_id: str, step: str, fn, *args) -> None:
        try:
            await asyncio.to_thread(fn, *args)
        except Exception as e:
            logger.warning(f"Tunnel {tunnel_id}: {step} cleanup failed: {e}")

    async def _rollback(
        self, tunnel_id: str, undo: list[tuple[str, Callable[[], object]]]
    ) -> None:
        for label, action in reversed(undo):
            try:
                await asyncio.to_thread(action)
                logger.debug(f"Rolled back {label} for tunnel {tunnel_id}")
            except Exception as e:
                logger.warning(
                    f"Rollback of {label} for tunnel {tunnel_id} failed: {e}"
                )

    @staticmethod
    def _failure_message(step: str, error: Exception) -> str:
        if isinstance(error, ProvisioningFailure):
            return str(error)
        return f"{step}: {error}" if str(error) else f"{step}: {type(error).__name__}"

    # =========================================================================
    # Counters
    # =========================================================================

    async def record_counters(
        self,
        tunnel_id: str,
        connection_count: int,
        bandwidth_usage: float | None = None,
    ) -> TunnelRecord:
        """Store advisory counters observed by a health pass (active tunnels only)."""

        def apply(record: TunnelRecord) -> None:
            if record.status != TunnelStatus.ACTIVE:
                return
            record.connection_count = connection_count
            if bandwidth_usage is not None:
                record.bandwidth_usage = bandwidth_usage
            if connection_count:
                record.last_active_at = datetime.datetime.now()

        return await asyncio.to_thread(self.registry.update, tunnel_id, apply)

    async def mark_unhealthy(self, tunnel_id: str, message: str) -> TunnelRecord:
        """Flag an active tunnel whose host state no longer matches the record."""

        def apply(record: TunnelRecord) -> None:
            if record.status == TunnelStatus.ACTIVE:
                record.mark_error(message)

        async with self._locked(tunnel_id):
            record = await asyncio.to_thread(self.registry.update, tunnel_id, apply)
        logger.warning(f"Tunnel {tunnel_id} marked unhealthy: {message}")
        return record
