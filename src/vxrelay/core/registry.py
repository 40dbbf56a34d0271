"""
Tunnel registry: the single shared mutable resource.

All writes that touch the uniqueness invariants (VNI and overlay /24) go
through one process-wide lock and one database transaction, so the
check-then-insert is atomic with respect to other registry calls. The unique
indexes on the ``tunnels`` table back this up at the storage level.
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Callable

import peewee

from vxrelay.core.allocator import Allocation, VniAllocator
from vxrelay.db.base import db
from vxrelay.db.tunnel import Tunnel, TunnelRecord
from vxrelay.errors import ResourceConflictError, TunnelNotFoundError
from vxrelay.models.overlay_subnet import overlay_subnet
from vxrelay.utils.logger import get_logger

logger = get_logger(__name__)

# Registry writes are serialized process-wide
_WRITE_LOCK = threading.RLock()


def new_tunnel_id() -> str:
    return uuid.uuid4().hex


class TunnelRegistry:
    """Durable store of tunnel records with atomic uniqueness checks."""

    def __init__(self, allocator: VniAllocator | None = None):
        self.allocator = allocator or VniAllocator()

    # =========================================================================
    # Reads
    # =========================================================================

    def list(self) -> list[TunnelRecord]:
        """All tunnels, oldest first."""
        query = Tunnel.select().order_by(Tunnel.created_at, Tunnel.id)
        return [row.to_record() for row in query]

    def find(self, tunnel_id: str) -> TunnelRecord | None:
        row = Tunnel.get_or_none(Tunnel.id == tunnel_id)
        return row.to_record() if row else None

    def get(self, tunnel_id: str) -> TunnelRecord:
        """
        Get a tunnel by id.

        Raises:
            TunnelNotFoundError: Unknown id.
        """
        record = self.find(tunnel_id)
        if record is None:
            raise TunnelNotFoundError(tunnel_id)
        return record

    def ids(self) -> set[str]:
        return {row.id for row in Tunnel.select(Tunnel.id)}

    def _used_resources(self) -> tuple[set[int], set[str]]:
        rows = Tunnel.select(Tunnel.vni, Tunnel.overlay_subnet)
        return {r.vni for r in rows}, {r.overlay_subnet for r in rows}

    # =========================================================================
    # Writes
    # =========================================================================

    def insert(self, record: TunnelRecord) -> TunnelRecord:
        """
        Insert a new tunnel.

        Raises:
            ResourceConflictError: The id, VNI or overlay /24 is already taken.
        """
        with _WRITE_LOCK:
            with db.atomic():
                return self._insert_locked(record)

    def create(self, builder: Callable[[Allocation], TunnelRecord]) -> TunnelRecord:
        """
        Allocate a VNI and overlay pair, build a record from it and insert it.

        Allocation and insert happen in the same critical section, so two
        concurrent creates can never be handed the same VNI or /24.
        """
        with _WRITE_LOCK:
            with db.atomic():
                used_vnis, used_subnets = self._used_resources()
                allocation = self.allocator.allocate(used_vnis, used_subnets)
                record = builder(allocation)
                return self._insert_locked(record)

    def _insert_locked(self, record: TunnelRecord) -> TunnelRecord:
        record.overlay_subnet = overlay_subnet(record.relay_overlay_address)
        if overlay_subnet(record.origin_overlay_address) != record.overlay_subnet:
            raise ResourceConflictError(
                f"Overlay addresses {record.relay_overlay_address} and "
                f"{record.origin_overlay_address} are not in the same /24"
            )

        if Tunnel.get_or_none(Tunnel.id == record.id) is not None:
            raise ResourceConflictError(f"Tunnel id already exists: {record.id}")
        if Tunnel.get_or_none(Tunnel.vni == record.vni) is not None:
            raise ResourceConflictError(f"VNI {record.vni} is already in use")
        clash = Tunnel.get_or_none(Tunnel.overlay_subnet == record.overlay_subnet)
        if clash is not None:
            raise ResourceConflictError(
                f"Overlay subnet {record.overlay_subnet} is already used by "
                f"tunnel {clash.id} ({clash.name})"
            )

        row = Tunnel()
        row.apply_record(record)
        try:
            row.save(force_insert=True)
        except peewee.IntegrityError as e:
            raise ResourceConflictError(f"Tunnel conflicts with an existing one: {e}")

        logger.info(
            f"Registered {record.role.value} tunnel {record.id} ({record.name}): "
            f"vni={record.vni}, subnet={record.overlay_subnet}"
        )
        return row.to_record()

    def update(
        self, tunnel_id: str, mutator: Callable[[TunnelRecord], None]
    ) -> TunnelRecord:
        """
        Read-modify-write one tunnel.

        ``mutator`` receives a snapshot and edits it in place; the result is
        written back inside the registry lock.

        Raises:
            TunnelNotFoundError: Unknown id.
            ResourceConflictError: The edit collides with another tunnel.
        """
        with _WRITE_LOCK:
            with db.atomic():
                row = Tunnel.get_or_none(Tunnel.id == tunnel_id)
                if row is None:
                    raise TunnelNotFoundError(tunnel_id)

                record = row.to_record()
                mutator(record)
                record.id = tunnel_id

                row.apply_record(record)
                try:
                    row.save()
                except peewee.IntegrityError as e:
                    raise ResourceConflictError(
                        f"Update of tunnel {tunnel_id} conflicts: {e}"
                    )
                return row.to_record()

    def delete(self, tunnel_id: str) -> None:
        """
        Remove a tunnel record.

        Raises:
            TunnelNotFoundError: Unknown id.
        """
        with _WRITE_LOCK:
            deleted = Tunnel.delete().where(Tunnel.id == tunnel_id).execute()
        if not deleted:
            raise TunnelNotFoundError(tunnel_id)
        logger.info(f"Removed tunnel {tunnel_id} from registry")
