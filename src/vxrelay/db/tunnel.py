"""
Tunnel database model for vxrelay.

This module defines the Tunnel model, the persisted form of one overlay
tunnel, and the TunnelRecord snapshot handed to the rest of the code so no
caller ever holds a live ORM row across a lock boundary.
"""

from __future__ import annotations

import datetime
from dataclasses import asdict, dataclass, field

import peewee

from vxrelay.db.base import BaseModel
from vxrelay.models.enums import TunnelRole, TunnelStatus


# =============================================================================
# Tunnel Model
# =============================================================================


class Tunnel(BaseModel):
    """
    Represents one point-to-point overlay tunnel.

    ``vni`` and ``overlay_subnet`` carry unique indexes so the database itself
    rejects a duplicate even if an insert slips past the registry lock.
    """

    # -------------------------------------------------------------------------
    # Identification
    # -------------------------------------------------------------------------

    id = peewee.CharField(primary_key=True)
    name = peewee.CharField()
    role = peewee.CharField()

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    status = peewee.CharField(default=TunnelStatus.INACTIVE.value)
    error_message = peewee.TextField(null=True)

    # -------------------------------------------------------------------------
    # Endpoints
    # -------------------------------------------------------------------------

    origin_address = peewee.CharField(default="")
    relay_address = peewee.CharField()
    tunnel_port = peewee.IntegerField()
    proxy_port = peewee.IntegerField()

    # -------------------------------------------------------------------------
    # Overlay Allocation
    # -------------------------------------------------------------------------

    vni = peewee.IntegerField(unique=True)
    origin_overlay_address = peewee.CharField()
    relay_overlay_address = peewee.CharField()
    overlay_subnet = peewee.CharField(unique=True)  # "10.100.7.0/24"

    # -------------------------------------------------------------------------
    # Counters (advisory)
    # -------------------------------------------------------------------------

    bandwidth_usage = peewee.FloatField(default=0.0)  # bytes/s
    connection_count = peewee.IntegerField(default=0)

    # -------------------------------------------------------------------------
    # Timestamps
    # -------------------------------------------------------------------------

    created_at = peewee.DateTimeField(default=datetime.datetime.now)
    last_active_at = peewee.DateTimeField(default=datetime.datetime.now)

    class Meta:
        table_name = "tunnels"

    def to_record(self) -> TunnelRecord:
        """Snapshot the row into a plain dataclass."""
        return TunnelRecord(
            id=self.id,
            name=self.name,
            role=TunnelRole(self.role),
            status=TunnelStatus(self.status),
            origin_address=self.origin_address,
            relay_address=self.relay_address,
            tunnel_port=self.tunnel_port,
            proxy_port=self.proxy_port,
            vni=self.vni,
            origin_overlay_address=self.origin_overlay_address,
            relay_overlay_address=self.relay_overlay_address,
            overlay_subnet=self.overlay_subnet,
            bandwidth_usage=self.bandwidth_usage,
            connection_count=self.connection_count,
            created_at=self.created_at,
            last_active_at=self.last_active_at,
            error_message=self.error_message,
        )

    def apply_record(self, record: TunnelRecord) -> None:
        """Copy every field of a record onto this row."""
        for key, value in asdict(record).items():
            if isinstance(value, (TunnelRole, TunnelStatus)):
                value = value.value
            setattr(self, key, value)


# =============================================================================
# Record Snapshot
# =============================================================================


@dataclass
class TunnelRecord:
    """Plain snapshot of a tunnel row."""

    id: str
    name: str
    role: TunnelRole
    relay_address: str
    tunnel_port: int
    proxy_port: int
    vni: int
    origin_overlay_address: str
    relay_overlay_address: str
    overlay_subnet: str
    origin_address: str = ""
    status: TunnelStatus = TunnelStatus.INACTIVE
    bandwidth_usage: float = 0.0
    connection_count: int = 0
    created_at: datetime.datetime = field(default_factory=datetime.datetime.now)
    last_active_at: datetime.datetime = field(default_factory=datetime.datetime.now)
    error_message: str | None = None

    # =========================================================================
    # Status Helpers
    # =========================================================================

    def is_active(self) -> bool:
        return self.status == TunnelStatus.ACTIVE

    def is_inactive(self) -> bool:
        return self.status == TunnelStatus.INACTIVE

    def mark_active(self) -> None:
        """Mark tunnel active, clear error and reset counters."""
        self.status = TunnelStatus.ACTIVE
        self.error_message = None
        self.bandwidth_usage = 0.0
        self.connection_count = 0
        self.last_active_at = datetime.datetime.now()

    def mark_inactive(self) -> None:
        """Mark tunnel inactive, clear error and zero counters."""
        self.status = TunnelStatus.INACTIVE
        self.error_message = None
        self.bandwidth_usage = 0.0
        self.connection_count = 0

    def mark_error(self, message: str) -> None:
        """Mark tunnel failed with a human-readable message."""
        self.status = TunnelStatus.ERROR
        self.error_message = message or "unknown error"

    # =========================================================================
    # Serialization
    # =========================================================================

    def to_dict(self) -> dict:
        """Convert tunnel to dictionary for API responses."""
        return {
            "id": self.id,
            "name": self.name,
            "role": self.role.value,
            "status": self.status.value,
            "origin_address": self.origin_address,
            "relay_address": self.relay_address,
            "tunnel_port": self.tunnel_port,
            "proxy_port": self.proxy_port,
            "vni": self.vni,
            "origin_overlay_address": self.origin_overlay_address,
            "relay_overlay_address": self.relay_overlay_address,
            "overlay_subnet": self.overlay_subnet,
            "bandwidth_usage": self.bandwidth_usage,
            "connection_count": self.connection_count,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_active_at": (
                self.last_active_at.isoformat() if self.last_active_at else None
            ),
            "error_message": self.error_message,
        }
