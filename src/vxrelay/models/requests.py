"""
Pydantic models for API requests and responses.

This module defines the data transfer objects (DTOs) exchanged between the
CLI and the vxrelay API server.

Model Categories:
    - Tunnel Requests: Creation and editing
    - Tunnel Responses: Tunnel records and connection codes
    - Service Responses: Batch reports and diagnostics
    - Error Responses: Standardized error formats
"""

import datetime

from pydantic import BaseModel, Field

from vxrelay.models.enums import TunnelRole, TunnelStatus


# =============================================================================
# Tunnel Request Models
# =============================================================================


class CreateRelayRequest(BaseModel):
    """Request body for creating a relay tunnel."""

    name: str = Field(..., description="Human-readable tunnel name")
    relay_address: str = Field(..., description="Public IPv4 address of this relay")
    origin_address: str = Field(..., description="Public IPv4 address of the origin")
    tunnel_port: int | None = Field(
        default=None,
        description="VXLAN UDP port (server default when omitted)",
    )
    proxy_port: int | None = Field(
        default=None,
        description="SOCKS5 port (server default when omitted)",
    )


class CreateOriginRequest(BaseModel):
    """
    Request body for creating an origin tunnel.

    Either ``code`` (a relay's connection code) or the manual fields
    ``relay_address``, ``vni``, ``origin_overlay_address`` and
    ``relay_overlay_address`` must be given.
    """

    code: str | None = Field(
        default=None,
        description="Connection code produced by the relay",
    )
    name: str | None = Field(
        default=None,
        description="Tunnel name (defaults to the code's label)",
    )
    origin_address: str | None = Field(
        default=None,
        description="Public IPv4 address of this origin",
    )
    relay_address: str | None = Field(default=None, description="Relay address")
    vni: int | None = Field(default=None, description="VXLAN network identifier")
    origin_overlay_address: str | None = Field(
        default=None,
        description="Overlay address of the origin end",
    )
    relay_overlay_address: str | None = Field(
        default=None,
        description="Overlay address of the relay end",
    )
    tunnel_port: int | None = Field(default=None, description="VXLAN UDP port")
    proxy_port: int | None = Field(default=None, description="SOCKS5 port")

    def missing_manual_fields(self) -> list[str]:
        """Names of manual fields that are required but absent."""
        required = (
            "name",
            "relay_address",
            "vni",
            "origin_overlay_address",
            "relay_overlay_address",
        )
        return [field for field in required if getattr(self, field) in (None, "")]


class UpdateTunnelRequest(BaseModel):
    """Request body for editing a tunnel. Omitted fields are left unchanged."""

    name: str | None = None
    origin_address: str | None = None
    relay_address: str | None = None
    tunnel_port: int | None = None
    proxy_port: int | None = None


# =============================================================================
# Tunnel Response Models
# =============================================================================


class TunnelResponse(BaseModel):
    """Tunnel record as returned by the API."""

    id: str
    name: str
    role: TunnelRole
    status: TunnelStatus
    origin_address: str
    relay_address: str
    tunnel_port: int
    proxy_port: int
    vni: int
    origin_overlay_address: str
    relay_overlay_address: str
    overlay_subnet: str
    bandwidth_usage: float = 0.0
    connection_count: int = 0
    created_at: datetime.datetime | None = None
    last_active_at: datetime.datetime | None = None
    error_message: str | None = None


class DescriptorResponse(BaseModel):
    """Connection code of a relay tunnel."""

    tunnel_id: str
    code: str


class MessageResponse(BaseModel):
    """Plain acknowledgement."""

    message: str


# =============================================================================
# Service Response Models
# =============================================================================


class BatchItemResponse(BaseModel):
    tunnel_id: str
    name: str = ""
    ok: bool
    detail: str = ""


class BatchReportResponse(BaseModel):
    """Per-tunnel outcome of a fleet operation."""

    operation: str
    succeeded: int
    failed: int
    items: list[BatchItemResponse] = Field(default_factory=list)


class ConnectivityResponse(BaseModel):
    tunnel_id: str
    success: bool
    expected_ip: str
    egress_ip: str | None = None
    matches: bool = False
    latency_ms: float | None = None
    error: str | None = None


class ServiceLogsResponse(BaseModel):
    tunnel_id: str
    lines: int
    content: str


# =============================================================================
# Error Response Models
# =============================================================================


class ErrorResponse(BaseModel):
    """Standardized error response."""

    detail: str
    error_type: str | None = None
