"""
Tunnel Endpoints.

CRUD, lifecycle control, connection codes and connectivity tests for
individual tunnels. Orchestrator errors propagate to the app-level
TunnelError handler, which maps them to status codes.
"""

from fastapi import APIRouter, HTTPException, Path

from vxrelay.api.state import get_fleet, get_orchestrator
from vxrelay.models.requests import (
    ConnectivityResponse,
    CreateOriginRequest,
    CreateRelayRequest,
    DescriptorResponse,
    MessageResponse,
    TunnelResponse,
    UpdateTunnelRequest,
)
from vxrelay.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter()

TunnelId = Path(..., description="Tunnel id")


# =============================================================================
# Queries
# =============================================================================


@router.get("/tunnels", response_model=list[TunnelResponse])
async def list_tunnels():
    """List all tunnels, oldest first."""
    tunnels = await get_orchestrator().list()
    return [t.to_dict() for t in tunnels]


@router.get("/tunnels/{tunnel_id}", response_model=TunnelResponse)
async def get_tunnel(tunnel_id: str = TunnelId):
    tunnel = await get_orchestrator().get(tunnel_id)
    return tunnel.to_dict()


# =============================================================================
# Creation / Editing
# =============================================================================


@router.post("/tunnels/relay", response_model=TunnelResponse, status_code=201)
async def create_relay(request: CreateRelayRequest):
    """Create a relay tunnel with a freshly allocated VNI and overlay pair."""
    tunnel = await get_orchestrator().create_relay(
        name=request.name,
        relay_address=request.relay_address,
        origin_address=request.origin_address,
        tunnel_port=request.tunnel_port,
        proxy_port=request.proxy_port,
    )
    return tunnel.to_dict()


@router.post("/tunnels/origin", response_model=TunnelResponse, status_code=201)
async def create_origin(request: CreateOriginRequest):
    """
    Create an origin tunnel.

    With ``code`` the parameters come from the relay's connection code;
    without it, every manual field is required.
    """
    orchestrator = get_orchestrator()

    if request.code:
        tunnel = await orchestrator.create_origin_from_descriptor(
            request.code,
            name=request.name,
            origin_address=request.origin_address,
        )
        return tunnel.to_dict()

    missing = request.missing_manual_fields()
    if missing:
        raise HTTPException(
            status_code=400,
            detail=f"Provide a connection code or: {', '.join(missing)}",
        )

    tunnel = await orchestrator.create_origin_manual(
        name=request.name,
        relay_address=request.relay_address,
        vni=request.vni,
        origin_overlay_address=request.origin_overlay_address,
        relay_overlay_address=request.relay_overlay_address,
        origin_address=request.origin_address,
        tunnel_port=request.tunnel_port,
        proxy_port=request.proxy_port,
    )
    return tunnel.to_dict()


@router.put("/tunnels/{tunnel_id}", response_model=TunnelResponse)
async def update_tunnel(request: UpdateTunnelRequest, tunnel_id: str = TunnelId):
    """Edit a tunnel; active tunnels pick up changes on their next restart."""
    changes = request.model_dump(exclude_none=True)
    tunnel = await get_orchestrator().update(tunnel_id, **changes)
    return tunnel.to_dict()


@router.delete("/tunnels/{tunnel_id}", response_model=MessageResponse)
async def delete_tunnel(tunnel_id: str = TunnelId):
    await get_orchestrator().delete(tunnel_id)
    return {"message": f"Tunnel {tunnel_id} deleted."}


@router.get("/tunnels/{tunnel_id}/descriptor", response_model=DescriptorResponse)
async def get_descriptor(tunnel_id: str = TunnelId):
    """Connection code to paste on the origin host."""
    code = await get_orchestrator().transfer_descriptor(tunnel_id)
    return {"tunnel_id": tunnel_id, "code": code}


# =============================================================================
# Lifecycle
# =============================================================================


@router.post("/tunnels/{tunnel_id}/start", response_model=TunnelResponse)
async def start_tunnel(tunnel_id: str = TunnelId):
    tunnel = await get_orchestrator().start(tunnel_id)
    return tunnel.to_dict()


@router.post("/tunnels/{tunnel_id}/stop", response_model=TunnelResponse)
async def stop_tunnel(tunnel_id: str = TunnelId):
    tunnel = await get_orchestrator().stop(tunnel_id)
    return tunnel.to_dict()


@router.post("/tunnels/{tunnel_id}/restart", response_model=TunnelResponse)
async def restart_tunnel(tunnel_id: str = TunnelId):
    tunnel = await get_orchestrator().restart(tunnel_id)
    return tunnel.to_dict()


@router.post("/tunnels/{tunnel_id}/test", response_model=ConnectivityResponse)
async def test_tunnel(tunnel_id: str = TunnelId):
    """Send a request through the origin's SOCKS5 listener."""
    result = await get_fleet().test_connectivity(tunnel_id)
    return result.to_dict()
