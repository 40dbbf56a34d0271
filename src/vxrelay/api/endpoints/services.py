"""
Service Endpoints.

Fleet-wide operations on the proxy daemons: listing, orphan cleanup,
batch restart, health reconciliation, resource usage and log tails.
"""

from fastapi import APIRouter, Path, Query

from vxrelay.api.state import get_fleet
from vxrelay.models.requests import BatchReportResponse, ServiceLogsResponse

router = APIRouter()


@router.get("/services")
async def list_services():
    """Every deployed proxy service, flagged when no tunnel owns it."""
    return await get_fleet().list_services()


@router.post("/services/cleanup-orphans", response_model=BatchReportResponse)
async def cleanup_orphans():
    report = await get_fleet().cleanup_orphans()
    return report.to_dict()


@router.post("/services/restart-all", response_model=BatchReportResponse)
async def restart_all():
    """Restart every tunnel that is not inactive."""
    report = await get_fleet().restart_all()
    return report.to_dict()


@router.post("/services/health-check", response_model=BatchReportResponse)
async def health_check():
    """Reconcile active tunnels with the host and refresh their counters."""
    report = await get_fleet().health_check_all()
    return report.to_dict()


@router.get("/services/resource-usage")
async def resource_usage():
    return await get_fleet().resource_usage()


@router.get("/services/{tunnel_id}/logs", response_model=ServiceLogsResponse)
async def service_logs(
    tunnel_id: str = Path(..., description="Tunnel id"),
    lines: int = Query(50, description="Number of trailing lines"),
):
    content = await get_fleet().fetch_logs(tunnel_id, lines)
    return {"tunnel_id": tunnel_id, "lines": lines, "content": content}
