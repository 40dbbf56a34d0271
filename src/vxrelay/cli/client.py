"""
API client for CLI commands.

Provides functions to interact with the vxrelay API server.
Returns structured data instead of printing.
"""

import httpx

from vxrelay.cli import config as cli_config
from vxrelay.utils.logger import get_logger

logger = get_logger(__name__)


class APIError(Exception):
    """API request error with status code and detail."""

    def __init__(
        self, message: str, status_code: int | None = None, detail: str | None = None
    ):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


def _get_host_url() -> str:
    """Get the API URL from config."""
    return f"http://{cli_config.HOST_ADDRESS}:{cli_config.HOST_PORT}/api"


def _handle_http_error(e: httpx.HTTPStatusError, context: str = "request") -> None:
    """Handle HTTP errors with consistent logging."""
    status = e.response.status_code
    try:
        detail = e.response.json()
        detail_str = detail.get("detail", str(detail))
    except ValueError:
        detail_str = e.response.text

    logger.debug(f"HTTP {status} on {context}: {detail_str}")
    raise APIError(
        f"HTTP {status}: {detail_str}", status_code=status, detail=detail_str
    )


def _call(
    method: str,
    path: str,
    context: str,
    timeout: float | None = None,
    **kwargs,
):
    """Send one request and return the decoded JSON body."""
    url = f"{_get_host_url()}{path}"
    try:
        response = httpx.request(
            method, url, timeout=timeout or cli_config.REQUEST_TIMEOUT, **kwargs
        )
        response.raise_for_status()
        return response.json()
    except httpx.HTTPStatusError as e:
        _handle_http_error(e, context)
    except httpx.RequestError as e:
        logger.debug(f"Request error on {context}: {e}")
        raise APIError(f"Network error: {e}")


# =============================================================================
# Tunnel Operations
# =============================================================================


def get_tunnels() -> list[dict]:
    """Get all tunnels."""
    return _call("GET", "/tunnels", "list tunnels") or []


def get_tunnel(tunnel_id: str) -> dict:
    return _call("GET", f"/tunnels/{tunnel_id}", "get tunnel")


def create_relay(
    name: str,
    relay_address: str,
    origin_address: str,
    tunnel_port: int | None = None,
    proxy_port: int | None = None,
) -> dict:
    payload = {
        "name": name,
        "relay_address": relay_address,
        "origin_address": origin_address,
        "tunnel_port": tunnel_port,
        "proxy_port": proxy_port,
    }
    return _call("POST", "/tunnels/relay", "create relay", json=payload)


def create_origin(**fields) -> dict:
    """Create an origin tunnel from a connection code or manual fields."""
    payload = {key: value for key, value in fields.items() if value is not None}
    return _call("POST", "/tunnels/origin", "create origin", json=payload)


def update_tunnel(tunnel_id: str, **changes) -> dict:
    payload = {key: value for key, value in changes.items() if value is not None}
    return _call("PUT", f"/tunnels/{tunnel_id}", "update tunnel", json=payload)


def delete_tunnel(tunnel_id: str) -> dict:
    return _call(
        "DELETE",
        f"/tunnels/{tunnel_id}",
        "delete tunnel",
        timeout=cli_config.LIFECYCLE_TIMEOUT,
    )


def tunnel_action(tunnel_id: str, action: str) -> dict:
    """POST a lifecycle action: start, stop, restart or test."""
    return _call(
        "POST",
        f"/tunnels/{tunnel_id}/{action}",
        f"{action} tunnel",
        timeout=cli_config.LIFECYCLE_TIMEOUT,
    )


def get_descriptor(tunnel_id: str) -> str:
    result = _call("GET", f"/tunnels/{tunnel_id}/descriptor", "get descriptor")
    return result["code"]


# =============================================================================
# Service Operations
# =============================================================================


def get_services() -> list[dict]:
    return _call("GET", "/services", "list services") or []


def service_batch(operation: str) -> dict:
    """Run a fleet operation: cleanup-orphans, restart-all or health-check."""
    return _call(
        "POST",
        f"/services/{operation}",
        operation,
        timeout=cli_config.LIFECYCLE_TIMEOUT,
    )


def get_resource_usage() -> list[dict]:
    return _call("GET", "/services/resource-usage", "resource usage") or []


def get_service_logs(tunnel_id: str, lines: int = 50) -> str:
    result = _call(
        "GET",
        f"/services/{tunnel_id}/logs",
        "service logs",
        params={"lines": lines},
    )
    return result["content"]
