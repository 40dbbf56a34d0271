"""
vxrelay API server.

This module provides the FastAPI application that exposes the tunnel
orchestrator over HTTP. The CLI is its only first-party client.

Responsibilities:
    - Wiring registry, network provisioner and proxy service manager
    - Tunnel CRUD and lifecycle endpoints
    - Fleet operations and diagnostics
    - Mapping TunnelError subclasses to HTTP status codes
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from vxrelay import __version__
from vxrelay.api import state
from vxrelay.api.endpoints import services, tunnels
from vxrelay.config import config
from vxrelay.core.allocator import VniAllocator
from vxrelay.core.registry import TunnelRegistry
from vxrelay.db.base import close_database, initialize_database
from vxrelay.errors import TunnelError
from vxrelay.models.enums import LogLevel
from vxrelay.network.linux import LinuxNetworkProvisioner
from vxrelay.orchestrator.fleet import FleetManager
from vxrelay.orchestrator.lifecycle import TunnelOrchestrator
from vxrelay.orchestrator.strategy import build_strategies
from vxrelay.proxy import create_service_manager
from vxrelay.utils.logger import configure_logging, get_logger

logger = get_logger(__name__)


# =============================================================================
# Lifecycle
# =============================================================================


def build_orchestrator(cfg=config) -> TunnelOrchestrator:
    """Assemble the orchestrator and its collaborators from configuration."""
    registry = TunnelRegistry(VniAllocator.from_config(cfg))
    return TunnelOrchestrator(
        registry=registry,
        provisioner=LinuxNetworkProvisioner.from_config(cfg),
        services=create_service_manager(cfg),
        strategies=build_strategies(cfg.ORIGIN_PROXY_LISTEN, cfg.PROXY_LOG_LEVEL),
        settle_delay=cfg.SETTLE_DELAY_SECONDS,
        default_tunnel_port=cfg.DEFAULT_TUNNEL_PORT,
        default_proxy_port=cfg.DEFAULT_PROXY_PORT,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the registry and build the orchestrator; close on shutdown."""
    logger.info("vxrelay server starting up")
    logger.debug(f"Database file: {config.DB_FILE}")

    initialize_database(config.DB_FILE)

    orchestrator = build_orchestrator(config)
    state.set_orchestrator(orchestrator)
    state.set_fleet(
        FleetManager(
            orchestrator,
            test_url=config.CONNECTIVITY_TEST_URL,
            test_timeout=config.CONNECTIVITY_TIMEOUT_SECONDS,
        )
    )
    logger.info(
        f"Proxy backend: {config.PROXY_BACKEND.value}, "
        f"VNI range {config.VNI_RANGE_MIN}-{config.VNI_RANGE_MAX}"
    )

    yield

    logger.info("vxrelay server shutting down")
    state.reset()
    close_database()
    logger.info("vxrelay server shut down complete")


# =============================================================================
# Application Setup
# =============================================================================

app = FastAPI(
    title="vxrelay",
    description="VXLAN + SOCKS5 tunnel lifecycle orchestrator",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(tunnels.router, prefix="/api", tags=["Tunnels"])
app.include_router(services.router, prefix="/api", tags=["Services"])


@app.exception_handler(TunnelError)
async def tunnel_error_handler(request: Request, exc: TunnelError):
    """Translate orchestrator errors into JSON error responses."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": str(exc), "error_type": type(exc).__name__},
    )


@app.get("/api/health")
async def health():
    return {"status": "ok", "version": __version__}


# =============================================================================
# Server Entry Points
# =============================================================================


def run(host: str | None = None, port: int | None = None):
    """Run the API server using uvicorn."""
    import uvicorn

    # Configure logging before starting uvicorn
    configure_logging(config.LOG_LEVEL, config.LOG_FILE)

    uvicorn_level_map = {
        LogLevel.FULL: "debug",
        LogLevel.DEBUG: "debug",
        LogLevel.INFO: "info",
        LogLevel.WARNING: "warning",
    }
    uvicorn_level = uvicorn_level_map.get(config.LOG_LEVEL, "info")

    host = host or config.API_BIND_IP
    port = port or config.API_PORT
    logger.info(f"Starting vxrelay server on {host}:{port}")

    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level=uvicorn_level,
        log_config=None,  # Keep loguru as the only sink
    )


def main():
    """Entry point for the API server."""
    run()


if __name__ == "__main__":
    main()
