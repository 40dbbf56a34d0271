"""
Per-tunnel SOCKS5 proxy daemons.

    from vxrelay.proxy import create_service_manager

    manager = create_service_manager(config)
"""

from vxrelay.models.enums import ProxyBackend
from vxrelay.proxy.base import ProxyServiceManager, ServiceStatus, ServiceUsage
from vxrelay.proxy.process import ProcessServiceManager
from vxrelay.proxy.systemd import SystemdServiceManager


def create_service_manager(cfg) -> ProxyServiceManager:
    """Build the service manager selected by ``PROXY_BACKEND``."""
    common = {
        "binary": cfg.PROXY_BINARY,
        "config_dir": cfg.PROXY_CONFIG_DIR,
        "log_dir": cfg.PROXY_LOG_DIR,
        "settle_seconds": cfg.SERVICE_SETTLE_SECONDS,
    }
    if cfg.PROXY_BACKEND == ProxyBackend.PROCESS:
        return ProcessServiceManager(
            run_dir=cfg.PROXY_RUN_DIR,
            stop_timeout=cfg.SERVICE_STOP_TIMEOUT_SECONDS,
            **common,
        )
    return SystemdServiceManager(unit_dir=cfg.SYSTEMD_UNIT_DIR, **common)


__all__ = [
    "ProxyServiceManager",
    "ProcessServiceManager",
    "SystemdServiceManager",
    "ServiceStatus",
    "ServiceUsage",
    "create_service_manager",
]
