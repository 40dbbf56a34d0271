"""
Server configuration for vxrelay.

All settings can be overridden through ``VXRELAY_*`` environment variables or
a ``.env`` file in the working directory. The global ``config`` instance can
also be modified at runtime before the server starts.

Usage:
    from vxrelay.config import config

    config.API_PORT = 9000
    config.LOG_LEVEL = LogLevel.DEBUG
"""

from pydantic_settings import BaseSettings, SettingsConfigDict

from vxrelay.models.enums import LogLevel, ProxyBackend


class TunnelConfig(BaseSettings):
    """
    vxrelay server configuration, organized by category.

    Attributes:
        API_BIND_IP: Address the HTTP API binds to.
        API_PORT: HTTP API port.
        DB_FILE: Path to the SQLite registry.
        PROXY_BACKEND: How proxy daemons are supervised.
        LOG_LEVEL: Logging verbosity level.
    """

    model_config = SettingsConfigDict(
        env_prefix="VXRELAY_",
        env_file=".env",
        extra="ignore",
    )

    # -------------------------------------------------------------------------
    # API Configuration
    # -------------------------------------------------------------------------

    API_BIND_IP: str = "127.0.0.1"
    API_PORT: int = 8380

    # -------------------------------------------------------------------------
    # Path Configuration
    # -------------------------------------------------------------------------

    DB_FILE: str = "/var/lib/vxrelay/vxrelay.db"
    PROXY_CONFIG_DIR: str = "/etc/vxrelay"
    PROXY_LOG_DIR: str = "/var/log/vxrelay"
    PROXY_RUN_DIR: str = "/run/vxrelay"
    SYSTEMD_UNIT_DIR: str = "/etc/systemd/system"
    LOG_FILE: str = ""

    # -------------------------------------------------------------------------
    # Overlay Configuration
    # -------------------------------------------------------------------------

    # Base network the per-tunnel /24 blocks are carved from
    OVERLAY_BASE_NETWORK: str = "10.100.0.0/16"

    # Interface name prefix; the VNI is appended (vxr10042)
    OVERLAY_INTERFACE_PREFIX: str = "vxr"

    # Default VXLAN UDP port for new tunnels
    DEFAULT_TUNNEL_PORT: int = 4789

    # Default SOCKS5 port for new tunnels
    DEFAULT_PROXY_PORT: int = 1080

    # -------------------------------------------------------------------------
    # Allocator Configuration
    # -------------------------------------------------------------------------

    # Readable VNI range sampled at random before the linear scan fallback
    VNI_RANGE_MIN: int = 10000
    VNI_RANGE_MAX: int = 99999
    VNI_RANDOM_ATTEMPTS: int = 100

    # -------------------------------------------------------------------------
    # Proxy Daemon Configuration
    # -------------------------------------------------------------------------

    PROXY_BACKEND: ProxyBackend = ProxyBackend.SYSTEMD
    PROXY_BINARY: str = "/usr/local/bin/xray"
    PROXY_LOG_LEVEL: str = "info"

    # Listen address of the origin's client-facing SOCKS5 inbound
    ORIGIN_PROXY_LISTEN: str = "0.0.0.0"

    # -------------------------------------------------------------------------
    # Timing Configuration
    # -------------------------------------------------------------------------

    # Pause after interface creation/removal so kernel state converges
    SETTLE_DELAY_SECONDS: float = 1.0

    # Pause after starting a proxy before checking it stayed up
    SERVICE_SETTLE_SECONDS: float = 2.0

    # Seconds to wait for a stopped process before killing it
    SERVICE_STOP_TIMEOUT_SECONDS: float = 5.0

    # Reachability probe from origin to the relay's proxy port
    PEER_PROBE_TIMEOUT_SECONDS: float = 5.0
    PEER_PROBE_REQUIRED: bool = False

    # Timeout for external commands (ip, iptables, systemctl)
    COMMAND_TIMEOUT_SECONDS: float = 30.0

    # -------------------------------------------------------------------------
    # Diagnostics Configuration
    # -------------------------------------------------------------------------

    CONNECTIVITY_TEST_URL: str = "http://httpbin.org/ip"
    CONNECTIVITY_TIMEOUT_SECONDS: float = 10.0

    # -------------------------------------------------------------------------
    # Logging Configuration
    # -------------------------------------------------------------------------

    LOG_LEVEL: LogLevel = LogLevel.INFO

    # =========================================================================
    # Helper Methods
    # =========================================================================

    def get_api_url(self) -> str:
        """Get the API base URL, e.g. "http://127.0.0.1:8380"."""
        return f"http://{self.API_BIND_IP}:{self.API_PORT}"


# =============================================================================
# Global Instance
# =============================================================================

# Global config instance - modify before server startup
config = TunnelConfig()
