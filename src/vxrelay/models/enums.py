"""
Enumeration types for vxrelay.

This module defines the enumerations shared by the registry, the
orchestrator, the API and the CLI.
"""

from enum import Enum


# =============================================================================
# Tunnel-Related Enums
# =============================================================================


class TunnelRole(str, Enum):
    """
    Which end of the tunnel this host is.

    - RELAY: exposes egress to the wider network on behalf of the origin
    - ORIGIN: accepts client connections and forwards them to the relay
    """

    ORIGIN = "origin"
    RELAY = "relay"


class TunnelStatus(str, Enum):
    """
    Tunnel lifecycle status.

    State transitions:
        INACTIVE -> ACTIVE (start ok) or ERROR (start failed)
        ERROR -> ACTIVE (start ok) or INACTIVE (stop ok)
        ACTIVE -> INACTIVE (stop ok) or ERROR (teardown failed)
    """

    INACTIVE = "inactive"
    ACTIVE = "active"
    ERROR = "error"


# =============================================================================
# Proxy Service Enums
# =============================================================================


class ProxyBackend(str, Enum):
    """
    How proxy daemons are supervised.

    - SYSTEMD: one systemd unit per tunnel (restarts on crash)
    - PROCESS: directly spawned process tracked through a pid file
    """

    SYSTEMD = "systemd"
    PROCESS = "process"


# =============================================================================
# Configuration Enums
# =============================================================================


class LogLevel(str, Enum):
    """
    Logging verbosity levels.

    Levels (from most to least verbose):
        - FULL: Complete trace with detailed stack information
        - DEBUG: Debug messages and above
        - INFO: Informational messages and above
        - WARNING: Only warnings and errors
    """

    FULL = "full"
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
