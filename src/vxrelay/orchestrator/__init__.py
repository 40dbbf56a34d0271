"""
Tunnel lifecycle and fleet operations.

    from vxrelay.orchestrator import FleetManager, TunnelOrchestrator
"""

from vxrelay.orchestrator.fleet import BatchReport, ConnectivityResult, FleetManager
from vxrelay.orchestrator.lifecycle import TunnelOrchestrator
from vxrelay.orchestrator.strategy import (
    OriginStrategy,
    RelayStrategy,
    TunnelStrategy,
    build_strategies,
)

__all__ = [
    "TunnelOrchestrator",
    "FleetManager",
    "BatchReport",
    "ConnectivityResult",
    "TunnelStrategy",
    "RelayStrategy",
    "OriginStrategy",
    "build_strategies",
]
