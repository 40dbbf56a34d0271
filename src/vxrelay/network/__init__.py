"""
Host networking for tunnels.

    from vxrelay.network import LinuxNetworkProvisioner, NetworkProvisioner
"""

from vxrelay.network.base import NetworkProvisioner, OverlayStatus, StepResult
from vxrelay.network.linux import LinuxNetworkProvisioner

__all__ = [
    "NetworkProvisioner",
    "LinuxNetworkProvisioner",
    "OverlayStatus",
    "StepResult",
]
