"""
Resource allocation and the tunnel registry.

    from vxrelay.core import TunnelRegistry, VniAllocator
"""

from vxrelay.core.allocator import Allocation, VniAllocator
from vxrelay.core.registry import TunnelRegistry, new_tunnel_id

__all__ = ["Allocation", "VniAllocator", "TunnelRegistry", "new_tunnel_id"]
