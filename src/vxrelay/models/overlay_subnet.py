"""
Overlay address derivation for point-to-point tunnels.

Each tunnel gets a /24 block carved out of a base /16 and a pair of host
addresses inside it, both derived from the tunnel's VNI:

- block index = (vni // 100) % 255
- host offset = (vni % 100) % 252 + 1   (1..252)
- relay address  = <base>.<block>.<offset>
- origin address = <base>.<block>.<offset + 1>

Examples (base 10.100.0.0/16):
- VNI 10042: block 100, offset 43 -> relay 10.100.100.43, origin 10.100.100.44
- VNI 25501: block 0,   offset 2  -> relay 10.100.0.2,    origin 10.100.0.3

The mapping is stable but NOT injective: every VNI in 10000-10099 lands in
block 100, so two VNIs share a block with probability ~1/255 under uniform
sampling. Non-collision is enforced by the registry, which stores the derived
subnet in a unique column; the allocator re-derives and rejects candidates
whose block is already taken.
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass

PAIR_PREFIX = 24
MAX_BLOCKS = 255
MAX_HOST_OFFSET = 252


@dataclass(frozen=True)
class OverlayPairConfig:
    """
    Overlay addressing parsed from a base network string.

    Attributes:
        base_network: Base IPv4 network the /24 blocks are carved from.
    """

    base_network: ipaddress.IPv4Network

    DEFAULT_CONFIG = "10.100.0.0/16"

    @classmethod
    def parse(cls, config_str: str) -> OverlayPairConfig:
        """
        Parse a base network such as "10.100.0.0/16".

        Raises:
            ValueError: If the string is not an IPv4 network or its prefix
                leaves no room for 255 /24 blocks.
        """
        try:
            network = ipaddress.IPv4Network(config_str.strip(), strict=False)
        except (ipaddress.AddressValueError, ipaddress.NetmaskValueError) as e:
            raise ValueError(f"Invalid overlay base network '{config_str}': {e}")

        if network.prefixlen > 16:
            raise ValueError(
                f"Invalid overlay base network '{config_str}': prefix "
                f"/{network.prefixlen} is too narrow, need /16 or wider."
            )

        return cls(base_network=network)

    @classmethod
    def default(cls) -> OverlayPairConfig:
        """Get the default configuration (10.100.0.0/16)."""
        return cls.parse(cls.DEFAULT_CONFIG)

    def _block_base(self, vni: int) -> int:
        block = (vni // 100) % MAX_BLOCKS
        return int(self.base_network.network_address) + (block << 8)

    def derive_pair(self, vni: int) -> tuple[str, str]:
        """
        Derive the (relay, origin) overlay addresses for a VNI.

        Pure function of ``vni``: the same VNI always yields the same pair.
        """
        _validate_vni(vni)
        offset = (vni % 100) % MAX_HOST_OFFSET + 1
        block_base = self._block_base(vni)
        relay = ipaddress.IPv4Address(block_base + offset)
        origin = ipaddress.IPv4Address(block_base + offset + 1)
        return str(relay), str(origin)

    def derive_subnet(self, vni: int) -> str:
        """Get the /24 block in CIDR notation for a VNI."""
        _validate_vni(vni)
        return f"{ipaddress.IPv4Address(self._block_base(vni))}/{PAIR_PREFIX}"

    def __str__(self) -> str:
        return str(self.base_network)


def overlay_subnet(address: str) -> str:
    """
    Get the /24 network containing an overlay address.

    e.g. "10.100.7.12" -> "10.100.7.0/24"
    """
    network = ipaddress.IPv4Network(f"{address}/{PAIR_PREFIX}", strict=False)
    return str(network)


def same_block(address_a: str, address_b: str) -> bool:
    """Check whether two overlay addresses share a /24."""
    return overlay_subnet(address_a) == overlay_subnet(address_b)


def _validate_vni(vni: int) -> None:
    if vni < 1 or vni > 16777215:
        raise ValueError(f"Invalid VNI: {vni}. Must be between 1 and 16777215.")
