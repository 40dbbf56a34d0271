"""
VNI allocation for new tunnels.

Policy: sample the human-readable range at random with rejection for a fixed
number of attempts, then fall back to a deterministic linear scan from the
lower bound. A candidate is free only when neither its VNI nor its derived
/24 overlay block is already held by another tunnel.
"""

from __future__ import annotations

import random
from collections.abc import Iterable
from dataclasses import dataclass

from vxrelay.errors import ResourceExhaustedError
from vxrelay.models.overlay_subnet import OverlayPairConfig
from vxrelay.utils.logger import get_logger

logger = get_logger(__name__)

VNI_MIN = 1
VNI_MAX = 16777215


@dataclass
class Allocation:
    """A VNI together with its derived overlay addressing."""

    vni: int
    relay_overlay_address: str
    origin_overlay_address: str
    overlay_subnet: str


class VniAllocator:
    """
    Bounded-random-then-linear-scan VNI allocator.

    The allocator holds no state of its own; callers pass the in-use sets
    (taken from the registry inside its write lock) on every call.
    """

    def __init__(
        self,
        overlay: OverlayPairConfig | None = None,
        range_min: int = 10000,
        range_max: int = 99999,
        random_attempts: int = 100,
        rng: random.Random | None = None,
    ):
        if not VNI_MIN <= range_min <= range_max <= VNI_MAX:
            raise ValueError(
                f"Invalid VNI range {range_min}-{range_max}, "
                f"must lie within {VNI_MIN}-{VNI_MAX}"
            )
        self.overlay = overlay or OverlayPairConfig.default()
        self.range_min = range_min
        self.range_max = range_max
        self.random_attempts = random_attempts
        self._rng = rng or random.Random()

    @classmethod
    def from_config(cls, cfg) -> VniAllocator:
        """Build an allocator from a ``TunnelConfig``."""
        return cls(
            overlay=OverlayPairConfig.parse(cfg.OVERLAY_BASE_NETWORK),
            range_min=cfg.VNI_RANGE_MIN,
            range_max=cfg.VNI_RANGE_MAX,
            random_attempts=cfg.VNI_RANDOM_ATTEMPTS,
        )

    def _is_free(self, vni: int, used_vnis: set[int], used_subnets: set[str]) -> bool:
        if vni in used_vnis:
            return False
        return self.overlay.derive_subnet(vni) not in used_subnets

    def allocate_vni(
        self, used_vnis: Iterable[int], used_subnets: Iterable[str] = ()
    ) -> int:
        """
        Pick a free VNI.

        Raises:
            ResourceExhaustedError: No value in the configured range is free.
        """
        used_vnis = set(used_vnis)
        used_subnets = set(used_subnets)

        for _ in range(self.random_attempts):
            candidate = self._rng.randint(self.range_min, self.range_max)
            if self._is_free(candidate, used_vnis, used_subnets):
                return candidate

        logger.debug(
            f"Random VNI sampling exhausted after {self.random_attempts} "
            f"attempts, scanning {self.range_min}-{self.range_max}"
        )
        for candidate in range(self.range_min, self.range_max + 1):
            if self._is_free(candidate, used_vnis, used_subnets):
                return candidate

        raise ResourceExhaustedError(
            f"No free VNI in range {self.range_min}-{self.range_max} "
            f"({len(used_vnis)} in use, {len(used_subnets)} overlay blocks taken)"
        )

    def allocate(
        self, used_vnis: Iterable[int], used_subnets: Iterable[str] = ()
    ) -> Allocation:
        """Pick a free VNI and derive its overlay pair."""
        vni = self.allocate_vni(used_vnis, used_subnets)
        relay, origin = self.overlay.derive_pair(vni)
        return Allocation(
            vni=vni,
            relay_overlay_address=relay,
            origin_overlay_address=origin,
            overlay_subnet=self.overlay.derive_subnet(vni),
        )
