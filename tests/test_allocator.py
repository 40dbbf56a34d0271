"""Tests for overlay address derivation and VNI allocation."""

import random

import pytest

from vxrelay.core.allocator import VniAllocator
from vxrelay.errors import ResourceExhaustedError
from vxrelay.models.overlay_subnet import OverlayPairConfig, overlay_subnet, same_block


class TestOverlayPairConfig:
    @pytest.mark.parametrize(
        "vni,relay,origin",
        [
            (10042, "10.100.100.43", "10.100.100.44"),
            (25501, "10.100.0.2", "10.100.0.3"),
            (99999, "10.100.234.100", "10.100.234.101"),
        ],
    )
    def test_derive_pair(self, vni, relay, origin):
        assert OverlayPairConfig.default().derive_pair(vni) == (relay, origin)

    def test_derivation_is_stable(self):
        config = OverlayPairConfig.default()
        assert config.derive_pair(12345) == config.derive_pair(12345)

    def test_pair_shares_derived_subnet(self):
        config = OverlayPairConfig.default()
        for vni in (1, 251, 252, 10099, 16777215):
            relay, origin = config.derive_pair(vni)
            assert overlay_subnet(relay) == config.derive_subnet(vni)
            assert same_block(relay, origin)

    def test_custom_base_network(self):
        config = OverlayPairConfig.parse("172.20.0.0/16")
        assert config.derive_pair(10042) == ("172.20.100.43", "172.20.100.44")

    @pytest.mark.parametrize("bad", ["10.100.0.0/24", "not-a-network"])
    def test_parse_rejects(self, bad):
        with pytest.raises(ValueError):
            OverlayPairConfig.parse(bad)

    @pytest.mark.parametrize("vni", [0, 16777216])
    def test_vni_out_of_range(self, vni):
        with pytest.raises(ValueError):
            OverlayPairConfig.default().derive_pair(vni)


class TestVniAllocator:
    def test_allocates_within_range(self):
        allocator = VniAllocator(rng=random.Random(7))
        allocation = allocator.allocate(set(), set())

        assert 10000 <= allocation.vni <= 99999
        relay, origin = allocator.overlay.derive_pair(allocation.vni)
        assert allocation.relay_overlay_address == relay
        assert allocation.origin_overlay_address == origin

    def test_skips_used_vni(self):
        allocator = VniAllocator(range_min=10000, range_max=10001, random_attempts=0)
        assert allocator.allocate_vni({10000}) == 10001

    def test_skips_vni_whose_block_is_taken(self):
        # 10000-10099 all derive block 100; 10100 is the first in block 101
        allocator = VniAllocator(range_min=10000, range_max=10100, random_attempts=0)
        assert allocator.allocate_vni(set(), {"10.100.100.0/24"}) == 10100

    def test_linear_scan_starts_at_lower_bound(self):
        allocator = VniAllocator(range_min=20000, range_max=20500, random_attempts=0)
        assert allocator.allocate_vni(set()) == 20000

    def test_exhausted_range(self):
        allocator = VniAllocator(range_min=10000, range_max=10002, random_attempts=5)
        with pytest.raises(ResourceExhaustedError):
            allocator.allocate_vni({10000, 10001, 10002})

    def test_single_block_range_holds_one_tunnel(self):
        allocator = VniAllocator(range_min=10000, range_max=10099)
        first = allocator.allocate(set(), set())
        with pytest.raises(ResourceExhaustedError):
            allocator.allocate({first.vni}, {first.overlay_subnet})

    def test_invalid_range(self):
        with pytest.raises(ValueError):
            VniAllocator(range_min=500, range_max=100)
