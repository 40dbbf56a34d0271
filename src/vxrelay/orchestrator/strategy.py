"""
Role strategies: the only place that knows how origin and relay differ.

Both roles share the same lifecycle. They differ in which address is local,
which overlay address is ours, how the proxy is wired, and whether the last
provisioning step is NAT (relay) or a client route (origin).
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from vxrelay.db.tunnel import TunnelRecord
from vxrelay.models.enums import TunnelRole
from vxrelay.network.base import NetworkProvisioner, StepResult
from vxrelay.proxy.descriptor import origin_proxy_config, relay_proxy_config


class TunnelStrategy(ABC):
    """Shared contract of the role variants."""

    role: TunnelRole
    provision_step: str

    def __init__(self, log_level: str = "info"):
        self.log_level = log_level

    @abstractmethod
    def endpoints(self, tunnel: TunnelRecord) -> tuple[str, str]:
        """(local underlay address, remote underlay address)."""

    @abstractmethod
    def overlay_addresses(self, tunnel: TunnelRecord) -> tuple[str, str]:
        """(our overlay address, peer overlay address)."""

    @abstractmethod
    def proxy_descriptor(self, tunnel: TunnelRecord) -> dict:
        """Daemon configuration for this end of the tunnel."""

    @abstractmethod
    def provision(
        self, tunnel: TunnelRecord, net: NetworkProvisioner
    ) -> list[StepResult]:
        """Role-specific step run after the overlay and proxy are up."""

    @abstractmethod
    def deprovision(
        self, tunnel: TunnelRecord, net: NetworkProvisioner
    ) -> list[StepResult]:
        """Undo ``provision``; missing state is not an error."""


class RelayStrategy(TunnelStrategy):
    """Relay: proxy on the overlay address, NAT to the default egress."""

    role = TunnelRole.RELAY
    provision_step = "nat"

    def endpoints(self, tunnel):
        return tunnel.relay_address, tunnel.origin_address

    def overlay_addresses(self, tunnel):
        return tunnel.relay_overlay_address, tunnel.origin_overlay_address

    def proxy_descriptor(self, tunnel):
        return relay_proxy_config(
            tunnel.relay_overlay_address, tunnel.proxy_port, self.log_level
        )

    def provision(self, tunnel, net):
        return net.setup_nat(tunnel.relay_overlay_address)

    def deprovision(self, tunnel, net):
        return net.teardown_nat(tunnel.relay_overlay_address)


class OriginStrategy(TunnelStrategy):
    """Origin: public proxy chained to the relay, route to the relay overlay."""

    role = TunnelRole.ORIGIN
    provision_step = "client_route"

    def __init__(self, listen: str = "0.0.0.0", log_level: str = "info"):
        super().__init__(log_level)
        self.listen = listen

    def endpoints(self, tunnel):
        return tunnel.origin_address, tunnel.relay_address

    def overlay_addresses(self, tunnel):
        return tunnel.origin_overlay_address, tunnel.relay_overlay_address

    def proxy_descriptor(self, tunnel):
        return origin_proxy_config(
            self.listen,
            tunnel.proxy_port,
            tunnel.relay_overlay_address,
            tunnel.proxy_port,
            self.log_level,
        )

    def provision(self, tunnel, net):
        return net.setup_client_route(
            tunnel.vni, tunnel.relay_overlay_address, tunnel.proxy_port
        )

    def deprovision(self, tunnel, net):
        return net.teardown_client_route(tunnel.vni, tunnel.relay_overlay_address)


def build_strategies(
    origin_listen: str = "0.0.0.0", log_level: str = "info"
) -> dict[TunnelRole, TunnelStrategy]:
    """One strategy per role."""
    return {
        TunnelRole.RELAY: RelayStrategy(log_level=log_level),
        TunnelRole.ORIGIN: OriginStrategy(listen=origin_listen, log_level=log_level),
    }
