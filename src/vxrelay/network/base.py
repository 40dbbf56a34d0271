"""
Network provisioner contract.

The orchestrator only talks to ``NetworkProvisioner``; the Linux
implementation lives in ``vxrelay.network.linux`` and tests substitute a fake.
Every operation returns the list of steps it performed and raises a typed
``TunnelError`` when a fatal step fails.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass
class StepResult:
    """One provisioning step and its outcome."""

    step: str
    ok: bool = True
    detail: str = ""

    def to_dict(self) -> dict:
        return {"step": self.step, "ok": self.ok, "detail": self.detail}


@dataclass
class OverlayStatus:
    """Observed state of a tunnel's overlay interface."""

    interface: str
    exists: bool
    is_up: bool = False
    addresses: tuple[str, ...] = ()
    rx_bytes: int = 0
    tx_bytes: int = 0

    def to_dict(self) -> dict:
        return {
            "interface": self.interface,
            "exists": self.exists,
            "is_up": self.is_up,
            "addresses": list(self.addresses),
            "rx_bytes": self.rx_bytes,
            "tx_bytes": self.tx_bytes,
        }


class NetworkProvisioner(ABC):
    """Creates and removes the host networking behind one tunnel."""

    interface_prefix = "vxr"

    def interface_name(self, vni: int) -> str:
        """Overlay interface name for a VNI, e.g. ``vxr10042``."""
        return f"{self.interface_prefix}{vni}"

    def check_host(self) -> None:
        """
        Reject the host before any mutation.

        Raises:
            PlatformUnsupportedError: Wrong platform.
            PrivilegeRequiredError: Missing privileges.
        """

    # =========================================================================
    # Overlay Interface
    # =========================================================================

    @abstractmethod
    def create_overlay(
        self,
        vni: int,
        local_address: str,
        remote_address: str,
        port: int,
        overlay_address: str,
    ) -> list[StepResult]:
        """
        Create the overlay interface, assign its address and route its /24.

        Raises:
            ResourceConflictError: The interface already exists.
            ProvisioningFailure: A step failed; partial work was undone.
        """

    @abstractmethod
    def destroy_overlay(
        self,
        vni: int,
        overlay_address: str | None = None,
        peer_overlay_address: str | None = None,
    ) -> list[StepResult]:
        """
        Remove the overlay interface and its routes/NAT rules.

        An absent interface is success.

        Raises:
            TeardownFailure: The interface could not be removed.
        """

    @abstractmethod
    def overlay_status(self, vni: int) -> OverlayStatus:
        """Report whether the interface exists and is up."""

    # =========================================================================
    # Relay Side
    # =========================================================================

    @abstractmethod
    def setup_nat(self, overlay_address: str) -> list[StepResult]:
        """Enable forwarding and masquerade the tunnel /24."""

    @abstractmethod
    def teardown_nat(self, overlay_address: str) -> list[StepResult]:
        """Remove the NAT/forward rules of the tunnel /24; missing rules are fine."""

    # =========================================================================
    # Origin Side
    # =========================================================================

    @abstractmethod
    def setup_client_route(
        self, vni: int, peer_overlay_address: str, proxy_port: int
    ) -> list[StepResult]:
        """Route the peer's overlay address through the interface and probe it."""

    @abstractmethod
    def teardown_client_route(
        self, vni: int, peer_overlay_address: str
    ) -> list[StepResult]:
        """Remove the peer route; a missing route is fine."""
