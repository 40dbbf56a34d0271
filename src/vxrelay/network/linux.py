"""
Linux network provisioner.

Links, addresses and routes go through pyroute2 netlink; NAT rules go through
iptables via the shell runner. Every public operation first checks that the
host is Linux and that we run as root, before touching anything.
"""

from __future__ import annotations

import socket
from contextlib import contextmanager

from vxrelay.errors import ProvisioningFailure
from vxrelay.models.overlay_subnet import PAIR_PREFIX, overlay_subnet
from vxrelay.network.base import NetworkProvisioner, OverlayStatus, StepResult
from vxrelay.network.nat import (
    default_egress_interface,
    enable_ip_forwarding,
    ensure_rule,
    nat_rules,
    remove_rule,
)
from vxrelay.network.vxlan import (
    create_vxlan_sync,
    delete_route_sync,
    delete_vxlan_sync,
    replace_peer_route_sync,
    vxlan_status_sync,
)
from vxrelay.utils.logger import get_logger
from vxrelay.utils.shell import require_privileged_linux

logger = get_logger(__name__)


class LinuxNetworkProvisioner(NetworkProvisioner):
    """Provisions VXLAN overlays, NAT and client routes on a Linux host."""

    def __init__(
        self,
        interface_prefix: str = "vxr",
        probe_timeout: float = 5.0,
        probe_required: bool = False,
        ipr_factory=None,
    ):
        self.interface_prefix = interface_prefix
        self.probe_timeout = probe_timeout
        self.probe_required = probe_required
        self._ipr_factory = ipr_factory

    @classmethod
    def from_config(cls, cfg) -> LinuxNetworkProvisioner:
        return cls(
            interface_prefix=cfg.OVERLAY_INTERFACE_PREFIX,
            probe_timeout=cfg.PEER_PROBE_TIMEOUT_SECONDS,
            probe_required=cfg.PEER_PROBE_REQUIRED,
        )

    def check_host(self) -> None:
        require_privileged_linux()

    @contextmanager
    def _ipr(self):
        """Open a netlink socket for the duration of one operation."""
        if self._ipr_factory is None:
            from pyroute2 import IPRoute

            self._ipr_factory = IPRoute
        ipr = self._ipr_factory()
        try:
            yield ipr
        finally:
            ipr.close()

    # =========================================================================
    # Overlay Interface
    # =========================================================================

    def create_overlay(
        self,
        vni: int,
        local_address: str,
        remote_address: str,
        port: int,
        overlay_address: str,
    ) -> list[StepResult]:
        require_privileged_linux()
        with self._ipr() as ipr:
            return create_vxlan_sync(
                ipr,
                device_name=self.interface_name(vni),
                vni=vni,
                remote_ip=remote_address,
                vxlan_port=port,
                overlay_ip=overlay_address,
                local_ip=local_address,
            )

    def destroy_overlay(
        self,
        vni: int,
        overlay_address: str | None = None,
        peer_overlay_address: str | None = None,
    ) -> list[StepResult]:
        """
        Tear down in order: peer route, NAT rules, subnet route, interface.

        Only the interface removal is fatal; the earlier steps are logged.
        """
        require_privileged_linux()
        device_name = self.interface_name(vni)
        steps: list[StepResult] = []

        with self._ipr() as ipr:
            if not vxlan_status_sync(ipr, device_name).exists:
                logger.debug(f"Overlay {device_name} already absent")
                return [StepResult("delete_interface", True, "not present")]

            if peer_overlay_address:
                steps.append(
                    delete_route_sync(ipr, peer_overlay_address, 32, "peer_route")
                )
            if overlay_address:
                steps.extend(self._teardown_nat_with(ipr, overlay_address))
                network, _ = overlay_subnet(overlay_address).split("/")
                steps.append(
                    delete_route_sync(ipr, network, PAIR_PREFIX, "subnet_route")
                )

            for step in steps:
                if not step.ok:
                    logger.warning(
                        f"Teardown of {device_name}: {step.step} failed: {step.detail}"
                    )

            steps.append(delete_vxlan_sync(ipr, device_name))
        return steps

    def overlay_status(self, vni: int) -> OverlayStatus:
        with self._ipr() as ipr:
            return vxlan_status_sync(ipr, self.interface_name(vni))

    # =========================================================================
    # Relay Side
    # =========================================================================

    def setup_nat(self, overlay_address: str) -> list[StepResult]:
        require_privileged_linux()
        subnet = overlay_subnet(overlay_address)
        steps = [enable_ip_forwarding()]

        with self._ipr() as ipr:
            egress = default_egress_interface(ipr)
        if not egress:
            raise ProvisioningFailure(
                "nat", "Could not determine default network interface"
            )

        for rule in nat_rules(subnet, egress):
            steps.append(ensure_rule(rule))
        logger.info(f"NAT ready for {subnet} via {egress}")
        return steps

    def teardown_nat(self, overlay_address: str) -> list[StepResult]:
        require_privileged_linux()
        with self._ipr() as ipr:
            return self._teardown_nat_with(ipr, overlay_address)

    def _teardown_nat_with(self, ipr, overlay_address: str) -> list[StepResult]:
        subnet = overlay_subnet(overlay_address)
        egress = default_egress_interface(ipr)
        if not egress:
            return [StepResult("nat_rule_removed", False, "no default route")]
        return [remove_rule(rule) for rule in nat_rules(subnet, egress)]

    # =========================================================================
    # Origin Side
    # =========================================================================

    def setup_client_route(
        self, vni: int, peer_overlay_address: str, proxy_port: int
    ) -> list[StepResult]:
        require_privileged_linux()
        with self._ipr() as ipr:
            steps = [
                replace_peer_route_sync(
                    ipr, self.interface_name(vni), peer_overlay_address
                )
            ]

        probe = self.probe_peer(peer_overlay_address, proxy_port)
        steps.append(probe)
        if not probe.ok:
            if self.probe_required:
                raise ProvisioningFailure("client_route", probe.detail)
            logger.warning(
                f"Relay proxy {peer_overlay_address}:{proxy_port} not reachable "
                f"yet ({probe.detail}), continuing"
            )
        return steps

    def teardown_client_route(
        self, vni: int, peer_overlay_address: str
    ) -> list[StepResult]:
        require_privileged_linux()
        with self._ipr() as ipr:
            return [delete_route_sync(ipr, peer_overlay_address, 32, "peer_route")]

    def probe_peer(self, address: str, port: int) -> StepResult:
        """Bounded TCP connect to the peer proxy port."""
        try:
            with socket.create_connection((address, port), timeout=self.probe_timeout):
                pass
        except OSError as e:
            return StepResult(
                "peer_probe", False, f"{address}:{port} unreachable: {e}"
            )
        return StepResult("peer_probe", True, f"{address}:{port} reachable")
