"""Relay-side forwarding: ip_forward, default egress lookup and iptables rules."""

from __future__ import annotations

import socket

from vxrelay.errors import ProvisioningFailure
from vxrelay.network.base import StepResult
from vxrelay.utils.logger import get_logger
from vxrelay.utils.shell import run_command

logger = get_logger(__name__)

IP_FORWARD_PATH = "/proc/sys/net/ipv4/ip_forward"


def enable_ip_forwarding() -> StepResult:
    """Turn on IPv4 forwarding."""
    try:
        with open(IP_FORWARD_PATH, "w") as f:
            f.write("1")
    except OSError as e:
        raise ProvisioningFailure("ip_forward", f"Cannot enable IP forwarding: {e}")
    logger.debug("Enabled IPv4 forwarding")
    return StepResult("ip_forward", True)


def default_egress_interface(ipr) -> str | None:
    """Name of the interface carrying the IPv4 default route."""
    for route in ipr.get_default_routes(family=socket.AF_INET):
        oif = route.get_attr("RTA_OIF")
        if oif is None:
            continue
        for link in ipr.get_links(oif):
            return link.get_attr("IFLA_IFNAME")
    return None


def nat_rules(subnet: str, egress: str) -> list[list[str]]:
    """
    iptables rules (without the -A/-D verb) for one tunnel subnet.

    Each rule is ``[table, chain, *match]``.
    """
    return [
        ["nat", "POSTROUTING", "-s", subnet, "-o", egress, "-j", "MASQUERADE"],
        [
            "filter",
            "FORWARD",
            "-i",
            egress,
            "-d",
            subnet,
            "-m",
            "conntrack",
            "--ctstate",
            "RELATED,ESTABLISHED",
            "-j",
            "ACCEPT",
        ],
        ["filter", "FORWARD", "-s", subnet, "-o", egress, "-j", "ACCEPT"],
    ]


def _iptables(verb: str, rule: list[str]) -> list[str]:
    table, chain, *match = rule
    return ["iptables", "-t", table, verb, chain, *match]


def ensure_rule(rule: list[str]) -> StepResult:
    """Add a rule unless an identical one already exists."""
    label = f"{rule[0]}/{rule[1]} {' '.join(rule[2:])}"
    if run_command(_iptables("-C", rule)).ok:
        logger.debug(f"iptables rule already exists: {label}")
        return StepResult("nat_rule", True, f"exists: {label}")

    result = run_command(_iptables("-A", rule))
    if not result.ok:
        raise ProvisioningFailure("nat_rule", f"{label}: {result.output}")
    logger.info(f"Added iptables rule: {label}")
    return StepResult("nat_rule", True, f"added: {label}")


def remove_rule(rule: list[str]) -> StepResult:
    """Delete every copy of a rule; a missing rule is not an error."""
    label = f"{rule[0]}/{rule[1]} {' '.join(rule[2:])}"
    removed = 0
    while run_command(_iptables("-C", rule)).ok:
        result = run_command(_iptables("-D", rule))
        if not result.ok:
            logger.warning(f"Failed to delete iptables rule {label}: {result.output}")
            return StepResult("nat_rule_removed", False, result.output)
        removed += 1

    detail = f"removed {removed}: {label}" if removed else f"absent: {label}"
    return StepResult("nat_rule_removed", True, detail)
