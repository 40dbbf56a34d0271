"""VXLAN interface creation, deletion, and route operations."""

from __future__ import annotations

from pyroute2.netlink.exceptions import NetlinkError

from vxrelay.errors import ProvisioningFailure, ResourceConflictError, TeardownFailure
from vxrelay.models.overlay_subnet import PAIR_PREFIX, overlay_subnet
from vxrelay.network.base import OverlayStatus, StepResult
from vxrelay.utils.logger import get_logger

logger = get_logger(__name__)

# errno values returned by netlink for "nothing to delete"
_ENOENT = 2
_ESRCH = 3
_ENODEV = 19
_MISSING_ERRNOS = (_ENOENT, _ESRCH, _ENODEV)

IFF_UP = 0x1


def find_link(ipr, device_name: str):
    """Return the link message for ``device_name`` or None."""
    for link in ipr.get_links():
        if link.get_attr("IFLA_IFNAME") == device_name:
            return link
    return None


def find_link_index(ipr, device_name: str) -> int | None:
    link = find_link(ipr, device_name)
    return link["index"] if link is not None else None


def resolve_underlay_index(ipr, remote_ip: str) -> int | None:
    """Index of the physical device the kernel would use to reach ``remote_ip``."""
    try:
        routes = ipr.route("get", dst=remote_ip)
    except NetlinkError as e:
        logger.warning(f"No route to VXLAN remote {remote_ip}: {e}")
        return None
    for route in routes:
        oif = route.get_attr("RTA_OIF")
        if oif is not None:
            return oif
    return None


# =============================================================================
# Create
# =============================================================================


def create_vxlan_sync(
    ipr,
    device_name: str,
    vni: int,
    remote_ip: str,
    vxlan_port: int,
    overlay_ip: str,
    local_ip: str = "",
) -> list[StepResult]:
    """
    Create a point-to-point VXLAN interface (synchronous).

    Steps:
    1. create_interface: unicast VXLAN to ``remote_ip`` on ``vxlan_port``,
       bound to the underlay device that routes to the remote
    2. assign_address: ``overlay_ip``/24
    3. link_up
    4. subnet_route: ``<subnet>/24`` via the interface (replace)

    An existing interface is a conflict: creation is always explicit. Any
    failure after step 1 deletes the interface again before raising.
    """
    if find_link(ipr, device_name) is not None:
        raise ResourceConflictError(f"Interface {device_name} already exists")

    steps: list[StepResult] = []
    link_args = {
        "ifname": device_name,
        "kind": "vxlan",
        "vxlan_id": vni,
        "vxlan_group": remote_ip,  # Unicast remote
        "vxlan_port": vxlan_port,
        "vxlan_learning": False,
    }
    if local_ip:
        link_args["vxlan_local"] = local_ip
    underlay_idx = resolve_underlay_index(ipr, remote_ip)
    if underlay_idx is not None:
        link_args["vxlan_link"] = underlay_idx

    logger.info(
        f"Creating VXLAN: {device_name}, VNI={vni}, remote={remote_ip}, "
        f"port={vxlan_port}, underlay_idx={underlay_idx}"
    )
    try:
        ipr.link("add", **link_args)
    except NetlinkError as e:
        raise ProvisioningFailure("create_interface", f"{device_name}: {e}")

    vxlan_idx = find_link_index(ipr, device_name)
    if vxlan_idx is None:
        raise ProvisioningFailure(
            "create_interface", f"{device_name} missing after creation"
        )
    steps.append(StepResult("create_interface", True, device_name))

    subnet = overlay_subnet(overlay_ip)
    step = "assign_address"
    try:
        ipr.addr("add", index=vxlan_idx, address=overlay_ip, prefixlen=PAIR_PREFIX)
        steps.append(StepResult(step, True, f"{overlay_ip}/{PAIR_PREFIX}"))

        step = "link_up"
        ipr.link("set", index=vxlan_idx, state="up")
        steps.append(StepResult(step, True))

        step = "subnet_route"
        network, prefix = subnet.split("/")
        ipr.route("replace", dst=network, dst_len=int(prefix), oif=vxlan_idx)
        steps.append(StepResult(step, True, subnet))
    except NetlinkError as e:
        logger.warning(f"VXLAN {device_name} failed at {step}, removing interface")
        _delete_quietly(ipr, vxlan_idx, device_name)
        raise ProvisioningFailure(step, f"{device_name}: {e}")

    logger.info(f"Created VXLAN {device_name} with IP {overlay_ip}/{PAIR_PREFIX}")
    return steps


def _delete_quietly(ipr, index: int, device_name: str) -> None:
    try:
        ipr.link("del", index=index)
    except NetlinkError as e:
        logger.error(f"Rollback could not delete {device_name}: {e}")


# =============================================================================
# Routes
# =============================================================================


def replace_peer_route_sync(ipr, device_name: str, peer_ip: str) -> StepResult:
    """Install (or replace) a /32 route to ``peer_ip`` via the interface."""
    vxlan_idx = find_link_index(ipr, device_name)
    if vxlan_idx is None:
        raise ProvisioningFailure("client_route", f"{device_name} does not exist")
    try:
        ipr.route("replace", dst=peer_ip, dst_len=32, oif=vxlan_idx)
    except NetlinkError as e:
        raise ProvisioningFailure(
            "client_route", f"{peer_ip}/32 via {device_name}: {e}"
        )
    logger.info(f"Route {peer_ip}/32 via {device_name}")
    return StepResult("client_route", True, f"{peer_ip}/32 dev {device_name}")


def delete_route_sync(ipr, dst: str, dst_len: int, step: str) -> StepResult:
    """Delete a route; an absent route counts as removed."""
    try:
        ipr.route("del", dst=dst, dst_len=dst_len)
    except NetlinkError as e:
        if e.code in _MISSING_ERRNOS:
            return StepResult(step, True, f"{dst}/{dst_len} not present")
        logger.warning(f"Failed to delete route {dst}/{dst_len}: {e}")
        return StepResult(step, False, str(e))
    logger.debug(f"Deleted route {dst}/{dst_len}")
    return StepResult(step, True, f"{dst}/{dst_len}")


# =============================================================================
# Delete / Inspect
# =============================================================================


def delete_vxlan_sync(ipr, device_name: str) -> StepResult:
    """
    Delete a VXLAN device (synchronous).

    Raises:
        TeardownFailure: The device exists but could not be removed.
    """
    vxlan_idx = find_link_index(ipr, device_name)
    if vxlan_idx is None:
        logger.debug(f"VXLAN device {device_name} already absent")
        return StepResult("delete_interface", True, f"{device_name} not present")
    try:
        ipr.link("del", index=vxlan_idx)
    except NetlinkError as e:
        if e.code in _MISSING_ERRNOS:
            return StepResult("delete_interface", True, f"{device_name} not present")
        raise TeardownFailure(f"Failed to delete interface {device_name}: {e}")
    logger.info(f"Deleted VXLAN device: {device_name}")
    return StepResult("delete_interface", True, device_name)


def vxlan_status_sync(ipr, device_name: str) -> OverlayStatus:
    link = find_link(ipr, device_name)
    if link is None:
        return OverlayStatus(interface=device_name, exists=False)
    addresses = tuple(
        addr.get_attr("IFA_ADDRESS") for addr in ipr.get_addr(index=link["index"])
    )
    stats = link.get_attr("IFLA_STATS64")
    return OverlayStatus(
        interface=device_name,
        exists=True,
        is_up=bool(link["flags"] & IFF_UP),
        addresses=addresses,
        rx_bytes=_counter(stats, "rx_bytes"),
        tx_bytes=_counter(stats, "tx_bytes"),
    )


def _counter(stats, key: str) -> int:
    if stats is None:
        return 0
    try:
        return int(stats[key])
    except (KeyError, TypeError, ValueError):
        return 0
