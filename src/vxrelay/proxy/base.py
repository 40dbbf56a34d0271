"""
Proxy service manager contract and the parts shared by all backends.

A backend supervises one SOCKS5 daemon per tunnel. Shared here: descriptor
generation, binary and port checks at deploy time, file layout, log tails and
psutil-based process inspection. Backends implement the supervision itself.
"""

from __future__ import annotations

import glob
import json
import os
import re
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass

import psutil

from vxrelay.db.tunnel import TunnelRecord
from vxrelay.errors import ProvisioningFailure, ResourceConflictError
from vxrelay.network.base import StepResult
from vxrelay.proxy.descriptor import listen_address
from vxrelay.utils.logger import get_logger

logger = get_logger(__name__)

WILDCARD_ADDRESSES = ("0.0.0.0", "::", "")
_CONFIG_NAME_RE = re.compile(r"^proxy-(?P<id>[0-9A-Za-z_-]+)\.json$")


@dataclass
class ServiceStatus:
    """Observed state of one proxy daemon."""

    tunnel_id: str
    running: bool
    detail: str = ""
    pid: int | None = None

    def to_dict(self) -> dict:
        return {
            "tunnel_id": self.tunnel_id,
            "running": self.running,
            "detail": self.detail,
            "pid": self.pid,
        }


@dataclass
class ServiceUsage:
    """CPU/memory snapshot of one proxy daemon."""

    tunnel_id: str
    pid: int | None = None
    cpu_percent: float = 0.0
    memory_rss: int = 0
    connections: int = 0

    def to_dict(self) -> dict:
        return {
            "tunnel_id": self.tunnel_id,
            "pid": self.pid,
            "cpu_percent": self.cpu_percent,
            "memory_rss": self.memory_rss,
            "connections": self.connections,
        }


def port_in_use(port: int, address: str = "0.0.0.0") -> bool:
    """
    Check whether something already listens on ``address:port``.

    A wildcard listener on either side counts as a clash.
    """
    try:
        conns = psutil.net_connections(kind="inet")
    except psutil.AccessDenied:
        logger.warning("Cannot inspect listening sockets (access denied)")
        return False

    for conn in conns:
        if conn.status != psutil.CONN_LISTEN or not conn.laddr:
            continue
        if conn.laddr.port != port:
            continue
        if (
            address in WILDCARD_ADDRESSES
            or conn.laddr.ip in WILDCARD_ADDRESSES
            or conn.laddr.ip == address
        ):
            return True
    return False


class ProxyServiceManager(ABC):
    """Deploys and supervises the per-tunnel SOCKS5 daemon."""

    def __init__(
        self,
        binary: str = "/usr/local/bin/xray",
        config_dir: str = "/etc/vxrelay",
        log_dir: str = "/var/log/vxrelay",
        settle_seconds: float = 2.0,
    ):
        self.binary = binary
        self.config_dir = config_dir
        self.log_dir = log_dir
        self.settle_seconds = settle_seconds

    # =========================================================================
    # Paths
    # =========================================================================

    def config_path(self, tunnel_id: str) -> str:
        return os.path.join(self.config_dir, f"proxy-{tunnel_id}.json")

    def log_path(self, tunnel_id: str) -> str:
        return os.path.join(self.log_dir, f"proxy-{tunnel_id}.log")

    def exec_args(self, tunnel_id: str) -> list[str]:
        return [self.binary, "run", "-config", self.config_path(tunnel_id)]

    # =========================================================================
    # Deploy
    # =========================================================================

    def deploy(self, tunnel: TunnelRecord, proxy_config: dict) -> list[StepResult]:
        """
        Write the daemon configuration and install the service.

        Raises:
            ProvisioningFailure: The proxy binary is missing.
            ResourceConflictError: The proxy port is already taken.
        """
        if not os.access(self.binary, os.X_OK):
            raise ProvisioningFailure(
                "proxy_deploy",
                f"Proxy binary not found or not executable: {self.binary}",
            )

        address, port = listen_address(proxy_config)
        if port_in_use(port, address):
            raise ResourceConflictError(f"Port {port} is already in use on {address}")

        os.makedirs(self.config_dir, exist_ok=True)
        os.makedirs(self.log_dir, exist_ok=True)
        path = self.config_path(tunnel.id)
        with open(path, "w") as f:
            json.dump(proxy_config, f, indent=2)
        os.chmod(path, 0o644)
        logger.debug(f"Wrote proxy config {path} (listen {address}:{port})")

        steps = [StepResult("proxy_config", True, path)]
        steps.extend(self._install(tunnel))
        return steps

    @abstractmethod
    def _install(self, tunnel: TunnelRecord) -> list[StepResult]:
        """Register the daemon with the backend (after the config is written)."""

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @abstractmethod
    def start(self, tunnel_id: str) -> list[StepResult]:
        """
        Start the daemon and verify it stayed up.

        Raises:
            ServiceStartFailure: The daemon is not running after the settle
                delay; carries its status/log output.
        """

    @abstractmethod
    def stop(self, tunnel_id: str) -> list[StepResult]:
        """Stop the daemon; stopping a non-running daemon is success."""

    @abstractmethod
    def remove(self, tunnel_id: str) -> list[StepResult]:
        """Stop and uninstall the daemon, deleting its config and log."""

    @abstractmethod
    def status(self, tunnel_id: str) -> ServiceStatus:
        """Report whether the daemon runs."""

    @abstractmethod
    def pid(self, tunnel_id: str) -> int | None:
        """Main pid of a running daemon."""

    def list_services(self) -> list[str]:
        """Tunnel ids that have a deployed daemon."""
        ids = set()
        for path in glob.glob(os.path.join(self.config_dir, "proxy-*.json")):
            match = _CONFIG_NAME_RE.match(os.path.basename(path))
            if match:
                ids.add(match.group("id"))
        return sorted(ids)

    def _remove_files(self, tunnel_id: str) -> list[StepResult]:
        steps = []
        for kind, path in (
            ("config", self.config_path(tunnel_id)),
            ("log", self.log_path(tunnel_id)),
        ):
            try:
                os.remove(path)
                steps.append(StepResult(f"remove_{kind}", True, path))
            except FileNotFoundError:
                steps.append(StepResult(f"remove_{kind}", True, f"{path} not present"))
            except OSError as e:
                logger.warning(f"Failed to remove {path}: {e}")
                steps.append(StepResult(f"remove_{kind}", False, str(e)))
        return steps

    # =========================================================================
    # Observability
    # =========================================================================

    def read_logs(self, tunnel_id: str, lines: int = 50) -> str:
        """Last ``lines`` lines of the daemon log ("" when there is none)."""
        try:
            with open(self.log_path(tunnel_id), errors="replace") as f:
                return "".join(deque(f, maxlen=max(lines, 0)))
        except FileNotFoundError:
            return ""

    def resource_usage(self, tunnel_id: str) -> ServiceUsage:
        pid = self.pid(tunnel_id)
        usage = ServiceUsage(tunnel_id=tunnel_id, pid=pid)
        if pid is None:
            return usage
        try:
            proc = psutil.Process(pid)
            with proc.oneshot():
                usage.cpu_percent = proc.cpu_percent(interval=0.1)
                usage.memory_rss = proc.memory_info().rss
                usage.connections = _established(proc)
        except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
            logger.debug(f"Cannot inspect proxy {tunnel_id} (pid {pid}): {e}")
            usage.pid = None
        return usage

    def connection_count(self, tunnel_id: str) -> int:
        pid = self.pid(tunnel_id)
        if pid is None:
            return 0
        try:
            return _established(psutil.Process(pid))
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return 0


def _established(proc: psutil.Process) -> int:
    return sum(
        1
        for conn in proc.net_connections(kind="inet")
        if conn.status == psutil.CONN_ESTABLISHED
    )
