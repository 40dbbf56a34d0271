"""Pytest configuration and shared fakes for vxrelay tests."""

import sys
import threading
from pathlib import Path

import pytest

# Ensure src/vxrelay is importable
src_path = str(Path(__file__).parent.parent / "src")
if src_path not in sys.path:
    sys.path.insert(0, src_path)

from vxrelay.core.allocator import VniAllocator  # noqa: E402
from vxrelay.core.registry import TunnelRegistry  # noqa: E402
from vxrelay.db.base import close_database, initialize_database  # noqa: E402
from vxrelay.network.base import (  # noqa: E402
    NetworkProvisioner,
    OverlayStatus,
    StepResult,
)
from vxrelay.orchestrator.lifecycle import TunnelOrchestrator  # noqa: E402
from vxrelay.proxy.base import ProxyServiceManager, ServiceStatus  # noqa: E402


# =============================================================================
# Fakes
# =============================================================================


class CallLog:
    """Thread-safe record of (name, args) tuples."""

    def __init__(self):
        self._lock = threading.Lock()
        self.calls: list[tuple] = []

    def add(self, name: str, *args) -> None:
        with self._lock:
            self.calls.append((name, *args))

    def names(self) -> list[str]:
        return [call[0] for call in self.calls]

    def clear(self) -> None:
        with self._lock:
            self.calls.clear()


class FakeProvisioner(NetworkProvisioner):
    """
    In-memory provisioner.

    ``failures`` maps an operation name to the exception it raises;
    ``host_error`` is raised by ``check_host``.
    """

    def __init__(self, log: CallLog):
        self.log = log
        self.failures: dict[str, Exception] = {}
        self.host_error: Exception | None = None
        self.interfaces: dict[int, dict] = {}

    def _maybe_fail(self, name: str) -> None:
        if name in self.failures:
            raise self.failures[name]

    def check_host(self) -> None:
        if self.host_error is not None:
            raise self.host_error

    def create_overlay(self, vni, local_address, remote_address, port, overlay_address):
        self.log.add("create_overlay", vni, local_address, remote_address, port)
        self._maybe_fail("create_overlay")
        self.interfaces[vni] = {"up": True, "address": overlay_address}
        return [StepResult("create_interface", True, self.interface_name(vni))]

    def destroy_overlay(self, vni, overlay_address=None, peer_overlay_address=None):
        self.log.add("destroy_overlay", vni)
        self._maybe_fail("destroy_overlay")
        self.interfaces.pop(vni, None)
        return [StepResult("delete_interface", True)]

    def overlay_status(self, vni):
        iface = self.interfaces.get(vni)
        if iface is None:
            return OverlayStatus(interface=self.interface_name(vni), exists=False)
        return OverlayStatus(
            interface=self.interface_name(vni),
            exists=True,
            is_up=iface["up"],
            addresses=(iface["address"],),
            rx_bytes=iface.get("rx", 0),
            tx_bytes=iface.get("tx", 0),
        )

    def setup_nat(self, overlay_address):
        self.log.add("setup_nat", overlay_address)
        self._maybe_fail("setup_nat")
        return [StepResult("nat_rule", True)]

    def teardown_nat(self, overlay_address):
        self.log.add("teardown_nat", overlay_address)
        return [StepResult("nat_rule_removed", True)]

    def setup_client_route(self, vni, peer_overlay_address, proxy_port):
        self.log.add("setup_client_route", vni, peer_overlay_address, proxy_port)
        self._maybe_fail("setup_client_route")
        return [StepResult("client_route", True)]

    def teardown_client_route(self, vni, peer_overlay_address):
        self.log.add("teardown_client_route", vni, peer_overlay_address)
        return [StepResult("peer_route", True)]


class FakeServiceManager(ProxyServiceManager):
    """In-memory proxy supervisor; nothing touches the filesystem."""

    def __init__(self, log: CallLog):
        super().__init__(binary="/bin/true", settle_seconds=0)
        self.log = log
        self.failures: dict[str, Exception] = {}
        self.deployed: dict[str, dict] = {}
        self.running: set[str] = set()
        self.connections: dict[str, int] = {}
        self.logs: dict[str, str] = {}

    def _maybe_fail(self, name: str) -> None:
        if name in self.failures:
            raise self.failures[name]

    def deploy(self, tunnel, proxy_config):
        self.log.add("deploy", tunnel.id)
        self._maybe_fail("deploy")
        self.deployed[tunnel.id] = proxy_config
        return [StepResult("proxy_config", True)]

    def _install(self, tunnel):
        return []

    def start(self, tunnel_id):
        self.log.add("start", tunnel_id)
        self._maybe_fail("start")
        self.running.add(tunnel_id)
        return [StepResult("proxy_start", True)]

    def stop(self, tunnel_id):
        self.log.add("stop", tunnel_id)
        self._maybe_fail("stop")
        self.running.discard(tunnel_id)
        return [StepResult("proxy_stop", True)]

    def remove(self, tunnel_id):
        self.log.add("remove", tunnel_id)
        self.running.discard(tunnel_id)
        self.deployed.pop(tunnel_id, None)
        return [StepResult("remove_config", True)]

    def status(self, tunnel_id):
        running = tunnel_id in self.running
        return ServiceStatus(
            tunnel_id=tunnel_id,
            running=running,
            detail="active" if running else "inactive",
            pid=4242 if running else None,
        )

    def pid(self, tunnel_id):
        return 4242 if tunnel_id in self.running else None

    def list_services(self):
        return sorted(self.deployed)

    def read_logs(self, tunnel_id, lines=50):
        return "".join(self.logs.get(tunnel_id, "").splitlines(True)[-lines:])

    def connection_count(self, tunnel_id):
        return self.connections.get(tunnel_id, 0)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def database(tmp_path):
    """A fresh SQLite registry file per test."""
    initialize_database(str(tmp_path / "vxrelay.db"))
    yield tmp_path
    close_database()


@pytest.fixture
def registry(database):
    return TunnelRegistry(VniAllocator())


@pytest.fixture
def call_log():
    return CallLog()


@pytest.fixture
def provisioner(call_log):
    return FakeProvisioner(call_log)


@pytest.fixture
def services(call_log):
    return FakeServiceManager(call_log)


@pytest.fixture
def orchestrator(registry, provisioner, services):
    return TunnelOrchestrator(
        registry=registry,
        provisioner=provisioner,
        services=services,
        settle_delay=0,
    )

