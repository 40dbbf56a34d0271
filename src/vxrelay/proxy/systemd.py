"""
Systemd-supervised proxy daemons.

Each tunnel gets ``vxrelay-proxy-<id>.service``; systemd restarts the daemon
on crash and appends its output to the tunnel's proxy log.
"""

from __future__ import annotations

import os
import time

from vxrelay.db.tunnel import TunnelRecord
from vxrelay.errors import ProvisioningFailure, ServiceStartFailure
from vxrelay.network.base import StepResult
from vxrelay.proxy.base import ProxyServiceManager, ServiceStatus
from vxrelay.utils.logger import get_logger
from vxrelay.utils.shell import run_command

logger = get_logger(__name__)

UNIT_PREFIX = "vxrelay-proxy-"

UNIT_TEMPLATE = """[Unit]
Description=vxrelay SOCKS5 proxy for tunnel {tunnel_id} ({name})
After=network.target
Wants=network.target

[Service]
Type=simple
User=root
ExecStart={exec_start}
Restart=always
RestartSec=5
StandardOutput=append:{log_file}
StandardError=append:{log_file}
SyslogIdentifier={unit}
NoNewPrivileges=true
ProtectHome=true

[Install]
WantedBy=multi-user.target
"""


class SystemdServiceManager(ProxyServiceManager):
    """Proxy daemons as systemd units."""

    def __init__(self, unit_dir: str = "/etc/systemd/system", **kwargs):
        super().__init__(**kwargs)
        self.unit_dir = unit_dir

    def unit_name(self, tunnel_id: str) -> str:
        return f"{UNIT_PREFIX}{tunnel_id}.service"

    def unit_path(self, tunnel_id: str) -> str:
        return os.path.join(self.unit_dir, self.unit_name(tunnel_id))

    def render_unit(self, tunnel: TunnelRecord) -> str:
        return UNIT_TEMPLATE.format(
            tunnel_id=tunnel.id,
            name=tunnel.name,
            exec_start=" ".join(self.exec_args(tunnel.id)),
            log_file=self.log_path(tunnel.id),
            unit=self.unit_name(tunnel.id).removesuffix(".service"),
        )

    def _systemctl(self, *args: str):
        return run_command(["systemctl", *args])

    # =========================================================================
    # Install / Remove
    # =========================================================================

    def _install(self, tunnel: TunnelRecord) -> list[StepResult]:
        unit = self.unit_name(tunnel.id)
        path = self.unit_path(tunnel.id)
        with open(path, "w") as f:
            f.write(self.render_unit(tunnel))
        os.chmod(path, 0o644)

        result = self._systemctl("daemon-reload")
        if not result.ok:
            raise ProvisioningFailure(
                "proxy_deploy", f"systemctl daemon-reload failed: {result.output}"
            )
        result = self._systemctl("enable", unit)
        if not result.ok:
            raise ProvisioningFailure(
                "proxy_deploy", f"Failed to enable {unit}: {result.output}"
            )

        logger.info(f"Installed proxy unit {unit}")
        return [StepResult("proxy_unit", True, path)]

    def remove(self, tunnel_id: str) -> list[StepResult]:
        unit = self.unit_name(tunnel_id)
        steps = self.stop(tunnel_id)

        result = self._systemctl("disable", unit)
        steps.append(StepResult("disable_unit", True, result.output or unit))

        try:
            os.remove(self.unit_path(tunnel_id))
            steps.append(StepResult("remove_unit", True, self.unit_path(tunnel_id)))
        except FileNotFoundError:
            steps.append(StepResult("remove_unit", True, "not present"))
        except OSError as e:
            logger.warning(f"Failed to remove unit file for {unit}: {e}")
            steps.append(StepResult("remove_unit", False, str(e)))

        steps.extend(self._remove_files(tunnel_id))
        self._systemctl("daemon-reload")
        self._systemctl("reset-failed", unit)
        logger.info(f"Removed proxy unit {unit}")
        return steps

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self, tunnel_id: str) -> list[StepResult]:
        unit = self.unit_name(tunnel_id)
        result = self._systemctl("start", unit)
        if not result.ok:
            raise ServiceStartFailure(f"Failed to start {unit}", result.output)

        time.sleep(self.settle_seconds)

        if not self._is_active(unit):
            details = self._systemctl("status", unit, "--no-pager", "-l")
            raise ServiceStartFailure(f"{unit} failed to start", details.output)

        logger.info(f"Proxy unit {unit} is active")
        return [StepResult("proxy_start", True, unit)]

    def stop(self, tunnel_id: str) -> list[StepResult]:
        unit = self.unit_name(tunnel_id)
        # Stop regardless of is-active: activating/reloading units still run
        result = self._systemctl("stop", unit)
        if not result.ok and "not loaded" in result.output:
            return [StepResult("proxy_stop", True, f"{unit} not loaded")]
        if not result.ok:
            logger.warning(f"Failed to stop {unit}: {result.output}")
            return [StepResult("proxy_stop", False, result.output)]
        logger.info(f"Stopped proxy unit {unit}")
        return [StepResult("proxy_stop", True, unit)]

    def _is_active(self, unit: str) -> bool:
        result = self._systemctl("is-active", unit)
        return result.ok and result.stdout.strip() == "active"

    def status(self, tunnel_id: str) -> ServiceStatus:
        unit = self.unit_name(tunnel_id)
        result = self._systemctl("is-active", unit)
        state = result.stdout.strip() or "unknown"
        return ServiceStatus(
            tunnel_id=tunnel_id,
            running=result.ok and state == "active",
            detail=state,
            pid=self.pid(tunnel_id),
        )

    def pid(self, tunnel_id: str) -> int | None:
        result = self._systemctl(
            "show", self.unit_name(tunnel_id), "--property=MainPID", "--value"
        )
        try:
            pid = int(result.stdout.strip())
        except ValueError:
            return None
        return pid or None

    def list_services(self) -> list[str]:
        """Tunnel ids with a config file or a unit file on disk."""
        ids = set(super().list_services())
        try:
            entries = os.listdir(self.unit_dir)
        except FileNotFoundError:
            entries = []
        for entry in entries:
            if entry.startswith(UNIT_PREFIX) and entry.endswith(".service"):
                ids.add(entry[len(UNIT_PREFIX) : -len(".service")])
        return sorted(ids)
