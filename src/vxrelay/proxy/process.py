"""
Directly spawned proxy daemons tracked through pid files.

For hosts without systemd. The daemon is detached into its own session with
output appended to the tunnel's proxy log; nothing restarts it on crash.
"""

from __future__ import annotations

import os
import subprocess
import time

import psutil

from vxrelay.db.tunnel import TunnelRecord
from vxrelay.errors import ServiceStartFailure
from vxrelay.network.base import StepResult
from vxrelay.proxy.base import ProxyServiceManager, ServiceStatus
from vxrelay.utils.logger import get_logger

logger = get_logger(__name__)


class ProcessServiceManager(ProxyServiceManager):
    """Proxy daemons as plain background processes."""

    def __init__(
        self, run_dir: str = "/run/vxrelay", stop_timeout: float = 5.0, **kwargs
    ):
        super().__init__(**kwargs)
        self.run_dir = run_dir
        self.stop_timeout = stop_timeout

    def pid_path(self, tunnel_id: str) -> str:
        return os.path.join(self.run_dir, f"proxy-{tunnel_id}.pid")

    def _read_pid(self, tunnel_id: str) -> int | None:
        try:
            with open(self.pid_path(tunnel_id)) as f:
                return int(f.read().strip())
        except (FileNotFoundError, ValueError):
            return None

    def _clear_pid(self, tunnel_id: str) -> None:
        try:
            os.remove(self.pid_path(tunnel_id))
        except FileNotFoundError:
            pass

    def _install(self, tunnel: TunnelRecord) -> list[StepResult]:
        os.makedirs(self.run_dir, exist_ok=True)
        return []

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self, tunnel_id: str) -> list[StepResult]:
        if self.pid(tunnel_id) is not None:
            return [StepResult("proxy_start", True, "already running")]

        os.makedirs(self.run_dir, exist_ok=True)
        os.makedirs(self.log_dir, exist_ok=True)
        log_path = self.log_path(tunnel_id)
        with open(log_path, "ab") as log_file:
            try:
                proc = subprocess.Popen(
                    self.exec_args(tunnel_id),
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    stdin=subprocess.DEVNULL,
                    start_new_session=True,
                )
            except OSError as e:
                raise ServiceStartFailure("Failed to spawn proxy", str(e))

        with open(self.pid_path(tunnel_id), "w") as f:
            f.write(str(proc.pid))

        time.sleep(self.settle_seconds)

        if proc.poll() is not None:
            self._clear_pid(tunnel_id)
            raise ServiceStartFailure(
                f"Proxy exited with code {proc.returncode}",
                self.read_logs(tunnel_id, 20).strip(),
            )

        logger.info(f"Proxy for tunnel {tunnel_id} running (pid {proc.pid})")
        return [StepResult("proxy_start", True, f"pid {proc.pid}")]

    def stop(self, tunnel_id: str) -> list[StepResult]:
        pid = self.pid(tunnel_id)
        if pid is None:
            self._clear_pid(tunnel_id)
            return [StepResult("proxy_stop", True, "not running")]

        try:
            proc = psutil.Process(pid)
            proc.terminate()
            try:
                proc.wait(timeout=self.stop_timeout)
            except psutil.TimeoutExpired:
                logger.warning(f"Proxy pid {pid} ignored SIGTERM, killing")
                proc.kill()
                proc.wait(timeout=self.stop_timeout)
        except psutil.NoSuchProcess:
            pass
        except (psutil.AccessDenied, psutil.TimeoutExpired) as e:
            logger.warning(f"Failed to stop proxy pid {pid}: {e}")
            return [StepResult("proxy_stop", False, str(e))]

        self._clear_pid(tunnel_id)
        logger.info(f"Stopped proxy for tunnel {tunnel_id} (pid {pid})")
        return [StepResult("proxy_stop", True, f"pid {pid}")]

    def remove(self, tunnel_id: str) -> list[StepResult]:
        steps = self.stop(tunnel_id)
        steps.extend(self._remove_files(tunnel_id))
        return steps

    def pid(self, tunnel_id: str) -> int | None:
        """Pid from the pid file, if that process is still our daemon."""
        pid = self._read_pid(tunnel_id)
        if pid is None:
            return None
        try:
            proc = psutil.Process(pid)
            if proc.status() == psutil.STATUS_ZOMBIE:
                return None
            if self.config_path(tunnel_id) not in proc.cmdline():
                return None
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return None
        return pid

    def status(self, tunnel_id: str) -> ServiceStatus:
        pid = self.pid(tunnel_id)
        return ServiceStatus(
            tunnel_id=tunnel_id,
            running=pid is not None,
            detail="running" if pid else "stopped",
            pid=pid,
        )
