"""
Host command execution and host identity checks.

Every OS-level step (iptables, systemctl, ps, tail, nc) goes through
``run_command`` so tests can patch a single seam.
"""

import os
import platform
import subprocess
from dataclasses import dataclass

from vxrelay.config import config
from vxrelay.errors import PlatformUnsupportedError, PrivilegeRequiredError
from vxrelay.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class CommandResult:
    """Outcome of one external command."""

    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Combined stdout/stderr, trimmed."""
        return "\n".join(p for p in (self.stdout.strip(), self.stderr.strip()) if p)


def run_command(
    args: list[str],
    timeout: float | None = None,
    input_text: str | None = None,
) -> CommandResult:
    """
    Run a command and capture its output.

    Never raises for a non-zero exit status; a missing binary or a timeout is
    reported as returncode 127 / 124 with the reason in ``stderr``.
    """
    timeout = timeout if timeout is not None else config.COMMAND_TIMEOUT_SECONDS
    logger.trace(f"exec: {' '.join(args)}")

    try:
        proc = subprocess.run(
            args,
            capture_output=True,
            text=True,
            timeout=timeout,
            input=input_text,
        )
    except FileNotFoundError as e:
        return CommandResult(returncode=127, stderr=str(e))
    except subprocess.TimeoutExpired:
        return CommandResult(
            returncode=124, stderr=f"timed out after {timeout}s: {args[0]}"
        )

    if proc.returncode != 0:
        logger.debug(
            f"exec failed ({proc.returncode}): {' '.join(args)}: "
            f"{proc.stderr.strip()}"
        )
    return CommandResult(
        returncode=proc.returncode, stdout=proc.stdout, stderr=proc.stderr
    )


# =============================================================================
# Host Identity
# =============================================================================


def is_linux() -> bool:
    return platform.system() == "Linux"


def is_root() -> bool:
    return hasattr(os, "geteuid") and os.geteuid() == 0


def require_privileged_linux() -> None:
    """
    Reject the call before any mutation if the host cannot provision tunnels.

    Raises:
        PlatformUnsupportedError: Not running on Linux.
        PrivilegeRequiredError: Not running as root.
    """
    if not is_linux():
        raise PlatformUnsupportedError(
            f"Overlay tunnels require Linux (running on {platform.system()})"
        )
    if not is_root():
        raise PrivilegeRequiredError("Overlay tunnels require root privileges")
