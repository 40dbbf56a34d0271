"""Exception classes for tunnel lifecycle operations."""


class TunnelError(Exception):
    """Base exception for vxrelay operations."""

    status_code = 500


class PlatformUnsupportedError(TunnelError):
    """The host platform cannot run overlay tunnels."""

    status_code = 501


class PrivilegeRequiredError(TunnelError):
    """The operation needs root privileges."""

    status_code = 403


class ResourceConflictError(TunnelError):
    """A port, VNI, subnet or interface is already in use."""

    status_code = 409


class ResourceExhaustedError(TunnelError):
    """No free VNI/subnet combination is left in the allocator range."""

    status_code = 507


class TunnelValidationError(TunnelError):
    """Malformed input or transfer descriptor."""

    status_code = 400


class TunnelNotFoundError(TunnelError):
    """Tunnel not found in the registry."""

    status_code = 404

    def __init__(self, tunnel_id: str):
        self.tunnel_id = tunnel_id
        super().__init__(f"Tunnel not found: {tunnel_id}")


class AlreadyInStateError(TunnelError):
    """Start on an active tunnel, or stop on an inactive one."""

    status_code = 409

    def __init__(self, tunnel_id: str, state: str):
        self.tunnel_id = tunnel_id
        self.state = state
        super().__init__(f"Tunnel {tunnel_id} is already {state}")


class ProvisioningFailure(TunnelError):
    """A provisioning step failed; ``step`` names which one."""

    def __init__(self, step: str, message: str):
        self.step = step
        self.detail = message
        super().__init__(f"{step}: {message}")


class ServiceStartFailure(TunnelError):
    """The proxy daemon did not come up; ``output`` holds its diagnostics."""

    def __init__(self, message: str, output: str = ""):
        self.output = output
        super().__init__(f"{message}: {output}" if output else message)


class TeardownFailure(TunnelError):
    """The terminal teardown step (interface removal) failed."""

    pass
