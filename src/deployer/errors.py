"""Exception types raised by the deployer core.

Ownership mismatches are reported as ``InstanceNotFoundError`` so callers
cannot discover instances they do not own.
"""


class DeployerError(Exception):
    """Base class for all deployer failures."""


class ValidationError(DeployerError, ValueError):
    """Malformed identity or operation parameters."""


class InstanceNotFoundError(DeployerError, LookupError):
    """Instance record is absent or not owned by the caller."""

    def __init__(self, message: str = "Instance not found"):
        super().__init__(message)


class MissingContainerError(DeployerError):
    """Instance record exists but has no container attached."""

    def __init__(self, message: str = "Instance has no container"):
        super().__init__(message)


class ContainerRuntimeError(DeployerError):
    """Generic container runtime failure."""


class ContainerNotFoundError(ContainerRuntimeError):
    """The runtime reports that the container does not exist."""

    def __init__(self, container_id: str):
        self.container_id = container_id
        super().__init__(f"Container not found: {container_id}")


class NoAvailablePortError(ContainerRuntimeError):
    """Every port drawn during container creation was already allocated."""


class BlockedCommandError(DeployerError):
    """Diagnostic command matched the destructive-pattern deny-list."""

    def __init__(self, command: str):
        self.command = command
        super().__init__(f"Blocked dangerous command: {command[:80]}")


class ProxySyncError(DeployerError):
    """Reverse-proxy port map could not be written or reloaded."""
