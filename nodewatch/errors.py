"""Exception taxonomy shared by probes, clients, sequencers and the controller."""

from __future__ import annotations


class NodeWatchError(Exception):
    """Base class for all nodewatch errors."""


class ConfigError(NodeWatchError):
    """Configuration file or environment override could not be loaded."""


class RuntimeUnavailable(NodeWatchError):
    """The container engine itself cannot be reached.

    ``cli_missing`` distinguishes a missing ``docker`` binary from a daemon
    that is installed but not answering.
    """

    def __init__(self, message: str, *, cli_missing: bool = False):
        super().__init__(message)
        self.cli_missing = cli_missing


class ServiceUnreachable(NodeWatchError):
    """An RPC/HTTP call failed, timed out or returned an error status."""

    def __init__(self, service: str, message: str):
        super().__init__(f"{service}: {message}")
        self.service = service


class MalformedResponse(ServiceUnreachable):
    """The service answered, but not with the JSON shape or encoding we expect."""


class ContainerActionFailed(NodeWatchError):
    """A start/stop/kill/restart command returned non-success."""

    def __init__(self, action: str, container: str, message: str, *, timed_out: bool = False):
        super().__init__(f"docker {action} {container} failed: {message}")
        self.action = action
        self.container = container
        self.timed_out = timed_out


class LeaseHeld(NodeWatchError):
    """Another recovery pass currently holds the lease."""

    def __init__(self, path: str, holder_pid: int | None, age_seconds: float | None):
        suffix = f" (pid {holder_pid})" if holder_pid else ""
        super().__init__(f"Another recovery pass is already running{suffix}: {path}")
        self.path = path
        self.holder_pid = holder_pid
        self.age_seconds = age_seconds
