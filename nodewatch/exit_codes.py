"""Process exit codes of the recovery pass.

These codes are a stable contract for cron jobs and alerting. Never renumber
an existing code; add new ones at the end.
"""

from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    OK = 0
    RUNTIME_MISSING = 1
    ENGINE_UNREACHABLE = 2
    DISK_CRITICAL = 3
    CONTAINER_MISSING = 4
    CONTAINER_START_FAILED = 5
    # 6 was the RPC error exit of the shell tooling. RPC failures now only
    # degrade a dimension, so the code is left unassigned.
    RECOVERED_SYNC = 7
    RECOVERED_PEERS = 8
    RECOVERED_CONTAINERS = 9
    ALREADY_RUNNING = 10
    CONTAINER_STOP_FAILED = 11
    INTERRUPTED = 130

    @property
    def is_fatal(self) -> bool:
        return self in FATAL_CODES

    @property
    def recovered(self) -> bool:
        return self in (ExitCode.RECOVERED_SYNC, ExitCode.RECOVERED_PEERS, ExitCode.RECOVERED_CONTAINERS)


FATAL_CODES = frozenset(
    {
        ExitCode.RUNTIME_MISSING,
        ExitCode.ENGINE_UNREACHABLE,
        ExitCode.DISK_CRITICAL,
        ExitCode.CONTAINER_MISSING,
        ExitCode.CONTAINER_START_FAILED,
        ExitCode.CONTAINER_STOP_FAILED,
    }
)


EXIT_CODE_DESCRIPTIONS: dict[ExitCode, str] = {
    ExitCode.OK: "Node healthy, no action taken",
    ExitCode.RUNTIME_MISSING: "docker CLI is not installed",
    ExitCode.ENGINE_UNREACHABLE: "Docker daemon is not reachable",
    ExitCode.DISK_CRITICAL: "Disk usage beyond what automation can fix",
    ExitCode.CONTAINER_MISSING: "A service container does not exist",
    ExitCode.CONTAINER_START_FAILED: "Containers did not come up after start/restart",
    ExitCode.RECOVERED_SYNC: "Stuck sync detected, both services restarted",
    ExitCode.RECOVERED_PEERS: "Low peer count detected, execution service restarted",
    ExitCode.RECOVERED_CONTAINERS: "Stopped containers were started",
    ExitCode.ALREADY_RUNNING: "Another recovery pass holds the lease, skipped",
    ExitCode.CONTAINER_STOP_FAILED: "Containers could not be stopped for a restart",
    ExitCode.INTERRUPTED: "Interrupted; current container state was printed",
}


REMEDIES: dict[ExitCode, str] = {
    ExitCode.RUNTIME_MISSING: "Install Docker (re-run the node installer) and retry.",
    ExitCode.ENGINE_UNREACHABLE: (
        "Start the daemon with 'sudo systemctl start docker' and check that this user may use Docker."
    ),
    ExitCode.DISK_CRITICAL: "Free up space on the blockchain volume or expand storage, then restart the node.",
    ExitCode.CONTAINER_MISSING: "Re-run the node installer to recreate the missing container.",
    ExitCode.CONTAINER_START_FAILED: "Inspect 'docker logs <container>' for the failing service and start it manually.",
    ExitCode.CONTAINER_STOP_FAILED: "Stop the container manually with 'docker kill <container>' and retry.",
}
