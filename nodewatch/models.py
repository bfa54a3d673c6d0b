"""Typed records passed between the probe, clients, evaluator and controller."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .exit_codes import ExitCode


class Role(str, Enum):
    EXECUTION = "execution"
    CONSENSUS = "consensus"


@dataclass(frozen=True)
class ServiceIdentity:
    name: str
    role: Role
    # Start order; shutdown walks it in reverse.
    order: int


@dataclass(frozen=True)
class Mount:
    source: str
    destination: str


@dataclass(frozen=True)
class ContainerState:
    exists: bool
    running: bool
    created_at: datetime | None = None
    container_id: str | None = None
    image: str | None = None
    mounts: tuple[Mount, ...] = ()

    @classmethod
    def missing(cls) -> "ContainerState":
        return cls(exists=False, running=False)


@dataclass(frozen=True)
class SyncSnapshot:
    is_syncing: bool
    current: int
    target: int | None = None
    latest_timestamp: int | None = None

    @property
    def progress_percent(self) -> float | None:
        if not self.is_syncing:
            return 100.0
        if not self.target:
            return None
        return round(self.current * 100.0 / self.target, 2)


@dataclass(frozen=True)
class BlockInfo:
    number: int
    timestamp: int


@dataclass(frozen=True)
class ConsensusSyncStatus:
    is_syncing: bool
    head_slot: int
    sync_distance: int


@dataclass(frozen=True)
class PeerSnapshot:
    peer_count: int


@dataclass(frozen=True)
class ResourceSnapshot:
    data_path: str | None
    disk_used_percent: int | None
    disk_available_bytes: int | None
    disk_total_bytes: int | None
    ram_used_percent: int | None
    ram_used_bytes: int | None = None
    ram_total_bytes: int | None = None


@dataclass(frozen=True)
class ContainerStats:
    name: str
    cpu_percent: str
    memory_usage: str


@dataclass(frozen=True)
class LogScan:
    lines_scanned: int
    error_lines: int


@dataclass(frozen=True)
class ServiceObservation:
    """Everything learned about one service during a single cycle.

    ``sync``/``peers`` stay ``None`` when the container is not running (no RPC
    is attempted) or when the call failed; ``*_error`` says which.
    """

    identity: ServiceIdentity
    container: ContainerState
    sync: SyncSnapshot | None = None
    sync_error: str | None = None
    peers: PeerSnapshot | None = None
    peers_error: str | None = None
    stats: ContainerStats | None = None
    log_scan: LogScan | None = None

    @property
    def running(self) -> bool:
        return self.container.running


@dataclass(frozen=True)
class NodeObservation:
    execution: ServiceObservation
    consensus: ServiceObservation
    resources: ResourceSnapshot | None
    resources_error: str | None
    observed_at: float

    @property
    def services(self) -> tuple[ServiceObservation, ServiceObservation]:
        return (self.execution, self.consensus)


class Dimension(str, Enum):
    CONTAINERS = "containers"
    SYNC = "sync"
    PEERS = "peers"
    DISK = "disk"
    RAM = "ram"


DIMENSION_ORDER = (Dimension.CONTAINERS, Dimension.SYNC, Dimension.PEERS, Dimension.DISK, Dimension.RAM)


class Severity(str, Enum):
    OK = "OK"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return {"OK": 0, "WARNING": 1, "CRITICAL": 2}[self.value]


class VerdictBasis(str, Enum):
    MEASURED = "measured"
    ASSESSMENT_FAILED = "assessment_failed"
    SERVICE_DOWN = "service_down"


@dataclass(frozen=True)
class HealthVerdict:
    dimension: Dimension
    severity: Severity
    message: str
    basis: VerdictBasis = VerdictBasis.MEASURED
    observed: int | None = None

    @property
    def is_critical(self) -> bool:
        return self.severity is Severity.CRITICAL and self.basis is VerdictBasis.MEASURED

    def to_dict(self) -> dict[str, Any]:
        return {
            "dimension": self.dimension.value,
            "severity": self.severity.value,
            "message": self.message,
            "basis": self.basis.value,
            "observed": self.observed,
        }


@dataclass(frozen=True)
class HealthReport:
    generated_at: float
    verdicts: tuple[HealthVerdict, ...]
    observation: NodeObservation

    def verdict(self, dimension: Dimension) -> HealthVerdict:
        for v in self.verdicts:
            if v.dimension is dimension:
                return v
        raise KeyError(dimension)

    @property
    def worst(self) -> Severity:
        return max((v.severity for v in self.verdicts), key=lambda s: s.rank, default=Severity.OK)

    def to_dict(self) -> dict[str, Any]:
        obs = self.observation
        services = {}
        for svc in obs.services:
            c = svc.container
            services[svc.identity.role.value] = {
                "name": svc.identity.name,
                "exists": c.exists,
                "running": c.running,
                "created_at": c.created_at.isoformat() if c.created_at else None,
                "image": c.image,
                "sync": (
                    {
                        "is_syncing": svc.sync.is_syncing,
                        "current": svc.sync.current,
                        "target": svc.sync.target,
                        "latest_timestamp": svc.sync.latest_timestamp,
                    }
                    if svc.sync
                    else None
                ),
                "sync_error": svc.sync_error,
                "peer_count": svc.peers.peer_count if svc.peers else None,
                "peers_error": svc.peers_error,
                "log_error_lines": svc.log_scan.error_lines if svc.log_scan else None,
            }
        res = obs.resources
        return {
            "generated_at": self.generated_at,
            "worst": self.worst.value,
            "verdicts": [v.to_dict() for v in self.verdicts],
            "services": services,
            "resources": (
                {
                    "data_path": res.data_path,
                    "disk_used_percent": res.disk_used_percent,
                    "disk_available_bytes": res.disk_available_bytes,
                    "disk_total_bytes": res.disk_total_bytes,
                    "ram_used_percent": res.ram_used_percent,
                }
                if res
                else None
            ),
        }


class ActionKind(str, Enum):
    NONE = "none"
    START_STOPPED = "start_stopped"
    RESTART_EXECUTION = "restart_execution"
    RESTART_BOTH_ORDERED = "restart_both_ordered"
    FATAL_MANUAL_INTERVENTION = "fatal_manual_intervention"


@dataclass(frozen=True)
class RecoveryAction:
    kind: ActionKind
    dimension: Dimension | None
    exit_code: ExitCode
    reason: str = ""


@dataclass
class RecoveryOutcome:
    """What a recovery pass decided, did, and how the process should exit."""

    action: RecoveryAction
    exit_code: ExitCode
    message: str
    remedy: str | None = None
    steps: list[str] = field(default_factory=list)
    report: HealthReport | None = None

    @property
    def fatal(self) -> bool:
        return self.exit_code.is_fatal
