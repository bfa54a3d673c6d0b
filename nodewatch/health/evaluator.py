"""Classifies a NodeObservation into one verdict per health dimension.

``evaluate`` is a pure function: the same observation, thresholds and ``now``
always produce the same report. There is no hysteresis between cycles.
"""

from __future__ import annotations

from ..config import ThresholdsConfig
from ..models import (
    Dimension,
    HealthReport,
    HealthVerdict,
    NodeObservation,
    Severity,
    VerdictBasis,
)

ASSESSMENT_FAILED = "assessment failed"


def _band(value: int, warning: int, critical: int) -> Severity:
    if value > critical:
        return Severity.CRITICAL
    if value > warning:
        return Severity.WARNING
    return Severity.OK


def evaluate_containers(observation: NodeObservation) -> HealthVerdict:
    missing = [s.identity.name for s in observation.services if not s.container.exists]
    stopped = [s.identity.name for s in observation.services if s.container.exists and not s.running]
    if not missing and not stopped:
        return HealthVerdict(Dimension.CONTAINERS, Severity.OK, "both containers running", observed=2)
    parts = []
    if missing:
        parts.append("missing: " + ", ".join(missing))
    if stopped:
        parts.append("stopped: " + ", ".join(stopped))
    running = sum(1 for s in observation.services if s.running)
    return HealthVerdict(Dimension.CONTAINERS, Severity.CRITICAL, "; ".join(parts), observed=running)


def evaluate_sync(observation: NodeObservation, thresholds: ThresholdsConfig, now: float) -> HealthVerdict:
    execution = observation.execution
    if not execution.running:
        return HealthVerdict(
            Dimension.SYNC,
            Severity.WARNING,
            f"{execution.identity.name} is down, sync not assessed",
            basis=VerdictBasis.SERVICE_DOWN,
        )
    if execution.sync is None or execution.sync.latest_timestamp is None:
        return HealthVerdict(Dimension.SYNC, Severity.WARNING, ASSESSMENT_FAILED, basis=VerdictBasis.ASSESSMENT_FAILED)

    age = int(now) - execution.sync.latest_timestamp
    if age > thresholds.sync_stall_seconds:
        return HealthVerdict(
            Dimension.SYNC,
            Severity.CRITICAL,
            f"latest block is {age}s old (stuck, limit {thresholds.sync_stall_seconds}s)",
            observed=age,
        )

    consensus = observation.consensus
    syncing = []
    if execution.sync.is_syncing:
        syncing.append(execution.identity.name)
    if consensus.sync is not None and consensus.sync.is_syncing:
        syncing.append(consensus.identity.name)
    if syncing:
        return HealthVerdict(
            Dimension.SYNC,
            Severity.WARNING,
            f"still syncing: {', '.join(syncing)}; latest block {age}s old",
            observed=age,
        )
    return HealthVerdict(Dimension.SYNC, Severity.OK, f"in sync, latest block {age}s old", observed=age)


def evaluate_peers(observation: NodeObservation, thresholds: ThresholdsConfig) -> HealthVerdict:
    execution = observation.execution
    if not execution.running:
        return HealthVerdict(
            Dimension.PEERS,
            Severity.WARNING,
            f"{execution.identity.name} is down, peers not assessed",
            basis=VerdictBasis.SERVICE_DOWN,
        )
    if execution.peers is None:
        return HealthVerdict(Dimension.PEERS, Severity.WARNING, ASSESSMENT_FAILED, basis=VerdictBasis.ASSESSMENT_FAILED)

    count = execution.peers.peer_count
    message = f"execution peers {count}"
    consensus = observation.consensus
    if consensus.peers is not None:
        message += f", consensus peers {consensus.peers.peer_count}"

    if count < thresholds.min_peers:
        return HealthVerdict(
            Dimension.PEERS, Severity.CRITICAL, f"{message} (minimum {thresholds.min_peers})", observed=count
        )
    if count < thresholds.peers_very_low:
        return HealthVerdict(Dimension.PEERS, Severity.WARNING, message, observed=count)
    return HealthVerdict(Dimension.PEERS, Severity.OK, message, observed=count)


def evaluate_disk(observation: NodeObservation, thresholds: ThresholdsConfig) -> HealthVerdict:
    res = observation.resources
    if res is None or res.disk_used_percent is None:
        reason = observation.resources_error or "disk usage unavailable"
        return HealthVerdict(
            Dimension.DISK, Severity.WARNING, f"{ASSESSMENT_FAILED}: {reason}", basis=VerdictBasis.ASSESSMENT_FAILED
        )
    percent = res.disk_used_percent
    severity = _band(percent, thresholds.disk_warning_percent, thresholds.disk_critical_percent)
    message = f"{percent}% used at {res.data_path}"
    if percent > thresholds.disk_unrecoverable_percent:
        message += " (beyond automatic recovery)"
    return HealthVerdict(Dimension.DISK, severity, message, observed=percent)


def evaluate_ram(observation: NodeObservation, thresholds: ThresholdsConfig) -> HealthVerdict:
    res = observation.resources
    if res is None or res.ram_used_percent is None:
        return HealthVerdict(Dimension.RAM, Severity.WARNING, ASSESSMENT_FAILED, basis=VerdictBasis.ASSESSMENT_FAILED)
    percent = res.ram_used_percent
    severity = _band(percent, thresholds.ram_warning_percent, thresholds.ram_critical_percent)
    return HealthVerdict(Dimension.RAM, severity, f"{percent}% used", observed=percent)


def evaluate(observation: NodeObservation, thresholds: ThresholdsConfig, now: float) -> HealthReport:
    verdicts = (
        evaluate_containers(observation),
        evaluate_sync(observation, thresholds, now),
        evaluate_peers(observation, thresholds),
        evaluate_disk(observation, thresholds),
        evaluate_ram(observation, thresholds),
    )
    return HealthReport(generated_at=now, verdicts=verdicts, observation=observation)
