"""Single-pass recovery state machine.

One invocation walks the states below in order and stops at the first one
that applies. There are no retry loops; the next attempt is the next
scheduled pass.

    ACQUIRE_LEASE -> CHECK_ENGINE -> OBSERVE -> START_STOPPED
        -> RESTART_BOTH -> RESTART_EXECUTION -> DISK_FATAL -> NONE
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Callable

import structlog

from ..config import NodeWatchConfig, ThresholdsConfig
from ..containers.docker_cli import DockerCLI
from ..containers.sequencer import ShutdownSequencer, StartupSequencer
from ..errors import ContainerActionFailed, LeaseHeld, RuntimeUnavailable
from ..exit_codes import EXIT_CODE_DESCRIPTIONS, REMEDIES, ExitCode
from ..health.collector import ObservationCollector
from ..health.evaluator import evaluate
from ..models import (
    ActionKind,
    Dimension,
    HealthReport,
    RecoveryAction,
    RecoveryOutcome,
    VerdictBasis,
)
from .lease import RecoveryLease

logger = structlog.get_logger(__name__)


class ControllerState(str, Enum):
    ACQUIRE_LEASE = "acquire_lease"
    CHECK_ENGINE = "check_engine"
    OBSERVE = "observe"
    START_STOPPED = "start_stopped"
    RESTART_BOTH = "restart_both"
    RESTART_EXECUTION = "restart_execution"
    CONTAINER_MISSING_FATAL = "container_missing_fatal"
    DISK_FATAL = "disk_fatal"
    NONE = "none"


def decide(report: HealthReport, thresholds: ThresholdsConfig) -> RecoveryAction:
    """Choose the corrective action for a report. Pure; first match wins."""
    obs = report.observation

    containers = report.verdict(Dimension.CONTAINERS)
    if containers.is_critical:
        missing = [s.identity.name for s in obs.services if not s.container.exists]
        if missing:
            return RecoveryAction(
                ActionKind.FATAL_MANUAL_INTERVENTION,
                Dimension.CONTAINERS,
                ExitCode.CONTAINER_MISSING,
                reason=f"container does not exist: {', '.join(missing)}",
            )
        return RecoveryAction(
            ActionKind.START_STOPPED, Dimension.CONTAINERS, ExitCode.RECOVERED_CONTAINERS, reason=containers.message
        )

    sync = report.verdict(Dimension.SYNC)
    if sync.is_critical:
        return RecoveryAction(
            ActionKind.RESTART_BOTH_ORDERED, Dimension.SYNC, ExitCode.RECOVERED_SYNC, reason=sync.message
        )

    peers = report.verdict(Dimension.PEERS)
    if peers.is_critical:
        return RecoveryAction(
            ActionKind.RESTART_EXECUTION, Dimension.PEERS, ExitCode.RECOVERED_PEERS, reason=peers.message
        )

    disk = report.verdict(Dimension.DISK)
    if (
        disk.basis is VerdictBasis.MEASURED
        and disk.observed is not None
        and disk.observed > thresholds.disk_unrecoverable_percent
    ):
        return RecoveryAction(
            ActionKind.FATAL_MANUAL_INTERVENTION, Dimension.DISK, ExitCode.DISK_CRITICAL, reason=disk.message
        )

    return RecoveryAction(ActionKind.NONE, None, ExitCode.OK)


def _state_for(action: RecoveryAction) -> ControllerState:
    if action.kind is ActionKind.START_STOPPED:
        return ControllerState.START_STOPPED
    if action.kind is ActionKind.RESTART_BOTH_ORDERED:
        return ControllerState.RESTART_BOTH
    if action.kind is ActionKind.RESTART_EXECUTION:
        return ControllerState.RESTART_EXECUTION
    if action.exit_code is ExitCode.CONTAINER_MISSING:
        return ControllerState.CONTAINER_MISSING_FATAL
    if action.exit_code is ExitCode.DISK_CRITICAL:
        return ControllerState.DISK_FATAL
    return ControllerState.NONE


class RecoveryController:
    def __init__(
        self,
        config: NodeWatchConfig,
        probe: DockerCLI,
        collector: ObservationCollector,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
        lease: RecoveryLease | None = None,
    ):
        self.config = config
        self.probe = probe
        self.collector = collector
        self.sleep = sleep
        self.clock = clock
        self.lease = lease or RecoveryLease(config.recovery.lease_path, config.recovery.stale_lease_seconds)
        self.state = ControllerState.ACQUIRE_LEASE

    def _enter(self, state: ControllerState, **context) -> None:
        self.state = state
        logger.info("controller_state", state=state.value, **context)

    def run_pass(self) -> RecoveryOutcome:
        self._enter(ControllerState.ACQUIRE_LEASE, lease=str(self.lease.path))
        try:
            self.lease.acquire()
        except LeaseHeld as e:
            logger.warning("recovery_already_running", holder_pid=e.holder_pid, age_seconds=e.age_seconds)
            action = RecoveryAction(ActionKind.NONE, None, ExitCode.ALREADY_RUNNING, reason=str(e))
            return RecoveryOutcome(action=action, exit_code=ExitCode.ALREADY_RUNNING, message=str(e))

        try:
            return self._run_locked()
        except RuntimeUnavailable as e:
            return self._engine_failure(e)
        finally:
            self.lease.release()

    def _run_locked(self) -> RecoveryOutcome:
        self._enter(ControllerState.CHECK_ENGINE)
        version = self.probe.ping()
        logger.debug("docker_engine_ok", server_version=version)

        self._enter(ControllerState.OBSERVE)
        observation = self.collector.collect()
        report = evaluate(observation, self.config.thresholds, self.clock())
        for verdict in report.verdicts:
            logger.info(
                "health_verdict",
                dimension=verdict.dimension.value,
                severity=verdict.severity.value,
                basis=verdict.basis.value,
                message=verdict.message,
            )

        action = decide(report, self.config.thresholds)
        self._enter(_state_for(action), action=action.kind.value, reason=action.reason)

        if action.kind is ActionKind.FATAL_MANUAL_INTERVENTION:
            outcome = self._fatal(action, action.exit_code, action.reason)
        elif action.kind is ActionKind.START_STOPPED:
            outcome = self._start_stopped(action)
        elif action.kind is ActionKind.RESTART_BOTH_ORDERED:
            outcome = self._restart_both(action)
        elif action.kind is ActionKind.RESTART_EXECUTION:
            outcome = self._restart_execution(action)
        else:
            outcome = RecoveryOutcome(action=action, exit_code=ExitCode.OK, message="node healthy, no action taken")

        outcome.report = report
        logger.info("recovery_pass_complete", exit_code=int(outcome.exit_code), message=outcome.message)
        return outcome

    def _fatal(self, action: RecoveryAction, code: ExitCode, message: str, steps: list[str] | None = None) -> RecoveryOutcome:
        logger.error("recovery_fatal", exit_code=int(code), message=message)
        return RecoveryOutcome(
            action=action,
            exit_code=code,
            message=message or EXIT_CODE_DESCRIPTIONS[code],
            remedy=REMEDIES.get(code),
            steps=steps or [],
        )

    def _engine_failure(self, error: RuntimeUnavailable) -> RecoveryOutcome:
        code = ExitCode.RUNTIME_MISSING if error.cli_missing else ExitCode.ENGINE_UNREACHABLE
        action = RecoveryAction(ActionKind.FATAL_MANUAL_INTERVENTION, Dimension.CONTAINERS, code, reason=str(error))
        return self._fatal(action, code, str(error))

    def _start_stopped(self, action: RecoveryAction) -> RecoveryOutcome:
        result = StartupSequencer.from_config(self.probe, self.config, sleep=self.sleep).run()
        steps = [f"started {name}" for name in result.started]
        if result.missing:
            return self._fatal(
                action, ExitCode.CONTAINER_MISSING, f"container does not exist: {', '.join(result.missing)}", steps
            )
        if not result.all_running:
            detail = "; ".join(f"{name}: {why}" for name, why in sorted(result.failed.items()))
            return self._fatal(action, ExitCode.CONTAINER_START_FAILED, f"containers did not come up ({detail})", steps)
        return RecoveryOutcome(
            action=action,
            exit_code=ExitCode.RECOVERED_CONTAINERS,
            message=f"started stopped containers: {', '.join(result.started)}",
            steps=steps,
        )

    def _restart_both(self, action: RecoveryAction) -> RecoveryOutcome:
        steps: list[str] = []
        shutdown = ShutdownSequencer.from_config(self.probe, self.config).run(force=True)
        for svc in shutdown.services:
            if svc.killed:
                steps.append(f"killed {svc.identity.name}")
            elif svc.was_running:
                steps.append(f"stopped {svc.identity.name}")
        if not shutdown.all_stopped:
            still = ", ".join(shutdown.still_running())
            return self._fatal(action, ExitCode.CONTAINER_STOP_FAILED, f"still running after stop: {still}", steps)

        self.sleep(self.config.recovery.wait_after_stop_seconds)

        result = StartupSequencer.from_config(self.probe, self.config, sleep=self.sleep).run()
        steps.extend(f"started {name}" for name in result.started)
        if result.missing:
            return self._fatal(
                action, ExitCode.CONTAINER_MISSING, f"container does not exist: {', '.join(result.missing)}", steps
            )
        if not result.all_running:
            detail = "; ".join(f"{name}: {why}" for name, why in sorted(result.failed.items()))
            return self._fatal(action, ExitCode.CONTAINER_START_FAILED, f"restart after stuck sync failed ({detail})", steps)
        return RecoveryOutcome(
            action=action,
            exit_code=ExitCode.RECOVERED_SYNC,
            message=f"recovered from stuck sync: {action.reason}",
            steps=steps,
        )

    def _restart_execution(self, action: RecoveryAction) -> RecoveryOutcome:
        name = self.config.execution.container
        try:
            self.probe.restart(name, self.config.shutdown.execution_timeout_seconds)
        except ContainerActionFailed as e:
            return self._fatal(action, ExitCode.CONTAINER_START_FAILED, str(e))
        steps = [f"restarted {name}"]

        self.sleep(self.config.recovery.wait_after_peer_restart_seconds)

        if not self.probe.is_running(name):
            return self._fatal(action, ExitCode.CONTAINER_START_FAILED, f"{name} not running after restart", steps)
        return RecoveryOutcome(
            action=action,
            exit_code=ExitCode.RECOVERED_PEERS,
            message=f"recovered from low peers: {action.reason}",
            steps=steps,
        )
