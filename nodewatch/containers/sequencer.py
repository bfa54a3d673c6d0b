"""Ordered stop and start of the execution/consensus container pair.

Stop order is consensus then execution; start order is the reverse. Both
sequencers always report the final state of both services, whatever path was
taken to get there.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable

import structlog

from ..config import NodeWatchConfig
from ..errors import ContainerActionFailed
from ..models import ContainerState, ServiceIdentity
from .docker_cli import DockerCLI

logger = structlog.get_logger(__name__)


@dataclass
class ServiceStopResult:
    identity: ServiceIdentity
    was_running: bool
    stopped_gracefully: bool = False
    killed: bool = False
    error: str | None = None
    final_state: ContainerState | None = None

    @property
    def stopped(self) -> bool:
        return self.final_state is not None and not self.final_state.running


@dataclass
class ShutdownResult:
    services: list[ServiceStopResult] = field(default_factory=list)

    @property
    def all_stopped(self) -> bool:
        return all(s.stopped for s in self.services)

    def still_running(self) -> list[str]:
        return [s.identity.name for s in self.services if not s.stopped]


class ShutdownSequencer:
    """Stops consensus then execution, each with its own bounded timeout."""

    def __init__(self, probe: DockerCLI, identities: tuple[ServiceIdentity, ...], timeouts: dict[str, int]):
        self.probe = probe
        self.identities = identities
        self.timeouts = timeouts

    @classmethod
    def from_config(cls, probe: DockerCLI, config: NodeWatchConfig) -> "ShutdownSequencer":
        timeouts = {
            "consensus": config.shutdown.consensus_timeout_seconds,
            "execution": config.shutdown.execution_timeout_seconds,
        }
        return cls(probe, config.identities(), timeouts)

    def run(self, force: bool = False) -> ShutdownResult:
        result = ShutdownResult()
        for identity in sorted(self.identities, key=lambda i: i.order, reverse=True):
            result.services.append(self._stop_one(identity, force))
        logger.info(
            "shutdown_complete",
            all_stopped=result.all_stopped,
            still_running=result.still_running(),
        )
        return result

    def _stop_one(self, identity: ServiceIdentity, force: bool) -> ServiceStopResult:
        name = identity.name
        state = self.probe.inspect(name)
        if not state.exists:
            logger.warning("shutdown_container_missing", container=name)
            return ServiceStopResult(identity=identity, was_running=False, final_state=state)
        if not state.running:
            logger.info("shutdown_already_stopped", container=name)
            return ServiceStopResult(identity=identity, was_running=False, final_state=state)

        outcome = ServiceStopResult(identity=identity, was_running=True)
        timeout = self.timeouts[identity.role.value]
        logger.info("stopping_container", container=name, timeout_seconds=timeout)
        try:
            self.probe.stop(name, timeout)
            outcome.stopped_gracefully = True
        except ContainerActionFailed as e:
            outcome.error = str(e)
            logger.warning("graceful_stop_failed", container=name, timed_out=e.timed_out, error=str(e))
            if force:
                logger.warning("force_killing_container", container=name)
                try:
                    self.probe.kill(name)
                    outcome.killed = True
                except ContainerActionFailed as kill_error:
                    outcome.error = str(kill_error)
                    logger.error("kill_failed", container=name, error=str(kill_error))

        outcome.final_state = self.probe.inspect(name)
        return outcome


@dataclass
class StartupResult:
    started: list[str] = field(default_factory=list)
    already_running: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    final_states: dict[str, ContainerState] = field(default_factory=dict)
    logs: dict[str, list[str]] = field(default_factory=dict)

    @property
    def all_running(self) -> bool:
        return bool(self.final_states) and all(s.running for s in self.final_states.values())


class StartupSequencer:
    """Starts whichever services are stopped, execution first, then verifies."""

    def __init__(
        self,
        probe: DockerCLI,
        identities: tuple[ServiceIdentity, ...],
        init_delay_seconds: float,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.probe = probe
        self.identities = identities
        self.init_delay_seconds = init_delay_seconds
        self.sleep = sleep

    @classmethod
    def from_config(
        cls, probe: DockerCLI, config: NodeWatchConfig, sleep: Callable[[float], None] = time.sleep
    ) -> "StartupSequencer":
        return cls(probe, config.identities(), config.recovery.wait_after_start_seconds, sleep=sleep)

    def run(self, show_logs_lines: int = 0) -> StartupResult:
        result = StartupResult()
        ordered = sorted(self.identities, key=lambda i: i.order)

        states = {i.name: self.probe.inspect(i.name) for i in ordered}
        result.missing = [name for name, s in states.items() if not s.exists]
        if result.missing:
            logger.error("startup_containers_missing", containers=result.missing)
            result.final_states = states
            return result

        for position, identity in enumerate(ordered):
            name = identity.name
            if states[name].running:
                result.already_running.append(name)
                continue
            logger.info("starting_container", container=name, role=identity.role.value)
            try:
                self.probe.start(name)
            except ContainerActionFailed as e:
                result.failed[name] = str(e)
                logger.error("start_failed", container=name, error=str(e))
                continue
            result.started.append(name)
            if position < len(ordered) - 1:
                self.sleep(self.init_delay_seconds)

        result.final_states = {i.name: self.probe.inspect(i.name) for i in ordered}
        for name, state in result.final_states.items():
            if not state.running:
                result.failed.setdefault(name, "not running after start")
                if show_logs_lines:
                    result.logs[name] = self.probe.logs_tail(name, show_logs_lines)
        logger.info(
            "startup_complete",
            started=result.started,
            already_running=result.already_running,
            failed=sorted(result.failed),
        )
        return result
