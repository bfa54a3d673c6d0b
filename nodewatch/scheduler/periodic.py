"""Periodic trigger for recovery passes using APScheduler."""

from __future__ import annotations

from datetime import datetime
from typing import Callable

import structlog
from apscheduler.executors.debug import DebugExecutor
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..models import RecoveryOutcome

logger = structlog.get_logger(__name__)

JOB_ID = "recovery_pass"


def _inline_scheduler() -> BlockingScheduler:
    # Jobs run inside the scheduler loop on the calling thread.
    return BlockingScheduler(executors={"default": DebugExecutor()})


class RecoveryScheduler:
    """Invokes one recovery pass per tick.

    Passes run on the thread that called :meth:`start`, one at a time
    (``max_instances=1``), and missed ticks collapse into one. Overlap with a
    cron-driven pass is handled by the recovery lease, not here.

    An interrupt during a pass stops the scheduler and is re-raised from
    :meth:`start` once the loop has exited.
    """

    def __init__(
        self,
        run_pass: Callable[[], RecoveryOutcome],
        interval_seconds: int,
        scheduler: BlockingScheduler | None = None,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.run_pass = run_pass
        self.interval_seconds = interval_seconds
        self.scheduler = scheduler or _inline_scheduler()
        self.last_outcome: RecoveryOutcome | None = None
        self.interrupted = False

    def _tick(self) -> None:
        try:
            outcome = self.run_pass()
        except KeyboardInterrupt:
            # Job exceptions never leave APScheduler's run_job.
            logger.warning("scheduled_pass_interrupted")
            self.interrupted = True
            self.scheduler.shutdown(wait=False)
            return
        self.last_outcome = outcome
        log = logger.error if outcome.fatal else logger.info
        log(
            "scheduled_pass_finished",
            exit_code=int(outcome.exit_code),
            outcome=outcome.exit_code.name,
            message=outcome.message,
        )

    def add_job(self, run_immediately: bool = True) -> None:
        kwargs = {}
        if run_immediately:
            # An explicit None would add the job paused.
            kwargs["next_run_time"] = datetime.now()
        self.scheduler.add_job(
            func=self._tick,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=JOB_ID,
            name="Node recovery pass",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
            **kwargs,
        )
        logger.info("recovery_job_scheduled", interval_seconds=self.interval_seconds)

    def start(self, run_immediately: bool = True) -> None:
        """Block and run passes until interrupted."""
        self.add_job(run_immediately=run_immediately)
        logger.info("scheduler_started")
        try:
            self.scheduler.start()
        finally:
            if self.scheduler.running:
                self.scheduler.shutdown(wait=True)
            logger.info("scheduler_stopped")
        if self.interrupted:
            raise KeyboardInterrupt
