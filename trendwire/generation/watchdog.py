"""
Recovery Watchdog

A crashed process or a hung generator call can leave a job in generating
forever. The sweep puts such jobs back to pending so a later tick can pick
them up again. It runs on every tick and is a no-op when nothing is stale.
"""

import logging
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from trendwire.generation.constants import DEFAULT_STALE_JOB_MINUTES
from trendwire.generation.state_machine import JobStateMachine
from trendwire.lib.time import minutes_since, to_utc_naive
from trendwire.models import JOB_GENERATING

logger = logging.getLogger(__name__)


class RecoveryWatchdog:

    def __init__(self, state_machine: Optional[JobStateMachine] = None,
                 stale_threshold_minutes: int = DEFAULT_STALE_JOB_MINUTES):
        self.state_machine = state_machine or JobStateMachine()
        self.stale_threshold_minutes = stale_threshold_minutes

    def is_stale(self, job, now: datetime, stale_threshold_minutes: int) -> bool:
        if job.status != JOB_GENERATING:
            return False
        if job.started_at is None:
            return True
        return job.started_at < now - timedelta(minutes=stale_threshold_minutes)

    def sweep(self, plan, now: Optional[datetime] = None,
              stale_threshold_minutes: Optional[int] = None) -> int:
        """Reset stale generating jobs in plan to pending. Returns how many were reset."""
        if plan is None:
            return 0
        return len(self.sweep_jobs(plan.jobs, now, stale_threshold_minutes))

    def sweep_jobs(self, jobs: Iterable, now: Optional[datetime] = None,
                   stale_threshold_minutes: Optional[int] = None) -> List:
        """
        Reset stale generating jobs to pending in memory.

        Returns:
            The recovered jobs. Their stored row still says generating until
            the caller writes them back.
        """
        now = to_utc_naive(now)
        threshold = stale_threshold_minutes if stale_threshold_minutes is not None else self.stale_threshold_minutes

        recovered = []
        for job in jobs:
            if not self.is_stale(job, now, threshold):
                continue
            stuck_for = (
                f"{minutes_since(job.started_at, now):.0f} min" if job.started_at else 'unknown time'
            )
            self.state_machine.recover(job)
            recovered.append(job)
            logger.warning(
                f"Recovered stuck job #{job.position} ({job.id}) after {stuck_for} in generating"
            )

        return recovered
