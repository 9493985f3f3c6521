"""
Generation Job State Machine

    pending -> generating -> quality_check -> completed
                                           -> rejected
               generating -> failed

completed and rejected are terminal. failed goes back to pending only
through retry() (operator or recovery action, bounded by max_retries), and
a stuck generating job goes back to pending only through recover().

Every rejected transition is logged and raises InvalidTransitionError with
the job left exactly as it was.
"""

import logging
from datetime import datetime
from typing import Iterable, Optional

from trendwire.generation.constants import DEFAULT_MAX_JOB_RETRIES
from trendwire.generation.errors import InvalidTransitionError
from trendwire.lib.time import to_utc_naive
from trendwire.models import (
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_GENERATING,
    JOB_PENDING,
    JOB_QUALITY_CHECK,
    JOB_REJECTED,
)

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    JOB_PENDING: {JOB_GENERATING},
    JOB_GENERATING: {JOB_QUALITY_CHECK, JOB_FAILED, JOB_PENDING},
    JOB_QUALITY_CHECK: {JOB_COMPLETED, JOB_REJECTED},
    JOB_FAILED: {JOB_PENDING},
    JOB_COMPLETED: set(),
    JOB_REJECTED: set(),
}

TERMINAL_STATUSES = frozenset({JOB_COMPLETED, JOB_REJECTED})


class JobStateMachine:
    """Owns every status change of a GenerationJob."""

    def __init__(self, max_retries: int = DEFAULT_MAX_JOB_RETRIES):
        self.max_retries = max_retries

    def can_transition(self, job, target: str) -> bool:
        return target in ALLOWED_TRANSITIONS.get(job.status, set())

    def _check(self, job, target: str, reason: Optional[str] = None):
        if not self.can_transition(job, target):
            error = InvalidTransitionError(job.id, job.status, target, reason)
            logger.warning(str(error))
            raise error

    def start(self, job, now: Optional[datetime] = None):
        """pending -> generating."""
        self._check(job, JOB_GENERATING)
        job.status = JOB_GENERATING
        job.started_at = to_utc_naive(now)
        job.completed_at = None
        job.error = None
        logger.info(f"Job #{job.position} ({job.id}) started")
        return job

    def submit_for_review(self, job, now: Optional[datetime] = None):
        """generating -> quality_check, once the generator returned a draft."""
        self._check(job, JOB_QUALITY_CHECK)
        job.status = JOB_QUALITY_CHECK
        return job

    def complete(self, job, article_id, now: Optional[datetime] = None, quality_score=None):
        if article_id is None:
            error = InvalidTransitionError(job.id, job.status, JOB_COMPLETED, 'article_id required')
            logger.warning(str(error))
            raise error
        self._check(job, JOB_COMPLETED)
        job.status = JOB_COMPLETED
        job.completed_at = to_utc_naive(now)
        job.article_id = article_id
        job.quality_score = quality_score
        job.error = None
        logger.info(f"Job #{job.position} ({job.id}) completed with article {article_id}")
        return job

    def reject(self, job, reason: str, now: Optional[datetime] = None, quality_score=None):
        self._check(job, JOB_REJECTED)
        job.status = JOB_REJECTED
        job.completed_at = to_utc_naive(now)
        job.article_id = None
        job.quality_score = quality_score
        job.error = reason
        logger.info(f"Job #{job.position} ({job.id}) rejected: {reason}")
        return job

    def fail(self, job, error: str, now: Optional[datetime] = None):
        self._check(job, JOB_FAILED)
        job.status = JOB_FAILED
        job.completed_at = to_utc_naive(now)
        job.error = (error or 'Unknown error')[:2000]
        logger.warning(f"Job #{job.position} ({job.id}) failed: {job.error}")
        return job

    def can_retry(self, job) -> bool:
        return job.status == JOB_FAILED and (job.retry_count or 0) < self.max_retries

    def retry(self, job):
        """Explicit failed -> pending reset, counted against max_retries."""
        if job.status != JOB_FAILED:
            reason = 'only failed jobs can be retried'
        elif not self.can_retry(job):
            reason = f"retry limit reached ({job.retry_count}/{self.max_retries})"
        else:
            reason = None
        if reason:
            error = InvalidTransitionError(job.id, job.status, JOB_PENDING, reason)
            logger.warning(str(error))
            raise error
        job.status = JOB_PENDING
        job.retry_count = (job.retry_count or 0) + 1
        self._clear_run_fields(job)
        logger.info(f"Job #{job.position} ({job.id}) reset for retry {job.retry_count}/{self.max_retries}")
        return job

    def recover(self, job):
        """Stuck generating -> pending, used by the watchdog and manual reset."""
        if job.status != JOB_GENERATING:
            error = InvalidTransitionError(job.id, job.status, JOB_PENDING, 'only generating jobs can be recovered')
            logger.warning(str(error))
            raise error
        job.status = JOB_PENDING
        self._clear_run_fields(job)
        return job

    @staticmethod
    def _clear_run_fields(job):
        job.started_at = None
        job.completed_at = None
        job.error = None


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def select_due_job(jobs: Iterable, now: datetime, calendar):
    """
    Pick the single pending job that should run at now.

    A job whose scheduled_at falls inside the current slot wins; otherwise
    the earliest missed slot. Jobs scheduled in the future never run early.
    """
    now = to_utc_naive(now)
    slot_start = calendar.current_slot(now)
    slot_end = calendar.slot_end(slot_start)

    due = [
        job for job in jobs
        if job.status == JOB_PENDING and job.scheduled_at is not None and job.scheduled_at <= now
    ]
    if not due:
        return None

    in_slot = [job for job in due if slot_start <= job.scheduled_at < slot_end]
    if in_slot:
        return min(in_slot, key=lambda j: (j.scheduled_at, j.position))
    return min(due, key=lambda j: (j.scheduled_at, j.position))
