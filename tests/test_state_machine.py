"""
Tests for trendwire.generation.state_machine module.
"""

import pytest
from datetime import datetime, timedelta

from trendwire.generation.errors import InvalidTransitionError
from trendwire.generation.state_machine import (
    ALLOWED_TRANSITIONS,
    JobStateMachine,
    is_terminal,
    select_due_job,
)
from trendwire.lib.calendar import OperatingCalendar
from trendwire.models import (
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_GENERATING,
    JOB_PENDING,
    JOB_QUALITY_CHECK,
    JOB_REJECTED,
    JOB_STATUSES,
    GenerationJob,
)

NOW = datetime(2026, 10, 19, 10, 15)


def _job(status=JOB_PENDING, position=1, scheduled_at=None, retry_count=0, **fields):
    return GenerationJob(
        id=GenerationJob.make_id('2026-10-19', position),
        plan_date='2026-10-19',
        trend_id=f'trend{position}',
        position=position,
        status=status,
        scheduled_at=scheduled_at or datetime(2026, 10, 19, 10, 0),
        retry_count=retry_count,
        **fields
    )


@pytest.fixture
def machine():
    return JobStateMachine(max_retries=2)


class TestHappyPath:

    def test_full_lifecycle(self, machine):
        job = _job()

        machine.start(job, NOW)
        assert job.status == JOB_GENERATING
        assert job.started_at == NOW

        machine.submit_for_review(job, NOW)
        assert job.status == JOB_QUALITY_CHECK

        machine.complete(job, article_id=17, now=NOW + timedelta(minutes=2), quality_score=82)
        assert job.status == JOB_COMPLETED
        assert job.article_id == 17
        assert job.quality_score == 82
        assert job.completed_at == NOW + timedelta(minutes=2)

    def test_reject_has_no_article(self, machine):
        job = _job(JOB_QUALITY_CHECK)

        machine.reject(job, 'quality score 40 below 60', NOW, quality_score=40)

        assert job.status == JOB_REJECTED
        assert job.article_id is None
        assert job.error == 'quality score 40 below 60'

    def test_fail_records_error(self, machine):
        job = _job(JOB_GENERATING, started_at=NOW)

        machine.fail(job, 'upstream timeout', NOW)

        assert job.status == JOB_FAILED
        assert job.error == 'upstream timeout'


class TestIllegalTransitions:

    @pytest.mark.parametrize('status', [JOB_COMPLETED, JOB_REJECTED])
    def test_terminal_states_cannot_restart(self, machine, status):
        job = _job(status, article_id=5 if status == JOB_COMPLETED else None)

        with pytest.raises(InvalidTransitionError):
            machine.start(job, NOW)

        assert job.status == status
        assert is_terminal(status)

    def test_complete_requires_quality_check(self, machine):
        job = _job(JOB_GENERATING, started_at=NOW)

        with pytest.raises(InvalidTransitionError):
            machine.complete(job, article_id=1, now=NOW)

        assert job.status == JOB_GENERATING
        assert job.article_id is None

    def test_complete_requires_article_id(self, machine):
        job = _job(JOB_QUALITY_CHECK)

        with pytest.raises(InvalidTransitionError):
            machine.complete(job, article_id=None, now=NOW)

        assert job.status == JOB_QUALITY_CHECK

    def test_pending_cannot_fail(self, machine):
        job = _job()

        with pytest.raises(InvalidTransitionError):
            machine.fail(job, 'boom', NOW)

        assert job.status == JOB_PENDING
        assert job.error is None

    def test_unknown_status_rejected_by_model(self):
        job = _job()
        with pytest.raises(ValueError):
            job.status = 'archived'

    def test_transition_table_is_closed(self):
        assert set(ALLOWED_TRANSITIONS) == set(JOB_STATUSES)
        for targets in ALLOWED_TRANSITIONS.values():
            assert targets <= set(JOB_STATUSES)


class TestRetryAndRecover:

    def test_retry_resets_failed_job(self, machine):
        job = _job(JOB_FAILED, started_at=NOW, completed_at=NOW, error='boom')

        machine.retry(job)

        assert job.status == JOB_PENDING
        assert job.retry_count == 1
        assert job.started_at is None
        assert job.completed_at is None
        assert job.error is None

    def test_retry_cap(self, machine):
        job = _job(JOB_FAILED, retry_count=2, error='boom')

        assert not machine.can_retry(job)
        with pytest.raises(InvalidTransitionError):
            machine.retry(job)

        assert job.status == JOB_FAILED
        assert job.retry_count == 2

    def test_rejected_cannot_be_retried(self, machine):
        job = _job(JOB_REJECTED)

        with pytest.raises(InvalidTransitionError):
            machine.retry(job)

    def test_recover_generating(self, machine):
        job = _job(JOB_GENERATING, started_at=NOW)

        machine.recover(job)

        assert job.status == JOB_PENDING
        assert job.started_at is None
        assert job.retry_count == 0

    def test_recover_only_generating(self, machine):
        job = _job(JOB_QUALITY_CHECK)

        with pytest.raises(InvalidTransitionError):
            machine.recover(job)

        assert job.status == JOB_QUALITY_CHECK


class TestSelectDueJob:

    @pytest.fixture
    def calendar(self):
        return OperatingCalendar('UTC')

    def test_current_slot_wins_over_missed_slot(self, calendar):
        missed = _job(position=1, scheduled_at=datetime(2026, 10, 19, 8, 0))
        current = _job(position=3, scheduled_at=datetime(2026, 10, 19, 10, 0))

        assert select_due_job([missed, current], NOW, calendar) is current

    def test_earliest_missed_slot_when_current_is_done(self, calendar):
        early = _job(position=1, scheduled_at=datetime(2026, 10, 19, 8, 0))
        later = _job(position=2, scheduled_at=datetime(2026, 10, 19, 9, 0))
        done = _job(JOB_COMPLETED, position=3, scheduled_at=datetime(2026, 10, 19, 10, 0))

        assert select_due_job([later, done, early], NOW, calendar) is early

    def test_future_jobs_never_run_early(self, calendar):
        future = _job(position=4, scheduled_at=datetime(2026, 10, 19, 11, 0))

        assert select_due_job([future], NOW, calendar) is None

    def test_non_pending_ignored(self, calendar):
        running = _job(JOB_GENERATING, scheduled_at=datetime(2026, 10, 19, 10, 0))

        assert select_due_job([running], NOW, calendar) is None
