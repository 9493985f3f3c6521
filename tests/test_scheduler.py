"""
Tests for trendwire.scheduler module.
"""

import pytest

import trendwire.scheduler as scheduler_module


@pytest.fixture
def fresh_scheduler():
    scheduler_module.scheduler = None
    yield
    if scheduler_module.scheduler is not None and scheduler_module.scheduler.running:
        scheduler_module.scheduler.shutdown(wait=False)
    scheduler_module.scheduler = None


def test_jobs_registered(app, fresh_scheduler):
    scheduler = scheduler_module.init_scheduler(app)

    assert {job.id for job in scheduler.get_jobs()} == {'generation_tick', 'trend_import', 'retention_cleanup'}
    assert str(scheduler.timezone) == 'Europe/Prague'


def test_init_is_idempotent(app, fresh_scheduler):
    first = scheduler_module.init_scheduler(app)

    assert scheduler_module.init_scheduler(app) is first
