"""
Scheduler Driver

The service interface of the generation scheduler. tick() is the cron entry
point; the named operations back the control endpoints and CLI commands.

tick() never raises. Whatever goes wrong is folded into the returned dict:

    {'status': 'generated' | 'rejected' | 'failed' | 'idle' | 'degraded' | 'error',
     'reason': ..., 'degraded': bool, 'plan_date': ..., 'plan_shortfall': int,
     'recovered': int, 'job': {...} or None}
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from flask import current_app

from trendwire.generation.constants import (
    DEFAULT_DAILY_ARTICLE_SLOTS,
    DEFAULT_MIN_ARTICLE_WORDS,
    DEFAULT_MIN_QUALITY_SCORE,
    DEFAULT_PROCESSED_TOPIC_TTL_HOURS,
    DEFAULT_STALE_JOB_MINUTES,
    REASON_CLAIM_LOST,
    REASON_NO_DUE_JOB,
    REASON_NO_PLAN,
    REASON_OUTSIDE_ACTIVE_HOURS,
    REASON_QUOTA_EXHAUSTED,
    REASON_SCHEDULER_STOPPED,
    TICK_DEGRADED,
    TICK_ERROR,
    TICK_FAILED,
    TICK_GENERATED,
    TICK_IDLE,
    TICK_REJECTED,
)
from trendwire.generation.content import ContentGenerator, assess_quality
from trendwire.generation.errors import (
    ContentGenerationError,
    GenerationError,
    InvalidTransitionError,
    PlanConflictError,
    PersistenceUnavailableError,
    UnknownJobError,
)
from trendwire.generation.planner import DailyPlanBuilder
from trendwire.generation.quota import QuotaGovernor
from trendwire.generation.state_machine import JobStateMachine, select_due_job
from trendwire.generation.watchdog import RecoveryWatchdog
from trendwire.lib.calendar import OperatingCalendar
from trendwire.lib.time import to_utc_naive
from trendwire.models import JOB_FAILED, JOB_GENERATING, JOB_PENDING

logger = logging.getLogger(__name__)


class SchedulerDriver:
    """
    Wires the scheduler components together.

    Args:
        calendar: OperatingCalendar for day, slot and active-hour decisions
        quota: QuotaGovernor for the upstream trend API
        builder: DailyPlanBuilder
        state_machine: JobStateMachine (also handed to the watchdog)
        watchdog: RecoveryWatchdog
        gateway: PersistenceGateway
        ingestor: TrendIngestor, or None when imports are disabled
        generator: ContentGenerator
    """

    def __init__(
        self,
        calendar: OperatingCalendar,
        quota: QuotaGovernor,
        builder: DailyPlanBuilder,
        state_machine: JobStateMachine,
        watchdog: RecoveryWatchdog,
        gateway,
        generator: ContentGenerator,
        ingestor=None,
        slot_count: int = DEFAULT_DAILY_ARTICLE_SLOTS,
        candidate_pool_size: int = 50,
        processed_ttl_hours: int = DEFAULT_PROCESSED_TOPIC_TTL_HOURS,
        stale_threshold_minutes: int = DEFAULT_STALE_JOB_MINUTES,
        min_quality_score: float = DEFAULT_MIN_QUALITY_SCORE,
        min_article_words: int = DEFAULT_MIN_ARTICLE_WORDS,
        trend_retention_days: int = 30,
    ):
        self.calendar = calendar
        self.quota = quota
        self.builder = builder
        self.state_machine = state_machine
        self.watchdog = watchdog
        self.gateway = gateway
        self.generator = generator
        self.ingestor = ingestor
        self.slot_count = slot_count
        self.candidate_pool_size = candidate_pool_size
        self.processed_ttl_hours = processed_ttl_hours
        self.stale_threshold_minutes = stale_threshold_minutes
        self.min_quality_score = min_quality_score
        self.min_article_words = min_article_words
        self.trend_retention_days = trend_retention_days

    # =========================================================================
    # Tick
    # =========================================================================

    def tick(self, now: Optional[datetime] = None, force: bool = False) -> Dict:
        """Run one scheduling step. At most one job is generated per call."""
        now = to_utc_naive(now)
        try:
            result = self._tick(now, force)
        except PersistenceUnavailableError as e:
            self.gateway.rollback()
            result = self._degraded(now, e)
        except GenerationError as e:
            self.gateway.rollback()
            logger.error(f"Generation tick aborted: {e}")
            result = self._result(TICK_ERROR, reason=e.code, message=str(e))
        except Exception as e:
            self.gateway.rollback()
            logger.error(f"Unexpected error in generation tick: {e}", exc_info=True)
            result = self._result(TICK_ERROR, reason='internal_error', message=str(e))

        self._record_tick(now, result)
        return result

    def _tick(self, now: datetime, force: bool) -> Dict:
        plan = self._ensure_plan(now)
        jobs = list(plan.jobs) + self._carried_over_jobs(now)

        recovered = self.watchdog.sweep_jobs(jobs, now, self.stale_threshold_minutes)
        if recovered:
            recovered = self.gateway.save_jobs(recovered, JOB_GENERATING)

        context = {
            'plan_date': plan.date,
            'plan_shortfall': self._shortfall(plan),
            'recovered': len(recovered),
        }

        run_state = self.gateway.load_run_state()
        if not run_state.is_running and not force:
            return self._result(TICK_IDLE, reason=REASON_SCHEDULER_STOPPED, **context)
        if not force and not self.calendar.is_within_active_hours(now):
            return self._result(TICK_IDLE, reason=REASON_OUTSIDE_ACTIVE_HOURS, **context)
        if not self.quota.can_call(now):
            return self._result(TICK_IDLE, reason=REASON_QUOTA_EXHAUSTED, **context)
        if not jobs:
            return self._result(TICK_IDLE, reason=REASON_NO_PLAN, **context)

        job = select_due_job(jobs, now, self.calendar)
        if job is None and force:
            pending = [j for j in jobs if j.status == JOB_PENDING]
            job = min(pending, key=lambda j: (j.scheduled_at, j.position)) if pending else None
        if job is None:
            return self._result(TICK_IDLE, reason=REASON_NO_DUE_JOB, **context)

        if not self.gateway.claim_job(job, now):
            return self._result(TICK_IDLE, reason=REASON_CLAIM_LOST, job=job.to_dict(), **context)

        status, reason = self._generate(job, now)
        return self._result(status, reason=reason, job=job.to_dict(), **context)

    def _generate(self, job, now: datetime):
        """Run the generator for a claimed job and record the outcome."""
        trend = job.trend
        logger.info(f"Generating article for job #{job.position}: '{trend.title}' ({trend.category})")

        try:
            content = self.generator.generate(trend.title, trend.category)
        except ContentGenerationError as e:
            return self._fail_job(job, str(e), now)
        except Exception as e:
            logger.error(f"Content generator crashed on job #{job.position}: {e}", exc_info=True)
            return self._fail_job(job, f"Generator error: {e}", now)
        if content is None:
            return self._fail_job(job, 'Generator returned no content', now)

        passed, reason = assess_quality(content, self.min_quality_score, self.min_article_words)

        # The article is stored while the job is still generating, so a write
        # failure can still move it to failed
        article_id = None
        if passed:
            try:
                article_id = self.gateway.create_article(content, trend, now)
            except PersistenceUnavailableError as e:
                self.gateway.rollback()
                return self._fail_job(job, f"Could not store article: {e}", now)

        # quality_check only exists in memory; the stored row is still generating
        self.state_machine.submit_for_review(job, now)
        if not passed:
            self.state_machine.reject(job, reason, now, quality_score=content.quality_score)
            if not self.gateway.save_job(job, JOB_GENERATING):
                return self._outcome_lost(job)
            return TICK_REJECTED, reason

        self.state_machine.complete(job, article_id, now, quality_score=content.quality_score)
        saved = self.gateway.save_job(job, JOB_GENERATING)
        self.gateway.mark_trend_generated(trend.id, article_id, now)
        if not saved:
            return self._outcome_lost(job)
        return TICK_GENERATED, None

    def _fail_job(self, job, error: str, now: datetime):
        self.state_machine.fail(job, error, now)
        if not self.gateway.save_job(job, JOB_GENERATING):
            return self._outcome_lost(job)
        return TICK_FAILED, error

    @staticmethod
    def _outcome_lost(job):
        logger.warning(
            f"Job #{job.position} ({job.id}) was taken out of generating by another process "
            f"before its outcome was stored"
        )
        return TICK_IDLE, REASON_CLAIM_LOST

    def _record_tick(self, now: datetime, result: Dict):
        if result['status'] == TICK_DEGRADED:
            return
        label = result['status'] if not result.get('reason') else f"{result['status']}:{result['reason']}"
        try:
            self.gateway.record_tick(now, label)
        except PersistenceUnavailableError as e:
            logger.warning(f"Could not record tick outcome: {e}")

    # =========================================================================
    # Plan helpers
    # =========================================================================

    def _shortfall(self, plan) -> int:
        return max(self.slot_count - len(plan.jobs), 0)

    def _ensure_plan(self, now: datetime):
        date_key = self.calendar.day_key(now)
        plan = self.gateway.load_plan(date_key)
        if plan is not None:
            return plan
        logger.info(f"No plan for {date_key} yet, building one from stored trends")
        return self._build_and_save(None, now)

    def _carried_over_jobs(self, now: datetime) -> List:
        """Open jobs of yesterday's plan: slots laid out past midnight, or missed ones."""
        previous_key = (self.calendar.today(now) - timedelta(days=1)).isoformat()
        previous = self.gateway.load_plan(previous_key)
        if previous is None:
            return []
        return [j for j in previous.jobs if j.status in (JOB_PENDING, JOB_GENERATING)]

    def _build_and_save(self, existing_plan, now: datetime):
        candidates = self.gateway.candidate_trends(self.candidate_pool_size)
        known_recent = self.gateway.known_recent_trends(now, self.processed_ttl_hours)
        known_recent += [j.trend for j in self._carried_over_jobs(now) if j.trend is not None]
        plan = self.builder.build_or_refresh(
            self.calendar.today(now),
            existing_plan,
            candidates,
            self.slot_count,
            now=now,
            known_recent=known_recent,
        )
        return self.gateway.save_plan(plan)

    # =========================================================================
    # Operator operations
    # =========================================================================

    def refresh_plan(self, now: Optional[datetime] = None) -> Dict:
        """
        Create today's plan or re-rank its pending slots against stored trends.

        Raises:
            PlanInvariantError: the refreshed layout was invalid; previous plan kept
            PlanConflictError: jobs kept changing under the refresh
            PersistenceUnavailableError
        """
        now = to_utc_naive(now)
        date_key = self.calendar.day_key(now)
        existing = self.gateway.load_plan(date_key)
        try:
            try:
                plan = self._build_and_save(existing, now)
            except PlanConflictError as e:
                # Reload so the job that moved on counts as preserved
                logger.warning(f"{e}; retrying once against the stored plan")
                self.gateway.rollback()
                existing = self.gateway.load_plan(date_key)
                plan = self._build_and_save(existing, now)
        except GenerationError:
            self.gateway.rollback()
            raise
        return {
            'plan': plan.to_dict(),
            'created': existing is None,
            'plan_shortfall': self._shortfall(plan),
        }

    def ingest_trends(self, now: Optional[datetime] = None) -> Dict:
        """Import trends, then refresh today's plan when new data arrived."""
        now = to_utc_naive(now)
        if self.ingestor is None:
            ingest = {'fetched': False, 'reason': 'no_source', 'received': 0, 'created': 0, 'updated': 0}
        else:
            ingest = self.ingestor.ingest(now)

        refresh = None
        if ingest['fetched']:
            refresh = self.refresh_plan(now)
        return {'ingest': ingest, 'refresh': refresh}

    def reset_failed_jobs(self, now: Optional[datetime] = None) -> Dict:
        """Send today's failed jobs that are still under the retry cap back to pending."""
        now = to_utc_naive(now)
        plan = self.gateway.load_plan(self.calendar.day_key(now))
        if plan is None:
            return {'reset': 0, 'skipped': 0, 'jobs': []}

        reset_jobs = []
        skipped = 0
        for job in plan.jobs:
            if job.status != JOB_FAILED:
                continue
            if not self.state_machine.can_retry(job):
                skipped += 1
                logger.info(f"Job #{job.position} has used all {self.state_machine.max_retries} retries")
                continue
            self.state_machine.retry(job)
            reset_jobs.append(job)

        reset_jobs = self.gateway.save_jobs(reset_jobs, JOB_FAILED)
        logger.info(f"Reset {len(reset_jobs)} failed jobs for {plan.date} ({skipped} at retry limit)")
        return {
            'reset': len(reset_jobs),
            'skipped': skipped,
            'jobs': [job.to_dict() for job in reset_jobs],
        }

    def reset_stuck_job(self, position: int, now: Optional[datetime] = None) -> Dict:
        """
        Manually put today's generating job at position back to pending.

        Raises:
            UnknownJobError: no job at that position today
            InvalidTransitionError: the job is not generating
        """
        now = to_utc_naive(now)
        date_key = self.calendar.day_key(now)
        job = self.gateway.find_job(date_key, position)
        if job is None:
            raise UnknownJobError(f"No job at position {position} in plan {date_key}")
        if job.status != JOB_GENERATING:
            raise InvalidTransitionError(job.id, job.status, JOB_PENDING, 'job is not stuck in generating')

        self.state_machine.recover(job)
        if not self.gateway.save_job(job, JOB_GENERATING):
            raise InvalidTransitionError(job.id, job.status, JOB_PENDING, 'job changed while being reset')
        logger.warning(f"Job #{position} ({job.id}) manually reset from generating to pending")
        return {'job': job.to_dict()}

    def start(self, now: Optional[datetime] = None) -> Dict:
        state = self.gateway.set_running(True, to_utc_naive(now))
        logger.info("Generation scheduler started")
        return {'run_state': state.to_dict()}

    def stop(self, now: Optional[datetime] = None) -> Dict:
        state = self.gateway.set_running(False, to_utc_naive(now))
        logger.info("Generation scheduler stopped")
        return {'run_state': state.to_dict()}

    def get_status(self, now: Optional[datetime] = None) -> Dict:
        """
        Plan, quota and run state for today. Falls back to cached snapshots
        (degraded=True) when the database cannot be read.
        """
        now = to_utc_naive(now)
        date_key = self.calendar.day_key(now)
        try:
            plan = self.gateway.load_plan(date_key)
            run_state = self.gateway.load_run_state().to_dict()
            quota = self.quota.usage(now)
        except PersistenceUnavailableError as e:
            self.gateway.rollback()
            logger.warning(f"Status served from cache: {e}")
            snapshot = self.gateway.get_plan_snapshot(date_key)
            return {
                'degraded': True,
                'calendar': self.calendar.describe(now),
                'run_state': self.gateway.cached_run_state(),
                'plan': snapshot,
                'plan_shortfall': self._snapshot_shortfall(snapshot),
                'quota': None,
                'next_job': None,
            }

        next_job = None
        if plan is not None:
            pending = [j for j in plan.jobs if j.status == JOB_PENDING]
            if pending:
                next_job = min(pending, key=lambda j: (j.scheduled_at, j.position)).to_dict()

        return {
            'degraded': False,
            'calendar': self.calendar.describe(now),
            'run_state': run_state,
            'plan': plan.to_dict() if plan else None,
            'plan_shortfall': self._shortfall(plan) if plan else self.slot_count,
            'quota': quota,
            'next_job': next_job,
        }

    def run_retention_cleanup(self, now: Optional[datetime] = None) -> Dict:
        """Prune expired quota buckets and trends that nothing references."""
        now = to_utc_naive(now)
        pruned = self.quota.prune(now)
        deleted = self.gateway.delete_stale_trends(now, self.trend_retention_days)
        logger.info(f"Retention cleanup: {pruned} quota buckets, {deleted} trends removed")
        return {'quota_buckets_pruned': pruned, 'trends_deleted': deleted}

    def _snapshot_shortfall(self, snapshot: Optional[dict]) -> Optional[int]:
        if not snapshot:
            return None
        return max(self.slot_count - snapshot.get('total_jobs', 0), 0)

    # =========================================================================
    # Results
    # =========================================================================

    def _degraded(self, now: datetime, error: Exception) -> Dict:
        date_key = self.calendar.day_key(now)
        snapshot = self.gateway.get_plan_snapshot(date_key)
        logger.error(f"Generation tick degraded, database unavailable: {error}")
        return self._result(
            TICK_DEGRADED,
            reason='persistence_unavailable',
            message=str(error),
            degraded=True,
            plan_date=date_key,
            plan_shortfall=self._snapshot_shortfall(snapshot),
            plan=snapshot,
            run_state=self.gateway.cached_run_state(),
        )

    @staticmethod
    def _result(status: str, reason: Optional[str] = None, job=None, degraded: bool = False,
                plan_date=None, plan_shortfall=None, recovered: int = 0, **extra) -> Dict:
        result = {
            'status': status,
            'reason': reason,
            'degraded': degraded,
            'plan_date': plan_date,
            'plan_shortfall': plan_shortfall,
            'recovered': recovered,
            'job': job,
        }
        result.update(extra)
        return result


def build_driver(config, generator: Optional[ContentGenerator] = None, trend_source=None) -> SchedulerDriver:
    """Assemble a SchedulerDriver from app config."""
    from trendwire.generation.content import OpenAIContentGenerator
    from trendwire.generation.dedup import TrendDeduplicator
    from trendwire.generation.gateway import PersistenceGateway
    from trendwire.generation.ingest import HttpTrendSource, TrendIngestor

    calendar = OperatingCalendar.from_config(config)
    quota = QuotaGovernor.from_config(config, calendar=calendar)
    state_machine = JobStateMachine(max_retries=config.get('MAX_JOB_RETRIES', 2))
    gateway = PersistenceGateway.from_config(config)

    if trend_source is None and config.get('TREND_SOURCE_URL'):
        trend_source = HttpTrendSource(
            config['TREND_SOURCE_URL'],
            api_key=config.get('TREND_SOURCE_API_KEY'),
            timeout=config.get('TREND_SOURCE_TIMEOUT', 30),
        )

    if generator is None:
        generator = OpenAIContentGenerator(
            api_key=config.get('OPENAI_API_KEY'),
            model=config.get('CONTENT_MODEL', 'gpt-4o-mini'),
            min_words=config.get('MIN_ARTICLE_WORDS', DEFAULT_MIN_ARTICLE_WORDS),
        )

    stale_minutes = config.get('STALE_JOB_MINUTES', DEFAULT_STALE_JOB_MINUTES)
    return SchedulerDriver(
        calendar=calendar,
        quota=quota,
        builder=DailyPlanBuilder(calendar, TrendDeduplicator()),
        state_machine=state_machine,
        watchdog=RecoveryWatchdog(state_machine, stale_minutes),
        gateway=gateway,
        generator=generator,
        ingestor=TrendIngestor(trend_source, quota, gateway),
        slot_count=config.get('DAILY_ARTICLE_SLOTS', DEFAULT_DAILY_ARTICLE_SLOTS),
        candidate_pool_size=config.get('CANDIDATE_POOL_SIZE', 50),
        processed_ttl_hours=config.get('PROCESSED_TOPIC_TTL_HOURS', DEFAULT_PROCESSED_TOPIC_TTL_HOURS),
        stale_threshold_minutes=stale_minutes,
        min_quality_score=config.get('MIN_QUALITY_SCORE', DEFAULT_MIN_QUALITY_SCORE),
        min_article_words=config.get('MIN_ARTICLE_WORDS', DEFAULT_MIN_ARTICLE_WORDS),
        trend_retention_days=config.get('TREND_RETENTION_DAYS', 30),
    )


def get_driver(app=None) -> SchedulerDriver:
    """The app's SchedulerDriver, built from its config on first use."""
    app = app or current_app._get_current_object()
    driver = app.extensions.get('generation_driver')
    if driver is None:
        driver = build_driver(app.config)
        app.extensions['generation_driver'] = driver
    return driver
