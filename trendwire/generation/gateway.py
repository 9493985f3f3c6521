"""
Persistence Gateway

All durable reads and writes of the generation scheduler go through here:
plans, jobs, trends, articles and the scheduler run state. Reads and
idempotent writes are wrapped in with_db_retry; when the database stays
unreachable PersistenceUnavailableError is raised and the caller can fall back
to the snapshots this gateway keeps in the cache.

Commits that flush in-memory ORM changes run a single attempt: a rollback
expires those changes, so replaying the commit would silently persist nothing.
"""

import logging
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Tuple

from slugify import slugify
from sqlalchemy import delete, exists, inspect, select, update
from sqlalchemy.exc import IntegrityError

from trendwire import cache, db
from trendwire.db_retry import with_db_retry
from trendwire.generation.errors import PlanConflictError, PlanInvariantError
from trendwire.lib.time import isoformat_or_none, to_utc_naive
from trendwire.models import (
    JOB_GENERATING,
    JOB_PENDING,
    Article,
    DailyPlan,
    GenerationJob,
    SchedulerRunState,
    TrackedTrend,
)

logger = logging.getLogger(__name__)

PLAN_SNAPSHOT_KEY = 'generation:plan:{date}'
RUN_STATE_SNAPSHOT_KEY = 'generation:run_state'

_JOB_STATE_FIELDS = (
    'status', 'started_at', 'completed_at', 'error',
    'article_id', 'quality_score', 'retry_count',
)


class PersistenceGateway:
    """
    Args:
        snapshot_timeout: Seconds a cached plan or run-state snapshot is kept
    """

    def __init__(self, snapshot_timeout: int = 2 * 24 * 3600):
        self.snapshot_timeout = snapshot_timeout

    @classmethod
    def from_config(cls, config) -> 'PersistenceGateway':
        return cls(snapshot_timeout=config.get('FALLBACK_SNAPSHOT_TIMEOUT', 2 * 24 * 3600))

    def rollback(self):
        try:
            db.session.rollback()
        except Exception as e:
            logger.debug(f"Rollback failed: {e}")

    # =========================================================================
    # Plans
    # =========================================================================

    @with_db_retry()
    def load_plan(self, date_key: str) -> Optional[DailyPlan]:
        return db.session.get(DailyPlan, date_key)

    @with_db_retry(max_attempts=1)
    def save_plan(self, plan: DailyPlan) -> DailyPlan:
        """
        Persist a new or refreshed plan.

        A refresh that moved an existing job to another trend is written as a
        conditional update that only matches the job while it is still pending
        on its previous trend. New jobs are inserted as usual.

        Raises:
            PlanInvariantError: the database refused the layout (unique position)
            PlanConflictError: a job left pending while the refresh was running;
                nothing was written
            PersistenceUnavailableError: the commit could not reach the database
        """
        swaps = self._take_trend_swaps(plan)
        db.session.add(plan)
        try:
            for job_id, previous_trend_id, trend_id in swaps:
                if not self._swap_pending_trend(job_id, previous_trend_id, trend_id):
                    db.session.rollback()
                    raise PlanConflictError(
                        f"Job {job_id} is no longer pending on {previous_trend_id}; "
                        f"refresh of plan {plan.date} abandoned"
                    )
            db.session.commit()
        except IntegrityError as e:
            db.session.rollback()
            raise PlanInvariantError(f"Plan {plan.date} rejected by the database: {e.orig}") from e
        self.snapshot_plan(plan)
        return plan

    @staticmethod
    def _take_trend_swaps(plan: DailyPlan) -> List[Tuple[str, Optional[str], str]]:
        """
        Collect trend changes on stored jobs and take them off the session so
        the commit cannot write them unconditionally.
        """
        swaps = []
        for job in plan.jobs:
            state = inspect(job)
            if not state.persistent:
                continue
            history = state.attrs.trend_id.history
            if not history.has_changes():
                continue
            previous = history.deleted[0] if history.deleted else None
            swaps.append((job.id, previous, job.trend_id))
            db.session.expire(job, ['trend', 'trend_id'])
        return swaps

    @staticmethod
    def _swap_pending_trend(job_id: str, previous_trend_id: Optional[str], trend_id: str) -> bool:
        statement = (
            update(GenerationJob)
            .where(GenerationJob.id == job_id)
            .where(GenerationJob.status == JOB_PENDING)
        )
        if previous_trend_id is not None:
            statement = statement.where(GenerationJob.trend_id == previous_trend_id)
        result = db.session.execute(
            statement.values(trend_id=trend_id).execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    def snapshot_plan(self, plan: DailyPlan):
        try:
            cache.set(PLAN_SNAPSHOT_KEY.format(date=plan.date), plan.to_dict(), timeout=self.snapshot_timeout)
        except Exception as e:
            logger.warning(f"Could not cache snapshot of plan {plan.date}: {e}")

    def get_plan_snapshot(self, date_key: str) -> Optional[dict]:
        try:
            return cache.get(PLAN_SNAPSHOT_KEY.format(date=date_key))
        except Exception as e:
            logger.warning(f"Could not read cached snapshot of plan {date_key}: {e}")
            return None

    # =========================================================================
    # Jobs
    # =========================================================================

    @with_db_retry()
    def find_job(self, date_key: str, position: int) -> Optional[GenerationJob]:
        return db.session.execute(
            select(GenerationJob)
            .where(GenerationJob.plan_date == date_key)
            .where(GenerationJob.position == position)
        ).scalar_one_or_none()

    @with_db_retry()
    def claim_job(self, job: GenerationJob, now: datetime) -> bool:
        """
        Atomically move a job from pending to generating.

        Returns:
            True if this process claimed the job, False if another trigger got
            there first or the job is no longer pending
        """
        result = db.session.execute(
            update(GenerationJob)
            .where(GenerationJob.id == job.id)
            .where(GenerationJob.status == JOB_PENDING)
            .values(
                status=JOB_GENERATING,
                started_at=now,
                completed_at=None,
                error=None,
            )
        )
        db.session.commit()
        db.session.refresh(job)

        if result.rowcount == 0:
            logger.warning(
                f"Job #{job.position} ({job.id}) could not be claimed "
                f"(current status: {job.status})"
            )
            return False
        return True

    def save_job(self, job: GenerationJob, expected_status: str) -> bool:
        """
        Write the job's lifecycle fields if its stored status is still expected_status.

        Returns:
            False when another process changed the job first. The object then
            shows the stored state.
        """
        return bool(self.save_jobs([job], expected_status))

    def save_jobs(self, jobs: Iterable[GenerationJob], expected_status: str) -> List[GenerationJob]:
        """
        Conditional version of save_job for several jobs. The in-memory changes
        are captured and expired first, so a commit for one job never flushes
        another unguarded.

        Returns:
            The jobs that were written
        """
        writes = []
        for job in jobs:
            writes.append((job, {field: getattr(job, field) for field in _JOB_STATE_FIELDS}))
            db.session.expire(job, list(_JOB_STATE_FIELDS))

        saved = []
        for job, values in writes:
            if self._write_job(job.id, expected_status, values):
                saved.append(job)
            else:
                logger.warning(
                    f"Job #{job.position} ({job.id}) is no longer {expected_status} "
                    f"(now {job.status}); update to {values['status']} skipped"
                )
        return saved

    @with_db_retry()
    def _write_job(self, job_id: str, expected_status: str, values: dict) -> bool:
        result = db.session.execute(
            update(GenerationJob)
            .where(GenerationJob.id == job_id)
            .where(GenerationJob.status == expected_status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        return result.rowcount > 0

    # =========================================================================
    # Trends
    # =========================================================================

    @with_db_retry()
    def candidate_trends(self, limit: int) -> List[TrackedTrend]:
        """Trends without an article yet, most recently seen first."""
        return list(db.session.execute(
            select(TrackedTrend)
            .where(TrackedTrend.article_generated.is_(False))
            .order_by(TrackedTrend.last_seen.desc(), TrackedTrend.search_volume.desc())
            .limit(limit)
        ).scalars())

    @with_db_retry()
    def known_recent_trends(self, now: datetime, ttl_hours: int) -> List[TrackedTrend]:
        """Trends that got an article within the last ttl_hours."""
        cutoff = to_utc_naive(now) - timedelta(hours=ttl_hours)
        return list(db.session.execute(
            select(TrackedTrend)
            .where(TrackedTrend.article_generated.is_(True))
            .where(TrackedTrend.article_generated_at >= cutoff)
        ).scalars())

    @with_db_retry()
    def upsert_trends(self, items: Iterable[dict], now: datetime) -> Tuple[int, int]:
        """
        Insert new trends and refresh ones already tracked.

        Re-ingesting a title only moves last_seen forward and raises the search
        volume when the new figure is higher.

        Returns:
            (created, updated)
        """
        created = updated = 0
        for item in items:
            trend = db.session.get(TrackedTrend, item['id'])
            if trend is None:
                db.session.add(TrackedTrend(
                    id=item['id'],
                    title=item['title'],
                    category=item['category'],
                    search_volume=item['search_volume'],
                    formatted_traffic=item.get('formatted_traffic'),
                    source=item['source'],
                    first_seen=now,
                    last_seen=now,
                    article_generated=False,
                ))
                created += 1
                continue

            trend.last_seen = now
            if item['search_volume'] > (trend.search_volume or 0):
                trend.search_volume = item['search_volume']
                trend.formatted_traffic = item.get('formatted_traffic') or trend.formatted_traffic
            updated += 1

        db.session.commit()
        return created, updated

    @with_db_retry()
    def mark_trend_generated(self, trend_id: str, article_id: int, now: datetime):
        db.session.execute(
            update(TrackedTrend)
            .where(TrackedTrend.id == trend_id)
            .values(article_generated=True, article_id=article_id, article_generated_at=now)
        )
        db.session.commit()

    @with_db_retry()
    def delete_stale_trends(self, now: datetime, retention_days: int) -> int:
        """Delete trends not seen within retention_days that no job or article points at."""
        cutoff = to_utc_naive(now) - timedelta(days=retention_days)
        referenced_by_job = exists().where(GenerationJob.trend_id == TrackedTrend.id)
        referenced_by_article = exists().where(Article.trend_id == TrackedTrend.id)
        result = db.session.execute(
            delete(TrackedTrend)
            .where(TrackedTrend.last_seen < cutoff)
            .where(~referenced_by_job)
            .where(~referenced_by_article)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        if result.rowcount:
            logger.info(f"Deleted {result.rowcount} trends not seen since {cutoff:%Y-%m-%d}")
        return result.rowcount

    # =========================================================================
    # Articles
    # =========================================================================

    def _unique_slug(self, title: str) -> str:
        base = slugify(title, max_length=180) or 'article'
        slug = base
        suffix = 2
        while db.session.execute(select(Article.id).where(Article.slug == slug)).first():
            slug = f'{base}-{suffix}'
            suffix += 1
        return slug

    @with_db_retry()
    def create_article(self, content, trend: TrackedTrend, now: datetime) -> int:
        article = Article(
            slug=self._unique_slug(content.title),
            title=content.title,
            body=content.body,
            category=trend.category,
            trend_id=trend.id,
            quality_score=content.quality_score,
            created_at=now,
        )
        db.session.add(article)
        db.session.commit()
        logger.info(f"Stored article {article.id} '{article.slug}' for trend {trend.id}")
        return article.id

    # =========================================================================
    # Scheduler run state
    # =========================================================================

    @with_db_retry()
    def load_run_state(self) -> SchedulerRunState:
        """Authoritative run state; creates the row (running) on first use."""
        state = db.session.get(SchedulerRunState, SchedulerRunState.SINGLETON_ID)
        if state is None:
            state = SchedulerRunState(id=SchedulerRunState.SINGLETON_ID, is_running=True)
            db.session.add(state)
            try:
                db.session.commit()
            except IntegrityError:
                db.session.rollback()
                state = db.session.get(SchedulerRunState, SchedulerRunState.SINGLETON_ID)
        self._cache_run_state(state)
        return state

    @with_db_retry()
    def set_running(self, is_running: bool, now: datetime) -> SchedulerRunState:
        state = self.load_run_state()
        state.is_running = is_running
        if is_running:
            state.started_at = now
        else:
            state.stopped_at = now
        state.updated_at = now
        db.session.commit()
        self._cache_run_state(state)
        return state

    @with_db_retry()
    def record_tick(self, now: datetime, status: str):
        db.session.execute(
            update(SchedulerRunState)
            .where(SchedulerRunState.id == SchedulerRunState.SINGLETON_ID)
            .values(last_tick_at=now, last_tick_status=status[:40], updated_at=now)
        )
        db.session.commit()
        snapshot = self.cached_run_state() or {}
        snapshot.update({'last_tick_at': isoformat_or_none(now), 'last_tick_status': status})
        self._store_run_state_snapshot(snapshot)

    def _cache_run_state(self, state: SchedulerRunState):
        self._store_run_state_snapshot(state.to_dict())

    def _store_run_state_snapshot(self, snapshot: dict):
        try:
            cache.set(RUN_STATE_SNAPSHOT_KEY, snapshot, timeout=self.snapshot_timeout)
        except Exception as e:
            logger.warning(f"Could not cache scheduler run state: {e}")

    def cached_run_state(self) -> Optional[dict]:
        """Last known run state; only meant for when the database is unreachable."""
        try:
            return cache.get(RUN_STATE_SNAPSHOT_KEY)
        except Exception as e:
            logger.warning(f"Could not read cached scheduler run state: {e}")
            return None
