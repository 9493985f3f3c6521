"""
Daily Plan Builder

Turns deduplicated trend candidates into a fixed-size, ordered schedule of
generation jobs for one operating-calendar day.

Refreshing a plan never touches a job that has left pending: its position,
status, timestamps and article stay exactly as they were. Only pending slots
take part in re-ranking, and each keeps its scheduled_at when it swaps to a
better trend. A pending job the fresh pool cannot cover keeps the trend it
has; refresh never removes jobs. Refresh is expected to run after every
trend import, so it has to be idempotent.
"""

import logging
from datetime import date as date_type, datetime
from typing import Dict, List, Optional, Sequence

from trendwire.generation.constants import DEFAULT_DAILY_ARTICLE_SLOTS
from trendwire.generation.dedup import TrendDeduplicator, _rank_key
from trendwire.generation.errors import PlanInvariantError
from trendwire.lib.calendar import OperatingCalendar
from trendwire.lib.time import to_utc_naive
from trendwire.models import JOB_PENDING, DailyPlan, GenerationJob

logger = logging.getLogger(__name__)


def rank_trends(trends: Sequence) -> List:
    """Search volume descending, first seen ascending, trend id as final tiebreak."""
    return sorted(trends, key=lambda t: _rank_key(t, getattr(t, 'id', '') or ''))


def validate_layout(layout: Dict[int, str], plan_date: str) -> None:
    """
    Check a position -> trend_id mapping for duplicate trends and gaps.

    Raises:
        PlanInvariantError: on any violation
    """
    positions = sorted(layout)
    if positions != list(range(1, len(positions) + 1)):
        raise PlanInvariantError(
            f"Plan {plan_date}: positions {positions} are not a contiguous 1..{len(positions)} sequence"
        )

    seen = {}
    for position in positions:
        trend_id = layout[position]
        if trend_id in seen:
            raise PlanInvariantError(
                f"Plan {plan_date}: trend {trend_id} scheduled at both #{seen[trend_id]} and #{position}"
            )
        seen[trend_id] = position


def validate_plan(plan) -> None:
    layout = {}
    for job in plan.jobs:
        if job.position in layout:
            raise PlanInvariantError(f"Plan {plan.date}: position #{job.position} appears twice")
        layout[job.position] = job.trend_id
    validate_layout(layout, plan.date)


class DailyPlanBuilder:
    """
    Args:
        calendar: OperatingCalendar used to lay out slot times
        deduplicator: TrendDeduplicator applied to every candidate pool
    """

    def __init__(self, calendar: Optional[OperatingCalendar] = None,
                 deduplicator: Optional[TrendDeduplicator] = None):
        self.calendar = calendar or OperatingCalendar()
        self.deduplicator = deduplicator or TrendDeduplicator()

    def _first_slot(self, plan_date: date_type, now: datetime) -> datetime:
        if plan_date == self.calendar.today(now):
            return self.calendar.current_slot(now)
        return self.calendar.day_start(plan_date)

    def build_or_refresh(
        self,
        date,
        existing_plan: Optional[DailyPlan],
        fresh_candidates: Sequence,
        slot_count: int = DEFAULT_DAILY_ARTICLE_SLOTS,
        now: Optional[datetime] = None,
        known_recent: Sequence = (),
    ) -> DailyPlan:
        """
        Create the plan for date, or refresh existing_plan in place.

        Args:
            date: Plan day, a date or 'YYYY-MM-DD'
            existing_plan: Current plan for that day, or None
            fresh_candidates: TrackedTrend candidates from the latest import
            slot_count: Target number of jobs (N)
            now: Reference time, naive UTC or aware
            known_recent: Recently processed trends that must not come back

        Raises:
            PlanInvariantError: the resulting layout would break uniqueness or
                contiguity. Nothing has been modified when this is raised.
        """
        now = to_utc_naive(now)
        plan_day = date if isinstance(date, date_type) else date_type.fromisoformat(str(date))
        plan_key = plan_day.isoformat()

        if existing_plan is None:
            return self._build(plan_key, plan_day, fresh_candidates, slot_count, now, known_recent)
        if existing_plan.date != plan_key:
            raise PlanInvariantError(
                f"Refresh for {plan_key} was handed the plan for {existing_plan.date}"
            )
        return self._refresh(existing_plan, plan_day, fresh_candidates, slot_count, now, known_recent)

    def _build(self, plan_key, plan_day, candidates, slot_count, now, known_recent) -> DailyPlan:
        pool = rank_trends(self.deduplicator.filter_new(list(candidates), list(known_recent)))
        selected = pool[:max(slot_count, 0)]

        validate_layout({i + 1: trend.id for i, trend in enumerate(selected)}, plan_key)

        slot_times = self.calendar.slot_starts(self._first_slot(plan_day, now), len(selected))
        plan = DailyPlan(date=plan_key, created_at=now, updated_at=now)
        for position, (trend, scheduled_at) in enumerate(zip(selected, slot_times), start=1):
            plan.jobs.append(self._new_job(plan_key, position, trend, scheduled_at, now))

        self._report_shortfall(plan_key, len(plan.jobs), slot_count)
        logger.info(f"Daily plan {plan_key} created with {len(plan.jobs)} jobs")
        return plan

    def _refresh(self, plan, plan_day, candidates, slot_count, now, known_recent) -> DailyPlan:
        jobs = sorted(plan.jobs, key=lambda j: j.position)
        preserved = [job for job in jobs if job.status != JOB_PENDING]
        pending = [job for job in jobs if job.status == JOB_PENDING]

        known = list(known_recent) + [job.trend for job in preserved if job.trend is not None]
        combined = list(candidates) + [job.trend for job in pending if job.trend is not None]
        ranked = rank_trends(self.deduplicator.filter_new(combined, known))

        highest = max((job.position for job in jobs), default=0)
        new_positions = list(range(highest + 1, max(slot_count, highest) + 1))

        # Pending jobs the pool cannot cover keep their current trend, taken
        # from the tail so the assigned positions stay in order
        kept = []
        while True:
            kept_ids = {job.trend_id for job in kept}
            pool = [trend for trend in ranked if trend.id not in kept_ids]
            open_pending = [job for job in pending if job not in kept]
            if len(pool) >= len(open_pending):
                break
            kept.append(open_pending[-1])

        open_positions = [job.position for job in open_pending] + new_positions
        assignment = dict(zip(open_positions, pool))

        layout = {job.position: job.trend_id for job in preserved + kept}
        layout.update({position: trend.id for position, trend in assignment.items()})
        validate_layout(layout, plan.date)

        changed = False
        pending_by_position = {job.position: job for job in pending}
        appended = [p for p in sorted(assignment) if p not in pending_by_position]
        slot_times = self._slot_times_after(plan, plan_day, now, len(appended))

        for position in sorted(assignment):
            trend = assignment[position]
            job = pending_by_position.get(position)
            if job is None:
                plan.jobs.append(
                    self._new_job(plan.date, position, trend, slot_times.pop(0), now)
                )
                changed = True
            elif job.trend_id != trend.id:
                logger.info(
                    f"Plan {plan.date} #{position}: '{job.trend.title if job.trend else job.trend_id}'"
                    f" -> '{trend.title}' ({trend.search_volume} searches)"
                )
                job.trend = trend
                job.trend_id = trend.id
                changed = True

        for job in kept:
            logger.info(f"Plan {plan.date}: no fresh candidate for pending job #{job.position}, keeping its trend")

        if changed:
            plan.updated_at = now
            logger.info(
                f"Daily plan {plan.date} refreshed: {len(preserved)} preserved, "
                f"{len(assignment)} pending assigned, {len(kept)} kept as they were"
            )
        else:
            logger.debug(f"Daily plan {plan.date} unchanged by refresh")

        self._report_shortfall(plan.date, len(plan.jobs), slot_count)
        return plan

    def _slot_times_after(self, plan, plan_day, now, count) -> List[datetime]:
        """Slot times for appended jobs, continuing after the plan's last slot."""
        if count == 0:
            return []
        if plan.jobs:
            last = max(job.scheduled_at for job in plan.jobs)
            following = self.calendar.slot_starts(last, count + 1)
            return following[1:]
        return self.calendar.slot_starts(self._first_slot(plan_day, now), count)

    @staticmethod
    def _new_job(plan_key, position, trend, scheduled_at, now) -> GenerationJob:
        return GenerationJob(
            id=GenerationJob.make_id(plan_key, position),
            plan_date=plan_key,
            trend_id=trend.id,
            trend=trend,
            position=position,
            status=JOB_PENDING,
            scheduled_at=scheduled_at,
            created_at=now,
            retry_count=0,
        )

    @staticmethod
    def _report_shortfall(plan_key, job_count, slot_count):
        if job_count < slot_count:
            logger.warning(
                f"Daily plan {plan_key} has {job_count}/{slot_count} jobs: "
                f"not enough non-duplicate trend candidates"
            )
