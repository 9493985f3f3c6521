"""
Tests for trendwire.generation.planner module.
"""

import pytest
from datetime import date, datetime, timedelta

from trendwire.generation.errors import PlanInvariantError
from trendwire.generation.planner import DailyPlanBuilder, rank_trends, validate_layout, validate_plan
from trendwire.models import JOB_COMPLETED, JOB_GENERATING, JOB_PENDING, DailyPlan, GenerationJob

PLAN_DAY = date(2026, 10, 19)

UNIQUE_TITLES = [
    'Central bank raises interest rates', 'Heatwave alert for southern Europe',
    'New smartphone unveiled in Cupertino', 'Hockey playoffs overtime thriller',
    'Parliament passes housing bill', 'Volcano erupts near Iceland town',
    'Streaming service price hike', 'Electric truck recall announced',
    'Nobel literature laureate named', 'Wildfire evacuations in California',
    'Football transfer window closes', 'Cryptocurrency exchange hacked',
    'Royal wedding guest list', 'Lunar probe sends first images',
    'Tennis final five set marathon', 'Airline strike cancels flights',
    'Minimum wage increase debated', 'Blockbuster sequel box office',
    'Quantum computer milestone', 'Flood warnings along the Danube',
    'Vaccine trial shows promise', 'Chess prodigy wins championship',
    'Tech layoffs hit startups', 'Olympic host city chosen',
    'Museum returns stolen artifacts', 'Solar panel tariff dispute',
    'Podcast host sparks controversy',
]


@pytest.fixture
def builder(prague_calendar):
    return DailyPlanBuilder(prague_calendar)


def _job_snapshot(job):
    return (job.position, job.trend_id, job.status, job.scheduled_at,
            job.started_at, job.completed_at, job.article_id)


class TestRanking:

    def test_rank_by_volume_then_first_seen_then_id(self, make_trend):
        a = make_trend('Alpha story', 100, first_seen=datetime(2026, 10, 19, 8), trend_id='b')
        b = make_trend('Beta story', 100, first_seen=datetime(2026, 10, 19, 8), trend_id='a')
        c = make_trend('Gamma story', 100, first_seen=datetime(2026, 10, 19, 7), trend_id='c')
        d = make_trend('Delta story', 900)

        assert rank_trends([a, b, c, d]) == [d, c, b, a]


class TestValidation:

    def test_contiguous_unique_layout_passes(self):
        validate_layout({1: 'a', 2: 'b', 3: 'c'}, '2026-10-19')

    def test_gap_rejected(self):
        with pytest.raises(PlanInvariantError):
            validate_layout({1: 'a', 3: 'c'}, '2026-10-19')

    def test_duplicate_trend_rejected(self):
        with pytest.raises(PlanInvariantError):
            validate_layout({1: 'a', 2: 'a'}, '2026-10-19')

    def test_validate_plan_duplicate_position(self, make_trend):
        plan = DailyPlan(date='2026-10-19')
        for trend_id in ('a', 'b'):
            plan.jobs.append(GenerationJob(
                id=f'job_{trend_id}', plan_date=plan.date, trend_id=trend_id, position=1,
                status=JOB_PENDING, scheduled_at=datetime(2026, 10, 19, 10), retry_count=0,
            ))
        with pytest.raises(PlanInvariantError):
            validate_plan(plan)


class TestBuild:

    def test_new_plan_ranked_and_scheduled_from_current_slot(self, builder, make_trend, monday_noon):
        trends = [make_trend(title, volume) for title, volume in [
            ('Central bank raises interest rates', 300),
            ('Heatwave alert for southern Europe', 900),
            ('New smartphone unveiled in Cupertino', 600),
            ('Hockey playoffs overtime thriller', 100),
        ]]

        plan = builder.build_or_refresh(PLAN_DAY, None, trends, slot_count=3, now=monday_noon)

        assert plan.date == '2026-10-19'
        assert [job.position for job in plan.jobs] == [1, 2, 3]
        assert [job.trend.search_volume for job in plan.jobs] == [900, 600, 300]
        assert [job.scheduled_at for job in plan.jobs] == [
            datetime(2026, 10, 19, 10, 0),
            datetime(2026, 10, 19, 11, 0),
            datetime(2026, 10, 19, 12, 0),
        ]
        assert all(job.status == JOB_PENDING for job in plan.jobs)
        assert plan.jobs[0].id == 'job_2026-10-19_1'
        validate_plan(plan)

    def test_plan_for_another_day_starts_at_first_active_slot(self, builder, make_trend, monday_noon):
        plan = builder.build_or_refresh(
            date(2026, 10, 20), None, [make_trend('Olympic host city chosen', 10)], slot_count=1, now=monday_noon
        )
        assert plan.jobs[0].scheduled_at == datetime(2026, 10, 19, 22, 0)

    def test_shortfall_gives_shorter_plan(self, builder, make_trend, monday_noon):
        trends = [make_trend('Quantum computer milestone', 50), make_trend('Olympic host city chosen', 40)]

        plan = builder.build_or_refresh('2026-10-19', None, trends, slot_count=5, now=monday_noon)

        assert len(plan.jobs) == 2

    def test_thirty_candidates_with_duplicates(self, builder, make_trend, monday_noon):
        known = [
            make_trend('World Cup qualifiers', 5000),
            make_trend('Prague marathon 2026', 5000),
            make_trend('Nobel prize chemistry', 5000),
        ]
        duplicates = [
            make_trend('world cup QUALIFIERS!', 999999),
            make_trend('Prague marathin 2037', 999998),  # 0.85 similar
            make_trend('Nobil prise chemistri', 999997),  # ~0.86 similar
        ]
        unique = [make_trend(title, 1000 * (i + 1)) for i, title in enumerate(UNIQUE_TITLES)]
        candidates = unique[:10] + duplicates + unique[10:]
        assert len(candidates) == 30

        plan = builder.build_or_refresh(
            PLAN_DAY, None, candidates, slot_count=24, now=monday_noon, known_recent=known
        )

        assert len(plan.jobs) == 24
        planned_ids = {job.trend_id for job in plan.jobs}
        assert planned_ids.isdisjoint({t.id for t in duplicates})
        volumes = [job.trend.search_volume for job in plan.jobs]
        assert volumes == sorted(volumes, reverse=True)
        assert volumes[0] == 27000
        validate_plan(plan)


class TestRefresh:

    def _plan_with_three(self, builder, make_trend, now):
        trends = [
            make_trend('Central bank raises interest rates', 900),
            make_trend('Heatwave alert for southern Europe', 600),
            make_trend('New smartphone unveiled in Cupertino', 300),
        ]
        return builder.build_or_refresh(PLAN_DAY, None, trends, slot_count=3, now=now), trends

    def test_non_pending_jobs_are_preserved(self, builder, make_trend, monday_noon):
        plan, trends = self._plan_with_three(builder, make_trend, monday_noon)
        first, second, third = plan.jobs
        first.status = JOB_COMPLETED
        first.started_at = monday_noon
        first.completed_at = monday_noon + timedelta(minutes=3)
        first.article_id = 42
        second.status = JOB_GENERATING
        second.started_at = monday_noon
        preserved_before = [_job_snapshot(first), _job_snapshot(second)]
        third_slot = third.scheduled_at

        newcomer = make_trend('Volcano erupts near Iceland town', 5000)
        later = monday_noon + timedelta(hours=1)
        builder.build_or_refresh(PLAN_DAY, plan, trends + [newcomer], slot_count=3, now=later)

        assert [_job_snapshot(first), _job_snapshot(second)] == preserved_before
        assert third.trend_id == newcomer.id
        assert third.scheduled_at == third_slot
        assert third.status == JOB_PENDING
        assert plan.updated_at == later
        validate_plan(plan)

    def test_refresh_is_idempotent(self, builder, make_trend, monday_noon):
        plan, trends = self._plan_with_three(builder, make_trend, monday_noon)
        extra = make_trend('Volcano erupts near Iceland town', 5000)

        first_refresh = monday_noon + timedelta(minutes=10)
        builder.build_or_refresh(PLAN_DAY, plan, trends + [extra], slot_count=3, now=first_refresh)
        layout = [_job_snapshot(job) for job in plan.jobs]

        builder.build_or_refresh(
            PLAN_DAY, plan, trends + [extra], slot_count=3, now=first_refresh + timedelta(minutes=10)
        )

        assert [_job_snapshot(job) for job in plan.jobs] == layout
        assert plan.updated_at == first_refresh

    def test_refresh_fills_up_to_slot_count(self, builder, make_trend, monday_noon):
        trends = [make_trend('Central bank raises interest rates', 900)]
        plan = builder.build_or_refresh(PLAN_DAY, None, trends, slot_count=3, now=monday_noon)
        assert len(plan.jobs) == 1

        more = [make_trend('Quantum computer milestone', 50), make_trend('Olympic host city chosen', 40)]
        builder.build_or_refresh(PLAN_DAY, plan, trends + more, slot_count=3, now=monday_noon)

        assert [job.position for job in plan.jobs] == [1, 2, 3]
        assert [job.scheduled_at for job in plan.jobs] == [
            datetime(2026, 10, 19, 10, 0),
            datetime(2026, 10, 19, 11, 0),
            datetime(2026, 10, 19, 12, 0),
        ]
        validate_plan(plan)

    def test_preserved_trend_is_not_scheduled_twice(self, builder, make_trend, monday_noon):
        plan, trends = self._plan_with_three(builder, make_trend, monday_noon)
        plan.jobs[0].status = JOB_COMPLETED
        plan.jobs[0].article_id = 7
        near_copy = make_trend('Central bank raises interest rate', 99999)

        builder.build_or_refresh(PLAN_DAY, plan, trends + [near_copy], slot_count=3, now=monday_noon)

        assert near_copy.id not in {job.trend_id for job in plan.jobs}

    def test_pending_job_without_candidate_keeps_its_trend(self, builder, make_trend, monday_noon):
        plan, trends = self._plan_with_three(builder, make_trend, monday_noon)
        plan.jobs[0].status = JOB_COMPLETED
        plan.jobs[0].article_id = 7
        third = plan.jobs[2]
        # A recently written article makes the third trend a near-duplicate
        recent = [make_trend('New smartphone unveiled in Cupertino!', 10, trend_id='recent-article')]

        builder.build_or_refresh(
            PLAN_DAY, plan, trends, slot_count=3, now=monday_noon, known_recent=recent,
        )

        assert [job.position for job in plan.jobs] == [1, 2, 3]
        assert third in plan.jobs
        assert third.trend_id == trends[2].id
        assert third.status == JOB_PENDING
        validate_plan(plan)

    def test_pending_jobs_before_a_preserved_one_are_kept(self, builder, make_trend, monday_noon):
        plan, trends = self._plan_with_three(builder, make_trend, monday_noon)
        plan.jobs[2].status = JOB_COMPLETED
        plan.jobs[2].article_id = 9
        recent = [make_trend('Central bank raises interest rate', 10, trend_id='recent-article')]

        builder.build_or_refresh(
            PLAN_DAY, plan, trends, slot_count=3, now=monday_noon, known_recent=recent,
        )

        assert [(job.position, job.trend_id) for job in plan.jobs] == [
            (1, trends[0].id), (2, trends[1].id), (3, trends[2].id),
        ]
        validate_plan(plan)

    def test_invalid_layout_leaves_plan_untouched(self, builder, make_trend, monday_noon):
        plan, trends = self._plan_with_three(builder, make_trend, monday_noon)
        # Corrupt plan: completed jobs at 1 and 3 only
        plan.jobs.remove(plan.jobs[1])
        for job in plan.jobs:
            job.status = JOB_COMPLETED
        before = [_job_snapshot(job) for job in plan.jobs]
        updated_at = plan.updated_at

        with pytest.raises(PlanInvariantError):
            builder.build_or_refresh(
                PLAN_DAY, plan, [make_trend('Olympic host city chosen', 1)], slot_count=3,
                now=monday_noon + timedelta(hours=1),
            )

        assert [_job_snapshot(job) for job in plan.jobs] == before
        assert plan.updated_at == updated_at

    def test_plan_for_other_date_rejected(self, builder, make_trend, monday_noon):
        plan, trends = self._plan_with_three(builder, make_trend, monday_noon)

        with pytest.raises(PlanInvariantError):
            builder.build_or_refresh(date(2026, 10, 20), plan, trends, slot_count=3, now=monday_noon)
