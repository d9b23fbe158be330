"""
Tests for LifecycleAnalyticsService.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import SQLAlchemyError

from lifecycle.exceptions import AnalyticsQueryError
from lifecycle.fsm.states import (
    CohortPeriod,
    InsightCategory,
    JourneyPhase,
    LifecycleEvent,
    LifecycleStage,
    TrendGrouping,
)
from lifecycle.services.analytics_service import LifecycleAnalyticsService

from conftest import NOW


class FakeRedis:
    """Just enough of redis.asyncio for the dashboard cache."""

    def __init__(self):
        self.store = {}
        self.setex_calls = 0

    async def get(self, key):
        return self.store.get(key)

    async def setex(self, key, ttl, value):
        self.setex_calls += 1
        self.store[key] = value


@pytest.fixture
def analytics(db, clock):
    return LifecycleAnalyticsService(db=db, clock=clock)


def test_service_needs_a_session():
    with pytest.raises(ValueError):
        LifecycleAnalyticsService()


class TestDashboard:
    """Tests for get_dashboard_metrics."""

    @pytest.mark.asyncio
    async def test_overview_and_trends(self, db, analytics, make_user, add_event):
        fresh = await make_user(created_at=NOW - timedelta(hours=1), last_login_at=NOW)
        await make_user(created_at=NOW - timedelta(days=60))
        await add_event(fresh.id, LifecycleEvent.LOGIN, created_at=NOW - timedelta(minutes=30))

        metrics = await analytics.get_dashboard_metrics(NOW - timedelta(days=2), NOW, TrendGrouping.DAY)

        assert metrics.complete is True
        assert metrics.overview.total_users == 2
        assert metrics.overview.active_users == 1
        assert metrics.overview.new_users_today == 1
        assert metrics.overview.churn_rate == 50.0
        assert sum(metrics.stage_distribution.values()) == 2
        assert sum(metrics.segment_distribution.values()) == 2
        assert metrics.journey_metrics.users_measured == 1

        growth = {point.period: point.value for point in metrics.trends.user_growth}
        assert growth == {"2026-03-16": 0, "2026-03-17": 0, "2026-03-18": 1}
        engagement = {point.period: point.value for point in metrics.trends.engagement_trend}
        assert engagement["2026-03-18"] == 50.0

    @pytest.mark.asyncio
    async def test_weekly_buckets(self, db, analytics, make_user):
        await make_user(created_at=NOW - timedelta(days=3))

        metrics = await analytics.get_dashboard_metrics(NOW - timedelta(days=10), NOW, "week")

        # 2026-03-08 is the Sunday closing ISO week 10
        assert [point.period for point in metrics.trends.user_growth] == ["2026-W10", "2026-W11", "2026-W12"]
        assert metrics.trends.user_growth[1].value == 1

    @pytest.mark.asyncio
    async def test_timeout_marks_result_incomplete(self, db, analytics, make_user):
        """A section that misses the deadline is reported, not silently empty."""
        await make_user()
        redis = FakeRedis()
        analytics.redis = redis

        async def slow_trends(*args, **kwargs):
            await asyncio.sleep(10)

        with patch.object(analytics, "_trends_section", new=slow_trends):
            metrics = await analytics.get_dashboard_metrics(
                NOW - timedelta(days=2), NOW, timeout=2.0, use_cache=True
            )

        assert metrics.complete is False
        assert metrics.missing_sections == ["trends"]
        assert metrics.overview.total_users == 1
        assert metrics.trends.user_growth == []
        # incomplete results are never cached
        assert redis.setex_calls == 0

    @pytest.mark.asyncio
    async def test_complete_results_are_cached(self, db, analytics, make_user):
        await make_user()
        analytics.redis = FakeRedis()

        first = await analytics.get_dashboard_metrics(NOW - timedelta(days=2), NOW, use_cache=True)
        second = await analytics.get_dashboard_metrics(NOW - timedelta(days=2), NOW, use_cache=True)

        assert first.from_cache is False
        assert second.from_cache is True
        assert second.overview.total_users == first.overview.total_users
        assert analytics.redis.setex_calls == 1

    @pytest.mark.asyncio
    async def test_storage_failure_raises(self, db, analytics):
        with patch.object(db, "execute", new=AsyncMock(side_effect=SQLAlchemyError("connection lost"))):
            with pytest.raises(AnalyticsQueryError):
                await analytics.get_dashboard_metrics(NOW - timedelta(days=2), NOW)


@pytest.mark.asyncio
async def test_stage_distribution_storage_failure(db, analytics):
    with patch.object(db, "execute", new=AsyncMock(side_effect=SQLAlchemyError("connection lost"))):
        with pytest.raises(AnalyticsQueryError) as exc_info:
            await analytics.get_stage_distribution()
    assert exc_info.value.section == "stage_distribution"


class TestHeatmap:
    """Tests for get_activity_heatmap."""

    @pytest.mark.asyncio
    async def test_buckets_in_utc(self, db, analytics, make_user, add_event, add_transition):
        user = await make_user()
        await add_event(user.id, LifecycleEvent.LOGIN, created_at=NOW)
        await add_event(user.id, LifecycleEvent.LOGOUT, created_at=NOW - timedelta(days=1, hours=3))
        await add_transition(user.id, None, LifecycleStage.REGISTERED, created_at=NOW)

        heatmap = await analytics.get_activity_heatmap(NOW - timedelta(days=2), NOW)

        assert heatmap.timezone == "UTC"
        assert heatmap.total_events == 2
        assert len(heatmap.hourly) == 24
        assert heatmap.hourly[12] == 1
        assert heatmap.hourly[9] == 1
        assert heatmap.daily == {"2026-03-16": 0, "2026-03-17": 1, "2026-03-18": 1}
        # 0 is Sunday; 2026-03-17 is a Tuesday and 2026-03-18 a Wednesday
        assert heatmap.weekly == {0: 0, 1: 0, 2: 1, 3: 1, 4: 0, 5: 0, 6: 0}
        assert heatmap.monthly == {"2026-03": 2}

    @pytest.mark.asyncio
    async def test_event_type_filter_includes_requested_types_only(self, db, analytics, make_user, add_event):
        user = await make_user()
        await add_event(user.id, LifecycleEvent.LOGIN)
        await add_event(user.id, LifecycleEvent.LOGOUT)

        heatmap = await analytics.get_activity_heatmap(NOW - timedelta(days=1), NOW, event_types=["LOGOUT"])

        assert heatmap.total_events == 1

    @pytest.mark.asyncio
    async def test_local_timezone(self, db, clock, make_user, add_event):
        kolkata = LifecycleAnalyticsService(db=db, clock=clock, timezone_name="Asia/Kolkata")
        user = await make_user()
        # 01:30 on Thursday 19 March in Kolkata
        await add_event(user.id, LifecycleEvent.LOGIN, created_at=datetime(2026, 3, 18, 20, 0, tzinfo=timezone.utc))

        heatmap = await kolkata.get_activity_heatmap(NOW - timedelta(days=1), NOW + timedelta(days=1))

        assert heatmap.timezone == "Asia/Kolkata"
        assert heatmap.hourly[1] == 1
        assert heatmap.daily["2026-03-19"] == 1
        assert heatmap.weekly[4] == 1


class TestJourneyFlow:
    """Tests for get_journey_flow."""

    @pytest.mark.asyncio
    async def test_drop_off_points(self, db, analytics, make_user, add_transition):
        users = [await make_user() for _ in range(20)]
        for index, user in enumerate(users):
            await add_transition(
                user.id, LifecycleStage.REGISTERED, LifecycleStage.PROFILE_INCOMPLETE,
                created_at=NOW - timedelta(days=2), days_in_previous_stage=2,
            )
            if index < 8:
                await add_transition(
                    user.id, LifecycleStage.PROFILE_INCOMPLETE, LifecycleStage.PROFILE_COMPLETE,
                    created_at=NOW - timedelta(days=1), days_in_previous_stage=1,
                )
        await add_transition(users[0].id, None, None, metadata={"to_stage": "NOT_A_STAGE"})

        flow = await analytics.get_journey_flow(NOW - timedelta(days=7), NOW)

        assert flow.total_transitions == 28
        assert flow.users_with_transitions == 20
        assert flow.skipped_records == 1

        stats = {(t.from_stage, t.to_stage): t for t in flow.transitions}
        assert stats[("REGISTERED", "PROFILE_INCOMPLETE")].conversion_rate == 100.0
        assert stats[("REGISTERED", "PROFILE_INCOMPLETE")].average_days_in_previous_stage == 2

        assert len(flow.drop_off_points) == 1
        drop = flow.drop_off_points[0]
        assert (drop.from_stage, drop.to_stage) == ("PROFILE_INCOMPLETE", "PROFILE_COMPLETE")
        assert drop.population == 20
        assert drop.conversion_rate == 40.0
        assert drop.drop_off_count == 12
        assert drop.drop_off_rate == 60.0

        assert flow.common_paths[0].path == ["REGISTERED", "PROFILE_INCOMPLETE"]
        assert flow.common_paths[0].user_count == 12
        assert flow.common_paths[0].percentage == 60.0
        assert flow.common_paths[1].path == ["REGISTERED", "PROFILE_INCOMPLETE", "PROFILE_COMPLETE"]
        assert flow.common_paths[1].average_days_to_complete == 1

    @pytest.mark.asyncio
    async def test_empty_range(self, db, analytics):
        flow = await analytics.get_journey_flow(NOW - timedelta(days=7), NOW)
        assert flow.total_transitions == 0
        assert flow.transitions == []
        assert flow.common_paths == []


class TestCohorts:
    """Tests for get_cohort_analysis."""

    @pytest.mark.asyncio
    async def test_monthly_retention(self, db, analytics, make_user):
        january = datetime(2026, 1, 1, tzinfo=timezone.utc)
        joined = january + timedelta(days=4)
        await make_user(created_at=joined, last_login_at=NOW)
        await make_user(created_at=joined, last_login_at=january + timedelta(days=10))
        await make_user(created_at=joined)

        analysis = await analytics.get_cohort_analysis(january, NOW, CohortPeriod.MONTHLY)

        assert len(analysis.cohorts) == 1
        cohort = analysis.cohorts[0]
        assert cohort.cohort_id == "2026-01"
        assert cohort.size == 3
        # day 90 has not elapsed yet for a January cohort
        assert cohort.retention == {
            1: 66.67, 3: 66.67, 7: 66.67,
            14: 33.33, 30: 33.33, 60: 33.33,
        }
        assert analysis.average_retention[7] == 66.67
        assert 90 not in analysis.average_retention

    @pytest.mark.asyncio
    async def test_weekly_cohort_ids(self, db, analytics, make_user):
        await make_user(created_at=NOW - timedelta(days=1))

        analysis = await analytics.get_cohort_analysis(NOW - timedelta(days=7), NOW, "WEEKLY")

        assert analysis.cohorts[0].cohort_id == "2026-W12"
        assert analysis.cohorts[0].period_start.isoformat() == "2026-03-16"
        assert analysis.cohorts[0].retention == {1: 0.0}


@pytest.mark.asyncio
async def test_journey_funnel(db, analytics, make_user, add_transition):
    converted = await make_user(created_at=NOW - timedelta(days=6))
    await make_user(created_at=NOW - timedelta(days=6))
    await add_transition(converted.id, None, LifecycleStage.REGISTERED, created_at=NOW - timedelta(days=6))
    await add_transition(
        converted.id, LifecycleStage.REGISTERED, LifecycleStage.FIRST_LOGIN, created_at=NOW - timedelta(days=4)
    )
    await add_transition(
        converted.id, LifecycleStage.FIRST_LOGIN, LifecycleStage.FIRST_EARNING, created_at=NOW - timedelta(days=2)
    )

    funnel = await analytics.get_journey_funnel(NOW - timedelta(days=7), NOW)

    phases = {metrics.phase: metrics for metrics in funnel.phases}
    assert phases[JourneyPhase.ACQUISITION].reached_count == 2
    assert phases[JourneyPhase.ACQUISITION].user_count == 1
    assert phases[JourneyPhase.ACQUISITION].conversion_rate == 50.0
    assert phases[JourneyPhase.REVENUE].user_count == 1
    assert phases[JourneyPhase.CHURN].reached_count == 0
    assert phases[JourneyPhase.CHURN].conversion_rate is None
    assert funnel.overall_conversion_rate == 50.0
    assert funnel.average_journey_days == 4


@pytest.mark.asyncio
async def test_insights_flag_high_churn(db, analytics, make_user):
    await make_user(created_at=NOW - timedelta(days=60))
    await make_user(created_at=NOW - timedelta(days=45))

    report = await analytics.generate_insights(NOW - timedelta(days=10), NOW)

    assert report.complete is True
    assert [insight.category for insight in report.insights] == [InsightCategory.RISK]
    assert report.insights[0].id == "risk-20260318"
    assert report.insights[0].data["churn_rate"] == 100.0


@pytest.mark.asyncio
async def test_segment_analysis(db, analytics, make_user, add_event):
    fresh = await make_user(created_at=NOW - timedelta(days=1), last_login_at=NOW)
    await add_event(fresh.id, LifecycleEvent.FIRST_EARNING, data={"amount": 5})

    analysis = await analytics.get_segment_analysis()

    assert len(analysis) == 1
    assert analysis[0].segment.value == "NEW_USERS"
    assert analysis[0].percentage == 100.0
    assert analysis[0].retention_rate == 100.0
    assert analysis[0].conversion_rate == 100.0
    assert analysis[0].top_stages == ["REGISTERED"]
