"""
Lifecycle Analytics Service - dashboards, heatmaps, journey flow, cohorts and insights.

Every result is recomputed from the event store and the users table. Sections
of a composite result (dashboard, insights) run concurrently under
``run_bounded``; each section gets its own session when a session factory is
supplied, otherwise they share one session and run one at a time. Storage
failures surface as AnalyticsQueryError, never as an empty result.
"""

import json
import logging
from collections import Counter, defaultdict
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta
from functools import partial
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple, Union

from redis.asyncio.client import Redis
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lifecycle.config import settings
from lifecycle.exceptions import AnalyticsQueryError
from lifecycle.fsm.rules import (
    DEFAULT_CONFIG,
    DEFAULT_DROP_OFF_GUIDANCE,
    DROP_OFF_GUIDANCE,
    LifecycleConfig,
)
from lifecycle.fsm.states import (
    EARNING_EVENTS,
    LOGIN_EVENTS,
    STAGE_TRANSITION_ACTIVITY,
    TASK_EVENTS,
    CohortPeriod,
    JourneyPhase,
    LifecycleEvent,
    LifecycleStage,
    TrendGrouping,
    UserSegment,
)
from lifecycle.models.user import User
from lifecycle.redis import get_optional_redis
from lifecycle.schemas.analytics import (
    ActivityHeatmap,
    CohortAnalysis,
    CohortRow,
    CommonPath,
    DashboardMetrics,
    DashboardOverview,
    DropOffAnalysis,
    DropOffPoint,
    InsightReport,
    JourneyFlow,
    JourneyFunnel,
    JourneyMetrics,
    PhaseMetrics,
    ReportOverview,
    SegmentAnalysis,
    SegmentPerformance,
    TransitionStat,
    TrendPoint,
    TrendSeries,
)
from lifecycle.schemas.lifecycle import StageTransitionRecord
from lifecycle.services.concurrency import run_bounded
from lifecycle.services.event_store import EventStore, transition_from_row
from lifecycle.services.insights import build_insights
from lifecycle.services.population import PopulationLoader, UserState, stage_timeline
from lifecycle.timeutils import (
    SECONDS_PER_DAY,
    Clock,
    ensure_utc,
    get_timezone,
    hours_between,
    iso_week_key,
    iter_days,
    local_date,
    start_of_day,
    utcnow,
)

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "lifecycle:dashboard"
TOP_SEGMENTS = 5
TOP_PATHS = 5
DROP_OFF_THRESHOLD = 50.0
ACTIVE_WINDOW_DAYS = 7
CHURN_WINDOW_DAYS = 30
RETENTION_WINDOW_DAYS = 30

NEXT_PHASE = {
    JourneyPhase.ACQUISITION: JourneyPhase.ACTIVATION,
    JourneyPhase.ACTIVATION: JourneyPhase.REVENUE,
    JourneyPhase.REVENUE: JourneyPhase.RETENTION,
    JourneyPhase.RETENTION: JourneyPhase.REFERRAL,
    JourneyPhase.CHURN: JourneyPhase.REACTIVATION,
    JourneyPhase.REACTIVATION: JourneyPhase.RETENTION,
}

_LOGINS = [event.value for event in LOGIN_EVENTS]
_TASKS = [event.value for event in TASK_EVENTS]
_EARNINGS = [event.value for event in EARNING_EVENTS]
_REFERRALS = [LifecycleEvent.FIRST_REFERRAL.value, LifecycleEvent.REFERRAL_MADE.value]


def _percent(part: float, whole: float) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


def _mean(values: Sequence[float]) -> Optional[float]:
    return round(sum(values) / len(values), 2) if values else None


def bucket_key(day: date, group_by: TrendGrouping) -> str:
    if group_by == TrendGrouping.WEEK:
        return iso_week_key(day)
    if group_by == TrendGrouping.MONTH:
        return f"{day:%Y-%m}"
    return day.isoformat()


def cohort_start(day: date, period: CohortPeriod) -> date:
    if period == CohortPeriod.WEEKLY:
        return day - timedelta(days=day.weekday())
    return day.replace(day=1)


def cohort_id(start: date, period: CohortPeriod) -> str:
    return iso_week_key(start) if period == CohortPeriod.WEEKLY else f"{start:%Y-%m}"


class LifecycleAnalyticsService:
    """Aggregate, read-only analytics over the lifecycle event store."""

    def __init__(
        self,
        db: Optional[AsyncSession] = None,
        session_factory: Optional[async_sessionmaker] = None,
        config: LifecycleConfig = DEFAULT_CONFIG,
        clock: Clock = utcnow,
        redis: Optional[Redis] = None,
        max_concurrency: Optional[int] = None,
        timezone_name: Optional[str] = None,
    ):
        if db is None and session_factory is None:
            raise ValueError("LifecycleAnalyticsService needs a session or a session factory")
        self.db = db
        self.session_factory = session_factory
        self.config = config
        self.clock = clock
        self.redis = redis
        self.timezone_name = timezone_name
        self.tz = get_timezone(timezone_name)
        if session_factory is None:
            # A single AsyncSession cannot run statements concurrently
            self.concurrency = 1
        else:
            self.concurrency = max_concurrency or settings.analytics_max_concurrency

    @asynccontextmanager
    async def _section_session(self, section: str) -> AsyncIterator[AsyncSession]:
        try:
            if self.session_factory is not None:
                async with self.session_factory() as session:
                    yield session
            else:
                yield self.db
        except SQLAlchemyError as e:
            logger.error(f"Analytics section '{section}' failed: {e}", exc_info=True)
            raise AnalyticsQueryError(section, e) from e

    def _population(self, session: AsyncSession) -> PopulationLoader:
        return PopulationLoader(session, self.config, self.clock, self.timezone_name)

    def _buckets(self, date_from: datetime, date_to: datetime, group_by: TrendGrouping) -> Dict[str, date]:
        """Bucket key -> last local day of the bucket inside the range, in order."""
        buckets: Dict[str, date] = {}
        for day in iter_days(local_date(date_from, self.tz), local_date(date_to, self.tz)):
            buckets[bucket_key(day, group_by)] = day
        return buckets

    # ------------------------------------------------------------------
    # Dashboard
    # ------------------------------------------------------------------

    async def get_dashboard_metrics(
        self,
        date_from: datetime,
        date_to: datetime,
        group_by: Union[TrendGrouping, str] = TrendGrouping.DAY,
        timeout: Optional[float] = None,
        use_cache: bool = False,
    ) -> DashboardMetrics:
        """
        Overview, distributions, journey metrics, trends and top segments.

        With a timeout, sections that do not finish are left at their empty
        defaults and listed in ``missing_sections`` with ``complete=False``.
        Only complete results are cached.
        """
        date_from, date_to = ensure_utc(date_from), ensure_utc(date_to)
        group_by = TrendGrouping(group_by)
        cache_key = f"{CACHE_KEY_PREFIX}:{date_from.isoformat()}:{date_to.isoformat()}:{group_by.value}"

        if use_cache:
            cached = await self._get_cached_dashboard(cache_key)
            if cached:
                return cached

        outcome = await run_bounded(
            {
                "overview": partial(self._overview_section, date_from, date_to),
                "journey_metrics": partial(self._journey_metrics_section, date_from, date_to),
                "trends": partial(self._trends_section, date_from, date_to, group_by),
            },
            self.concurrency,
            timeout,
        )

        metrics = DashboardMetrics(
            date_from=date_from,
            date_to=date_to,
            group_by=group_by,
            generated_at=self.clock(),
            complete=outcome.complete,
            missing_sections=outcome.missing,
        )
        overview = outcome.results.get("overview")
        if overview is not None:
            metrics.overview = overview["overview"]
            metrics.stage_distribution = overview["stage_distribution"]
            metrics.segment_distribution = overview["segment_distribution"]
            metrics.top_segments = overview["top_segments"]
        if "journey_metrics" in outcome.results:
            metrics.journey_metrics = outcome.results["journey_metrics"]
        if "trends" in outcome.results:
            metrics.trends = outcome.results["trends"]

        if use_cache and metrics.complete:
            await self._cache_dashboard(cache_key, metrics)
        return metrics

    async def _overview_section(self, date_from: datetime, date_to: datetime) -> Dict[str, Any]:
        async with self._section_session("overview") as session:
            states = await self._population(session).load()

        now = self.clock()
        today_start = start_of_day(local_date(now, self.tz), self.tz)
        active_since = now - timedelta(days=ACTIVE_WINDOW_DAYS)

        in_range = [
            s for s in states
            if date_from <= s.facts.created_at <= date_to
        ]
        converted = [
            s for s in in_range
            if s.facts.event_counts.get(LifecycleEvent.FIRST_EARNING.value, 0) > 0
        ]
        churned = [s for s in states if s.facts.days_since_last_activity >= CHURN_WINDOW_DAYS]

        overview = DashboardOverview(
            total_users=len(states),
            active_users=sum(
                1 for s in states
                if s.facts.last_login_at is not None and s.facts.last_login_at >= active_since
            ),
            new_users_today=sum(1 for s in states if s.facts.created_at >= today_start),
            churn_rate=_percent(len(churned), len(states)),
            average_engagement_score=_mean([s.engagement_score for s in states]) or 0,
            total_lifetime_value=round(sum(s.lifetime_value for s in states), 2),
            conversion_rate=_percent(len(converted), len(in_range)),
        )

        stage_distribution = {stage.value: 0 for stage in LifecycleStage}
        segment_distribution = {segment.value: 0 for segment in UserSegment}
        for s in states:
            stage_distribution[s.stage.value] += 1
            segment_distribution[s.segment.value] += 1

        return {
            "overview": overview,
            "stage_distribution": stage_distribution,
            "segment_distribution": segment_distribution,
            "top_segments": self._top_segments(states, date_from, date_to),
        }

    def _top_segments(
        self,
        states: Sequence[UserState],
        date_from: datetime,
        date_to: datetime,
    ) -> List[SegmentPerformance]:
        """Segments by average LTV; growth is joiners in range over members before it."""
        grouped: Dict[UserSegment, List[UserState]] = defaultdict(list)
        for s in states:
            grouped[s.segment].append(s)

        performance = []
        for segment, members in grouped.items():
            joined = sum(1 for s in members if date_from <= s.facts.created_at <= date_to)
            before = sum(1 for s in members if s.facts.created_at < date_from)
            growth = _percent(joined, before) if before else (100.0 if joined else 0.0)
            performance.append(SegmentPerformance(
                segment=segment,
                user_count=len(members),
                growth_rate=growth,
                average_lifetime_value=_mean([s.lifetime_value for s in members]) or 0,
            ))

        performance.sort(key=lambda p: (-p.average_lifetime_value, -p.user_count, p.segment.value))
        return performance[:TOP_SEGMENTS]

    async def _journey_metrics_section(self, date_from: datetime, date_to: datetime) -> JourneyMetrics:
        async with self._section_session("journey_metrics") as session:
            result = await session.execute(
                select(User.id, User.created_at).where(
                    User.created_at >= date_from,
                    User.created_at <= date_to,
                )
            )
            registered = {user_id: ensure_utc(created_at) for user_id, created_at in result.all()}
            if not registered:
                return JourneyMetrics()

            store = EventStore(session)
            user_ids = list(registered)
            first_tasks = await store.first_event_times(_TASKS, user_ids)
            first_earnings = await store.first_event_times(_EARNINGS, user_ids)
            first_referrals = await store.first_event_times(_REFERRALS, user_ids)

        def average_hours(firsts: Dict[str, datetime]) -> Optional[float]:
            return _mean([hours_between(registered[uid], at) for uid, at in firsts.items()])

        referral_hours = average_hours(first_referrals)
        return JourneyMetrics(
            average_hours_to_first_task=average_hours(first_tasks),
            average_hours_to_first_earning=average_hours(first_earnings),
            average_days_to_first_referral=round(referral_hours / 24, 2) if referral_hours is not None else None,
            users_measured=len(registered),
        )

    async def _trends_section(
        self,
        date_from: datetime,
        date_to: datetime,
        group_by: TrendGrouping,
    ) -> TrendSeries:
        buckets = self._buckets(date_from, date_to, group_by)

        async with self._section_session("trends") as session:
            result = await session.execute(select(User.id, User.created_at))
            users = [(user_id, ensure_utc(created_at)) for user_id, created_at in result.all()]
            store = EventStore(session)
            logins = await store.events_in_range(date_from, date_to, activities=_LOGINS)
            transitions = await store.transitions_in_range(date_from, date_to)

        growth = {key: 0 for key in buckets}
        for _, created_at in users:
            if date_from <= created_at <= date_to:
                growth[bucket_key(local_date(created_at, self.tz), group_by)] += 1

        active = defaultdict(set)
        for row in logins:
            active[bucket_key(local_date(row.created_at, self.tz), group_by)].add(row.user_id)

        churned = defaultdict(set)
        for row in transitions:
            record = transition_from_row(row)
            if record is not None and record.to_stage == LifecycleStage.CHURNED:
                churned[bucket_key(local_date(record.transitioned_at, self.tz), group_by)].add(record.user_id)

        registration_days = sorted(local_date(created_at, self.tz) for _, created_at in users)
        engagement, churn = [], []
        for key, last_day in buckets.items():
            registered = sum(1 for day in registration_days if day <= last_day)
            engagement.append(TrendPoint(period=key, value=_percent(len(active.get(key, ())), registered)))
            churn.append(TrendPoint(period=key, value=_percent(len(churned.get(key, ())), registered)))

        return TrendSeries(
            user_growth=[TrendPoint(period=key, value=count) for key, count in growth.items()],
            engagement_trend=engagement,
            churn_trend=churn,
        )

    async def _get_cached_dashboard(self, key: str) -> Optional[DashboardMetrics]:
        """Get cached dashboard from Redis."""
        redis = self.redis or get_optional_redis()
        if redis is None:
            return None
        try:
            cached = await redis.get(key)
            if cached:
                metrics = DashboardMetrics.model_validate(json.loads(cached))
                metrics.from_cache = True
                return metrics
        except Exception as e:
            logger.warning(f"Redis cache miss: {e}")
        return None

    async def _cache_dashboard(self, key: str, metrics: DashboardMetrics) -> None:
        """Cache dashboard metrics to Redis."""
        redis = self.redis or get_optional_redis()
        if redis is None:
            return
        try:
            await redis.setex(
                key,
                settings.analytics_cache_ttl_seconds,
                json.dumps(metrics.model_dump(mode="json")),
            )
        except Exception as e:
            logger.warning(f"Redis cache write failed: {e}")

    # ------------------------------------------------------------------
    # Activity heatmap
    # ------------------------------------------------------------------

    async def get_activity_heatmap(
        self,
        date_from: datetime,
        date_to: datetime,
        event_types: Optional[Sequence[Union[LifecycleEvent, str]]] = None,
    ) -> ActivityHeatmap:
        """Event counts by local hour, day, weekday (0 = Sunday) and month."""
        date_from, date_to = ensure_utc(date_from), ensure_utc(date_to)
        async with self._section_session("heatmap") as session:
            rows = await EventStore(session).events_in_range(
                date_from,
                date_to,
                activities=[LifecycleEvent(t).value for t in event_types] if event_types else None,
                exclude_activities=None if event_types else [STAGE_TRANSITION_ACTIVITY],
            )

        first_day = local_date(date_from, self.tz)
        last_day = local_date(date_to, self.tz)
        hourly = {hour: 0 for hour in range(24)}
        daily = {day.isoformat(): 0 for day in iter_days(first_day, last_day)}
        weekly = {weekday: 0 for weekday in range(7)}
        monthly = {f"{day:%Y-%m}": 0 for day in iter_days(first_day, last_day)}

        for row in rows:
            local = ensure_utc(row.created_at).astimezone(self.tz)
            hourly[local.hour] += 1
            weekly[local.isoweekday() % 7] += 1
            day_key = local.date().isoformat()
            if day_key in daily:
                daily[day_key] += 1
            month_key = f"{local:%Y-%m}"
            if month_key in monthly:
                monthly[month_key] += 1

        return ActivityHeatmap(
            date_from=date_from,
            date_to=date_to,
            timezone=self.tz.key,
            total_events=len(rows),
            hourly=hourly,
            daily=daily,
            weekly=weekly,
            monthly=monthly,
        )

    # ------------------------------------------------------------------
    # Journey flow
    # ------------------------------------------------------------------

    async def get_journey_flow(self, date_from: datetime, date_to: datetime) -> JourneyFlow:
        date_from, date_to = ensure_utc(date_from), ensure_utc(date_to)
        async with self._section_session("journey_flow") as session:
            rows = await EventStore(session).transitions_in_range(date_from, date_to)

        records = [record for record in map(transition_from_row, rows) if record is not None]
        skipped = len(rows) - len(records)
        if skipped:
            logger.warning(f"Journey flow skipped {skipped} malformed stage transition(s)")

        pair_counts: Counter = Counter()
        pair_days: Dict[Tuple[Optional[str], str], int] = defaultdict(int)
        arrivals: Counter = Counter()
        departures: Counter = Counter()
        for record in records:
            from_stage = record.from_stage.value if record.from_stage else None
            key = (from_stage, record.to_stage.value)
            pair_counts[key] += 1
            pair_days[key] += record.days_in_previous_stage
            arrivals[record.to_stage.value] += 1
            departures[from_stage] += 1

        transitions, drop_offs = [], []
        for (from_stage, to_stage), count in pair_counts.items():
            if from_stage is None:
                population = departures[None]
            else:
                population = max(arrivals[from_stage], departures[from_stage])
            rate = _percent(count, population)
            transitions.append(TransitionStat(
                from_stage=from_stage,
                to_stage=to_stage,
                count=count,
                average_days_in_previous_stage=round(pair_days[(from_stage, to_stage)] / count, 2),
                conversion_rate=rate,
            ))
            if rate < DROP_OFF_THRESHOLD:
                drop_offs.append(DropOffPoint(
                    from_stage=from_stage,
                    to_stage=to_stage,
                    population=population,
                    conversion_rate=rate,
                    drop_off_count=round(population * (1 - rate / 100)),
                    drop_off_rate=round(100 - rate, 2),
                    next_stage_count=count,
                ))

        transitions.sort(key=lambda t: (-t.count, t.from_stage or "", t.to_stage))
        drop_offs.sort(key=lambda d: (-d.drop_off_count, d.from_stage or "", d.to_stage))

        by_user: Dict[str, List[StageTransitionRecord]] = defaultdict(list)
        for record in records:
            by_user[record.user_id].append(record)

        return JourneyFlow(
            date_from=date_from,
            date_to=date_to,
            total_transitions=len(records),
            users_with_transitions=len(by_user),
            transitions=transitions,
            drop_off_points=drop_offs,
            common_paths=self._common_paths(by_user),
            skipped_records=skipped,
        )

    def _common_paths(self, by_user: Dict[str, List[StageTransitionRecord]]) -> List[CommonPath]:
        paths: Dict[Tuple[str, ...], List[float]] = defaultdict(list)
        for user_records in by_user.values():
            ordered = sorted(user_records, key=lambda r: (r.transitioned_at, r.id or 0))
            sequence: List[str] = []
            if ordered[0].from_stage is not None:
                sequence.append(ordered[0].from_stage.value)
            for record in ordered:
                if not sequence or sequence[-1] != record.to_stage.value:
                    sequence.append(record.to_stage.value)
            if len(sequence) < 2:
                continue
            span = (ordered[-1].transitioned_at - ordered[0].transitioned_at).total_seconds() / SECONDS_PER_DAY
            paths[tuple(sequence)].append(span)

        ranked = sorted(paths.items(), key=lambda item: (-len(item[1]), " > ".join(item[0])))
        return [
            CommonPath(
                path=list(path),
                user_count=len(spans),
                percentage=_percent(len(spans), len(by_user)),
                average_days_to_complete=_mean(spans) or 0,
            )
            for path, spans in ranked[:TOP_PATHS]
        ]

    # ------------------------------------------------------------------
    # Cohorts
    # ------------------------------------------------------------------

    async def get_cohort_analysis(
        self,
        date_from: datetime,
        date_to: datetime,
        period: Union[CohortPeriod, str] = CohortPeriod.MONTHLY,
    ) -> CohortAnalysis:
        """
        Retention of registration cohorts.

        A user is retained at offset N when their last login is at least N
        days after the start of their cohort period. An offset is reported
        only once it has fully elapsed for the cohort.
        """
        date_from, date_to = ensure_utc(date_from), ensure_utc(date_to)
        period = CohortPeriod(period)
        offsets = list(self.config.cohort_offsets)
        now = self.clock()

        async with self._section_session("cohorts") as session:
            result = await session.execute(
                select(User)
                .where(User.created_at >= date_from, User.created_at <= date_to)
                .order_by(User.created_at.asc(), User.id.asc())
            )
            states = await self._population(session).load_users(list(result.scalars().all()))

        cohorts: Dict[date, List[UserState]] = defaultdict(list)
        for s in states:
            cohorts[cohort_start(local_date(s.facts.created_at, self.tz), period)].append(s)

        def elapsed(start: date, offset: int) -> bool:
            return start_of_day(start, self.tz) + timedelta(days=offset) <= now

        def retained(s: UserState, start: date, offset: int) -> bool:
            last_login = s.facts.last_login_at
            return last_login is not None and last_login >= start_of_day(start, self.tz) + timedelta(days=offset)

        rows = []
        for start in sorted(cohorts):
            members = cohorts[start]
            retention = {
                offset: _percent(sum(1 for s in members if retained(s, start, offset)), len(members))
                for offset in offsets
                if elapsed(start, offset)
            }
            rows.append(CohortRow(
                cohort_id=cohort_id(start, period),
                period_start=start,
                size=len(members),
                retention=retention,
                average_lifetime_value=_mean([s.lifetime_value for s in members]) or 0,
            ))

        average_retention = {}
        for offset in offsets:
            values = [row.retention[offset] for row in rows if offset in row.retention]
            if values:
                average_retention[offset] = _mean(values)

        by_segment: Dict[str, Dict[int, float]] = {}
        for segment in UserSegment:
            members = [
                (s, cohort_start(local_date(s.facts.created_at, self.tz), period))
                for s in states if s.segment == segment
            ]
            if not members:
                continue
            curve = {}
            for offset in offsets:
                eligible = [(s, start) for s, start in members if elapsed(start, offset)]
                if eligible:
                    kept = sum(1 for s, start in eligible if retained(s, start, offset))
                    curve[offset] = _percent(kept, len(eligible))
            by_segment[segment.value] = curve

        return CohortAnalysis(
            period=period,
            offsets=offsets,
            cohorts=rows,
            average_retention=average_retention,
            retention_by_segment=by_segment,
        )

    # ------------------------------------------------------------------
    # Insights
    # ------------------------------------------------------------------

    async def generate_insights(
        self,
        date_from: datetime,
        date_to: datetime,
        timeout: Optional[float] = None,
    ) -> InsightReport:
        """Run the insight checks over a freshly computed dashboard, flow and cohorts."""
        date_from, date_to = ensure_utc(date_from), ensure_utc(date_to)
        outcome = await run_bounded(
            {
                "dashboard": partial(self.get_dashboard_metrics, date_from, date_to, TrendGrouping.DAY),
                "journey_flow": partial(self.get_journey_flow, date_from, date_to),
                "cohorts": partial(self.get_cohort_analysis, date_from, date_to, CohortPeriod.MONTHLY),
            },
            self.concurrency,
            timeout,
        )

        missing = list(outcome.missing)
        dashboard = outcome.results.get("dashboard")
        if dashboard is not None:
            missing.extend(f"dashboard.{name}" for name in dashboard.missing_sections)

        insights = build_insights(
            date_to,
            dashboard=dashboard,
            flow=outcome.results.get("journey_flow"),
            cohorts=outcome.results.get("cohorts"),
        )
        logger.info(f"Generated {len(insights)} lifecycle insight(s) for {date_from.date()}..{date_to.date()}")
        return InsightReport(
            date_from=date_from,
            date_to=date_to,
            insights=insights,
            complete=not missing,
            missing_sections=missing,
        )

    # ------------------------------------------------------------------
    # Distributions and report overview
    # ------------------------------------------------------------------

    async def get_stage_distribution(self, user_ids: Optional[Sequence[str]] = None) -> Dict[str, int]:
        """User count per stage; every stage is present."""
        async with self._section_session("stage_distribution") as session:
            states = await self._population(session).load(user_ids)
        distribution = {stage.value: 0 for stage in LifecycleStage}
        for s in states:
            distribution[s.stage.value] += 1
        return distribution

    async def get_segment_distribution(self, user_ids: Optional[Sequence[str]] = None) -> Dict[str, int]:
        async with self._section_session("segment_distribution") as session:
            states = await self._population(session).load(user_ids)
        distribution = {segment.value: 0 for segment in UserSegment}
        for s in states:
            distribution[s.segment.value] += 1
        return distribution

    async def get_report_overview(
        self,
        date_from: datetime,
        date_to: datetime,
        user_ids: Optional[Sequence[str]] = None,
    ) -> ReportOverview:
        date_from, date_to = ensure_utc(date_from), ensure_utc(date_to)
        async with self._section_session("overview") as session:
            states = await self._population(session).load(user_ids)
            returns = await EventStore(session).events_in_range(
                date_from,
                date_to,
                activities=[LifecycleEvent.RETURNED_AFTER_INACTIVITY.value],
                user_ids=user_ids,
            )

        active_since = self.clock() - timedelta(days=ACTIVE_WINDOW_DAYS)
        return ReportOverview(
            total_users=len(states),
            new_users=sum(1 for s in states if date_from <= s.facts.created_at <= date_to),
            active_users=sum(
                1 for s in states
                if s.facts.last_login_at is not None and s.facts.last_login_at >= active_since
            ),
            churned_users=sum(1 for s in states if s.facts.days_since_last_activity >= CHURN_WINDOW_DAYS),
            reactivated_users=len({row.user_id for row in returns}),
        )

    # ------------------------------------------------------------------
    # Segments and funnel
    # ------------------------------------------------------------------

    async def get_segment_analysis(self, user_ids: Optional[Sequence[str]] = None) -> List[SegmentAnalysis]:
        """Per-segment size, scores, retention, conversion and top stages."""
        async with self._section_session("segment_analysis") as session:
            states = await self._population(session).load(user_ids)

        grouped: Dict[UserSegment, List[UserState]] = defaultdict(list)
        for s in states:
            grouped[s.segment].append(s)

        analysis = []
        for segment in UserSegment:
            members = grouped.get(segment)
            if not members:
                continue
            retained = sum(
                1 for s in members
                if s.facts.days_since_last_login is not None
                and s.facts.days_since_last_login <= RETENTION_WINDOW_DAYS
            )
            converted = sum(
                1 for s in members
                if s.facts.event_counts.get(LifecycleEvent.FIRST_EARNING.value, 0) > 0
            )
            stage_counts = Counter(s.stage.value for s in members)
            top_stages = sorted(stage_counts.items(), key=lambda item: (-item[1], item[0]))[:3]
            analysis.append(SegmentAnalysis(
                segment=segment,
                user_count=len(members),
                percentage=_percent(len(members), len(states)),
                average_engagement_score=_mean([s.engagement_score for s in members]) or 0,
                average_lifetime_value=_mean([s.lifetime_value for s in members]) or 0,
                retention_rate=_percent(retained, len(members)),
                conversion_rate=_percent(converted, len(members)),
                top_stages=[stage for stage, _ in top_stages],
            ))
        return analysis

    async def get_journey_funnel(self, date_from: datetime, date_to: datetime) -> JourneyFunnel:
        """
        Phase funnel for users registered in the range.

        A phase is reached when any recorded transition entered one of its
        stages; every user starts in ACQUISITION.
        """
        date_from, date_to = ensure_utc(date_from), ensure_utc(date_to)
        async with self._section_session("journey_funnel") as session:
            result = await session.execute(
                select(User)
                .where(User.created_at >= date_from, User.created_at <= date_to)
                .order_by(User.created_at.asc(), User.id.asc())
            )
            loader = self._population(session)
            states = await loader.load_users(list(result.scalars().all()))
            history = await loader.transitions_by_user([s.user_id for s in states])

        flow = await self.get_journey_flow(date_from, date_to)
        now = self.clock()

        reached: Dict[JourneyPhase, set] = defaultdict(set)
        phase_days: Dict[JourneyPhase, List[float]] = defaultdict(list)
        journey_days = []
        for s in states:
            transitions = history.get(s.user_id, [])
            reached[JourneyPhase.ACQUISITION].add(s.user_id)
            for record in transitions:
                reached[record.to_stage.journey_phase].add(s.user_id)

            per_phase: Dict[JourneyPhase, float] = defaultdict(float)
            for step in stage_timeline(s.facts.created_at, transitions, now):
                per_phase[step.phase] += step.days_in_stage
            for phase, days in per_phase.items():
                phase_days[phase].append(days)

            if transitions:
                last = max(record.transitioned_at for record in transitions)
                journey_days.append((last - s.facts.created_at).total_seconds() / SECONDS_PER_DAY)

        current = Counter(s.phase for s in states)
        phases = []
        for phase in JourneyPhase:
            reached_users = reached.get(phase, set())
            next_phase = NEXT_PHASE.get(phase)
            conversion = drop_off = None
            if next_phase is not None and reached_users:
                moved_on = len(reached_users & reached.get(next_phase, set()))
                conversion = _percent(moved_on, len(reached_users))
                drop_off = round(100 - conversion, 2)
            phases.append(PhaseMetrics(
                phase=phase,
                user_count=current.get(phase, 0),
                reached_count=len(reached_users),
                conversion_rate=conversion,
                drop_off_rate=drop_off,
                average_days_in_phase=_mean(phase_days.get(phase, [])),
            ))

        return JourneyFunnel(
            phases=phases,
            overall_conversion_rate=_percent(
                len(reached.get(JourneyPhase.REVENUE, set())),
                len(reached.get(JourneyPhase.ACQUISITION, set())),
            ),
            average_journey_days=_mean(journey_days),
            drop_off_points=[self._drop_off_analysis(point) for point in flow.drop_off_points],
        )

    def _drop_off_analysis(self, point: DropOffPoint) -> DropOffAnalysis:
        stage = point.from_stage or LifecycleStage.REGISTERED.value
        reasons, actions = DROP_OFF_GUIDANCE.get(LifecycleStage(stage), DEFAULT_DROP_OFF_GUIDANCE)
        return DropOffAnalysis(
            stage=stage,
            next_stage=point.to_stage,
            drop_off_count=point.drop_off_count,
            drop_off_rate=point.drop_off_rate,
            common_reasons=list(reasons),
            suggested_actions=list(actions),
        )
