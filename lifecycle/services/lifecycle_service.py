"""
User Lifecycle Service - the read/admin facade over the lifecycle engine.

Snapshots are derived on every call from the users table and the event
store; nothing here is cached. Lists are loaded with grouped queries for the
whole page (or the whole filtered set when derived filters are present).
"""

import logging
import math
from datetime import datetime
from functools import partial
from typing import Dict, List, Optional, Sequence, Union

from redis.asyncio.client import Redis
from sqlalchemy import exists, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from lifecycle.fsm.rules import DEFAULT_CONFIG, RISK_FACTOR_ACTIONS, LifecycleConfig
from lifecycle.fsm.states import MILESTONE_EVENTS, LifecycleStage
from lifecycle.models.activity_log import ActivityLog
from lifecycle.models.user import User
from lifecycle.schemas.analytics import LifecycleReport
from lifecycle.schemas.lifecycle import (
    ChurnPrediction,
    Milestone,
    PaginatedSnapshots,
    StageTransitionRecord,
    UserJourneyAnalytics,
    UserLifecycleFilters,
    UserLifecycleMetrics,
    UserLifecycleSnapshot,
)
from lifecycle.services.analytics_service import LifecycleAnalyticsService
from lifecycle.services.concurrency import run_bounded
from lifecycle.services.event_store import EventStore, transition_from_row
from lifecycle.services.facts import FactsLoader
from lifecycle.services.locks import UserLockRegistry
from lifecycle.services.milestones import milestones_from_rows
from lifecycle.services.population import (
    PopulationLoader,
    UserState,
    derive_state,
    stage_from_transition,
    stage_timeline,
)
from lifecycle.services.scoring import (
    UserFacts,
    assess_risk_factors,
    churn_probability,
    predict_lifetime_value,
    predict_next_stage_timeline,
    time_to_churn,
)
from lifecycle.services.stage_engine import StageTransitionEngine
from lifecycle.timeutils import SECONDS_PER_DAY, Clock, ensure_utc, hours_between, utcnow

logger = logging.getLogger(__name__)

DEFAULT_CHURN_ACTION = "Keep the user engaged with regular task reminders"


def _hours(start: datetime, end: Optional[datetime]) -> Optional[float]:
    return round(hours_between(start, end), 2) if end is not None else None


def build_metrics(facts: UserFacts, milestones: List[Milestone]) -> UserLifecycleMetrics:
    referral_hours = _hours(facts.created_at, facts.first_referral_at)
    return UserLifecycleMetrics(
        time_to_first_login_hours=_hours(facts.created_at, facts.first_login_at),
        time_to_first_task_hours=_hours(facts.created_at, facts.first_task_at),
        time_to_first_earning_hours=_hours(facts.created_at, facts.first_earning_at),
        time_to_first_referral_days=round(referral_hours / 24, 2) if referral_hours is not None else None,
        total_video_tasks=facts.total_video_tasks,
        total_earnings=facts.lifetime_value,
        total_referrals=facts.total_referrals,
        average_daily_tasks=round(facts.total_video_tasks / max(facts.days_since_registration, 1), 2),
        current_streak=facts.streaks.current,
        longest_streak=facts.streaks.longest,
        total_deposits=round(facts.total_deposits, 2),
        total_withdrawals=round(facts.total_withdrawals, 2),
        current_balance=facts.wallet_balance,
        login_count=facts.login_count,
        last_login_at=facts.last_login_at,
        milestones=milestones,
    )


def build_snapshot(
    state: UserState,
    latest_row: Optional[ActivityLog],
    history: List[StageTransitionRecord],
    milestones: List[Milestone],
) -> UserLifecycleSnapshot:
    """Assemble one snapshot; ``history`` is newest first."""
    facts = state.facts
    latest = transition_from_row(latest_row) if latest_row is not None else None
    return UserLifecycleSnapshot(
        user_id=facts.user_id,
        current_stage=state.stage,
        previous_stage=latest.from_stage if latest else None,
        stage_entered_at=ensure_utc(latest_row.created_at) if latest_row is not None else facts.created_at,
        days_since_registration=facts.days_since_registration,
        days_since_last_activity=facts.days_since_last_activity,
        total_lifetime_value=facts.lifetime_value,
        engagement_score=state.engagement_score,
        risk_score=state.risk_score,
        segment=state.segment,
        journey_phase=state.phase,
        stage_history=history,
        metrics=build_metrics(facts, milestones),
        churn_probability=churn_probability(facts.days_since_last_login),
        next_stage_timeline_days=predict_next_stage_timeline(state.stage, facts),
        lifetime_value_prediction=predict_lifetime_value(facts),
        computed_at=facts.now,
    )


class UserLifecycleService:
    """Per-user lifecycle data, churn prediction, admin overrides and reports."""

    def __init__(
        self,
        db: AsyncSession,
        config: LifecycleConfig = DEFAULT_CONFIG,
        clock: Clock = utcnow,
        locks: Optional[UserLockRegistry] = None,
        session_factory: Optional[async_sessionmaker] = None,
        redis: Optional[Redis] = None,
        timezone_name: Optional[str] = None,
    ):
        self.db = db
        self.config = config
        self.clock = clock
        self.store = EventStore(db)
        self.facts = FactsLoader(db, clock, timezone_name)
        self.population = PopulationLoader(db, config, clock, timezone_name)
        self.stage_engine = StageTransitionEngine(db, config=config, clock=clock, locks=locks)
        self.analytics = LifecycleAnalyticsService(
            db=db,
            session_factory=session_factory,
            config=config,
            clock=clock,
            redis=redis,
            timezone_name=timezone_name,
        )

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    async def get_user_lifecycle_data(self, user_id: str) -> Optional[UserLifecycleSnapshot]:
        """Full derived snapshot for one user, or None if the user does not exist."""
        user = await self.facts.get_user(user_id)
        if not user:
            return None
        snapshots = await self._snapshots([user])
        return snapshots[0]

    async def _snapshots(self, users: Sequence[User]) -> List[UserLifecycleSnapshot]:
        if not users:
            return []
        user_ids = [user.id for user in users]
        facts = await self.facts.load_many(users)
        latest = await self.store.latest_transitions_for_users(user_ids)
        histories = await self.population.transitions_by_user(user_ids)
        milestone_rows = await self.store.events_for_users(user_ids, [event.value for event in MILESTONE_EVENTS])

        snapshots = []
        for user in users:
            latest_row = latest.get(user.id)
            state = derive_state(facts[user.id], stage_from_transition(latest_row), self.config)
            history = list(reversed(histories.get(user.id, [])))
            snapshots.append(build_snapshot(
                state,
                latest_row,
                history,
                milestones_from_rows(milestone_rows.get(user.id, [])),
            ))
        return snapshots

    def _user_query(self, filters: UserLifecycleFilters):
        """Users matching the stored-column filters."""
        query = select(User)
        if filters.registration_date_from is not None:
            query = query.where(User.created_at >= filters.registration_date_from)
        if filters.registration_date_to is not None:
            query = query.where(User.created_at <= filters.registration_date_to)
        if filters.last_activity_from is not None:
            query = query.where(User.last_login_at >= filters.last_activity_from)
        if filters.last_activity_to is not None:
            query = query.where(User.last_login_at <= filters.last_activity_to)
        if filters.position_levels:
            query = query.where(User.position_level.in_(filters.position_levels))
        if filters.has_referrals is not None:
            referred = aliased(User)
            has_referral = exists().where(referred.referred_by_id == User.id)
            query = query.where(has_referral if filters.has_referrals else ~has_referral)
        if filters.search_term:
            pattern = f"%{filters.search_term.strip()}%"
            query = query.where(or_(
                User.name.ilike(pattern),
                User.email.ilike(pattern),
                User.phone.ilike(pattern),
                User.id.ilike(pattern),
            ))
        return query

    async def get_users_lifecycle_data(
        self,
        filters: Optional[UserLifecycleFilters] = None,
        page: int = 1,
        limit: int = 20,
    ) -> PaginatedSnapshots:
        """
        Paginated snapshots.

        Column filters run in SQL. Derived filters (stage, segment, phase,
        scores, LTV) need every candidate's snapshot, so the whole filtered
        set is computed before paging.
        """
        filters = filters or UserLifecycleFilters()
        page = max(page, 1)
        limit = max(limit, 1)
        query = self._user_query(filters).order_by(User.created_at.desc(), User.id.desc())

        if filters.has_derived_filters():
            result = await self.db.execute(query)
            snapshots = [
                snapshot for snapshot in await self._snapshots(list(result.scalars().all()))
                if filters.matches(snapshot)
            ]
            total = len(snapshots)
            items = snapshots[(page - 1) * limit:page * limit]
        else:
            total_result = await self.db.execute(
                select(func.count()).select_from(self._user_query(filters).subquery())
            )
            total = total_result.scalar() or 0
            result = await self.db.execute(query.offset((page - 1) * limit).limit(limit))
            items = await self._snapshots(list(result.scalars().all()))

        total_pages = math.ceil(total / limit) if total else 0
        return PaginatedSnapshots(
            items=items,
            page=page,
            limit=limit,
            total=total,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_prev=page > 1,
        )

    # ------------------------------------------------------------------
    # Predictions and overrides
    # ------------------------------------------------------------------

    async def predict_user_churn(self, user_id: str) -> Optional[ChurnPrediction]:
        facts = await self.facts.load(user_id)
        if facts is None:
            return None

        probability = churn_probability(facts.days_since_last_login)
        factors = assess_risk_factors(facts, self.config.risk_factors, self.config.default_daily_task_target)

        actions: List[str] = []
        for factor in factors:
            action = RISK_FACTOR_ACTIONS.get(factor.key)
            if action and action not in actions:
                actions.append(action)
        if not actions:
            actions.append(DEFAULT_CHURN_ACTION)

        return ChurnPrediction(
            user_id=user_id,
            churn_probability=probability,
            risk_factors=factors,
            recommended_actions=actions,
            # More corroborating factors, more confidence
            confidence_score=round(min(0.6 + 0.1 * len(factors), 0.95), 2),
            prediction_date=facts.now,
            time_to_churn_days=time_to_churn(probability),
        )

    async def force_stage_transition(
        self,
        user_id: str,
        to_stage: Union[LifecycleStage, str],
        reason: str,
        admin_id: Optional[str] = None,
    ) -> StageTransitionRecord:
        return await self.stage_engine.force_transition(user_id, to_stage, reason, admin_id)

    # ------------------------------------------------------------------
    # Distributions and journeys
    # ------------------------------------------------------------------

    async def get_stage_distribution(self) -> Dict[str, int]:
        return await self.analytics.get_stage_distribution()

    async def get_segment_distribution(self) -> Dict[str, int]:
        return await self.analytics.get_segment_distribution()

    async def get_user_journey_analytics(self, user_id: str) -> Optional[UserJourneyAnalytics]:
        """The user's stages in order with the time spent in each, plus totals per phase."""
        user = await self.facts.get_user(user_id)
        if not user:
            return None

        now = self.clock()
        registered_at = ensure_utc(user.created_at)
        history = await self.population.transitions_by_user([user_id])
        steps = stage_timeline(registered_at, history.get(user_id, []), now)

        days_per_phase: Dict[str, float] = {}
        for step in steps:
            days_per_phase[step.phase.value] = round(days_per_phase.get(step.phase.value, 0) + step.days_in_stage, 2)

        current = steps[-1]
        return UserJourneyAnalytics(
            user_id=user_id,
            current_stage=current.stage,
            current_phase=current.phase,
            steps=steps,
            days_per_phase=days_per_phase,
            total_journey_days=round(max((now - registered_at).total_seconds(), 0) / SECONDS_PER_DAY, 2),
        )

    # ------------------------------------------------------------------
    # Report
    # ------------------------------------------------------------------

    async def generate_lifecycle_report(
        self,
        date_from: datetime,
        date_to: datetime,
        filters: Optional[UserLifecycleFilters] = None,
        timeout: Optional[float] = None,
    ) -> LifecycleReport:
        """
        Overview, distributions, funnel, cohorts and insights for a date range.

        Column filters narrow the overview, stage distribution and segment
        analysis; the funnel, cohorts and insights cover every user.
        """
        user_ids = None
        if filters is not None:
            result = await self.db.execute(self._user_query(filters).with_only_columns(User.id))
            user_ids = list(result.scalars().all())

        analytics = self.analytics
        outcome = await run_bounded(
            {
                "overview": partial(analytics.get_report_overview, date_from, date_to, user_ids),
                "stage_distribution": partial(analytics.get_stage_distribution, user_ids),
                "segment_analysis": partial(analytics.get_segment_analysis, user_ids),
                "journey_funnel": partial(analytics.get_journey_funnel, date_from, date_to),
                "cohort_analysis": partial(analytics.get_cohort_analysis, date_from, date_to),
                "insights": partial(analytics.generate_insights, date_from, date_to),
            },
            analytics.concurrency,
            timeout,
        )

        results = outcome.results
        missing = list(outcome.missing)
        insight_report = results.get("insights")
        if insight_report is not None:
            missing.extend(f"insights.{name}" for name in insight_report.missing_sections)

        report = LifecycleReport(
            date_from=date_from,
            date_to=date_to,
            generated_at=self.clock(),
            overview=results.get("overview"),
            stage_distribution=results.get("stage_distribution", {}),
            segment_analysis=results.get("segment_analysis", []),
            journey_funnel=results.get("journey_funnel"),
            cohort_analysis=results.get("cohort_analysis"),
            insights=insight_report.insights if insight_report is not None else [],
            complete=not missing,
            missing_sections=missing,
        )
        logger.info(
            f"Lifecycle report {date_from.date()}..{date_to.date()}: "
            f"{len(report.insights)} insight(s), complete={report.complete}"
        )
        return report
