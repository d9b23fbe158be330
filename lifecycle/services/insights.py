"""
Insight battery - fixed heuristic checks over computed analytics.

Rule-based and deterministic: the same dashboard, journey flow and cohort
results always produce the same insights, with ids derived from category and
the end of the analysed range. A check whose input section is missing is
skipped.
"""

from datetime import datetime
from typing import List, Optional

from lifecycle.fsm.states import InsightCategory, InsightImpact
from lifecycle.schemas.analytics import (
    CohortAnalysis,
    DashboardMetrics,
    Insight,
    JourneyFlow,
)

CHURN_RATE_THRESHOLD = 20.0
LOW_CONVERSION_THRESHOLD = 50.0
MIN_TRANSITION_SAMPLE = 10
ENGAGEMENT_DECLINE_RATIO = 0.9
HIGH_VALUE_SEGMENT_LTV = 1000.0
DAY_7_RETENTION_THRESHOLD = 50.0


def _insight(
    category: InsightCategory,
    impact: InsightImpact,
    title: str,
    description: str,
    recommendation: str,
    confidence: float,
    data: dict,
    created_at: datetime,
) -> Insight:
    return Insight(
        id=f"{category.value.lower()}-{created_at.strftime('%Y%m%d')}",
        category=category,
        impact=impact,
        title=title,
        description=description,
        recommendation=recommendation,
        confidence=confidence,
        data=data,
        actionable=True,
        created_at=created_at,
    )


def churn_insight(dashboard: DashboardMetrics, created_at: datetime) -> Optional[Insight]:
    churn_rate = dashboard.overview.churn_rate
    if churn_rate <= CHURN_RATE_THRESHOLD:
        return None
    return _insight(
        InsightCategory.RISK,
        InsightImpact.HIGH,
        "High churn rate detected",
        f"{churn_rate:.1f}% of users have not logged in for 30 days or more.",
        "Launch a win-back campaign for inactive users and review recent product changes.",
        0.9,
        {"churn_rate": churn_rate, "threshold": CHURN_RATE_THRESHOLD},
        created_at,
    )


def conversion_insight(flow: JourneyFlow, created_at: datetime) -> Optional[Insight]:
    weak = [
        t for t in flow.transitions
        if t.conversion_rate < LOW_CONVERSION_THRESHOLD and t.count > MIN_TRANSITION_SAMPLE
    ]
    if not weak:
        return None
    worst = min(weak, key=lambda t: (t.conversion_rate, -t.count, t.from_stage or "", t.to_stage))
    from_label = worst.from_stage or "START"
    return _insight(
        InsightCategory.CONVERSION,
        InsightImpact.HIGH,
        f"Low conversion from {from_label} to {worst.to_stage}",
        f"Only {worst.conversion_rate:.1f}% of users in {from_label} move on to {worst.to_stage}.",
        f"Review the experience around {from_label} and add nudges toward {worst.to_stage}.",
        0.8,
        {
            "from_stage": worst.from_stage,
            "to_stage": worst.to_stage,
            "conversion_rate": worst.conversion_rate,
            "count": worst.count,
        },
        created_at,
    )


def engagement_insight(dashboard: DashboardMetrics, created_at: datetime) -> Optional[Insight]:
    series = [point.value for point in dashboard.trends.engagement_trend]
    if len(series) < 14:
        return None
    recent = sum(series[-7:]) / 7
    previous = sum(series[-14:-7]) / 7
    if previous <= 0 or recent > previous * ENGAGEMENT_DECLINE_RATIO:
        return None
    decline = (previous - recent) / previous * 100
    return _insight(
        InsightCategory.ENGAGEMENT,
        InsightImpact.MEDIUM,
        "Engagement is declining",
        f"Average daily engagement fell {decline:.1f}% compared with the previous week.",
        "Refresh daily tasks and send streak reminders to recently active users.",
        0.75,
        {
            "recent_average": round(recent, 2),
            "previous_average": round(previous, 2),
            "decline_percent": round(decline, 2),
        },
        created_at,
    )


def opportunity_insight(dashboard: DashboardMetrics, created_at: datetime) -> Optional[Insight]:
    if not dashboard.top_segments:
        return None
    best = max(dashboard.top_segments, key=lambda s: (s.average_lifetime_value, s.user_count))
    if best.average_lifetime_value <= HIGH_VALUE_SEGMENT_LTV:
        return None
    return _insight(
        InsightCategory.OPPORTUNITY,
        InsightImpact.HIGH,
        f"High-value segment: {best.segment.value}",
        f"{best.segment.value} users average a lifetime value of {best.average_lifetime_value:,.2f}.",
        "Target look-alike users with offers modelled on this segment's journey.",
        0.85,
        {
            "segment": best.segment.value,
            "average_lifetime_value": best.average_lifetime_value,
            "user_count": best.user_count,
        },
        created_at,
    )


def retention_insight(cohorts: CohortAnalysis, created_at: datetime) -> Optional[Insight]:
    day_7 = cohorts.average_retention.get(7)
    if day_7 is None or day_7 >= DAY_7_RETENTION_THRESHOLD:
        return None
    return _insight(
        InsightCategory.RETENTION,
        InsightImpact.HIGH,
        "Weak day-7 retention",
        f"Only {day_7:.1f}% of users are still logging in 7 days after joining.",
        "Strengthen the first-week onboarding and schedule day-3 and day-6 reminders.",
        0.9,
        {"day_7_retention": day_7, "threshold": DAY_7_RETENTION_THRESHOLD},
        created_at,
    )


def build_insights(
    created_at: datetime,
    dashboard: Optional[DashboardMetrics] = None,
    flow: Optional[JourneyFlow] = None,
    cohorts: Optional[CohortAnalysis] = None,
) -> List[Insight]:
    """Run the battery in its fixed order."""
    candidates = []
    if dashboard is not None:
        candidates.append(churn_insight(dashboard, created_at))
    if flow is not None:
        candidates.append(conversion_insight(flow, created_at))
    if dashboard is not None:
        candidates.append(engagement_insight(dashboard, created_at))
        candidates.append(opportunity_insight(dashboard, created_at))
    if cohorts is not None:
        candidates.append(retention_insight(cohorts, created_at))
    return [insight for insight in candidates if insight is not None]
