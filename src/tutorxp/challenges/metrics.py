"""Challenge metric values derived from a student's learning statistics."""

from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tutorxp.db.models import Challenge, DailyActivity, StudentStats, TopicMastery
from tutorxp.errors import MalformedChallengeMetric
from tutorxp.periods import as_utc

PROBLEMS_COMPLETED = "problems_completed"
STREAK_DAYS = "streak_days"
TIME_SPENT = "time_spent"
ACCURACY_IMPROVEMENT = "accuracy_improvement"

# currentValue = max(currentValue, newValue)
MONOTONIC_METRICS = {PROBLEMS_COMPLETED, STREAK_DAYS, TIME_SPENT}
# currentValue = newValue - startingBaseline
DELTA_METRICS = {ACCURACY_IMPROVEMENT}

METRICS = MONOTONIC_METRICS | DELTA_METRICS


def validate_metric(metric: str) -> str:
    if metric not in METRICS:
        raise MalformedChallengeMetric(f"Unsupported challenge metric: {metric!r}")
    return metric


async def current_metric_value(db: AsyncSession, student_id: int, challenge: Challenge) -> float:
    """Raw metric value for a student right now.

    Window metrics (problems, time) count only activity inside the challenge
    window; time is reported in minutes.
    """
    metric = validate_metric(challenge.metric)

    if metric == STREAK_DAYS:
        result = await db.execute(
            select(StudentStats.current_streak).where(StudentStats.student_id == student_id)
        )
        return float(result.scalar_one_or_none() or 0)

    if metric == ACCURACY_IMPROVEMENT:
        stmt = select(func.sum(TopicMastery.correct), func.sum(TopicMastery.attempts)).where(
            TopicMastery.student_id == student_id
        )
        if challenge.subject:
            stmt = stmt.where(TopicMastery.subject == challenge.subject)
        correct, attempts = (await db.execute(stmt)).one()
        if not attempts:
            return 0.0
        return round(correct / attempts * 100, 2)

    column = DailyActivity.completed if metric == PROBLEMS_COMPLETED else DailyActivity.time_spent_seconds
    stmt = select(func.coalesce(func.sum(column), 0)).where(
        DailyActivity.student_id == student_id,
        DailyActivity.day >= as_utc(challenge.starts_at).date(),
        DailyActivity.day <= as_utc(challenge.ends_at).date(),
    )
    if challenge.subject:
        stmt = stmt.where(DailyActivity.subject == challenge.subject)
    total = (await db.execute(stmt)).scalar_one()
    if metric == TIME_SPENT:
        return float(total // 60)
    return float(total)
