"""Load only the statistics a set of badge criteria needs."""

from __future__ import annotations

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from tutorxp.badges.criteria import (
    STAT_ACCURACY,
    STAT_CHALLENGES,
    STAT_MASTERY,
    STAT_PROBLEMS,
    STAT_STREAK,
    STAT_XP,
    Requirements,
    StatsView,
)
from tutorxp.db.models import Account, ChallengeParticipation, StudentStats, TopicMastery


async def load_stats_view(db: AsyncSession, student_id: int, req: Requirements) -> StatsView:
    view = StatsView()

    if req.stats & {STAT_STREAK, STAT_PROBLEMS}:
        stats = await db.get(StudentStats, student_id)
        if stats is not None:
            view.current_streak = stats.current_streak
            view.problems_completed = stats.problems_completed

    if STAT_CHALLENGES in req.stats:
        result = await db.execute(
            select(func.count())
            .select_from(ChallengeParticipation)
            .where(
                ChallengeParticipation.student_id == student_id,
                ChallengeParticipation.is_completed.is_(True),
            )
        )
        view.challenges_completed = result.scalar_one()

    if STAT_XP in req.stats:
        result = await db.execute(
            select(Account.total_earned).where(Account.student_id == student_id)
        )
        view.total_earned = result.scalar_one_or_none() or 0

    if STAT_MASTERY in req.stats and req.topics:
        result = await db.execute(
            select(TopicMastery.subject, TopicMastery.topic, TopicMastery.mastery_percent).where(
                TopicMastery.student_id == student_id,
                or_(*[
                    and_(TopicMastery.subject == subject, TopicMastery.topic == topic)
                    for subject, topic in sorted(req.topics)
                ]),
            )
        )
        view.mastery = {(subject, topic): pct for subject, topic, pct in result.all()}

    if STAT_ACCURACY in req.stats and req.subjects:
        result = await db.execute(
            select(
                TopicMastery.subject,
                func.sum(TopicMastery.correct),
                func.sum(TopicMastery.attempts),
            )
            .where(
                TopicMastery.student_id == student_id,
                TopicMastery.subject.in_(sorted(req.subjects)),
            )
            .group_by(TopicMastery.subject)
        )
        view.accuracy = {
            subject: (correct / attempts * 100) if attempts else 0.0
            for subject, correct, attempts in result.all()
        }

    return view
