"""Learning-outcome intake.

One reported outcome:
1. Claims its event key (replays return the earlier result untouched)
2. Updates streak, topic mastery and daily activity
3. Awards XP from the rule table (idempotent via the same event key)
4. Pushes fresh metric values into the student's open challenges
5. Evaluates badges
all inside the student's serialized unit.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tutorxp.badges.badge_service import evaluate
from tutorxp.challenges.challenge_service import sync_student_challenges
from tutorxp.config import get_settings
from tutorxp.db.models import DailyActivity, ProcessedOutcome, StudentStats, TopicMastery
from tutorxp.events.policies import attempts_per_problem, get_mastery_policy
from tutorxp.events.xp_rules import compute_outcome_xp
from tutorxp.ledger.ledger_service import award
from tutorxp.ledger.unit import serialized
from tutorxp.periods import as_utc

logger = logging.getLogger(__name__)


def outcome_key(
    student_id: int,
    subject: str,
    topic: str,
    timestamp: datetime,
    event_id: str | None = None,
) -> str:
    """Deterministic key for an outcome, used for both replay guard and ledger."""
    if event_id:
        return f"outcome:{event_id}"
    return f"outcome:{student_id}:{subject}:{topic}:{as_utc(timestamp).isoformat()}"


async def _claim(db: AsyncSession, key: str, student_id: int, now: datetime) -> ProcessedOutcome | None:
    """Insert the replay-guard row; None if the outcome was already processed."""
    if await db.get(ProcessedOutcome, key) is not None:
        return None
    claim = ProcessedOutcome(event_key=key, student_id=student_id, xp_awarded=0, processed_at=now)
    try:
        async with db.begin_nested():
            db.add(claim)
    except IntegrityError:
        return None
    return claim


async def _get_stats(db: AsyncSession, student_id: int) -> StudentStats:
    stats = await db.get(StudentStats, student_id)
    if stats is None:
        stats = StudentStats(
            student_id=student_id,
            current_streak=0,
            longest_streak=0,
            problems_attempted=0,
            problems_completed=0,
        )
        try:
            async with db.begin_nested():
                db.add(stats)
        except IntegrityError:
            result = await db.execute(
                select(StudentStats)
                .where(StudentStats.student_id == student_id)
                .execution_options(populate_existing=True)
            )
            stats = result.scalar_one()
    return stats


def advance_streak(current: int, last_active: date | None, day: date) -> tuple[int, date]:
    """New (streak, last_active_day) after activity on ``day``."""
    if last_active is None:
        return 1, day
    if day == last_active:
        return current, last_active
    if day == last_active + timedelta(days=1):
        return current + 1, day
    if day > last_active:
        return 1, day
    # Late-arriving event for an earlier day
    return current, last_active


async def _update_topic(
    db: AsyncSession,
    student_id: int,
    subject: str,
    topic: str,
    is_correct: bool,
    is_completed: bool,
    hints_used: int,
    time_spent_seconds: int,
    at: datetime,
) -> TopicMastery:
    result = await db.execute(
        select(TopicMastery).where(
            TopicMastery.student_id == student_id,
            TopicMastery.subject == subject,
            TopicMastery.topic == topic,
        )
    )
    row = result.scalar_one_or_none()
    if row is None:
        row = TopicMastery(
            student_id=student_id,
            subject=subject,
            topic=topic,
            attempts=0,
            correct=0,
            completed=0,
            hints_used=0,
            time_spent_seconds=0,
            accuracy=0.0,
            mastery_percent=0.0,
        )
        db.add(row)

    settings = get_settings()
    row.attempts += 1
    row.correct += int(is_correct)
    row.completed += int(is_completed)
    row.hints_used += hints_used
    row.time_spent_seconds += time_spent_seconds
    row.accuracy = round(row.correct / row.attempts * 100, 2)
    row.mastery_percent = get_mastery_policy(settings.mastery_policy)(row, settings)
    if row.last_activity_at is None or as_utc(row.last_activity_at) < at:
        row.last_activity_at = at
    return row


async def _update_daily(
    db: AsyncSession,
    student_id: int,
    subject: str,
    day: date,
    is_correct: bool,
    is_completed: bool,
    time_spent_seconds: int,
) -> DailyActivity:
    result = await db.execute(
        select(DailyActivity).where(
            DailyActivity.student_id == student_id,
            DailyActivity.day == day,
            DailyActivity.subject == subject,
        )
    )
    row = result.scalar_one_or_none()
    if row is None:
        row = DailyActivity(
            student_id=student_id,
            day=day,
            subject=subject,
            attempts=0,
            correct=0,
            completed=0,
            time_spent_seconds=0,
        )
        db.add(row)

    row.attempts += 1
    row.correct += int(is_correct)
    row.completed += int(is_completed)
    row.time_spent_seconds += time_spent_seconds
    return row


async def report_outcome(
    db: AsyncSession,
    student_id: int,
    subject: str,
    topic: str,
    is_correct: bool,
    hints_used: int,
    is_completed: bool,
    timestamp: datetime,
    difficulty: str | None = None,
    time_spent_seconds: int = 0,
    event_id: str | None = None,
) -> dict[str, Any]:
    """Apply one learning outcome. Flushes only; see ``process_outcome``."""
    if hints_used < 0 or time_spent_seconds < 0:
        raise ValueError("hints_used and time_spent_seconds must not be negative")

    at = as_utc(timestamp)
    key = outcome_key(student_id, subject, topic, at, event_id)
    claim = await _claim(db, key, student_id, at)
    if claim is None:
        prior = await db.get(ProcessedOutcome, key)
        return {
            "event_key": key,
            "duplicate": True,
            "xp_awarded": prior.xp_awarded if prior else 0,
            "ledger_entry_id": prior.xp_entry_id if prior else None,
            "current_streak": None,
            "topic": None,
            "challenges": [],
            "badges_earned": [],
        }

    stats = await _get_stats(db, student_id)
    stats.current_streak, stats.last_active_day = advance_streak(
        stats.current_streak, stats.last_active_day, at.date()
    )
    stats.longest_streak = max(stats.longest_streak, stats.current_streak)
    stats.problems_attempted += 1
    stats.problems_completed += int(is_completed)
    stats.updated_at = at

    topic_row = await _update_topic(
        db, student_id, subject, topic, is_correct, is_completed, hints_used, time_spent_seconds, at
    )
    await _update_daily(db, student_id, subject, at.date(), is_correct, is_completed, time_spent_seconds)
    await db.flush()

    xp = compute_outcome_xp(
        get_settings(),
        is_correct=is_correct,
        is_completed=is_completed,
        hints_used=hints_used,
        current_streak=stats.current_streak,
        difficulty=difficulty,
    )
    entry = None
    if xp["total"] > 0:
        entry = await award(
            db,
            student_id,
            xp["total"],
            source="problem_completion",
            idempotency_key=key,
            kind="earn",
            description=f"{subject} / {topic}",
            metadata={"subject": subject, "topic": topic, "difficulty": difficulty, "hints_used": hints_used},
        )
        claim.xp_awarded = entry.amount
        claim.xp_entry_id = entry.id

    challenges = await sync_student_challenges(db, student_id)
    badges = await evaluate(db, student_id, "outcome")
    await db.flush()

    return {
        "event_key": key,
        "duplicate": False,
        "xp_awarded": claim.xp_awarded,
        "xp_breakdown": xp,
        "ledger_entry_id": claim.xp_entry_id,
        "current_streak": stats.current_streak,
        "topic": {
            "subject": subject,
            "topic": topic,
            "accuracy": topic_row.accuracy,
            "mastery_percent": topic_row.mastery_percent,
            "attempts_per_problem": attempts_per_problem(topic_row),
        },
        "challenges": challenges,
        "badges_earned": badges,
    }


async def process_outcome(db: AsyncSession, redis: object | None, **report: Any) -> dict[str, Any]:
    """Report an outcome as one committed unit for the student."""
    student_id = report["student_id"]
    return await serialized(db, student_id, lambda: report_outcome(db, **report), redis=redis)
