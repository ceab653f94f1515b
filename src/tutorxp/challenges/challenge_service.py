"""Challenge tracker: joining, progress recording and completion rewards."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tutorxp.badges.badge_service import evaluate, get_badge, grant_badge
from tutorxp.challenges.metrics import DELTA_METRICS, current_metric_value, validate_metric
from tutorxp.db.models import Challenge, ChallengeParticipation, ScopeMembership
from tutorxp.errors import NotEligible, NotFound, RuleConfigurationError
from tutorxp.leaderboard.ranking import rank_scores
from tutorxp.ledger.ledger_service import award
from tutorxp.notifications.notification_service import emit_notification
from tutorxp.periods import as_utc

logger = logging.getLogger(__name__)

SCOPES = {"global", "class", "school", "grade"}


def completion_key(student_id: int, challenge_id: int) -> str:
    return f"challenge:{student_id}:{challenge_id}:completion"


def is_open(challenge: Challenge, now: datetime) -> bool:
    """True while the challenge window accepts progress."""
    return as_utc(challenge.starts_at) <= now < as_utc(challenge.ends_at)


async def create_challenge(
    db: AsyncSession,
    title: str,
    metric: str,
    target_value: int,
    starts_at: datetime,
    ends_at: datetime,
    xp_reward: int = 0,
    badge_reward: str | None = None,
    description: str = "",
    subject: str | None = None,
    scope: str = "global",
    scope_key: str | None = None,
    max_participants: int | None = None,
) -> Challenge:
    """Publish a challenge. Definitions are immutable once created."""
    validate_metric(metric)
    if target_value <= 0:
        raise ValueError("target_value must be positive")
    if as_utc(ends_at) <= as_utc(starts_at):
        raise ValueError("ends_at must be after starts_at")
    if scope not in SCOPES:
        raise ValueError(f"Invalid scope: {scope}. Must be one of {SCOPES}")
    if scope != "global" and not scope_key:
        raise ValueError(f"scope_key is required for {scope} challenges")
    if badge_reward is not None and await get_badge(db, badge_reward) is None:
        raise NotFound(f"Badge {badge_reward} not found")

    challenge = Challenge(
        title=title,
        description=description,
        metric=metric,
        target_value=target_value,
        starts_at=starts_at,
        ends_at=ends_at,
        xp_reward=xp_reward,
        badge_reward=badge_reward,
        subject=subject,
        scope=scope,
        scope_key=scope_key if scope != "global" else None,
        max_participants=max_participants,
        current_participants=0,
        is_active=True,
        created_at=datetime.now(timezone.utc),
    )
    db.add(challenge)
    await db.flush()
    return challenge


async def get_challenge(db: AsyncSession, challenge_id: int) -> Challenge | None:
    return await db.get(Challenge, challenge_id)


async def get_participation(
    db: AsyncSession, student_id: int, challenge_id: int, for_update: bool = False
) -> ChallengeParticipation | None:
    stmt = select(ChallengeParticipation).where(
        ChallengeParticipation.student_id == student_id,
        ChallengeParticipation.challenge_id == challenge_id,
    )
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def _in_scope(db: AsyncSession, student_id: int, challenge: Challenge) -> bool:
    if challenge.scope == "global":
        return True
    result = await db.execute(
        select(ScopeMembership.id).where(
            ScopeMembership.student_id == student_id,
            ScopeMembership.scope == challenge.scope,
            ScopeMembership.scope_key == challenge.scope_key,
        )
    )
    return result.first() is not None


async def join_challenge(
    db: AsyncSession,
    student_id: int,
    challenge_id: int,
    now: datetime | None = None,
) -> ChallengeParticipation:
    """Join a challenge, capturing the baseline for delta metrics. Idempotent."""
    now = now or datetime.now(timezone.utc)
    challenge = await get_challenge(db, challenge_id)
    if challenge is None or not challenge.is_active:
        raise NotFound(f"Challenge {challenge_id} not found")

    existing = await get_participation(db, student_id, challenge_id)
    if existing is not None:
        return existing

    if now >= as_utc(challenge.ends_at):
        raise NotEligible("Challenge has ended")
    if not await _in_scope(db, student_id, challenge):
        raise NotEligible("Student is outside the challenge scope")

    # Atomic seat reservation
    result = await db.execute(
        update(Challenge)
        .where(
            Challenge.id == challenge_id,
            or_(
                Challenge.max_participants.is_(None),
                Challenge.current_participants < Challenge.max_participants,
            ),
        )
        .values(current_participants=Challenge.current_participants + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise NotEligible("Challenge is full")

    baseline = None
    if challenge.metric in DELTA_METRICS:
        baseline = await current_metric_value(db, student_id, challenge)

    participation = ChallengeParticipation(
        challenge_id=challenge_id,
        student_id=student_id,
        current_value=0.0,
        starting_baseline=baseline,
        is_completed=False,
        progress_history=[],
        xp_awarded=False,
        badge_awarded=False,
        joined_at=now,
        updated_at=now,
    )
    try:
        async with db.begin_nested():
            db.add(participation)
    except IntegrityError:
        # Joined concurrently; give the reserved seat back
        existing = await get_participation(db, student_id, challenge_id)
        if existing is None:
            raise
        await db.execute(
            update(Challenge)
            .where(Challenge.id == challenge_id)
            .values(current_participants=Challenge.current_participants - 1)
            .execution_options(synchronize_session=False)
        )
        return existing

    await db.refresh(challenge)
    return participation


def _to_update(
    participation: ChallengeParticipation,
    challenge: Challenge,
    newly_completed: bool = False,
    frozen: bool = False,
) -> dict[str, Any]:
    target = challenge.target_value
    return {
        "challenge_id": challenge.id,
        "student_id": participation.student_id,
        "metric": challenge.metric,
        "current_value": participation.current_value,
        "target_value": target,
        "starting_baseline": participation.starting_baseline,
        "progress_percent": round(min(100.0, max(0.0, participation.current_value / target * 100)), 2),
        "is_completed": participation.is_completed,
        "completed_at": participation.completed_at,
        "newly_completed": newly_completed,
        "frozen": frozen,
        "xp_awarded": participation.xp_awarded,
        "badge_awarded": participation.badge_awarded,
        "progress_history": participation.progress_history,
    }


async def record_progress(
    db: AsyncSession,
    student_id: int,
    challenge_id: int,
    new_value: float,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Apply a new raw metric value to a participation.

    Monotonic metrics keep the max; delta metrics store value - baseline.
    Reaching the target inside the window completes the challenge once:
    1. Flip is_completed / completed_at
    2. Award xp_reward (idempotent via challenge:<student>:<id>:completion)
    3. Grant badge_reward, if any; a missing or inactive badge leaves
       badge_awarded False and later progress calls retry it
    4. Emit challenge_completed and re-evaluate challenge-count badges
    Outside the window the participation is frozen and left untouched.
    """
    now = now or datetime.now(timezone.utc)
    participation = await get_participation(db, student_id, challenge_id, for_update=True)
    if participation is None:
        raise NotFound(f"Student {student_id} has not joined challenge {challenge_id}")
    challenge = await get_challenge(db, participation.challenge_id)
    validate_metric(challenge.metric)

    if not is_open(challenge, now):
        return _to_update(participation, challenge, frozen=True)

    if challenge.metric in DELTA_METRICS:
        value = float(new_value) - (participation.starting_baseline or 0.0)
    else:
        value = max(participation.current_value, float(new_value))

    if value != participation.current_value:
        participation.current_value = value
        participation.progress_history = [
            *(participation.progress_history or []),
            {"at": now.isoformat(), "value": value},
        ]
        participation.updated_at = now

    newly_completed = False
    if not participation.is_completed and value >= challenge.target_value:
        participation.is_completed = True
        participation.completed_at = now
        newly_completed = True
        await db.flush()
        await _grant_completion_rewards(db, participation, challenge)
    elif participation.is_completed and _rewards_pending(participation, challenge):
        await _grant_rewards(db, participation, challenge)

    await db.flush()
    return _to_update(participation, challenge, newly_completed=newly_completed)


async def _grant_rewards(
    db: AsyncSession,
    participation: ChallengeParticipation,
    challenge: Challenge,
) -> None:
    """Move each reward flag to True once its reward is actually held."""
    student_id = participation.student_id
    if not participation.xp_awarded:
        if challenge.xp_reward > 0:
            await award(
                db,
                student_id,
                challenge.xp_reward,
                source=f"challenge:{challenge.id}",
                idempotency_key=completion_key(student_id, challenge.id),
                kind="bonus",
                description=f'Completed challenge: "{challenge.title}"',
                metadata={"challenge_id": challenge.id},
            )
        participation.xp_awarded = True

    if challenge.badge_reward and not participation.badge_awarded:
        badge = await get_badge(db, challenge.badge_reward)
        if badge is None or not badge.is_active:
            logger.warning(
                "Challenge %s badge reward %s is missing or inactive; left ungranted",
                challenge.id, challenge.badge_reward,
            )
        else:
            await grant_badge(db, student_id, badge, {"challenge_id": challenge.id})
            participation.badge_awarded = True


def _rewards_pending(participation: ChallengeParticipation, challenge: Challenge) -> bool:
    return not participation.xp_awarded or bool(challenge.badge_reward and not participation.badge_awarded)


async def _grant_completion_rewards(
    db: AsyncSession,
    participation: ChallengeParticipation,
    challenge: Challenge,
) -> None:
    student_id = participation.student_id
    await _grant_rewards(db, participation, challenge)

    await emit_notification(
        db,
        student_id,
        "challenge_completed",
        "Challenge Complete!",
        f'You completed "{challenge.title}" (+{challenge.xp_reward} XP)',
        {"challenge_id": challenge.id, "xp_reward": challenge.xp_reward, "badge_reward": challenge.badge_reward},
    )
    logger.info("Student %s completed challenge %s", student_id, challenge.id)
    await evaluate(db, student_id, "challenge_completed")


async def sync_student_challenges(
    db: AsyncSession,
    student_id: int,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    """Push fresh metric values into every open participation of a student."""
    now = now or datetime.now(timezone.utc)
    result = await db.execute(
        select(ChallengeParticipation, Challenge)
        .join(Challenge, Challenge.id == ChallengeParticipation.challenge_id)
        .where(
            ChallengeParticipation.student_id == student_id,
            ChallengeParticipation.is_completed.is_(False),
            Challenge.is_active.is_(True),
        )
        .order_by(ChallengeParticipation.id)
    )
    updates = []
    for participation, challenge in result.all():
        if not is_open(challenge, now):
            continue
        try:
            value = await current_metric_value(db, student_id, challenge)
        except RuleConfigurationError as exc:
            logger.warning("Skipping challenge %s: %s", challenge.id, exc)
            continue
        updates.append(await record_progress(db, student_id, challenge.id, value, now))
    return updates


async def get_progress(db: AsyncSession, student_id: int, challenge_id: int) -> dict[str, Any]:
    participation = await get_participation(db, student_id, challenge_id)
    if participation is None:
        raise NotFound(f"Student {student_id} has not joined challenge {challenge_id}")
    challenge = await get_challenge(db, challenge_id)
    now = datetime.now(timezone.utc)
    return _to_update(participation, challenge, frozen=not is_open(challenge, now))


async def list_challenges(db: AsyncSession, active_only: bool = True) -> list[Challenge]:
    stmt = select(Challenge).order_by(Challenge.starts_at.desc(), Challenge.id.desc())
    if active_only:
        stmt = stmt.where(
            Challenge.is_active.is_(True),
            Challenge.ends_at > datetime.now(timezone.utc),
        )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def list_student_challenges(
    db: AsyncSession,
    student_id: int,
    include_completed: bool = True,
) -> list[dict[str, Any]]:
    """Every challenge a student joined, soonest ending first."""
    stmt = (
        select(ChallengeParticipation, Challenge)
        .join(Challenge, Challenge.id == ChallengeParticipation.challenge_id)
        .where(ChallengeParticipation.student_id == student_id)
        .order_by(Challenge.ends_at, Challenge.id)
    )
    if not include_completed:
        stmt = stmt.where(ChallengeParticipation.is_completed.is_(False))
    result = await db.execute(stmt)

    now = datetime.now(timezone.utc)
    return [
        {
            **_to_update(participation, challenge, frozen=not is_open(challenge, now)),
            "title": challenge.title,
            "ends_at": challenge.ends_at,
        }
        for participation, challenge in result.all()
    ]


async def get_challenge_leaderboard(db: AsyncSession, challenge_id: int, limit: int = 10) -> dict[str, Any]:
    """Participants ranked by current value; ties go to the lower student id."""
    challenge = await get_challenge(db, challenge_id)
    if challenge is None:
        raise NotFound(f"Challenge {challenge_id} not found")

    result = await db.execute(
        select(
            ChallengeParticipation.student_id,
            ChallengeParticipation.current_value,
            ChallengeParticipation.is_completed,
            ChallengeParticipation.completed_at,
        ).where(ChallengeParticipation.challenge_id == challenge_id)
    )
    rows = {row.student_id: row for row in result.all()}
    ranked = rank_scores((sid, row.current_value) for sid, row in rows.items())

    entries = []
    for entry in ranked[:limit]:
        row = rows[entry["student_id"]]
        entries.append({
            **entry,
            "progress_percent": round(min(100.0, entry["score"] / challenge.target_value * 100), 2),
            "is_completed": row.is_completed,
            "completed_at": row.completed_at,
        })
    return {
        "challenge_id": challenge.id,
        "title": challenge.title,
        "metric": challenge.metric,
        "target_value": challenge.target_value,
        "participants": len(rows),
        "entries": entries,
    }
