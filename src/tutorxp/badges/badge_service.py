"""Badge evaluation and award service with duplicate prevention and notification."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tutorxp.badges.criteria import (
    STAT_ACCURACY,
    STAT_CHALLENGES,
    STAT_MASTERY,
    STAT_PROBLEMS,
    STAT_STREAK,
    STAT_XP,
    Criterion,
    Requirements,
    parse_criterion,
)
from tutorxp.badges.stats import load_stats_view
from tutorxp.config import get_settings
from tutorxp.db.models import BadgeDefinition, ScopeMembership, StudentBadge
from tutorxp.errors import NotFound, RuleConfigurationError
from tutorxp.ledger.ledger_service import award
from tutorxp.notifications.notification_service import emit_notification

logger = logging.getLogger(__name__)

# Stats touched by each kind of triggering event; None evaluates every badge.
TRIGGER_STATS: dict[str, set[str] | None] = {
    "outcome": {STAT_STREAK, STAT_PROBLEMS, STAT_MASTERY, STAT_ACCURACY, STAT_XP},
    "streak": {STAT_STREAK},
    "mastery": {STAT_MASTERY, STAT_ACCURACY},
    "challenge_completed": {STAT_CHALLENGES, STAT_XP},
    "ledger_award": {STAT_XP},
    "all": None,
}


def badge_award_key(student_id: int, badge_id: str) -> str:
    return f"badge:{student_id}:{badge_id}"


async def get_badge(db: AsyncSession, badge_id: str) -> BadgeDefinition | None:
    return await db.get(BadgeDefinition, badge_id)


async def get_student_badge(
    db: AsyncSession, student_id: int, badge_id: str, for_update: bool = False
) -> StudentBadge | None:
    stmt = select(StudentBadge).where(
        StudentBadge.student_id == student_id,
        StudentBadge.badge_id == badge_id,
    )
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def _get_or_create_student_badge(db: AsyncSession, student_id: int, badge_id: str) -> StudentBadge:
    row = await get_student_badge(db, student_id, badge_id, for_update=True)
    if row is not None:
        return row

    row = StudentBadge(student_id=student_id, badge_id=badge_id, progress=0.0, is_earned=False, badge_metadata={})
    try:
        async with db.begin_nested():
            db.add(row)
    except IntegrityError:
        row = await get_student_badge(db, student_id, badge_id, for_update=True)
        if row is None:
            raise
    return row


async def get_student_grade(db: AsyncSession, student_id: int) -> str | None:
    result = await db.execute(
        select(ScopeMembership.scope_key).where(
            ScopeMembership.student_id == student_id,
            ScopeMembership.scope == "grade",
        )
    )
    return result.scalars().first()


def is_applicable(badge: BadgeDefinition, grade: str | None) -> bool:
    """Role/grade filter of a badge definition."""
    if badge.target_role != "student":
        return False
    if badge.grade_level is not None and badge.grade_level != grade:
        return False
    return True


async def grant_badge(
    db: AsyncSession,
    student_id: int,
    badge: BadgeDefinition,
    metadata: dict[str, Any] | None = None,
) -> bool:
    """Mark a badge earned and award its XP. Returns True if newly earned.

    Handles:
    1. Create/lock the student_badges row (UNIQUE student_id, badge_id)
    2. Flip is_earned (never reverts)
    3. Award badge XP (idempotent via badge:<student>:<badge> key)
    4. Emit badge_earned notification
    """
    row = await _get_or_create_student_badge(db, student_id, badge.id)
    if row.is_earned:
        return False

    now = datetime.now(timezone.utc)
    row.is_earned = True
    row.earned_at = now
    row.progress = 100.0
    row.updated_at = now
    if metadata:
        row.badge_metadata = {**(row.badge_metadata or {}), **metadata}
    await db.flush()

    if badge.xp_reward > 0:
        await award(
            db,
            student_id,
            badge.xp_reward,
            source=f"badge:{badge.id}",
            idempotency_key=badge_award_key(student_id, badge.id),
            kind="bonus",
            description=f'Earned badge: "{badge.name}"',
            metadata={"badge_id": badge.id, "tier": badge.tier},
        )

    await emit_notification(
        db,
        student_id,
        "badge_earned",
        f'Badge Earned: "{badge.name}"',
        f"+{badge.xp_reward} XP: {badge.description}",
        {"badge_id": badge.id, "tier": badge.tier, "xp_reward": badge.xp_reward},
    )
    logger.info("Student %s earned badge %s", student_id, badge.id)
    return True


async def grant_badge_by_id(
    db: AsyncSession,
    student_id: int,
    badge_id: str,
    metadata: dict[str, Any] | None = None,
) -> bool:
    """Grant a specific badge regardless of its criteria (staff awards)."""
    badge = await get_badge(db, badge_id)
    if badge is None or not badge.is_active:
        raise NotFound(f"Badge {badge_id} not found")
    return await grant_badge(db, student_id, badge, metadata)


async def _record_progress(db: AsyncSession, student_id: int, badge_id: str, progress: float) -> None:
    row = await get_student_badge(db, student_id, badge_id)
    if row is None:
        if progress <= 0:
            return
        row = await _get_or_create_student_badge(db, student_id, badge_id)
    if row.is_earned:
        return
    progress = round(progress, 2)
    if row.progress != progress:
        row.progress = progress
        row.updated_at = datetime.now(timezone.utc)


async def _load_active_badges(db: AsyncSession) -> list[BadgeDefinition]:
    result = await db.execute(
        select(BadgeDefinition)
        .where(BadgeDefinition.is_active.is_(True))
        .order_by(BadgeDefinition.display_order, BadgeDefinition.id)
    )
    return list(result.scalars().all())


async def _earned_badge_ids(db: AsyncSession, student_id: int) -> set[str]:
    result = await db.execute(
        select(StudentBadge.badge_id).where(
            StudentBadge.student_id == student_id,
            StudentBadge.is_earned.is_(True),
        )
    )
    return set(result.scalars().all())


async def evaluate(db: AsyncSession, student_id: int, trigger: str = "all") -> list[str]:
    """Evaluate badge criteria for a student and grant any newly satisfied badges.

    Returns the ids of newly earned badges. Awarding a badge grants XP, which
    can satisfy further badges; this repeats for at most ``badge_max_passes``
    passes. A badge whose criteria cannot be parsed is logged and skipped.
    """
    if trigger not in TRIGGER_STATS:
        raise ValueError(f"Unknown badge trigger: {trigger}")

    settings = get_settings()
    badges = await _load_active_badges(db)
    grade = await get_student_grade(db, student_id)

    parsed: dict[str, Criterion] = {}
    for badge in badges:
        if not is_applicable(badge, grade):
            continue
        try:
            parsed[badge.id] = parse_criterion(badge.criteria)
        except RuleConfigurationError as exc:
            logger.warning("Skipping badge %s: %s", badge.id, exc)

    by_id = {b.id: b for b in badges}
    trigger_stats = TRIGGER_STATS[trigger]
    newly_earned: list[str] = []

    for _ in range(settings.badge_max_passes):
        earned = await _earned_badge_ids(db, student_id)
        candidates: list[tuple[BadgeDefinition, Criterion]] = []
        req = Requirements()
        for badge_id, criterion in parsed.items():
            if badge_id in earned:
                continue
            needs = criterion.requirements()
            if trigger_stats is not None and not needs.stats & trigger_stats:
                continue
            candidates.append((by_id[badge_id], criterion))
            req.merge(needs)

        if not candidates:
            break

        view = await load_stats_view(db, student_id, req)
        awarded_this_pass: list[str] = []
        for badge, criterion in candidates:
            if criterion.is_satisfied(view):
                if await grant_badge(db, student_id, badge):
                    awarded_this_pass.append(badge.id)
            else:
                await _record_progress(db, student_id, badge.id, criterion.progress(view))

        await db.flush()
        if not awarded_this_pass:
            break
        newly_earned.extend(awarded_this_pass)
        # Badge XP can only have moved XP-based criteria
        trigger_stats = TRIGGER_STATS["ledger_award"]

    return newly_earned


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------


async def get_badges(db: AsyncSession, student_id: int) -> list[dict[str, Any]]:
    """A student's badges with progress. Secret badges appear only once earned."""
    badges = await _load_active_badges(db)
    result = await db.execute(select(StudentBadge).where(StudentBadge.student_id == student_id))
    rows = {row.badge_id: row for row in result.scalars().unique().all()}

    items = []
    for badge in badges:
        row = rows.get(badge.id)
        earned = bool(row and row.is_earned)
        if badge.is_secret and not earned:
            continue
        items.append({
            "badge_id": badge.id,
            "name": badge.name,
            "description": badge.description,
            "icon": badge.icon,
            "category": badge.category,
            "tier": badge.tier,
            "xp_reward": badge.xp_reward,
            "is_secret": badge.is_secret,
            "progress": row.progress if row else 0.0,
            "is_earned": earned,
            "earned_at": row.earned_at if row else None,
        })
    return items


async def list_available_badges(db: AsyncSession) -> list[BadgeDefinition]:
    """Badge catalog without secret badges."""
    result = await db.execute(
        select(BadgeDefinition)
        .where(BadgeDefinition.is_active.is_(True), BadgeDefinition.is_secret.is_(False))
        .order_by(BadgeDefinition.display_order, BadgeDefinition.id)
    )
    return list(result.scalars().all())
