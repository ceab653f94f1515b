"""Badge catalog, per-student badge endpoints and staff awards."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from tutorxp.badges.badge_service import (
    evaluate,
    get_badges,
    get_student_badge,
    grant_badge_by_id,
    list_available_badges,
)
from tutorxp.badges.schemas import (
    AllBadgesResponse,
    BadgeDefinitionResponse,
    BadgeGrantRequest,
    BadgeGrantResponse,
    StudentBadgeResponse,
    StudentBadgesResponse,
)
from tutorxp.dependencies import StudentId, get_db, get_redis_dep
from tutorxp.ledger.unit import serialized

router = APIRouter(prefix="/api/v1", tags=["Badges"])


@router.get("/badges", response_model=AllBadgesResponse)
async def list_badges(db: AsyncSession = Depends(get_db)):
    """Active, non-secret badge definitions."""
    badges = await list_available_badges(db)
    return AllBadgesResponse(
        badges=[
            BadgeDefinitionResponse(
                badge_id=b.id,
                name=b.name,
                description=b.description,
                icon=b.icon,
                category=b.category,
                tier=b.tier,
                xp_reward=b.xp_reward,
                subject=b.subject,
                grade_level=b.grade_level,
            )
            for b in badges
        ]
    )


@router.get("/students/{student_id}/badges", response_model=StudentBadgesResponse)
async def student_badges(student_id: StudentId, db: AsyncSession = Depends(get_db)):
    """A student's badges with progress; secret badges only once earned."""
    items = await get_badges(db, student_id)
    return StudentBadgesResponse(
        badges=[StudentBadgeResponse(**item) for item in items],
        total_earned=sum(1 for item in items if item["is_earned"]),
        total_visible=len(items),
    )


# ── Admin ──


@router.post("/admin/students/{student_id}/badges/{badge_id}", response_model=BadgeGrantResponse)
async def award_badge(
    student_id: StudentId,
    badge_id: str,
    body: BadgeGrantRequest,
    db: AsyncSession = Depends(get_db),
    redis: object = Depends(get_redis_dep),
):
    """Staff award of a badge regardless of its criteria. Awarding twice is a no-op."""
    metadata = {"manual": True, **body.model_dump(exclude_none=True)}

    async def _grant() -> bool:
        granted = await grant_badge_by_id(db, student_id, badge_id, metadata)
        if granted:
            # Badge XP can unlock XP badges
            await evaluate(db, student_id, "ledger_award")
        return granted

    newly_earned = await serialized(db, student_id, _grant, redis=redis)
    row = await get_student_badge(db, student_id, badge_id)
    return BadgeGrantResponse(
        student_id=student_id,
        badge_id=badge_id,
        newly_earned=newly_earned,
        earned_at=row.earned_at if row else None,
    )
