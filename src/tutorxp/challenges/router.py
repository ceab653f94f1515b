"""Challenge listing, joining, progress and standings endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from tutorxp.challenges.challenge_service import (
    create_challenge,
    get_challenge_leaderboard,
    get_progress,
    join_challenge,
    list_challenges,
    list_student_challenges,
    record_progress,
)
from tutorxp.challenges.schemas import (
    ChallengeCreateRequest,
    ChallengeLeaderboardResponse,
    ChallengeListResponse,
    ChallengeProgressResponse,
    ChallengeResponse,
    JoinRequest,
    ParticipationResponse,
    ProgressRequest,
    StudentChallengeListResponse,
    StudentChallengeResponse,
)
from tutorxp.db.models import Challenge
from tutorxp.dependencies import StudentId, get_db, get_redis_dep
from tutorxp.ledger.unit import serialized

router = APIRouter(prefix="/api/v1", tags=["Challenges"])


def _challenge_response(c: Challenge) -> ChallengeResponse:
    return ChallengeResponse(
        id=c.id,
        title=c.title,
        description=c.description,
        metric=c.metric,
        target_value=c.target_value,
        starts_at=c.starts_at,
        ends_at=c.ends_at,
        xp_reward=c.xp_reward,
        badge_reward=c.badge_reward,
        subject=c.subject,
        scope=c.scope,
        scope_key=c.scope_key,
        max_participants=c.max_participants,
        current_participants=c.current_participants,
        is_active=c.is_active,
    )


@router.get("/challenges", response_model=ChallengeListResponse)
async def challenges(
    active_only: bool = Query(True),
    db: AsyncSession = Depends(get_db),
):
    """Published challenges, newest first."""
    items = await list_challenges(db, active_only=active_only)
    return ChallengeListResponse(challenges=[_challenge_response(c) for c in items])


@router.get("/challenges/{challenge_id}/leaderboard", response_model=ChallengeLeaderboardResponse)
async def challenge_leaderboard(
    challenge_id: int,
    limit: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    """Participants ranked by their current value."""
    return ChallengeLeaderboardResponse(**await get_challenge_leaderboard(db, challenge_id, limit=limit))


@router.get("/students/{student_id}/challenges", response_model=StudentChallengeListResponse)
async def student_challenges(
    student_id: StudentId,
    include_completed: bool = Query(True),
    db: AsyncSession = Depends(get_db),
):
    """Every challenge the student joined, with progress."""
    items = await list_student_challenges(db, student_id, include_completed=include_completed)
    return StudentChallengeListResponse(challenges=[StudentChallengeResponse(**item) for item in items])


@router.get("/students/{student_id}/challenges/{challenge_id}", response_model=ChallengeProgressResponse)
async def challenge_progress(student_id: StudentId, challenge_id: int, db: AsyncSession = Depends(get_db)):
    """A student's progress against one challenge."""
    return ChallengeProgressResponse(**await get_progress(db, student_id, challenge_id))


@router.post("/challenges/{challenge_id}/participants", response_model=ParticipationResponse, status_code=201)
async def join(
    challenge_id: int,
    body: JoinRequest,
    db: AsyncSession = Depends(get_db),
    redis: object = Depends(get_redis_dep),
):
    """Join a challenge. Joining twice returns the existing participation."""
    participation = await serialized(
        db, body.student_id, lambda: join_challenge(db, body.student_id, challenge_id), redis=redis
    )
    return ParticipationResponse(
        challenge_id=participation.challenge_id,
        student_id=participation.student_id,
        current_value=participation.current_value,
        starting_baseline=participation.starting_baseline,
        is_completed=participation.is_completed,
        joined_at=participation.joined_at,
    )


@router.post("/challenges/{challenge_id}/progress", response_model=ChallengeProgressResponse)
async def progress(
    challenge_id: int,
    body: ProgressRequest,
    db: AsyncSession = Depends(get_db),
    redis: object = Depends(get_redis_dep),
):
    """Record a raw metric value for a participant."""
    update = await serialized(
        db, body.student_id, lambda: record_progress(db, body.student_id, challenge_id, body.value), redis=redis
    )
    return ChallengeProgressResponse(**update)


# ── Admin ──


@router.post("/admin/challenges", response_model=ChallengeResponse, status_code=201)
async def publish_challenge(body: ChallengeCreateRequest, db: AsyncSession = Depends(get_db)):
    """Publish a new challenge."""
    challenge = await create_challenge(db, **body.model_dump())
    await db.commit()
    return _challenge_response(challenge)
