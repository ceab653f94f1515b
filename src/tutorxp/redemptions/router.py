"""Reward catalog and redemption workflow endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from tutorxp.db.models import Redemption, RewardCatalogItem
from tutorxp.dependencies import StudentId, get_db, get_redis_dep
from tutorxp.ledger.unit import serialized
from tutorxp.redemptions.redemption_service import (
    approve,
    cancel,
    create_reward,
    fulfill,
    get_redemption,
    list_redemptions,
    list_rewards,
    redeem,
)
from tutorxp.redemptions.schemas import (
    ApproveRequest,
    CancelRequest,
    FulfillRequest,
    RedeemRequest,
    RedemptionListResponse,
    RedemptionResponse,
    RewardCreateRequest,
    RewardListResponse,
    RewardResponse,
)

router = APIRouter(prefix="/api/v1", tags=["Redemptions"])


def _reward_response(r: RewardCatalogItem) -> RewardResponse:
    return RewardResponse(
        id=r.id,
        name=r.name,
        description=r.description,
        category=r.category,
        point_cost=r.point_cost,
        stock_quantity=r.stock_quantity,
        available_quantity=r.available_quantity,
        min_level=r.min_level,
        max_redemptions_per_student=r.max_redemptions_per_student,
        fulfillment_type=r.fulfillment_type,
        is_active=r.is_active,
    )


def _redemption_response(r: Redemption) -> RedemptionResponse:
    return RedemptionResponse(
        id=r.id,
        student_id=r.student_id,
        reward_id=r.reward_id,
        quantity=r.quantity,
        points_spent=r.points_spent,
        status=r.status,
        spend_entry_id=r.spend_entry_id,
        refund_entry_id=r.refund_entry_id,
        approved_by=r.approved_by,
        approved_at=r.approved_at,
        fulfilled_at=r.fulfilled_at,
        cancelled_at=r.cancelled_at,
        cancel_reason=r.cancel_reason,
        fulfillment_notes=r.fulfillment_notes,
        tracking_number=r.tracking_number,
        created_at=r.created_at,
    )


# ── Catalog ──


@router.get("/rewards", response_model=RewardListResponse)
async def rewards(db: AsyncSession = Depends(get_db)):
    """Active catalog items."""
    items = await list_rewards(db)
    return RewardListResponse(rewards=[_reward_response(r) for r in items])


@router.post("/admin/rewards", response_model=RewardResponse, status_code=201)
async def add_reward(body: RewardCreateRequest, db: AsyncSession = Depends(get_db)):
    """Add a catalog item."""
    reward = await create_reward(db, **body.model_dump())
    await db.commit()
    return _reward_response(reward)


# ── Redemption UI ──


@router.get("/students/{student_id}/redemptions", response_model=RedemptionListResponse)
async def student_redemptions(
    student_id: StudentId,
    status: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """A student's redemptions, newest first."""
    items = await list_redemptions(db, student_id, status=status)
    return RedemptionListResponse(redemptions=[_redemption_response(r) for r in items])


@router.post("/redemptions", response_model=RedemptionResponse, status_code=201)
async def create_redemption(
    body: RedeemRequest,
    db: AsyncSession = Depends(get_db),
    redis: object = Depends(get_redis_dep),
):
    """Exchange XP for a reward. Retries with the same request_key return the first redemption."""
    redemption = await serialized(
        db,
        body.student_id,
        lambda: redeem(db, body.student_id, body.reward_id, body.quantity, body.request_key),
        redis=redis,
    )
    return _redemption_response(redemption)


@router.post("/redemptions/{redemption_id}/cancel", response_model=RedemptionResponse)
async def cancel_redemption(
    redemption_id: int,
    body: CancelRequest | None = None,
    db: AsyncSession = Depends(get_db),
    redis: object = Depends(get_redis_dep),
):
    """Cancel a pending or approved redemption and refund its points."""
    student_id = (await get_redemption(db, redemption_id)).student_id
    reason = body.reason if body else None
    redemption = await serialized(db, student_id, lambda: cancel(db, redemption_id, reason), redis=redis)
    return _redemption_response(redemption)


# ── Staff / fulfillment ──


@router.post("/redemptions/{redemption_id}/approve", response_model=RedemptionResponse)
async def approve_redemption(
    redemption_id: int,
    body: ApproveRequest | None = None,
    db: AsyncSession = Depends(get_db),
):
    """Approve a pending redemption."""
    redemption = await approve(db, redemption_id, body.approved_by if body else None)
    await db.commit()
    return _redemption_response(redemption)


@router.post("/redemptions/{redemption_id}/fulfill", response_model=RedemptionResponse)
async def fulfill_redemption(
    redemption_id: int,
    body: FulfillRequest | None = None,
    db: AsyncSession = Depends(get_db),
):
    """Mark an approved redemption fulfilled."""
    body = body or FulfillRequest()
    redemption = await fulfill(db, redemption_id, body.fulfillment_notes, body.tracking_number)
    await db.commit()
    return _redemption_response(redemption)
