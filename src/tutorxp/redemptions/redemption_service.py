"""Reward catalog and redemption workflow.

State machine: pending -> approved -> fulfilled, pending -> cancelled,
approved -> cancelled. Redeem debits the ledger once; cancel refunds once.
Approve and fulfill only move status and timestamps.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tutorxp.db.models import LedgerEntry, Redemption, RewardCatalogItem
from tutorxp.errors import (
    InsufficientBalance,
    InvalidStateTransition,
    LedgerIntegrityError,
    NotFound,
    RewardUnavailable,
)
from tutorxp.ledger.ledger_service import award, get_account, spend
from tutorxp.notifications.notification_service import emit_notification

logger = logging.getLogger(__name__)

VALID_TRANSITIONS: dict[str, list[str]] = {
    "pending": ["approved", "cancelled"],
    "approved": ["fulfilled", "cancelled"],
    "fulfilled": [],
    "cancelled": [],
}


def validate_transition(current_status: str, target_status: str) -> None:
    """Validate a state transition. Raises InvalidStateTransition if invalid."""
    valid = VALID_TRANSITIONS.get(current_status, [])
    if target_status not in valid:
        raise InvalidStateTransition(
            f"Invalid transition: {current_status} -> {target_status}. "
            f"Valid transitions: {valid}"
        )


def spend_key(redemption_id: int) -> str:
    return f"redemption:{redemption_id}:spend"


def refund_key(redemption_id: int) -> str:
    return f"redemption:{redemption_id}:refund"


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


async def create_reward(
    db: AsyncSession,
    name: str,
    point_cost: int,
    description: str = "",
    category: str = "general",
    stock_quantity: int | None = None,
    min_level: int = 1,
    max_redemptions_per_student: int | None = None,
    fulfillment_type: str = "manual",
    display_order: int = 0,
) -> RewardCatalogItem:
    if point_cost <= 0:
        raise ValueError("point_cost must be positive")
    if stock_quantity is not None and stock_quantity < 0:
        raise ValueError("stock_quantity must not be negative")

    reward = RewardCatalogItem(
        name=name,
        description=description,
        category=category,
        point_cost=point_cost,
        stock_quantity=stock_quantity,
        available_quantity=stock_quantity,
        min_level=min_level,
        max_redemptions_per_student=max_redemptions_per_student,
        fulfillment_type=fulfillment_type,
        is_active=True,
        display_order=display_order,
        created_at=datetime.now(timezone.utc),
    )
    db.add(reward)
    await db.flush()
    return reward


async def list_rewards(db: AsyncSession, active_only: bool = True) -> list[RewardCatalogItem]:
    stmt = select(RewardCatalogItem).order_by(RewardCatalogItem.display_order, RewardCatalogItem.id)
    if active_only:
        stmt = stmt.where(RewardCatalogItem.is_active.is_(True))
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def _adjust_stock(db: AsyncSession, reward_id: int, delta: int) -> bool:
    """Atomically move available stock; False if it would go negative."""
    stmt = (
        update(RewardCatalogItem)
        .where(
            RewardCatalogItem.id == reward_id,
            RewardCatalogItem.available_quantity.is_not(None),
        )
        .values(available_quantity=RewardCatalogItem.available_quantity + delta)
        .execution_options(synchronize_session=False)
    )
    if delta < 0:
        stmt = stmt.where(RewardCatalogItem.available_quantity >= -delta)
    result = await db.execute(stmt)
    return result.rowcount == 1


# ---------------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------------


async def get_redemption(db: AsyncSession, redemption_id: int, for_update: bool = False) -> Redemption:
    stmt = select(Redemption).where(Redemption.id == redemption_id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(stmt)
    redemption = result.scalar_one_or_none()
    if redemption is None:
        raise NotFound(f"Redemption {redemption_id} not found")
    return redemption


async def _find_by_request_key(db: AsyncSession, student_id: int, request_key: str) -> Redemption | None:
    result = await db.execute(select(Redemption).where(Redemption.request_key == request_key))
    existing = result.scalar_one_or_none()
    if existing is not None and existing.student_id != student_id:
        raise ValueError("request_key already used by another student")
    return existing


async def redeem(
    db: AsyncSession,
    student_id: int,
    reward_id: int,
    quantity: int = 1,
    request_key: str | None = None,
) -> Redemption:
    """Exchange XP for a reward. Run inside the student's serialized unit.

    Checks, in order: reward active, student level, per-student limit,
    balance. Then creates the pending redemption, decrements stock (if
    tracked), spends ``point_cost * quantity`` and emits a
    ``fulfillment_requested`` event. Any failure rolls the whole unit back,
    stock included. A replayed ``request_key`` returns the first redemption.
    """
    if quantity < 1:
        raise ValueError("quantity must be at least 1")

    reward = await db.get(RewardCatalogItem, reward_id)
    if reward is None:
        raise NotFound(f"Reward {reward_id} not found")

    account = await get_account(db, student_id, for_update=True)
    if request_key:
        existing = await _find_by_request_key(db, student_id, request_key)
        if existing is not None:
            return existing

    if not reward.is_active:
        raise RewardUnavailable("Reward is not available")
    level = account.level if account else 1
    if level < reward.min_level:
        raise RewardUnavailable(f"Reward requires level {reward.min_level}")

    if reward.max_redemptions_per_student is not None:
        count_result = await db.execute(
            select(func.coalesce(func.sum(Redemption.quantity), 0)).where(
                Redemption.student_id == student_id,
                Redemption.reward_id == reward_id,
                Redemption.status != "cancelled",
            )
        )
        if count_result.scalar_one() + quantity > reward.max_redemptions_per_student:
            raise RewardUnavailable("Redemption limit reached for this reward")

    cost = reward.point_cost * quantity
    available = account.available if account else 0
    if cost > available:
        raise InsufficientBalance(student_id, cost, available)

    now = datetime.now(timezone.utc)
    redemption = Redemption(
        student_id=student_id,
        reward_id=reward_id,
        quantity=quantity,
        points_spent=cost,
        status="pending",
        request_key=request_key,
        created_at=now,
        updated_at=now,
    )
    try:
        async with db.begin_nested():
            db.add(redemption)
    except IntegrityError:
        # Same request_key committed by another process first
        existing = await _find_by_request_key(db, student_id, request_key) if request_key else None
        if existing is None:
            raise
        return existing

    if reward.available_quantity is not None and not await _adjust_stock(db, reward_id, -quantity):
        raise RewardUnavailable("Reward is out of stock")

    entry = await spend(
        db,
        student_id,
        cost,
        source=f"redemption:{redemption.id}",
        idempotency_key=spend_key(redemption.id),
        description=f'Redeemed "{reward.name}" x{quantity}',
        metadata={"redemption_id": redemption.id, "reward_id": reward_id, "quantity": quantity},
    )
    redemption.spend_entry_id = entry.id
    await db.flush()

    await emit_notification(
        db,
        student_id,
        "fulfillment_requested",
        "Reward Requested",
        f'"{reward.name}" x{quantity} is waiting for approval',
        {
            "redemption_id": redemption.id,
            "reward_id": reward_id,
            "reward_name": reward.name,
            "quantity": quantity,
            "points_spent": cost,
            "fulfillment_type": reward.fulfillment_type,
        },
    )
    logger.info("Student %s redeemed reward %s x%d for %d XP", student_id, reward_id, quantity, cost)
    return redemption


async def _verify_spend(db: AsyncSession, redemption: Redemption) -> LedgerEntry:
    """The originating spend entry must exist and match points_spent."""
    entry = await db.get(LedgerEntry, redemption.spend_entry_id) if redemption.spend_entry_id else None
    if (
        entry is None
        or entry.kind != "spend"
        or entry.student_id != redemption.student_id
        or entry.amount != -redemption.points_spent
        or entry.idempotency_key != spend_key(redemption.id)
    ):
        logger.error("Redemption %s has no consistent spend entry", redemption.id)
        raise LedgerIntegrityError(f"Redemption {redemption.id} spend entry is missing or inconsistent")
    return entry


async def approve(db: AsyncSession, redemption_id: int, approved_by: str | None = None) -> Redemption:
    redemption = await get_redemption(db, redemption_id, for_update=True)
    validate_transition(redemption.status, "approved")
    await _verify_spend(db, redemption)

    now = datetime.now(timezone.utc)
    redemption.status = "approved"
    redemption.approved_by = approved_by
    redemption.approved_at = now
    redemption.updated_at = now
    await db.flush()
    return redemption


async def fulfill(
    db: AsyncSession,
    redemption_id: int,
    fulfillment_notes: str | None = None,
    tracking_number: str | None = None,
) -> Redemption:
    redemption = await get_redemption(db, redemption_id, for_update=True)
    validate_transition(redemption.status, "fulfilled")
    await _verify_spend(db, redemption)

    now = datetime.now(timezone.utc)
    redemption.status = "fulfilled"
    redemption.fulfilled_at = now
    redemption.fulfillment_notes = fulfillment_notes
    redemption.tracking_number = tracking_number
    redemption.updated_at = now
    await db.flush()
    return redemption


async def cancel(db: AsyncSession, redemption_id: int, reason: str | None = None) -> Redemption:
    """Cancel and refund. Run inside the student's serialized unit.

    Cancelling an already-cancelled redemption returns it unchanged.
    """
    redemption = await get_redemption(db, redemption_id, for_update=True)
    if redemption.status == "cancelled":
        return redemption
    validate_transition(redemption.status, "cancelled")

    entry = await award(
        db,
        redemption.student_id,
        redemption.points_spent,
        source=f"redemption:{redemption.id}",
        idempotency_key=refund_key(redemption.id),
        kind="refund",
        description="Refund for cancelled redemption",
        metadata={"redemption_id": redemption.id, "reward_id": redemption.reward_id},
    )
    await _adjust_stock(db, redemption.reward_id, redemption.quantity)

    now = datetime.now(timezone.utc)
    redemption.status = "cancelled"
    redemption.refund_entry_id = entry.id
    redemption.cancelled_at = now
    redemption.cancel_reason = reason
    redemption.updated_at = now
    await db.flush()
    logger.info("Redemption %s cancelled, refunded %d XP", redemption.id, redemption.points_spent)
    return redemption


async def list_redemptions(
    db: AsyncSession,
    student_id: int,
    status: str | None = None,
) -> list[Redemption]:
    stmt = (
        select(Redemption)
        .where(Redemption.student_id == student_id)
        .order_by(Redemption.id.desc())
    )
    if status is not None:
        if status not in VALID_TRANSITIONS:
            raise ValueError(f"Unknown redemption status: {status}")
        stmt = stmt.where(Redemption.status == status)
    result = await db.execute(stmt)
    return list(result.scalars().all())
