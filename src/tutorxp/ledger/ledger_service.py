"""XP ledger and account store.

Award/spend append one immutable ledger row and update the account aggregates
in the same flush. Both must run inside ``tutorxp.ledger.unit.serialized`` (or
another transaction that already holds the account row lock); callers commit.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tutorxp.config import get_settings
from tutorxp.db.models import Account, LedgerEntry, StudentBadge, StudentStats, StudentWallet
from tutorxp.errors import InsufficientBalance, LedgerIntegrityError
from tutorxp.ledger.level_thresholds import LEVEL_THRESHOLDS, compute_level, level_progression
from tutorxp.notifications.notification_service import emit_notification

logger = logging.getLogger(__name__)

CREDIT_KINDS = {"earn", "bonus", "refund"}
DEBIT_KINDS = {"spend", "penalty"}
EARNING_KINDS = {"earn", "bonus"}


async def get_account(db: AsyncSession, account_id: int, for_update: bool = False) -> Account | None:
    """Fetch an account, optionally locking the row for the current transaction."""
    stmt = select(Account).where(Account.student_id == account_id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def get_or_create_account(db: AsyncSession, account_id: int) -> Account:
    """Get the locked account row, creating an all-zero account on first use."""
    account = await get_account(db, account_id, for_update=True)
    if account is not None:
        return account

    now = datetime.now(timezone.utc)
    account = Account(
        student_id=account_id,
        total_earned=0,
        total_spent=0,
        available=0,
        level=1,
        level_title=LEVEL_THRESHOLDS[0]["title"],
        weekly_earned=0,
        monthly_earned=0,
        created_at=now,
        updated_at=now,
    )
    try:
        async with db.begin_nested():
            db.add(account)
            db.add(StudentWallet(
                student_id=account_id,
                point_balance=0,
                lifetime_earnings=0,
                total_redeemed=0,
                updated_at=now,
            ))
    except IntegrityError:
        # Another process created it first
        account = await get_account(db, account_id, for_update=True)
        if account is None:
            raise
    return account


async def get_entry_by_key(db: AsyncSession, idempotency_key: str) -> LedgerEntry | None:
    result = await db.execute(
        select(LedgerEntry).where(LedgerEntry.idempotency_key == idempotency_key)
    )
    return result.scalar_one_or_none()


async def award(
    db: AsyncSession,
    account_id: int,
    amount: int,
    source: str,
    idempotency_key: str | None = None,
    kind: str = "earn",
    description: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> LedgerEntry:
    """Credit XP to an account. Returns the new entry, or the prior one for a replayed key.

    ``kind`` is ``earn`` or ``bonus`` for XP that counts toward level and
    period counters, or ``refund`` to reverse an earlier spend.
    """
    if amount <= 0:
        raise ValueError("Award amount must be positive")
    if kind not in CREDIT_KINDS:
        raise ValueError(f"Invalid credit kind: {kind}")

    if idempotency_key:
        existing = await get_entry_by_key(db, idempotency_key)
        if existing is not None:
            return existing

    account = await get_or_create_account(db, account_id)
    if kind == "refund" and amount > account.total_spent:
        raise LedgerIntegrityError(
            f"Refund of {amount} exceeds total spent {account.total_spent} for account {account_id}"
        )
    return await _append(db, account, kind, amount, source, idempotency_key, description, metadata)


async def spend(
    db: AsyncSession,
    account_id: int,
    amount: int,
    source: str,
    idempotency_key: str | None = None,
    kind: str = "spend",
    description: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> LedgerEntry:
    """Debit XP from an account. Raises InsufficientBalance, never spends partially.

    ``kind`` is ``spend`` for redemptions or ``penalty`` for corrections.
    """
    if amount <= 0:
        raise ValueError("Spend amount must be positive")
    if kind not in DEBIT_KINDS:
        raise ValueError(f"Invalid debit kind: {kind}")

    if idempotency_key:
        existing = await get_entry_by_key(db, idempotency_key)
        if existing is not None:
            return existing

    account = await get_account(db, account_id, for_update=True)
    available = account.available if account is not None else 0
    if account is None or amount > available:
        raise InsufficientBalance(account_id, amount, available)
    return await _append(db, account, kind, -amount, source, idempotency_key, description, metadata)


async def penalize(
    db: AsyncSession,
    account_id: int,
    amount: int,
    source: str,
    idempotency_key: str | None = None,
    description: str | None = None,
) -> LedgerEntry:
    """Correction entry that removes XP without lowering total earned or level."""
    return await spend(
        db, account_id, amount, source,
        idempotency_key=idempotency_key, kind="penalty", description=description,
    )


async def _append(
    db: AsyncSession,
    account: Account,
    kind: str,
    signed_amount: int,
    source: str,
    idempotency_key: str | None,
    description: str | None,
    metadata: dict[str, Any] | None,
) -> LedgerEntry:
    """Write the ledger row, then the aggregates it implies.

    After writing:
    1. Update total_earned / total_spent / available
    2. Update period counters and level for earning kinds
    3. Mirror the balance into the wallet
    4. Emit level_up / xp_milestone notifications
    """
    now = datetime.now(timezone.utc)
    balance_before = account.available
    entry = LedgerEntry(
        student_id=account.student_id,
        kind=kind,
        amount=signed_amount,
        source=source,
        description=description,
        entry_metadata=metadata or {},
        balance_before=balance_before,
        balance_after=balance_before + signed_amount,
        idempotency_key=idempotency_key,
        created_at=now,
    )
    try:
        async with db.begin_nested():
            db.add(entry)
    except IntegrityError:
        if idempotency_key is None:
            raise
        # Concurrent writer with the same key won the insert
        existing = await get_entry_by_key(db, idempotency_key)
        if existing is None:
            raise
        return existing

    amount = abs(signed_amount)
    old_level = account.level
    old_earned = account.total_earned

    if kind in EARNING_KINDS:
        account.total_earned += amount
        account.weekly_earned += amount
        account.monthly_earned += amount
        account.last_earned_at = now
    elif kind == "refund":
        account.total_spent -= amount
    else:
        account.total_spent += amount

    account.available = account.total_earned - account.total_spent
    if account.available != entry.balance_after:
        logger.error(
            "Ledger chain mismatch for account %s: available=%s balance_after=%s",
            account.student_id,
            account.available,
            entry.balance_after,
        )
        raise LedgerIntegrityError(f"Ledger chain mismatch for account {account.student_id}")

    level_info = compute_level(account.total_earned)
    account.level = level_info["level"]
    account.level_title = level_info["title"]
    account.updated_at = now

    wallet = await db.get(StudentWallet, account.student_id)
    if wallet is None:
        wallet = StudentWallet(student_id=account.student_id, total_redeemed=0)
        db.add(wallet)
    wallet.point_balance = account.available
    wallet.lifetime_earnings = account.total_earned
    if kind == "spend":
        wallet.total_redeemed += amount
    elif kind == "refund":
        wallet.total_redeemed = max(0, wallet.total_redeemed - amount)
    wallet.updated_at = now

    await db.flush()

    if account.level > old_level:
        await emit_notification(
            db,
            account.student_id,
            "level_up",
            "Level Up!",
            f"You reached level {account.level}: {account.level_title}",
            {"old_level": old_level, "new_level": account.level, "title": account.level_title},
        )

    step = get_settings().xp_milestone_step
    if step > 0 and account.total_earned // step > old_earned // step:
        milestone = (account.total_earned // step) * step
        await emit_notification(
            db,
            account.student_id,
            "xp_milestone",
            "XP Milestone!",
            f"You have earned {milestone} XP in total",
            {"milestone": milestone, "total_earned": account.total_earned},
        )

    return entry


# ---------------------------------------------------------------------------
# Period counters
# ---------------------------------------------------------------------------


async def reset_period_counters(db: AsyncSession, period: str) -> int:
    """Zero the weekly or monthly counter of every account. Returns accounts reset.

    Runs after the closing leaderboard snapshot. Rows locked by an in-flight
    award are reset once that award commits.
    """
    if period == "weekly":
        column = Account.weekly_earned
    elif period == "monthly":
        column = Account.monthly_earned
    else:
        raise ValueError(f"Unknown period: {period}")

    result = await db.execute(
        update(Account)
        .where(column != 0)
        .values({column.key: 0, "updated_at": datetime.now(timezone.utc)})
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    logger.info("Reset %s counters for %d accounts", period, result.rowcount)
    return result.rowcount


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------


async def get_account_summary(db: AsyncSession, account_id: int) -> dict[str, Any]:
    """Dashboard summary. Students without an account read as all-zero."""
    account = await get_account(db, account_id)
    stats = await db.get(StudentStats, account_id)
    badges_result = await db.execute(
        select(func.count())
        .select_from(StudentBadge)
        .where(StudentBadge.student_id == account_id, StudentBadge.is_earned.is_(True))
    )

    total_earned = account.total_earned if account else 0
    level_info = compute_level(total_earned)
    return {
        "student_id": account_id,
        "total_earned": total_earned,
        "total_spent": account.total_spent if account else 0,
        "available": account.available if account else 0,
        "level": level_info["level"],
        "level_title": level_info["title"],
        "weekly_earned": account.weekly_earned if account else 0,
        "monthly_earned": account.monthly_earned if account else 0,
        "current_streak": stats.current_streak if stats else 0,
        "longest_streak": stats.longest_streak if stats else 0,
        "badges_earned": badges_result.scalar_one(),
        "progression": level_progression(total_earned),
    }


async def get_ledger(
    db: AsyncSession,
    account_id: int,
    limit: int = 50,
    offset: int = 0,
) -> list[LedgerEntry]:
    """Ledger entries for an account, most recent first."""
    result = await db.execute(
        select(LedgerEntry)
        .where(LedgerEntry.student_id == account_id)
        .order_by(LedgerEntry.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all())


async def get_xp_stats(db: AsyncSession, account_id: int, days: int = 7) -> dict[str, Any]:
    """Per-day earned XP over the last ``days`` days (1-30), oldest first."""
    days = max(1, min(days, 30))
    today = datetime.now(timezone.utc).date()
    first_day = today - timedelta(days=days - 1)
    since = datetime.combine(first_day, datetime.min.time(), tzinfo=timezone.utc)

    result = await db.execute(
        select(LedgerEntry.created_at, LedgerEntry.amount).where(
            LedgerEntry.student_id == account_id,
            LedgerEntry.kind.in_(EARNING_KINDS),
            LedgerEntry.created_at >= since,
        )
    )
    per_day: dict[str, int] = defaultdict(int)
    for created_at, amount in result.all():
        per_day[created_at.date().isoformat()] += amount

    daily = []
    for i in range(days):
        day = (first_day + timedelta(days=i)).isoformat()
        daily.append({"date": day, "xp": per_day.get(day, 0)})

    return {
        "student_id": account_id,
        "days": days,
        "total": sum(d["xp"] for d in daily),
        "daily": daily,
    }


async def verify_chain(db: AsyncSession, account_id: int) -> dict[str, Any]:
    """Re-walk an account's ledger and report the first break, if any."""
    account = await get_account(db, account_id)
    result = await db.execute(
        select(LedgerEntry)
        .where(LedgerEntry.student_id == account_id)
        .order_by(LedgerEntry.id.asc())
    )
    entries = list(result.scalars().all())

    balance = 0
    earned = 0
    for entry in entries:
        if entry.balance_before != balance or entry.balance_after != balance + entry.amount:
            logger.error("Ledger chain broken for account %s at entry %s", account_id, entry.id)
            return {
                "student_id": account_id,
                "ok": False,
                "entries": len(entries),
                "first_break_entry_id": entry.id,
                "expected_balance_before": balance,
                "actual_balance_before": entry.balance_before,
            }
        balance = entry.balance_after
        if entry.kind in EARNING_KINDS:
            earned += entry.amount

    stored_available = account.available if account else 0
    stored_earned = account.total_earned if account else 0
    ok = stored_available == balance and stored_earned == earned
    if not ok:
        logger.error(
            "Account %s aggregates disagree with ledger: available %s vs %s, earned %s vs %s",
            account_id, stored_available, balance, stored_earned, earned,
        )
    return {
        "student_id": account_id,
        "ok": ok,
        "entries": len(entries),
        "first_break_entry_id": None,
        "ledger_balance": balance,
        "account_available": stored_available,
    }
