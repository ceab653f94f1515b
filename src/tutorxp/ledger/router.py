"""Account, ledger and level endpoints, plus ledger admin tools."""

from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from tutorxp.badges.badge_service import evaluate
from tutorxp.db.models import LedgerEntry
from tutorxp.dependencies import StudentId, get_db, get_redis_dep
from tutorxp.ledger.ledger_service import (
    award,
    get_account_summary,
    get_ledger,
    get_xp_stats,
    penalize,
    reset_period_counters,
    verify_chain,
)
from tutorxp.ledger.level_thresholds import LEVEL_THRESHOLDS
from tutorxp.ledger.schemas import (
    AccountSummaryResponse,
    AdjustmentRequest,
    AllLevelsResponse,
    ChainVerificationResponse,
    LedgerEntryResponse,
    LedgerResponse,
    LevelEntry,
    PeriodResetResponse,
    XPStatsResponse,
)
from tutorxp.ledger.unit import serialized

router = APIRouter(prefix="/api/v1", tags=["Ledger"])


def _entry_response(entry: LedgerEntry) -> LedgerEntryResponse:
    return LedgerEntryResponse(
        id=entry.id,
        kind=entry.kind,
        amount=entry.amount,
        source=entry.source,
        description=entry.description,
        metadata=entry.entry_metadata or {},
        balance_before=entry.balance_before,
        balance_after=entry.balance_after,
        idempotency_key=entry.idempotency_key,
        created_at=entry.created_at,
    )


@router.get("/levels", response_model=AllLevelsResponse)
async def list_levels():
    """Get all level definitions."""
    return AllLevelsResponse(
        levels=[
            LevelEntry(level=t["level"], title=t["title"], cumulative=t["cumulative"])
            for t in LEVEL_THRESHOLDS
        ]
    )


@router.get("/students/{student_id}/account", response_model=AccountSummaryResponse)
async def account_summary(student_id: StudentId, db: AsyncSession = Depends(get_db)):
    """Balance, level progression, streak and badge count."""
    return AccountSummaryResponse(**await get_account_summary(db, student_id))


@router.get("/students/{student_id}/ledger", response_model=LedgerResponse)
async def ledger_history(
    student_id: StudentId,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    """Ledger entries, most recent first."""
    entries = await get_ledger(db, student_id, limit=limit, offset=offset)
    return LedgerResponse(
        entries=[_entry_response(e) for e in entries],
        limit=limit,
        offset=offset,
    )


@router.get("/students/{student_id}/xp-stats", response_model=XPStatsResponse)
async def xp_stats(
    student_id: StudentId,
    days: int = Query(7, ge=1, le=30),
    db: AsyncSession = Depends(get_db),
):
    """XP earned per day over the last ``days`` days."""
    return XPStatsResponse(**await get_xp_stats(db, student_id, days=days))


# ── Admin ──


@router.post("/admin/students/{student_id}/adjustments", response_model=LedgerEntryResponse, status_code=201)
async def adjust_balance(
    student_id: StudentId,
    body: AdjustmentRequest,
    db: AsyncSession = Depends(get_db),
    redis: object = Depends(get_redis_dep),
):
    """Manual bonus or penalty correction entry. Bonuses re-check XP badges."""

    async def _apply():
        if body.kind == "bonus":
            entry = await award(
                db, student_id, body.amount, body.source,
                idempotency_key=body.idempotency_key, kind="bonus", description=body.description,
            )
            await evaluate(db, student_id, "ledger_award")
            return entry
        return await penalize(
            db, student_id, body.amount, body.source,
            idempotency_key=body.idempotency_key, description=body.description,
        )

    entry = await serialized(db, student_id, _apply, redis=redis)
    return _entry_response(entry)


@router.get("/admin/students/{student_id}/ledger/verify", response_model=ChainVerificationResponse)
async def verify_ledger(student_id: StudentId, db: AsyncSession = Depends(get_db)):
    """Re-walk the student's ledger chain and compare it with the account."""
    return ChainVerificationResponse(**await verify_chain(db, student_id))


@router.post("/admin/periods/{period}/reset", response_model=PeriodResetResponse)
async def reset_period(
    period: Literal["weekly", "monthly"],
    db: AsyncSession = Depends(get_db),
):
    """Zero weekly or monthly counters. Normally run by the worker after the closing snapshot."""
    count = await reset_period_counters(db, period)
    return PeriodResetResponse(period=period, accounts_reset=count)
