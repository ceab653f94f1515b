"""Pydantic response models for account and ledger endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


# --- Account ---


class LevelProgression(BaseModel):
    current_level: int
    title: str
    total_earned: int
    current_level_xp: int
    next_level_xp: int
    xp_to_next_level: int
    progress_percent: float
    is_max_level: bool


class AccountSummaryResponse(BaseModel):
    student_id: int
    total_earned: int
    total_spent: int
    available: int
    level: int
    level_title: str
    weekly_earned: int
    monthly_earned: int
    current_streak: int
    longest_streak: int
    badges_earned: int
    progression: LevelProgression


# --- Ledger ---


class LedgerEntryResponse(BaseModel):
    id: int
    kind: str
    amount: int
    source: str
    description: str | None = None
    metadata: dict = {}
    balance_before: int
    balance_after: int
    idempotency_key: str | None = None
    created_at: datetime


class LedgerResponse(BaseModel):
    entries: list[LedgerEntryResponse]
    limit: int
    offset: int


class DailyXP(BaseModel):
    date: str
    xp: int


class XPStatsResponse(BaseModel):
    student_id: int
    days: int
    total: int
    daily: list[DailyXP]


# --- Levels ---


class LevelEntry(BaseModel):
    level: int
    title: str
    cumulative: int


class AllLevelsResponse(BaseModel):
    levels: list[LevelEntry]


# --- Admin ---


class AdjustmentRequest(BaseModel):
    kind: Literal["bonus", "penalty"]
    amount: int = Field(gt=0)
    source: str = Field(default="admin_adjustment", min_length=1, max_length=64)
    description: str | None = None
    idempotency_key: str | None = Field(default=None, max_length=256)


class ChainVerificationResponse(BaseModel):
    student_id: int
    ok: bool
    entries: int
    first_break_entry_id: int | None = None
    expected_balance_before: int | None = None
    actual_balance_before: int | None = None
    ledger_balance: int | None = None
    account_available: int | None = None


class PeriodResetResponse(BaseModel):
    period: str
    accounts_reset: int
