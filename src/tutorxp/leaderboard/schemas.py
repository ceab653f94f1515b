"""Pydantic response models for leaderboard endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class LeaderboardEntryResponse(BaseModel):
    student_id: int
    rank: int
    score: float
    previous_rank: int | None = None
    trend: str


class SnapshotMeta(BaseModel):
    snapshot_id: int
    board_type: str
    scope: str
    scope_key: str
    period_key: str
    revision: int
    period_start: datetime | None = None
    period_end: datetime | None = None
    entry_count: int
    created_at: datetime


class LeaderboardResponse(SnapshotMeta):
    title: str
    entries: list[LeaderboardEntryResponse]


class LeaderboardHistoryResponse(BaseModel):
    board_type: str
    scope: str
    scope_key: str
    snapshots: list[SnapshotMeta]


class StudentPosition(BaseModel):
    board_type: str
    title: str
    scope: str
    scope_key: str
    period_key: str
    rank: int
    score: float
    previous_rank: int | None = None
    trend: str
    total: int
    percentile: float


class StudentPositionsResponse(BaseModel):
    student_id: int
    positions: list[StudentPosition]
