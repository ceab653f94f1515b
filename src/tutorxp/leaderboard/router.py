"""Leaderboard read endpoints. Snapshots themselves are built by the worker."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from tutorxp.dependencies import StudentId, get_db
from tutorxp.leaderboard.leaderboard_service import (
    BOARD_TITLES,
    get_current_leaderboard,
    get_history,
    get_student_positions,
    resolve_board,
)
from tutorxp.leaderboard.schemas import (
    LeaderboardHistoryResponse,
    LeaderboardResponse,
    SnapshotMeta,
    StudentPosition,
    StudentPositionsResponse,
)

router = APIRouter(prefix="/api/v1", tags=["Leaderboards"])


@router.get("/leaderboards/current", response_model=LeaderboardResponse)
async def current_leaderboard(
    board_type: str = Query("weekly_xp", alias="type"),
    scope: str = Query("global"),
    scope_key: str | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    """The current snapshot of one board, one page of entries."""
    board = await get_current_leaderboard(db, board_type, scope, scope_key, limit=limit, offset=offset)
    return LeaderboardResponse(title=BOARD_TITLES[board_type], **board)


@router.get("/leaderboards/history", response_model=LeaderboardHistoryResponse)
async def leaderboard_history(
    board_type: str = Query("weekly_xp", alias="type"),
    scope: str = Query("global"),
    scope_key: str | None = Query(None),
    limit: int = Query(20, ge=1),
    db: AsyncSession = Depends(get_db),
):
    """Past snapshots of one board, newest first."""
    snapshots = await get_history(db, board_type, scope, scope_key, limit=limit)
    return LeaderboardHistoryResponse(
        board_type=board_type,
        scope=scope,
        scope_key=resolve_board(board_type, scope, scope_key),
        snapshots=[SnapshotMeta(**s) for s in snapshots],
    )


@router.get("/students/{student_id}/leaderboards", response_model=StudentPositionsResponse)
async def student_positions(student_id: StudentId, db: AsyncSession = Depends(get_db)):
    """The student's rank on every current board they appear on."""
    positions = await get_student_positions(db, student_id)
    return StudentPositionsResponse(
        student_id=student_id,
        positions=[StudentPosition(title=BOARD_TITLES[p["board_type"]], **p) for p in positions],
    )
