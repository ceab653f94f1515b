"""Leaderboard snapshots: scored populations ranked into immutable snapshots.

Snapshots are built by the worker, never on request. Each (type, scope,
scope_key) has one pointer row naming its current snapshot; publishing a new
snapshot swaps that pointer with a version compare-and-swap in the same
transaction that writes the snapshot, so readers always see exactly one
current snapshot.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Select, and_, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tutorxp.config import get_settings
from tutorxp.db.models import (
    Account,
    ChallengeParticipation,
    DailyActivity,
    LeaderboardEntry,
    LeaderboardPointer,
    LeaderboardSnapshot,
    ScopeMembership,
    StudentBadge,
    StudentStats,
)
from tutorxp.errors import ConcurrentModificationConflict, NotFound
from tutorxp.leaderboard.ranking import apply_trends, rank_scores, should_notify
from tutorxp.notifications.notification_service import discard_pending, emit_notification, publish_pending
from tutorxp.periods import calculate_percentile, period_window

logger = logging.getLogger(__name__)

# Board type -> period it is scored over
BOARD_PERIODS: dict[str, str] = {
    "weekly_xp": "weekly",
    "monthly_xp": "monthly",
    "total_xp": "alltime",
    "monthly_accuracy": "monthly",
    "challenge_completion": "monthly",
    "streak_leaders": "alltime",
    "badge_count": "alltime",
}

BOARD_TITLES: dict[str, str] = {
    "weekly_xp": "Weekly XP",
    "monthly_xp": "Monthly XP",
    "total_xp": "All-time XP",
    "monthly_accuracy": "Monthly Accuracy",
    "challenge_completion": "Challenge Champions",
    "streak_leaders": "Streak Leaders",
    "badge_count": "Badge Collectors",
}

SCOPES = {"global", "class", "school", "grade"}
GLOBAL_KEY = "all"


def resolve_board(board_type: str, scope: str, scope_key: str | None) -> str:
    """Validate a board identity and return its normalized scope key."""
    if board_type not in BOARD_PERIODS:
        raise ValueError(f"Unknown leaderboard type: {board_type}")
    if scope not in SCOPES:
        raise ValueError(f"Unknown leaderboard scope: {scope}")
    if scope == "global":
        return GLOBAL_KEY
    if not scope_key:
        raise ValueError(f"scope_key is required for {scope} leaderboards")
    return scope_key


# ---------------------------------------------------------------------------
# Scored populations
# ---------------------------------------------------------------------------


def _members(scope: str, scope_key: str) -> Select:
    return select(ScopeMembership.student_id).where(
        ScopeMembership.scope == scope,
        ScopeMembership.scope_key == scope_key,
    )


async def score_population(
    db: AsyncSession,
    board_type: str,
    scope: str,
    scope_key: str,
    start: datetime | None,
    end: datetime | None,
) -> dict[int, float]:
    """Read {student_id: score} for one board. Plain reads, no row locks."""
    if board_type in ("weekly_xp", "monthly_xp", "total_xp"):
        column = {
            "weekly_xp": Account.weekly_earned,
            "monthly_xp": Account.monthly_earned,
            "total_xp": Account.total_earned,
        }[board_type]
        student_col = Account.student_id
        stmt = select(student_col, column)

    elif board_type == "streak_leaders":
        student_col = StudentStats.student_id
        stmt = select(student_col, StudentStats.current_streak)

    elif board_type == "badge_count":
        student_col = StudentBadge.student_id
        stmt = (
            select(student_col, func.count(StudentBadge.id))
            .where(StudentBadge.is_earned.is_(True))
            .group_by(student_col)
        )

    elif board_type == "challenge_completion":
        student_col = ChallengeParticipation.student_id
        stmt = (
            select(student_col, func.count(ChallengeParticipation.id))
            .where(
                ChallengeParticipation.is_completed.is_(True),
                ChallengeParticipation.completed_at >= start,
                ChallengeParticipation.completed_at < end,
            )
            .group_by(student_col)
        )

    elif board_type == "monthly_accuracy":
        student_col = DailyActivity.student_id
        stmt = (
            select(student_col, func.sum(DailyActivity.correct), func.sum(DailyActivity.attempts))
            .where(DailyActivity.day >= start.date(), DailyActivity.day < end.date())
            .group_by(student_col)
        )

    else:
        raise ValueError(f"Unknown leaderboard type: {board_type}")

    if scope != "global":
        stmt = stmt.where(student_col.in_(_members(scope, scope_key)))

    result = await db.execute(stmt)
    if board_type == "monthly_accuracy":
        return {
            sid: round(correct / attempts * 100, 2)
            for sid, correct, attempts in result.all()
            if attempts
        }
    return {sid: float(score or 0) for sid, score in result.all()}


# ---------------------------------------------------------------------------
# Snapshot + publish
# ---------------------------------------------------------------------------


async def get_pointer(db: AsyncSession, board_type: str, scope: str, scope_key: str) -> LeaderboardPointer | None:
    result = await db.execute(
        select(LeaderboardPointer)
        .where(
            LeaderboardPointer.board_type == board_type,
            LeaderboardPointer.scope == scope,
            LeaderboardPointer.scope_key == scope_key,
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _previous_ranks(db: AsyncSession, snapshot_id: int) -> dict[int, int]:
    result = await db.execute(
        select(LeaderboardEntry.student_id, LeaderboardEntry.rank).where(
            LeaderboardEntry.snapshot_id == snapshot_id
        )
    )
    return {sid: rank for sid, rank in result.all()}


async def _swap_pointer(
    db: AsyncSession,
    board_type: str,
    scope: str,
    scope_key: str,
    snapshot_id: int,
    expected_version: int | None,
    now: datetime,
) -> None:
    """Point (type, scope, scope_key) at ``snapshot_id`` if nobody else moved it."""
    if expected_version is None:
        try:
            async with db.begin_nested():
                db.add(LeaderboardPointer(
                    board_type=board_type,
                    scope=scope,
                    scope_key=scope_key,
                    snapshot_id=snapshot_id,
                    version=1,
                    updated_at=now,
                ))
        except IntegrityError:
            raise ConcurrentModificationConflict(
                f"Leaderboard {board_type}/{scope}/{scope_key} was published concurrently"
            ) from None
        return

    result = await db.execute(
        update(LeaderboardPointer)
        .where(
            LeaderboardPointer.board_type == board_type,
            LeaderboardPointer.scope == scope,
            LeaderboardPointer.scope_key == scope_key,
            LeaderboardPointer.version == expected_version,
        )
        .values(snapshot_id=snapshot_id, version=expected_version + 1, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConcurrentModificationConflict(
            f"Leaderboard {board_type}/{scope}/{scope_key} was published concurrently"
        )


async def create_snapshot(
    db: AsyncSession,
    board_type: str,
    scope: str = "global",
    scope_key: str | None = None,
    at: datetime | None = None,
) -> LeaderboardSnapshot:
    """Rank the population for the period containing ``at`` and publish it as current.

    Flushes only; the caller commits (see ``run_snapshot``).
    """
    scope_key = resolve_board(board_type, scope, scope_key)
    now = datetime.now(timezone.utc)
    at = at or now
    period_key, start, end = period_window(BOARD_PERIODS[board_type], at)

    scores = await score_population(db, board_type, scope, scope_key, start, end)
    ranked = rank_scores(scores)

    pointer = await get_pointer(db, board_type, scope, scope_key)
    expected_version = pointer.version if pointer else None
    previous = await _previous_ranks(db, pointer.snapshot_id) if pointer else {}
    apply_trends(ranked, previous)

    revision_result = await db.execute(
        select(func.coalesce(func.max(LeaderboardSnapshot.revision), 0)).where(
            LeaderboardSnapshot.board_type == board_type,
            LeaderboardSnapshot.scope == scope,
            LeaderboardSnapshot.scope_key == scope_key,
            LeaderboardSnapshot.period_key == period_key,
        )
    )
    snapshot = LeaderboardSnapshot(
        board_type=board_type,
        scope=scope,
        scope_key=scope_key,
        period_key=period_key,
        revision=revision_result.scalar_one() + 1,
        period_start=start,
        period_end=end,
        entry_count=len(ranked),
        created_at=now,
    )
    try:
        async with db.begin_nested():
            db.add(snapshot)
    except IntegrityError:
        raise ConcurrentModificationConflict(
            f"Leaderboard {board_type}/{scope}/{scope_key} revision {snapshot.revision} was written concurrently"
        ) from None

    db.add_all([
        LeaderboardEntry(
            snapshot_id=snapshot.id,
            student_id=e["student_id"],
            rank=e["rank"],
            score=e["score"],
            previous_rank=e["previous_rank"],
            trend=e["trend"],
        )
        for e in ranked
    ])
    await db.flush()

    await _swap_pointer(db, board_type, scope, scope_key, snapshot.id, expected_version, now)

    notify_top = get_settings().leaderboard_rank_notify_top
    title = BOARD_TITLES[board_type]
    for e in ranked:
        if not should_notify(e, notify_top):
            continue
        await emit_notification(
            db,
            e["student_id"],
            "leaderboard_rank",
            f"{title}: #{e['rank']}",
            f"You are now #{e['rank']} on the {title} leaderboard",
            {
                "board_type": board_type,
                "scope": scope,
                "scope_key": scope_key,
                "period_key": period_key,
                "rank": e["rank"],
                "previous_rank": e["previous_rank"],
                "trend": e["trend"],
            },
        )

    return snapshot


async def run_snapshot(
    db: AsyncSession,
    board_type: str,
    scope: str = "global",
    scope_key: str | None = None,
    at: datetime | None = None,
    redis: object | None = None,
) -> LeaderboardSnapshot:
    """Create, commit and announce one snapshot, retrying a lost pointer swap."""
    retries = get_settings().ledger_max_retries
    attempt = 0
    while True:
        try:
            snapshot = await create_snapshot(db, board_type, scope, scope_key, at)
            await db.commit()
        except ConcurrentModificationConflict:
            await db.rollback()
            discard_pending(db)
            if attempt >= retries:
                raise
            attempt += 1
            logger.info("Retrying %s/%s snapshot after concurrent publish", board_type, scope)
            continue
        except Exception:
            await db.rollback()
            discard_pending(db)
            raise
        await publish_pending(db, redis)
        return snapshot


async def list_board_scopes(db: AsyncSession) -> list[tuple[str, str]]:
    """Every (scope, scope_key) with at least one member, plus global."""
    result = await db.execute(
        select(ScopeMembership.scope, ScopeMembership.scope_key)
        .distinct()
        .order_by(ScopeMembership.scope, ScopeMembership.scope_key)
    )
    return [("global", GLOBAL_KEY), *[(s, k) for s, k in result.all()]]


async def snapshot_boards(
    db: AsyncSession,
    board_types: list[str],
    at: datetime | None = None,
    redis: object | None = None,
) -> int:
    """Snapshot every scope of the given board types. Returns snapshots written."""
    scopes = await list_board_scopes(db)
    written = 0
    for board_type in board_types:
        for scope, scope_key in scopes:
            try:
                await run_snapshot(db, board_type, scope, scope_key, at, redis)
                written += 1
            except ConcurrentModificationConflict:
                logger.warning("Gave up on %s/%s/%s snapshot", board_type, scope, scope_key)
    return written


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------


def _snapshot_meta(snapshot: LeaderboardSnapshot) -> dict[str, Any]:
    return {
        "snapshot_id": snapshot.id,
        "board_type": snapshot.board_type,
        "scope": snapshot.scope,
        "scope_key": snapshot.scope_key,
        "period_key": snapshot.period_key,
        "revision": snapshot.revision,
        "period_start": snapshot.period_start,
        "period_end": snapshot.period_end,
        "entry_count": snapshot.entry_count,
        "created_at": snapshot.created_at,
    }


async def get_current_leaderboard(
    db: AsyncSession,
    board_type: str,
    scope: str = "global",
    scope_key: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> dict[str, Any]:
    """The current snapshot of a board with one page of entries."""
    scope_key = resolve_board(board_type, scope, scope_key)
    result = await db.execute(
        select(LeaderboardSnapshot)
        .join(LeaderboardPointer, LeaderboardPointer.snapshot_id == LeaderboardSnapshot.id)
        .where(
            LeaderboardPointer.board_type == board_type,
            LeaderboardPointer.scope == scope,
            LeaderboardPointer.scope_key == scope_key,
        )
    )
    snapshot = result.scalar_one_or_none()
    if snapshot is None:
        raise NotFound(f"No current {board_type} leaderboard for {scope}/{scope_key}")

    entries_result = await db.execute(
        select(LeaderboardEntry)
        .where(LeaderboardEntry.snapshot_id == snapshot.id)
        .order_by(LeaderboardEntry.rank.asc())
        .offset(offset)
        .limit(limit)
    )
    return {
        **_snapshot_meta(snapshot),
        "entries": [
            {
                "student_id": e.student_id,
                "rank": e.rank,
                "score": e.score,
                "previous_rank": e.previous_rank,
                "trend": e.trend,
            }
            for e in entries_result.scalars().all()
        ],
    }


async def get_history(
    db: AsyncSession,
    board_type: str,
    scope: str = "global",
    scope_key: str | None = None,
    limit: int | None = None,
) -> list[dict[str, Any]]:
    """Past snapshots of a board, newest first."""
    scope_key = resolve_board(board_type, scope, scope_key)
    limit = min(limit or get_settings().leaderboard_history_limit, get_settings().leaderboard_history_limit)
    result = await db.execute(
        select(LeaderboardSnapshot)
        .where(
            LeaderboardSnapshot.board_type == board_type,
            LeaderboardSnapshot.scope == scope,
            LeaderboardSnapshot.scope_key == scope_key,
        )
        .order_by(LeaderboardSnapshot.id.desc())
        .limit(limit)
    )
    return [_snapshot_meta(s) for s in result.scalars().all()]


async def get_student_positions(db: AsyncSession, student_id: int) -> list[dict[str, Any]]:
    """A student's rank on every current board they appear on."""
    result = await db.execute(
        select(LeaderboardPointer, LeaderboardSnapshot, LeaderboardEntry)
        .join(LeaderboardSnapshot, LeaderboardSnapshot.id == LeaderboardPointer.snapshot_id)
        .join(
            LeaderboardEntry,
            and_(
                LeaderboardEntry.snapshot_id == LeaderboardPointer.snapshot_id,
                LeaderboardEntry.student_id == student_id,
            ),
        )
        .order_by(LeaderboardPointer.board_type, LeaderboardPointer.scope, LeaderboardPointer.scope_key)
    )
    return [
        {
            "board_type": pointer.board_type,
            "scope": pointer.scope,
            "scope_key": pointer.scope_key,
            "period_key": snapshot.period_key,
            "rank": entry.rank,
            "score": entry.score,
            "previous_rank": entry.previous_rank,
            "trend": entry.trend,
            "total": snapshot.entry_count,
            "percentile": calculate_percentile(entry.rank, snapshot.entry_count),
        }
        for pointer, snapshot, entry in result.all()
    ]
