"""Leaderboard snapshot tests: ranking, trends, pointer publication, scopes."""

from __future__ import annotations

from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from sqlalchemy import select

from tutorxp.db.models import LeaderboardSnapshot, Notification, ScopeMembership
from tutorxp.errors import ConcurrentModificationConflict, NotFound
from tutorxp.leaderboard import leaderboard_service
from tutorxp.leaderboard.leaderboard_service import (
    _swap_pointer,
    get_current_leaderboard,
    get_history,
    get_pointer,
    get_student_positions,
    list_board_scopes,
    resolve_board,
    run_snapshot,
    snapshot_boards,
)


class TestResolveBoard:
    def test_global_key(self):
        assert resolve_board("weekly_xp", "global", None) == "all"
        assert resolve_board("weekly_xp", "global", "ignored") == "all"

    def test_scoped_needs_key(self):
        with pytest.raises(ValueError, match="scope_key"):
            resolve_board("weekly_xp", "class", None)

    def test_unknown_type_and_scope(self):
        with pytest.raises(ValueError):
            resolve_board("typing_speed", "global", None)
        with pytest.raises(ValueError):
            resolve_board("weekly_xp", "district", "d1")


class TestSnapshots:
    """Snapshot creation and the current pointer."""

    @pytest.mark.asyncio
    async def test_rank_three_to_one_trends_up(self, db_session, fund):
        db = db_session
        await fund(1, 100)
        await fund(2, 80)
        await fund(3, 50)
        first = await run_snapshot(db, "weekly_xp")

        await fund(3, 100)
        second = await run_snapshot(db, "weekly_xp")

        assert second.id != first.id
        assert second.period_key == first.period_key
        assert second.revision == first.revision + 1

        board = await get_current_leaderboard(db, "weekly_xp")
        assert board["snapshot_id"] == second.id
        by_student = {e["student_id"]: e for e in board["entries"]}
        assert by_student[3]["rank"] == 1
        assert by_student[3]["previous_rank"] == 3
        assert by_student[3]["trend"] == "up"
        assert by_student[1]["trend"] == "down"
        assert by_student[2]["trend"] == "down"

    @pytest.mark.asyncio
    async def test_first_snapshot_marks_everyone_new(self, db_session, fund):
        await fund(1, 10)
        await run_snapshot(db_session, "total_xp")

        board = await get_current_leaderboard(db_session, "total_xp")
        assert board["entries"][0]["trend"] == "new"
        assert board["entries"][0]["previous_rank"] is None

    @pytest.mark.asyncio
    async def test_ties_ranked_by_student_id(self, db_session, fund):
        for student_id in (9, 4, 6):
            await fund(student_id, 30)
        await run_snapshot(db_session, "weekly_xp")

        board = await get_current_leaderboard(db_session, "weekly_xp")
        assert [(e["student_id"], e["rank"]) for e in board["entries"]] == [(4, 1), (6, 2), (9, 3)]

    @pytest.mark.asyncio
    async def test_past_snapshot_is_immutable(self, db_session, fund):
        await fund(1, 10)
        first = await run_snapshot(db_session, "weekly_xp")
        await fund(2, 20)
        await run_snapshot(db_session, "weekly_xp")

        result = await db_session.execute(
            select(LeaderboardSnapshot).where(LeaderboardSnapshot.id == first.id)
        )
        assert result.scalar_one().entry_count == 1
        history = await get_history(db_session, "weekly_xp")
        assert [h["entry_count"] for h in history] == [2, 1]

    @pytest.mark.asyncio
    async def test_no_snapshot_yet(self, db_session):
        with pytest.raises(NotFound):
            await get_current_leaderboard(db_session, "streak_leaders")

    @pytest.mark.asyncio
    async def test_pagination(self, db_session, fund):
        for student_id in range(1, 8):
            await fund(student_id, student_id * 10)
        await run_snapshot(db_session, "total_xp")

        page = await get_current_leaderboard(db_session, "total_xp", limit=3, offset=3)
        assert [e["rank"] for e in page["entries"]] == [4, 5, 6]
        assert page["entry_count"] == 7

    @pytest.mark.asyncio
    async def test_rank_change_notifies_top_only(self, db_session, fund, publisher):
        for student_id in range(1, 8):
            await fund(student_id, 100 - student_id)
        await run_snapshot(db_session, "weekly_xp", redis=publisher)

        result = await db_session.execute(
            select(Notification.student_id).where(Notification.type == "leaderboard_rank")
        )
        assert sorted(result.scalars().all()) == [1, 2, 3, 4, 5]
        assert publisher.publish.await_count == 5


class TestScopes:
    """Scoped populations come from roster memberships."""

    @pytest.mark.asyncio
    async def test_class_board_only_ranks_members(self, db_session, fund):
        db = db_session
        await fund(1, 100)
        await fund(2, 50)
        await fund(3, 75)
        db.add_all([
            ScopeMembership(student_id=2, scope="class", scope_key="5B"),
            ScopeMembership(student_id=3, scope="class", scope_key="5B"),
        ])
        await db.commit()

        written = await snapshot_boards(db, ["weekly_xp"])
        assert written == 2  # global + class 5B

        board = await get_current_leaderboard(db, "weekly_xp", "class", "5B")
        assert [e["student_id"] for e in board["entries"]] == [3, 2]

        positions = {(p["scope"], p["scope_key"]): p for p in await get_student_positions(db, 3)}
        assert positions[("class", "5B")]["rank"] == 1
        assert positions[("global", "all")]["rank"] == 2
        assert positions[("global", "all")]["total"] == 3

    @pytest.mark.asyncio
    async def test_list_board_scopes(self, db_session):
        db_session.add_all([
            ScopeMembership(student_id=1, scope="school", scope_key="north"),
            ScopeMembership(student_id=2, scope="school", scope_key="north"),
            ScopeMembership(student_id=2, scope="grade", scope_key="5"),
        ])
        await db_session.commit()

        assert await list_board_scopes(db_session) == [
            ("global", "all"), ("grade", "5"), ("school", "north"),
        ]


class TestOtherBoards:
    """Boards scored from learning statistics."""

    @pytest.mark.asyncio
    async def test_monthly_accuracy(self, seeded_db):
        from tutorxp.events.outcome_service import process_outcome

        db = seeded_db
        now = datetime.now(timezone.utc)
        outcomes = [(1, True), (1, False), (2, True), (2, True)]
        for i, (student_id, correct) in enumerate(outcomes):
            await process_outcome(
                db, None,
                student_id=student_id, subject="math", topic="decimals", is_correct=correct,
                hints_used=0, is_completed=True, timestamp=now, event_id=f"acc-{i}",
            )
        await run_snapshot(db, "monthly_accuracy", at=now)

        board = await get_current_leaderboard(db, "monthly_accuracy")
        assert [(e["student_id"], e["score"]) for e in board["entries"]] == [(2, 100.0), (1, 50.0)]


class TestConcurrentPublish:
    """A lost race on the pointer or the revision is retried."""

    @pytest.mark.asyncio
    async def test_stale_pointer_version_loses(self, db_session, fund):
        db = db_session
        await fund(1, 10)
        first_id = (await run_snapshot(db, "weekly_xp")).id
        pointer = await get_pointer(db, "weekly_xp", "global", "all")
        stale_version = pointer.version - 1
        now = datetime.now(timezone.utc)

        with pytest.raises(ConcurrentModificationConflict):
            await _swap_pointer(db, "weekly_xp", "global", "all", first_id, stale_version, now)
        with pytest.raises(ConcurrentModificationConflict):
            await _swap_pointer(db, "weekly_xp", "global", "all", first_id, None, now)
        await db.rollback()

        pointer = await get_pointer(db, "weekly_xp", "global", "all")
        assert pointer.snapshot_id == first_id
        assert pointer.version == 1

    @pytest.mark.asyncio
    async def test_lost_pointer_race_is_retried(self, db_session, fund, monkeypatch):
        db = db_session
        await fund(1, 10)
        await run_snapshot(db, "weekly_xp")

        real_get_pointer = leaderboard_service.get_pointer
        reads: list[str] = []

        async def pointer_not_yet_visible(db, board_type, scope, scope_key):
            reads.append(board_type)
            if len(reads) == 1:
                return None
            return await real_get_pointer(db, board_type, scope, scope_key)

        monkeypatch.setattr(leaderboard_service, "get_pointer", pointer_not_yet_visible)
        second = await run_snapshot(db, "weekly_xp")
        monkeypatch.undo()

        assert reads == ["weekly_xp", "weekly_xp"]
        assert second.revision == 2
        board = await get_current_leaderboard(db, "weekly_xp")
        assert board["snapshot_id"] == second.id
        assert board["entries"][0]["trend"] == "same"

    @pytest.mark.asyncio
    async def test_revision_collision_is_retried(self, db_session, fund, monkeypatch):
        db = db_session
        await fund(1, 10)
        first_revision = (await run_snapshot(db, "weekly_xp")).revision

        execute = db.execute
        stale: list[int] = []

        async def stale_revision_once(statement, *args, **kwargs):
            result = await execute(statement, *args, **kwargs)
            if not stale and "max(leaderboard_snapshots.revision)" in str(statement):
                stale.append(0)
                return SimpleNamespace(scalar_one=lambda: 0)
            return result

        monkeypatch.setattr(db, "execute", stale_revision_once)
        second = await run_snapshot(db, "weekly_xp")

        assert stale == [0]
        assert second.revision == first_revision + 1
