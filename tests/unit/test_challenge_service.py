"""Challenge tracker tests: joining, progress, completion exactly once."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from tutorxp.badges.badge_service import get_student_badge
from tutorxp.challenges.challenge_service import (
    completion_key,
    create_challenge,
    get_challenge_leaderboard,
    get_progress,
    join_challenge,
    list_challenges,
    list_student_challenges,
    record_progress,
)
from tutorxp.db.models import BadgeDefinition, LedgerEntry, Notification, ScopeMembership, TopicMastery
from tutorxp.errors import MalformedChallengeMetric, NotEligible, NotFound
from tutorxp.events.outcome_service import process_outcome
from tutorxp.ledger.ledger_service import get_account
from tutorxp.ledger.unit import serialized


def _window(now: datetime, days_before: int = 1, days_after: int = 6) -> dict:
    return {"starts_at": now - timedelta(days=days_before), "ends_at": now + timedelta(days=days_after)}


async def _completion_entries(db, student_id: int, challenge_id: int) -> list[LedgerEntry]:
    result = await db.execute(
        select(LedgerEntry).where(LedgerEntry.idempotency_key == completion_key(student_id, challenge_id))
    )
    return list(result.scalars().all())


class TestCreateChallenge:
    """Publishing validation."""

    @pytest.mark.asyncio
    async def test_unknown_metric(self, seeded_db, now):
        with pytest.raises(MalformedChallengeMetric):
            await create_challenge(seeded_db, "Speedrun", "typing_speed", 10, **_window(now))

    @pytest.mark.asyncio
    async def test_window_must_be_ordered(self, seeded_db, now):
        with pytest.raises(ValueError, match="ends_at"):
            await create_challenge(
                seeded_db, "Backwards", "problems_completed", 10, starts_at=now, ends_at=now - timedelta(days=1)
            )

    @pytest.mark.asyncio
    async def test_scoped_challenge_needs_key(self, seeded_db, now):
        with pytest.raises(ValueError, match="scope_key"):
            await create_challenge(seeded_db, "Class race", "problems_completed", 10, scope="class", **_window(now))

    @pytest.mark.asyncio
    async def test_badge_reward_must_exist(self, seeded_db, now):
        with pytest.raises(NotFound):
            await create_challenge(
                seeded_db, "Mystery", "problems_completed", 10, badge_reward="nope", **_window(now)
            )

    @pytest.mark.asyncio
    async def test_list_hides_ended(self, seeded_db, now):
        await create_challenge(seeded_db, "Current", "problems_completed", 5, **_window(now))
        await create_challenge(
            seeded_db, "Old", "problems_completed", 5,
            starts_at=now - timedelta(days=20), ends_at=now - timedelta(days=10),
        )
        await seeded_db.commit()

        assert [c.title for c in await list_challenges(seeded_db)] == ["Current"]
        assert len(await list_challenges(seeded_db, active_only=False)) == 2


class TestJoin:
    """Eligibility, capacity and idempotent joins."""

    @pytest.mark.asyncio
    async def test_join_twice_returns_same_participation(self, seeded_db, now):
        db = seeded_db
        challenge = await create_challenge(db, "Ten problems", "problems_completed", 10, **_window(now))
        await db.commit()

        first = await serialized(db, 1, lambda: join_challenge(db, 1, challenge.id))
        second = await serialized(db, 1, lambda: join_challenge(db, 1, challenge.id))

        assert first.id == second.id
        await db.refresh(challenge)
        assert challenge.current_participants == 1

    @pytest.mark.asyncio
    async def test_full_challenge(self, seeded_db, now):
        db = seeded_db
        challenge = await create_challenge(
            db, "Small group", "problems_completed", 10, max_participants=1, **_window(now)
        )
        await db.commit()
        await serialized(db, 1, lambda: join_challenge(db, 1, challenge.id))

        with pytest.raises(NotEligible, match="full"):
            await serialized(db, 2, lambda: join_challenge(db, 2, challenge.id))

    @pytest.mark.asyncio
    async def test_scope_membership_required(self, seeded_db, now):
        db = seeded_db
        challenge = await create_challenge(
            db, "Class 5B race", "problems_completed", 10, scope="class", scope_key="5B", **_window(now)
        )
        db.add(ScopeMembership(student_id=2, scope="class", scope_key="5B"))
        await db.commit()
        challenge_id = challenge.id

        with pytest.raises(NotEligible):
            await serialized(db, 1, lambda: join_challenge(db, 1, challenge_id))
        participation = await serialized(db, 2, lambda: join_challenge(db, 2, challenge_id))
        assert participation.student_id == 2

    @pytest.mark.asyncio
    async def test_ended_challenge(self, seeded_db, now):
        db = seeded_db
        challenge = await create_challenge(
            db, "Last week", "problems_completed", 10,
            starts_at=now - timedelta(days=10), ends_at=now - timedelta(days=3),
        )
        await db.commit()

        with pytest.raises(NotEligible, match="ended"):
            await serialized(db, 1, lambda: join_challenge(db, 1, challenge.id))

    @pytest.mark.asyncio
    async def test_missing_challenge(self, seeded_db):
        with pytest.raises(NotFound):
            await join_challenge(seeded_db, 1, 999)


class TestProgress:
    """Monotonic and delta metrics, window freezing, completion."""

    @pytest.mark.asyncio
    async def test_monotonic_metric_keeps_max(self, seeded_db, now):
        db = seeded_db
        challenge = await create_challenge(db, "Streak", "streak_days", 10, **_window(now))
        await db.commit()
        await serialized(db, 1, lambda: join_challenge(db, 1, challenge.id))

        await serialized(db, 1, lambda: record_progress(db, 1, challenge.id, 4))
        update = await serialized(db, 1, lambda: record_progress(db, 1, challenge.id, 2))

        assert update["current_value"] == 4
        assert update["progress_percent"] == 40.0
        assert [p["value"] for p in update["progress_history"]] == [4.0]

    @pytest.mark.asyncio
    async def test_completion_rewards_granted_once(self, seeded_db, now):
        db = seeded_db
        challenge = await create_challenge(
            db, "Twenty problems", "problems_completed", 20,
            xp_reward=40, badge_reward="challenger", **_window(now),
        )
        await db.commit()
        await serialized(db, 1, lambda: join_challenge(db, 1, challenge.id))

        first = await serialized(db, 1, lambda: record_progress(db, 1, challenge.id, 20))
        second = await serialized(db, 1, lambda: record_progress(db, 1, challenge.id, 25))

        assert first["newly_completed"] is True
        assert first["xp_awarded"] is True
        assert first["badge_awarded"] is True
        assert second["newly_completed"] is False
        assert second["is_completed"] is True
        assert len(await _completion_entries(db, 1, challenge.id)) == 1

        account = await get_account(db, 1)
        assert account.total_earned == 40 + 100  # challenge XP + challenger badge XP

        result = await db.execute(
            select(Notification).where(Notification.student_id == 1, Notification.type == "challenge_completed")
        )
        assert len(result.scalars().all()) == 1

    @pytest.mark.asyncio
    async def test_inactive_badge_reward_stays_ungranted_until_available(self, seeded_db, now):
        db = seeded_db
        challenge = await create_challenge(
            db, "Ten problems", "problems_completed", 10, xp_reward=20, badge_reward="challenger", **_window(now),
        )
        badge = await db.get(BadgeDefinition, "challenger")
        badge.is_active = False
        await db.commit()
        await serialized(db, 1, lambda: join_challenge(db, 1, challenge.id))

        first = await serialized(db, 1, lambda: record_progress(db, 1, challenge.id, 10))
        assert first["newly_completed"] is True
        assert first["xp_awarded"] is True
        assert first["badge_awarded"] is False
        assert await get_student_badge(db, 1, "challenger") is None

        badge = await db.get(BadgeDefinition, "challenger")
        badge.is_active = True
        await db.commit()

        later = await serialized(db, 1, lambda: record_progress(db, 1, challenge.id, 11))
        assert later["newly_completed"] is False
        assert later["badge_awarded"] is True
        assert (await get_student_badge(db, 1, "challenger")).is_earned is True
        assert len(await _completion_entries(db, 1, challenge.id)) == 1

    @pytest.mark.asyncio
    async def test_zero_xp_reward_marks_xp_flag(self, seeded_db, now):
        db = seeded_db
        challenge = await create_challenge(db, "Just for fun", "problems_completed", 3, **_window(now))
        await db.commit()
        await serialized(db, 1, lambda: join_challenge(db, 1, challenge.id))

        update = await serialized(db, 1, lambda: record_progress(db, 1, challenge.id, 3))
        assert update["is_completed"] is True
        assert update["xp_awarded"] is True
        assert update["badge_awarded"] is False
        assert await _completion_entries(db, 1, challenge.id) == []

    @pytest.mark.asyncio
    async def test_progress_outside_window_is_frozen(self, seeded_db, now):
        db = seeded_db
        challenge = await create_challenge(
            db, "Starts tomorrow", "problems_completed", 5,
            starts_at=now + timedelta(days=1), ends_at=now + timedelta(days=5),
        )
        await db.commit()
        await serialized(db, 1, lambda: join_challenge(db, 1, challenge.id))

        update = await serialized(db, 1, lambda: record_progress(db, 1, challenge.id, 5))
        assert update["frozen"] is True
        assert update["is_completed"] is False
        assert update["current_value"] == 0

    @pytest.mark.asyncio
    async def test_delta_metric_measures_from_baseline(self, seeded_db, now):
        db = seeded_db
        db.add(TopicMastery(
            student_id=1, subject="math", topic="fractions",
            attempts=10, correct=6, completed=10, hints_used=0, time_spent_seconds=0,
            accuracy=60.0, mastery_percent=60.0,
        ))
        challenge = await create_challenge(
            db, "Sharpen up", "accuracy_improvement", 15, subject="math", **_window(now)
        )
        await db.commit()

        participation = await serialized(db, 1, lambda: join_challenge(db, 1, challenge.id))
        assert participation.starting_baseline == 60.0

        update = await serialized(db, 1, lambda: record_progress(db, 1, challenge.id, 70.0))
        assert update["current_value"] == 10.0
        update = await serialized(db, 1, lambda: record_progress(db, 1, challenge.id, 65.0))
        assert update["current_value"] == 5.0
        assert update["is_completed"] is False

    @pytest.mark.asyncio
    async def test_progress_requires_participation(self, seeded_db, now):
        db = seeded_db
        challenge = await create_challenge(db, "Lonely", "problems_completed", 5, **_window(now))
        await db.commit()
        with pytest.raises(NotFound):
            await get_progress(db, 1, challenge.id)


class TestOutcomesDriveChallenges:
    """Outcome intake pushes fresh metric values into open participations."""

    @pytest.mark.asyncio
    async def test_problems_completed_through_outcomes(self, seeded_db, now):
        db = seeded_db
        challenge = await create_challenge(db, "Three today", "problems_completed", 3, xp_reward=30, **_window(now))
        await db.commit()
        await serialized(db, 3, lambda: join_challenge(db, 3, challenge.id))

        results = []
        for i in range(4):
            results.append(await process_outcome(
                db, None,
                student_id=3, subject="science", topic="plants", is_correct=True,
                hints_used=1, is_completed=True, timestamp=now, event_id=f"plants-{i}",
            ))

        assert results[1]["challenges"][0]["current_value"] == 2
        assert results[2]["challenges"][0]["newly_completed"] is True
        assert results[3]["challenges"] == []
        assert len(await _completion_entries(db, 3, challenge.id)) == 1

        progress = await get_progress(db, 3, challenge.id)
        assert progress["is_completed"] is True
        assert progress["current_value"] == 3


class TestStandings:
    """Per-student challenge lists and per-challenge leaderboards."""

    @pytest.mark.asyncio
    async def test_student_challenges_soonest_ending_first(self, seeded_db, now):
        db = seeded_db
        later = await create_challenge(db, "Month long", "problems_completed", 30, **_window(now, days_after=28))
        sooner = await create_challenge(db, "Quick three", "problems_completed", 3, **_window(now, days_after=2))
        await db.commit()
        later_id, sooner_id = later.id, sooner.id
        await serialized(db, 1, lambda: join_challenge(db, 1, later_id))
        await serialized(db, 1, lambda: join_challenge(db, 1, sooner_id))
        await serialized(db, 1, lambda: record_progress(db, 1, sooner_id, 3))

        listed = await list_student_challenges(db, 1)
        assert [c["challenge_id"] for c in listed] == [sooner_id, later_id]
        assert listed[0]["title"] == "Quick three"
        assert listed[0]["is_completed"] is True

        open_only = await list_student_challenges(db, 1, include_completed=False)
        assert [c["challenge_id"] for c in open_only] == [later_id]
        assert await list_student_challenges(db, 2) == []

    @pytest.mark.asyncio
    async def test_leaderboard_ranks_by_current_value(self, seeded_db, now):
        db = seeded_db
        challenge = await create_challenge(db, "Ten problems", "problems_completed", 10, **_window(now))
        await db.commit()
        challenge_id = challenge.id
        for student_id, value in ((1, 4), (2, 10), (3, 4), (4, 0)):
            await serialized(db, student_id, lambda s=student_id: join_challenge(db, s, challenge_id))
            if value:
                await serialized(db, student_id, lambda s=student_id, v=value: record_progress(db, s, challenge_id, v))

        board = await get_challenge_leaderboard(db, challenge_id)
        assert board["participants"] == 4
        assert [(e["rank"], e["student_id"]) for e in board["entries"]] == [(1, 2), (2, 1), (3, 3)]
        assert board["entries"][0]["is_completed"] is True
        assert board["entries"][0]["progress_percent"] == 100.0
        assert board["entries"][1]["progress_percent"] == 40.0

        top = await get_challenge_leaderboard(db, challenge_id, limit=1)
        assert [e["student_id"] for e in top["entries"]] == [2]

    @pytest.mark.asyncio
    async def test_leaderboard_for_missing_challenge(self, seeded_db):
        with pytest.raises(NotFound):
            await get_challenge_leaderboard(seeded_db, 999)
