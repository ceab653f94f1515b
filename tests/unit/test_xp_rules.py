"""XP rule table and streak arithmetic."""

from __future__ import annotations

from datetime import date

import pytest

from tutorxp.config import Settings
from tutorxp.db.models import TopicMastery
from tutorxp.events.outcome_service import advance_streak, outcome_key
from tutorxp.events.policies import accuracy_volume, attempts_per_problem, get_mastery_policy
from tutorxp.events.xp_rules import compute_outcome_xp


@pytest.fixture
def settings() -> Settings:
    return Settings()


class TestComputeOutcomeXP:
    """base x difficulty + no-hint bonus, x streak multiplier."""

    def test_correct_without_hints(self, settings):
        xp = compute_outcome_xp(settings, True, True, hints_used=0, current_streak=1)
        assert xp["total"] == 15
        assert xp["no_hint_bonus"] == 5
        assert xp["streak_multiplier"] == 1.0

    def test_hints_drop_bonus(self, settings):
        xp = compute_outcome_xp(settings, True, True, hints_used=2, current_streak=1)
        assert xp["total"] == 10

    def test_difficulty_multiplier(self, settings):
        xp = compute_outcome_xp(settings, True, True, hints_used=1, current_streak=0, difficulty="hard")
        assert xp["total"] == 20

    def test_streak_multiplier_applies_from_min_days(self, settings):
        xp = compute_outcome_xp(settings, True, True, hints_used=0, current_streak=2)
        assert xp["streak_multiplier"] == 1.2
        assert xp["total"] == 18

    def test_half_rounds_up(self):
        settings = Settings(xp_problem_base=5, xp_no_hint_bonus=0, xp_streak_multiplier=1.5)
        xp = compute_outcome_xp(settings, True, True, hints_used=0, current_streak=3, difficulty="easy")
        assert xp["total"] == 8  # 7.5

    def test_incorrect_earns_configured_amount(self, settings):
        assert compute_outcome_xp(settings, False, True, 0, 10)["total"] == 0
        generous = Settings(xp_incorrect_attempt=2)
        assert compute_outcome_xp(generous, False, False, 0, 10)["total"] == 2

    def test_unknown_difficulty_uses_base(self, settings):
        xp = compute_outcome_xp(settings, True, True, 1, 0, difficulty="legendary")
        assert xp["difficulty_multiplier"] == 1.0


class TestAdvanceStreak:
    """Streak after activity on a day."""

    def test_first_activity(self):
        assert advance_streak(0, None, date(2026, 3, 2)) == (1, date(2026, 3, 2))

    def test_same_day_keeps_streak(self):
        assert advance_streak(4, date(2026, 3, 2), date(2026, 3, 2)) == (4, date(2026, 3, 2))

    def test_next_day_extends(self):
        assert advance_streak(4, date(2026, 3, 2), date(2026, 3, 3)) == (5, date(2026, 3, 3))

    def test_gap_resets(self):
        assert advance_streak(4, date(2026, 3, 2), date(2026, 3, 5)) == (1, date(2026, 3, 5))

    def test_late_event_is_ignored(self):
        assert advance_streak(4, date(2026, 3, 5), date(2026, 3, 1)) == (4, date(2026, 3, 5))

    def test_across_month_end(self):
        assert advance_streak(9, date(2026, 1, 31), date(2026, 2, 1)) == (10, date(2026, 2, 1))


class TestMasteryPolicies:
    """Selectable mastery formulas."""

    def test_accuracy_volume_scales_until_minimum(self, settings):
        topic = TopicMastery(attempts=5, correct=5, completed=5)
        assert accuracy_volume(topic, settings) == 50.0
        topic = TopicMastery(attempts=20, correct=18, completed=20)
        assert accuracy_volume(topic, settings) == 90.0

    def test_lookup_by_name(self, settings):
        topic = TopicMastery(attempts=4, correct=3, completed=4)
        assert get_mastery_policy("accuracy")(topic, settings) == 75.0

    def test_unknown_policy(self):
        with pytest.raises(ValueError, match="Unknown mastery policy"):
            get_mastery_policy("vibes")

    def test_attempts_per_problem(self):
        assert attempts_per_problem(TopicMastery(attempts=6, completed=4)) == 1.5
        assert attempts_per_problem(TopicMastery(attempts=3, completed=0)) == 3.0


class TestOutcomeKey:
    def test_event_id_wins(self):
        from datetime import datetime, timezone

        ts = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)
        assert outcome_key(1, "math", "fractions", ts, "evt-9") == "outcome:evt-9"
        assert outcome_key(1, "math", "fractions", ts) == "outcome:1:math:fractions:2026-03-02T10:00:00+00:00"
