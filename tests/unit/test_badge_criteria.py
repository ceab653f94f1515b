"""Badge criteria parsing and evaluation against a stats view."""

from __future__ import annotations

import pytest

from tutorxp.badges.criteria import (
    STAT_ACCURACY,
    STAT_MASTERY,
    STAT_STREAK,
    AllOf,
    AnyOf,
    StatsView,
    StreakAtLeast,
    TopicMasteryAtLeast,
    parse_criterion,
)
from tutorxp.errors import MalformedBadgeCriterion, RuleConfigurationError, UnknownBadgeCriterion


class TestParseCriterion:
    """Stored JSON -> criterion variants."""

    def test_streak_at_least(self):
        criterion = parse_criterion({"type": "streak_at_least", "days": 7})
        assert criterion == StreakAtLeast(days=7)

    def test_topic_mastery(self):
        criterion = parse_criterion(
            {"type": "topic_mastery_at_least", "subject": "math", "topic": "fractions", "percent": 80}
        )
        assert isinstance(criterion, TopicMasteryAtLeast)
        assert criterion.percent == 80.0

    def test_nested_composite(self):
        criterion = parse_criterion({
            "type": "all_of",
            "criteria": [
                {"type": "streak_at_least", "days": 14},
                {"type": "any_of", "criteria": [
                    {"type": "xp_at_least", "amount": 500},
                    {"type": "problems_completed_at_least", "count": 100},
                ]},
            ],
        })
        assert isinstance(criterion, AllOf)
        assert isinstance(criterion.criteria[1], AnyOf)

    def test_round_trips_through_to_dict(self):
        data = {"type": "accuracy_at_least", "subject": "science", "percent": 75.0}
        assert parse_criterion(data).to_dict() == data

    def test_unknown_tag(self):
        with pytest.raises(UnknownBadgeCriterion):
            parse_criterion({"type": "typing_speed_at_least", "value": 1})

    def test_unhashable_tag_is_unknown(self):
        with pytest.raises(UnknownBadgeCriterion):
            parse_criterion({"type": ["streak_at_least"]})

    @pytest.mark.parametrize(
        "data",
        [
            {"type": "streak_at_least"},
            {"type": "streak_at_least", "days": -1},
            {"type": "streak_at_least", "days": True},
            {"type": "accuracy_at_least", "subject": "math", "percent": 120},
            {"type": "topic_mastery_at_least", "subject": "", "topic": "x", "percent": 50},
            {"type": "all_of", "criteria": []},
            "streak_at_least",
        ],
    )
    def test_malformed(self, data):
        with pytest.raises(MalformedBadgeCriterion):
            parse_criterion(data)

    def test_errors_share_configuration_base(self):
        assert issubclass(UnknownBadgeCriterion, RuleConfigurationError)
        assert issubclass(MalformedBadgeCriterion, RuleConfigurationError)


class TestEvaluation:
    """is_satisfied / progress / requirements."""

    def test_streak_satisfied_at_threshold(self):
        criterion = StreakAtLeast(days=7)
        assert criterion.is_satisfied(StatsView(current_streak=7))
        assert not criterion.is_satisfied(StatsView(current_streak=6))

    def test_progress_is_capped(self):
        criterion = StreakAtLeast(days=4)
        assert criterion.progress(StatsView(current_streak=2)) == 50.0
        assert criterion.progress(StatsView(current_streak=40)) == 100.0

    def test_missing_topic_counts_as_zero(self):
        criterion = TopicMasteryAtLeast(subject="math", topic="fractions", percent=80)
        assert not criterion.is_satisfied(StatsView())
        assert criterion.progress(StatsView()) == 0.0

    def test_all_of_progress_is_average(self):
        criterion = parse_criterion({
            "type": "all_of",
            "criteria": [
                {"type": "streak_at_least", "days": 10},
                {"type": "accuracy_at_least", "subject": "math", "percent": 50},
            ],
        })
        view = StatsView(current_streak=5, accuracy={"math": 50.0})
        assert not criterion.is_satisfied(view)
        assert criterion.progress(view) == 75.0

    def test_any_of_satisfied_by_one_branch(self):
        criterion = parse_criterion({
            "type": "any_of",
            "criteria": [
                {"type": "streak_at_least", "days": 10},
                {"type": "xp_at_least", "amount": 100},
            ],
        })
        assert criterion.is_satisfied(StatsView(total_earned=150))

    def test_requirements_merge_children(self):
        criterion = parse_criterion({
            "type": "all_of",
            "criteria": [
                {"type": "streak_at_least", "days": 3},
                {"type": "topic_mastery_at_least", "subject": "math", "topic": "algebra", "percent": 60},
                {"type": "accuracy_at_least", "subject": "science", "percent": 60},
            ],
        })
        req = criterion.requirements()
        assert req.stats == {STAT_STREAK, STAT_MASTERY, STAT_ACCURACY}
        assert req.topics == {("math", "algebra")}
        assert req.subjects == {"science"}
