"""Badge criteria as a closed set of tagged condition variants.

Stored as JSON on ``BadgeDefinition.criteria``::

    {"type": "streak_at_least", "days": 7}
    {"type": "topic_mastery_at_least", "subject": "math", "topic": "fractions", "percent": 80}
    {"type": "all_of", "criteria": [{...}, {...}]}

Adding a criterion means adding a variant here and registering its tag.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar

from tutorxp.errors import MalformedBadgeCriterion, UnknownBadgeCriterion

# Stat groups a criterion can depend on
STAT_STREAK = "streak"
STAT_PROBLEMS = "problems"
STAT_CHALLENGES = "challenges"
STAT_XP = "xp"
STAT_MASTERY = "mastery"
STAT_ACCURACY = "accuracy"


@dataclass
class Requirements:
    """Which stats an evaluation must load."""

    stats: set[str] = field(default_factory=set)
    topics: set[tuple[str, str]] = field(default_factory=set)
    subjects: set[str] = field(default_factory=set)

    def merge(self, other: Requirements) -> Requirements:
        self.stats |= other.stats
        self.topics |= other.topics
        self.subjects |= other.subjects
        return self


@dataclass
class StatsView:
    """The slice of a student's statistics loaded for one evaluation."""

    current_streak: int = 0
    problems_completed: int = 0
    challenges_completed: int = 0
    total_earned: int = 0
    mastery: dict[tuple[str, str], float] = field(default_factory=dict)
    accuracy: dict[str, float] = field(default_factory=dict)


def _ratio(value: float, threshold: float) -> float:
    if threshold <= 0:
        return 100.0
    return min(100.0, max(0.0, value / threshold * 100))


class Criterion:
    """Base for criterion variants."""

    tag: ClassVar[str]

    def requirements(self) -> Requirements:
        raise NotImplementedError

    def is_satisfied(self, view: StatsView) -> bool:
        raise NotImplementedError

    def progress(self, view: StatsView) -> float:
        """0-100 progress toward satisfaction."""
        raise NotImplementedError

    def to_dict(self) -> dict[str, Any]:
        raise NotImplementedError


@dataclass(frozen=True)
class StreakAtLeast(Criterion):
    days: int
    tag: ClassVar[str] = "streak_at_least"

    def requirements(self) -> Requirements:
        return Requirements(stats={STAT_STREAK})

    def is_satisfied(self, view: StatsView) -> bool:
        return view.current_streak >= self.days

    def progress(self, view: StatsView) -> float:
        return _ratio(view.current_streak, self.days)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.tag, "days": self.days}


@dataclass(frozen=True)
class TopicMasteryAtLeast(Criterion):
    subject: str
    topic: str
    percent: float
    tag: ClassVar[str] = "topic_mastery_at_least"

    def requirements(self) -> Requirements:
        return Requirements(stats={STAT_MASTERY}, topics={(self.subject, self.topic)})

    def _value(self, view: StatsView) -> float:
        return view.mastery.get((self.subject, self.topic), 0.0)

    def is_satisfied(self, view: StatsView) -> bool:
        return self._value(view) >= self.percent

    def progress(self, view: StatsView) -> float:
        return _ratio(self._value(view), self.percent)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.tag, "subject": self.subject, "topic": self.topic, "percent": self.percent}


@dataclass(frozen=True)
class ChallengesCompletedAtLeast(Criterion):
    count: int
    tag: ClassVar[str] = "challenges_completed_at_least"

    def requirements(self) -> Requirements:
        return Requirements(stats={STAT_CHALLENGES})

    def is_satisfied(self, view: StatsView) -> bool:
        return view.challenges_completed >= self.count

    def progress(self, view: StatsView) -> float:
        return _ratio(view.challenges_completed, self.count)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.tag, "count": self.count}


@dataclass(frozen=True)
class AccuracyAtLeast(Criterion):
    subject: str
    percent: float
    tag: ClassVar[str] = "accuracy_at_least"

    def requirements(self) -> Requirements:
        return Requirements(stats={STAT_ACCURACY}, subjects={self.subject})

    def _value(self, view: StatsView) -> float:
        return view.accuracy.get(self.subject, 0.0)

    def is_satisfied(self, view: StatsView) -> bool:
        return self._value(view) >= self.percent

    def progress(self, view: StatsView) -> float:
        return _ratio(self._value(view), self.percent)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.tag, "subject": self.subject, "percent": self.percent}


@dataclass(frozen=True)
class ProblemsCompletedAtLeast(Criterion):
    count: int
    tag: ClassVar[str] = "problems_completed_at_least"

    def requirements(self) -> Requirements:
        return Requirements(stats={STAT_PROBLEMS})

    def is_satisfied(self, view: StatsView) -> bool:
        return view.problems_completed >= self.count

    def progress(self, view: StatsView) -> float:
        return _ratio(view.problems_completed, self.count)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.tag, "count": self.count}


@dataclass(frozen=True)
class XpAtLeast(Criterion):
    amount: int
    tag: ClassVar[str] = "xp_at_least"

    def requirements(self) -> Requirements:
        return Requirements(stats={STAT_XP})

    def is_satisfied(self, view: StatsView) -> bool:
        return view.total_earned >= self.amount

    def progress(self, view: StatsView) -> float:
        return _ratio(view.total_earned, self.amount)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.tag, "amount": self.amount}


@dataclass(frozen=True)
class AllOf(Criterion):
    criteria: tuple[Criterion, ...]
    tag: ClassVar[str] = "all_of"

    def requirements(self) -> Requirements:
        req = Requirements()
        for child in self.criteria:
            req.merge(child.requirements())
        return req

    def is_satisfied(self, view: StatsView) -> bool:
        return all(child.is_satisfied(view) for child in self.criteria)

    def progress(self, view: StatsView) -> float:
        return sum(child.progress(view) for child in self.criteria) / len(self.criteria)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.tag, "criteria": [c.to_dict() for c in self.criteria]}


@dataclass(frozen=True)
class AnyOf(Criterion):
    criteria: tuple[Criterion, ...]
    tag: ClassVar[str] = "any_of"

    def requirements(self) -> Requirements:
        req = Requirements()
        for child in self.criteria:
            req.merge(child.requirements())
        return req

    def is_satisfied(self, view: StatsView) -> bool:
        return any(child.is_satisfied(view) for child in self.criteria)

    def progress(self, view: StatsView) -> float:
        return max(child.progress(view) for child in self.criteria)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.tag, "criteria": [c.to_dict() for c in self.criteria]}


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _int_field(data: dict, name: str) -> int:
    value = data.get(name)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise MalformedBadgeCriterion(f"{data.get('type')}: '{name}' must be a non-negative integer")
    return value


def _percent_field(data: dict, name: str) -> float:
    value = data.get(name)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not 0 <= value <= 100:
        raise MalformedBadgeCriterion(f"{data.get('type')}: '{name}' must be a number in 0-100")
    return float(value)


def _str_field(data: dict, name: str) -> str:
    value = data.get(name)
    if not isinstance(value, str) or not value:
        raise MalformedBadgeCriterion(f"{data.get('type')}: '{name}' must be a non-empty string")
    return value


def _children(data: dict) -> tuple[Criterion, ...]:
    items = data.get("criteria")
    if not isinstance(items, list) or not items:
        raise MalformedBadgeCriterion(f"{data.get('type')}: 'criteria' must be a non-empty list")
    return tuple(parse_criterion(item) for item in items)


_PARSERS = {
    StreakAtLeast.tag: lambda d: StreakAtLeast(days=_int_field(d, "days")),
    TopicMasteryAtLeast.tag: lambda d: TopicMasteryAtLeast(
        subject=_str_field(d, "subject"),
        topic=_str_field(d, "topic"),
        percent=_percent_field(d, "percent"),
    ),
    ChallengesCompletedAtLeast.tag: lambda d: ChallengesCompletedAtLeast(count=_int_field(d, "count")),
    AccuracyAtLeast.tag: lambda d: AccuracyAtLeast(
        subject=_str_field(d, "subject"),
        percent=_percent_field(d, "percent"),
    ),
    ProblemsCompletedAtLeast.tag: lambda d: ProblemsCompletedAtLeast(count=_int_field(d, "count")),
    XpAtLeast.tag: lambda d: XpAtLeast(amount=_int_field(d, "amount")),
    AllOf.tag: lambda d: AllOf(criteria=_children(d)),
    AnyOf.tag: lambda d: AnyOf(criteria=_children(d)),
}


def parse_criterion(data: Any) -> Criterion:
    """Parse stored JSON into a criterion variant.

    Raises UnknownBadgeCriterion for an unrecognised tag and
    MalformedBadgeCriterion for missing or invalid fields.
    """
    if not isinstance(data, dict):
        raise MalformedBadgeCriterion("Criterion must be an object")
    tag = data.get("type")
    parser = _PARSERS.get(tag) if isinstance(tag, str) else None
    if parser is None:
        raise UnknownBadgeCriterion(f"Unknown badge criterion: {tag!r}")
    return parser(data)
