"""Pluggable policies for derived learning metrics.

Selected by name from settings so the formulas can change without touching
outcome intake.
"""

from __future__ import annotations

from collections.abc import Callable

from tutorxp.config import Settings
from tutorxp.db.models import TopicMastery

MasteryPolicy = Callable[[TopicMastery, Settings], float]


def accuracy(topic: TopicMastery, settings: Settings) -> float:
    """Share of correct attempts, 0-100."""
    if topic.attempts <= 0:
        return 0.0
    return round(topic.correct / topic.attempts * 100, 2)


def accuracy_volume(topic: TopicMastery, settings: Settings) -> float:
    """Accuracy scaled down until the student has done ``mastery_min_problems``."""
    if settings.mastery_min_problems <= 0:
        return accuracy(topic, settings)
    volume = min(1.0, topic.completed / settings.mastery_min_problems)
    return round(accuracy(topic, settings) * volume, 2)


MASTERY_POLICIES: dict[str, MasteryPolicy] = {
    "accuracy": accuracy,
    "accuracy_volume": accuracy_volume,
}


def get_mastery_policy(name: str) -> MasteryPolicy:
    policy = MASTERY_POLICIES.get(name)
    if policy is None:
        raise ValueError(f"Unknown mastery policy: {name}. Must be one of {sorted(MASTERY_POLICIES)}")
    return policy


def attempts_per_problem(topic: TopicMastery) -> float:
    """Average attempts per completed problem; attempts so far if none completed."""
    if topic.completed <= 0:
        return float(topic.attempts)
    return round(topic.attempts / topic.completed, 2)
