"""Deterministic leaderboard ranking: ZERO randomness.

Students ranked by score DESC, then by student_id ASC as the tiebreaker,
so identical input always yields identical ranks 1..N.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any


def rank_scores(scores: Mapping[int, float] | Iterable[tuple[int, float]]) -> list[dict[str, Any]]:
    """Rank a scored population.

    Input: {student_id: score} or (student_id, score) pairs.
    Students with a score of zero or less have no activity for the period
    and are left off the board.

    Output: list of dicts with student_id, score and rank (1-indexed),
    in rank order.
    """
    pairs = scores.items() if isinstance(scores, Mapping) else scores

    def sort_key(item: tuple[int, float]) -> tuple[float, int]:
        student_id, score = item
        return (-score, student_id)

    ranked = sorted(((sid, float(score)) for sid, score in pairs if score and score > 0), key=sort_key)
    return [
        {"student_id": sid, "score": score, "rank": i}
        for i, (sid, score) in enumerate(ranked, start=1)
    ]


def trend_for(rank: int, previous_rank: int | None) -> str:
    """up if rank improved (numerically lower), down if worse, same, or new."""
    if previous_rank is None:
        return "new"
    if rank < previous_rank:
        return "up"
    if rank > previous_rank:
        return "down"
    return "same"


def apply_trends(ranked: list[dict[str, Any]], previous: Mapping[int, int]) -> list[dict[str, Any]]:
    """Attach previous_rank and trend from the prior snapshot's {student_id: rank}."""
    for entry in ranked:
        prev = previous.get(entry["student_id"])
        entry["previous_rank"] = prev
        entry["trend"] = trend_for(entry["rank"], prev)
    return ranked


def should_notify(entry: dict[str, Any], notify_top: int) -> bool:
    """Rank-change notifications go out only for changes within the top ``notify_top``."""
    if entry["trend"] == "same":
        return False
    return notify_top <= 0 or entry["rank"] <= notify_top
