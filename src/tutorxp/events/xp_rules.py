"""XP rule table applied to learning outcomes.

The amounts come from settings (``TXP_XP_*``), never from the event.
"""

from __future__ import annotations

import math
from typing import Any

from tutorxp.config import Settings


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def compute_outcome_xp(
    settings: Settings,
    is_correct: bool,
    is_completed: bool,
    hints_used: int,
    current_streak: int,
    difficulty: str | None = None,
) -> dict[str, Any]:
    """XP for one outcome with its breakdown.

    Correct, completed problems earn base x difficulty multiplier, plus the
    no-hint bonus, times the streak multiplier once the streak is long
    enough. Anything else earns ``xp_incorrect_attempt``.
    """
    if not (is_correct and is_completed):
        return {
            "base": 0,
            "difficulty_multiplier": 1.0,
            "no_hint_bonus": 0,
            "streak_multiplier": 1.0,
            "total": max(0, settings.xp_incorrect_attempt),
        }

    multiplier = settings.xp_difficulty_multipliers.get(difficulty or "", 1.0)
    xp = settings.xp_problem_base * multiplier

    no_hint_bonus = settings.xp_no_hint_bonus if hints_used == 0 else 0
    xp += no_hint_bonus

    streak_multiplier = 1.0
    if current_streak >= settings.xp_streak_min_days:
        streak_multiplier = settings.xp_streak_multiplier
        xp *= streak_multiplier

    return {
        "base": settings.xp_problem_base,
        "difficulty_multiplier": multiplier,
        "no_hint_bonus": no_hint_bonus,
        "streak_multiplier": streak_multiplier,
        "total": _round_half_up(xp),
    }
