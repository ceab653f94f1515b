"""Level thresholds and computation.

Levels are a pure function of total earned XP. Spending never lowers a level.
"""

from __future__ import annotations

LEVEL_THRESHOLDS: list[dict] = [
    {"level": 1, "title": "Newcomer", "cumulative": 0},
    {"level": 2, "title": "Explorer", "cumulative": 100},
    {"level": 3, "title": "Apprentice", "cumulative": 250},
    {"level": 4, "title": "Problem Solver", "cumulative": 500},
    {"level": 5, "title": "Scholar", "cumulative": 1000},
    {"level": 6, "title": "Achiever", "cumulative": 2000},
    {"level": 7, "title": "Expert", "cumulative": 4000},
    {"level": 8, "title": "Master", "cumulative": 8000},
    {"level": 9, "title": "Sage", "cumulative": 15000},
    {"level": 10, "title": "Legend", "cumulative": 30000},
]

MAX_LEVEL = LEVEL_THRESHOLDS[-1]["level"]


def compute_level(total_earned: int) -> dict:
    """Compute level info from total earned XP."""
    current = LEVEL_THRESHOLDS[0]
    for threshold in LEVEL_THRESHOLDS:
        if total_earned >= threshold["cumulative"]:
            current = threshold

    is_max = current["level"] == MAX_LEVEL
    next_level = current if is_max else LEVEL_THRESHOLDS[current["level"]]

    xp_into_level = total_earned - current["cumulative"]
    xp_for_level = next_level["cumulative"] - current["cumulative"]

    # At max level, avoid division by zero
    if xp_for_level == 0:
        xp_for_level = 1

    return {
        "level": current["level"],
        "title": current["title"],
        "xp_into_level": xp_into_level,
        "xp_for_level": xp_for_level,
        "next_level": next_level["level"],
        "next_title": next_level["title"],
        "is_max_level": is_max,
    }


def level_progression(total_earned: int) -> dict:
    """Level progression view for dashboards."""
    info = compute_level(total_earned)
    current_floor = LEVEL_THRESHOLDS[info["level"] - 1]["cumulative"]
    if info["is_max_level"]:
        next_floor = current_floor
        progress = 100.0
    else:
        next_floor = LEVEL_THRESHOLDS[info["level"]]["cumulative"]
        progress = min(100.0, (total_earned - current_floor) / (next_floor - current_floor) * 100)

    return {
        "current_level": info["level"],
        "title": info["title"],
        "total_earned": total_earned,
        "current_level_xp": current_floor,
        "next_level_xp": next_floor,
        "xp_to_next_level": max(0, next_floor - total_earned),
        "progress_percent": round(progress, 2),
        "is_max_level": info["is_max_level"],
    }
