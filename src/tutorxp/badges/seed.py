"""Badge seed data: the default student badge catalog."""

from __future__ import annotations

import logging

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from tutorxp.db.models import BadgeDefinition

logger = logging.getLogger(__name__)

BADGE_SEED_DATA: list[dict] = [
    # Streaks
    {
        "id": "streak_3",
        "name": "Warming Up",
        "description": "Practice three days in a row",
        "icon": "flame",
        "category": "streak",
        "tier": "bronze",
        "xp_reward": 25,
        "criteria": {"type": "streak_at_least", "days": 3},
        "display_order": 1,
    },
    {
        "id": "week_warrior",
        "name": "Week Warrior",
        "description": "Maintain a 7-day learning streak",
        "icon": "flame",
        "category": "streak",
        "tier": "silver",
        "xp_reward": 50,
        "criteria": {"type": "streak_at_least", "days": 7},
        "display_order": 2,
    },
    {
        "id": "month_of_mastery",
        "name": "Unstoppable",
        "description": "Maintain a 30-day learning streak",
        "icon": "flame",
        "category": "streak",
        "tier": "gold",
        "xp_reward": 200,
        "criteria": {"type": "streak_at_least", "days": 30},
        "display_order": 3,
    },
    # Volume
    {
        "id": "first_steps",
        "name": "First Steps",
        "description": "Complete your first problem",
        "icon": "footprints",
        "category": "milestone",
        "tier": "bronze",
        "xp_reward": 10,
        "criteria": {"type": "problems_completed_at_least", "count": 1},
        "display_order": 10,
    },
    {
        "id": "problem_solver",
        "name": "Problem Solver",
        "description": "Complete 50 problems",
        "icon": "abacus",
        "category": "milestone",
        "tier": "silver",
        "xp_reward": 100,
        "criteria": {"type": "problems_completed_at_least", "count": 50},
        "display_order": 11,
    },
    {
        "id": "xp_1000",
        "name": "Thousand Club",
        "description": "Earn 1,000 XP in total",
        "icon": "star",
        "category": "milestone",
        "tier": "gold",
        "xp_reward": 100,
        "criteria": {"type": "xp_at_least", "amount": 1000},
        "display_order": 12,
    },
    # Accuracy & mastery
    {
        "id": "math_sharpshooter",
        "name": "Math Sharpshooter",
        "description": "Reach 90% accuracy in math over at least 20 problems",
        "icon": "target",
        "category": "accuracy",
        "tier": "gold",
        "xp_reward": 150,
        "criteria": {
            "type": "all_of",
            "criteria": [
                {"type": "problems_completed_at_least", "count": 20},
                {"type": "accuracy_at_least", "subject": "math", "percent": 90},
            ],
        },
        "subject": "math",
        "display_order": 20,
    },
    {
        "id": "fraction_master",
        "name": "Fraction Master",
        "description": "Reach 80% mastery of fractions",
        "icon": "pie",
        "category": "mastery",
        "tier": "silver",
        "xp_reward": 75,
        "criteria": {"type": "topic_mastery_at_least", "subject": "math", "topic": "fractions", "percent": 80},
        "subject": "math",
        "display_order": 21,
    },
    # Challenges
    {
        "id": "challenger",
        "name": "Challenger",
        "description": "Complete 5 challenges",
        "icon": "trophy",
        "category": "challenge",
        "tier": "silver",
        "xp_reward": 100,
        "criteria": {"type": "challenges_completed_at_least", "count": 5},
        "display_order": 30,
    },
    # Secret
    {
        "id": "perfectionist",
        "name": "Perfectionist",
        "description": "Keep a 14-day streak with 95% math accuracy",
        "icon": "diamond",
        "category": "secret",
        "tier": "platinum",
        "xp_reward": 250,
        "criteria": {
            "type": "all_of",
            "criteria": [
                {"type": "streak_at_least", "days": 14},
                {"type": "accuracy_at_least", "subject": "math", "percent": 95},
            ],
        },
        "is_secret": True,
        "display_order": 99,
    },
]

_UPDATABLE = (
    "name", "description", "icon", "category", "tier", "xp_reward",
    "criteria", "subject", "is_secret", "display_order",
)


async def seed_badges(db: AsyncSession) -> int:
    """Upsert the default badge definitions. Returns number of badges seeded."""
    insert = sqlite_insert if db.get_bind().dialect.name == "sqlite" else pg_insert
    seeded = 0
    for badge_data in BADGE_SEED_DATA:
        values = {"is_secret": False, "subject": None, **badge_data}
        stmt = insert(BadgeDefinition).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["id"],
            set_={name: stmt.excluded[name] for name in _UPDATABLE},
        )
        await db.execute(stmt)
        seeded += 1

    await db.commit()
    logger.info("Seeded %d badge definitions", seeded)
    return seeded
