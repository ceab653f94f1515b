"""Roster sync from the institutional hierarchy.

The hierarchy pushes a student's full set of class/school/grade memberships;
the global scope needs no row. Leaderboard populations, challenge eligibility
and grade-targeted badges read these rows.
"""

from __future__ import annotations

import logging

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from tutorxp.db.models import ScopeMembership

logger = logging.getLogger(__name__)

ROSTER_SCOPES = {"class", "school", "grade"}


async def get_scopes(db: AsyncSession, student_id: int) -> list[ScopeMembership]:
    result = await db.execute(
        select(ScopeMembership)
        .where(ScopeMembership.student_id == student_id)
        .order_by(ScopeMembership.scope, ScopeMembership.scope_key)
    )
    return list(result.scalars().all())


async def replace_scopes(
    db: AsyncSession,
    student_id: int,
    memberships: list[tuple[str, str]],
) -> list[ScopeMembership]:
    """Replace every membership of a student with ``memberships`` and commit.

    A student belongs to at most one grade.
    """
    wanted = sorted(set(memberships))
    for scope, scope_key in wanted:
        if scope not in ROSTER_SCOPES:
            raise ValueError(f"Invalid scope: {scope}. Must be one of {sorted(ROSTER_SCOPES)}")
        if not scope_key:
            raise ValueError(f"scope_key is required for {scope}")
    if sum(1 for scope, _ in wanted if scope == "grade") > 1:
        raise ValueError("A student belongs to at most one grade")

    await db.execute(delete(ScopeMembership).where(ScopeMembership.student_id == student_id))
    db.add_all(
        ScopeMembership(student_id=student_id, scope=scope, scope_key=scope_key)
        for scope, scope_key in wanted
    )
    await db.commit()
    logger.info("Roster for student %s: %d memberships", student_id, len(wanted))
    return await get_scopes(db, student_id)
