"""Roster sync endpoint for the institutional hierarchy."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from tutorxp.dependencies import StudentId, get_db
from tutorxp.roster.roster_service import get_scopes, replace_scopes
from tutorxp.roster.schemas import ScopeItem, ScopesRequest, ScopesResponse

router = APIRouter(prefix="/api/v1", tags=["Roster"])


@router.get("/students/{student_id}/scopes", response_model=ScopesResponse)
async def student_scopes(student_id: StudentId, db: AsyncSession = Depends(get_db)):
    """Current class/school/grade memberships."""
    rows = await get_scopes(db, student_id)
    return ScopesResponse(
        student_id=student_id,
        memberships=[ScopeItem(scope=r.scope, scope_key=r.scope_key) for r in rows],
    )


@router.put("/students/{student_id}/scopes", response_model=ScopesResponse)
async def put_student_scopes(student_id: StudentId, body: ScopesRequest, db: AsyncSession = Depends(get_db)):
    """Replace the student's memberships with the given set."""
    rows = await replace_scopes(db, student_id, [(m.scope, m.scope_key) for m in body.memberships])
    return ScopesResponse(
        student_id=student_id,
        memberships=[ScopeItem(scope=r.scope, scope_key=r.scope_key) for r in rows],
    )
