"""Learning-outcome intake endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from tutorxp.dependencies import get_db, get_redis_dep
from tutorxp.events.outcome_service import process_outcome
from tutorxp.events.schemas import OutcomeReport, OutcomeResponse

router = APIRouter(prefix="/api/v1", tags=["Events"])


@router.post("/events/outcomes", response_model=OutcomeResponse)
async def report_outcome(
    body: OutcomeReport,
    db: AsyncSession = Depends(get_db),
    redis: object = Depends(get_redis_dep),
):
    """Report one learning outcome. Replays of the same event are no-ops."""
    result = await process_outcome(db, redis, **body.model_dump())
    return OutcomeResponse(**result)
