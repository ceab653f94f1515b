"""Health, readiness, and version endpoints."""

from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tutorxp.config import get_settings
from tutorxp.db.models import BadgeDefinition
from tutorxp.dependencies import get_db
from tutorxp.redis_client import redis_status

router = APIRouter()


@router.get("/health")
async def health() -> dict[str, str]:
    """Liveness: 200 while the process is alive."""
    return {"status": "healthy"}


@router.get("/ready")
async def readiness(
    db: AsyncSession = Depends(get_db),  # noqa: B008
) -> dict[str, object]:
    """Readiness: database reachable with a seeded badge catalog, Redis if configured."""
    checks: dict[str, object] = {}

    try:
        result = await db.execute(select(func.count()).select_from(BadgeDefinition))
        badges = result.scalar_one()
        checks["database"] = "ok"
        checks["badge_catalog"] = badges
    except SQLAlchemyError as exc:
        checks["database"] = f"error: {exc}"

    checks["redis"] = await redis_status()

    all_ok = checks["database"] == "ok" and checks["redis"] in ("ok", "not configured")
    return {"status": "ready" if all_ok else "degraded", "checks": checks}


@router.get("/version")
async def version() -> dict[str, str]:
    """Return API version and environment."""
    settings = get_settings()
    return {
        "version": settings.app_version,
        "environment": settings.environment,
    }
