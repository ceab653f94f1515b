"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy.exc import SQLAlchemyError

from tutorxp.badges.router import router as badges_router
from tutorxp.badges.seed import seed_badges
from tutorxp.challenges.router import router as challenges_router
from tutorxp.config import get_settings
from tutorxp.database import close_db, get_session_factory, init_db
from tutorxp.events.router import router as events_router
from tutorxp.health.router import router as health_router
from tutorxp.leaderboard.router import router as leaderboard_router
from tutorxp.ledger.router import router as ledger_router
from tutorxp.middleware import setup_middleware
from tutorxp.notifications.router import router as notifications_router
from tutorxp.redemptions.router import router as redemptions_router
from tutorxp.redis_client import close_redis, init_redis
from tutorxp.roster.router import router as roster_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    await init_db(settings.database_url)
    if settings.redis_url:
        await init_redis(settings.redis_url)

    # Seed badge definitions (idempotent)
    try:
        async with get_session_factory()() as db:
            await seed_badges(db)
    except SQLAlchemyError:
        logger.warning("Badge seeding failed (tables may not exist yet)", exc_info=True)

    yield

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="TutorXP API",
        description="XP ledger, badges, challenges, leaderboards and reward redemptions for the tutoring platform",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(ledger_router)
    app.include_router(badges_router)
    app.include_router(challenges_router)
    app.include_router(leaderboard_router)
    app.include_router(redemptions_router)
    app.include_router(events_router)
    app.include_router(notifications_router)
    app.include_router(roster_router)

    return app


app = create_app()
