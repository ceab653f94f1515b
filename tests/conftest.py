"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

import tutorxp.db.models  # noqa: F401
from tutorxp.badges.seed import seed_badges
from tutorxp.config import get_settings
from tutorxp.database import close_db, get_engine, get_session_factory, init_db
from tutorxp.db.base import Base
from tutorxp.ledger.ledger_service import award
from tutorxp.ledger.unit import serialized
from tutorxp.main import create_app


@pytest.fixture(autouse=True)
def _fresh_settings():
    """Tests that patch TXP_* variables get a fresh Settings instance."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def db_session(tmp_path) -> AsyncGenerator[AsyncSession, None]:
    """Session on a fresh SQLite database file with the full schema."""
    await init_db(f"sqlite+aiosqlite:///{tmp_path / 'tutorxp.db'}")
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with get_session_factory()() as session:
        yield session

    await close_db()


@pytest_asyncio.fixture
async def seeded_db(db_session: AsyncSession) -> AsyncSession:
    """DB session with the default badge catalog seeded."""
    await seed_badges(db_session)
    return db_session


@pytest_asyncio.fixture
async def client(seeded_db: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app; requests open their own sessions on the test database."""
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def publisher() -> AsyncMock:
    """Stand-in for the Redis notification channel."""
    redis = AsyncMock()
    redis.publish = AsyncMock(return_value=1)
    return redis


@pytest.fixture
def now() -> datetime:
    return datetime.now(timezone.utc)


@pytest.fixture
def fund(db_session: AsyncSession):
    """Give a student earned XP as one committed unit."""

    async def _fund(student_id: int, amount: int, key: str | None = None):
        return await serialized(
            db_session,
            student_id,
            lambda: award(db_session, student_id, amount, source="test", idempotency_key=key),
        )

    return _fund
