"""Shared FastAPI dependencies and path parameter types."""

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Path

from tutorxp.database import get_session as _get_session
from tutorxp.redis_client import get_optional_redis

get_db = _get_session

# Student ids come from the platform's user service and are always positive
StudentId = Annotated[int, Path(gt=0)]


async def get_redis_dep() -> AsyncGenerator[object, None]:
    """Yield the Redis client, or None without fan-out."""
    yield get_optional_redis()
