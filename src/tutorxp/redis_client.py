"""Redis client for notification fan-out and the outcome stream.

Redis is optional for the API: without it notifications stay in the outbox
until the relay job publishes them.
"""

import redis.asyncio as redis

_client: redis.Redis | None = None


async def init_redis(url: str) -> None:
    """Create the shared client."""
    global _client  # noqa: PLW0603
    _client = redis.from_url(  # type: ignore[no-untyped-call]
        url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
    )


async def close_redis() -> None:
    global _client  # noqa: PLW0603
    if _client:
        await _client.aclose()
        _client = None


def get_optional_redis() -> redis.Redis | None:
    """The shared client, or None when fan-out is not configured."""
    return _client


async def redis_status() -> str:
    """Readiness check value: ``ok``, ``not configured`` or ``error: ...``."""
    if _client is None:
        return "not configured"
    try:
        await _client.ping()
    except (redis.RedisError, OSError) as exc:
        return f"error: {exc}"
    return "ok"
