"""arq worker jobs: leaderboard snapshots, period closes, notification relay
and the learning-outcome stream consumer.

Run with ``arq tutorxp.workers.jobs.WorkerSettings``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import redis.asyncio as aioredis
from arq import cron, func
from arq.connections import RedisSettings

from tutorxp.config import get_settings
from tutorxp.database import close_db, get_session_factory, init_db
from tutorxp.events.consumer import OutcomeConsumer
from tutorxp.leaderboard.leaderboard_service import BOARD_PERIODS, snapshot_boards
from tutorxp.ledger.ledger_service import reset_period_counters
from tutorxp.middleware.logging import setup_logging
from tutorxp.notifications.notification_service import relay_undelivered
from tutorxp.periods import period_window

logger = logging.getLogger(__name__)

WEEKLY_BOARDS = [b for b, p in BOARD_PERIODS.items() if p == "weekly"]
MONTHLY_BOARDS = [b for b, p in BOARD_PERIODS.items() if p == "monthly"]
HOURLY_BOARDS = [b for b, p in BOARD_PERIODS.items() if p != "weekly"]

# A period that started this recently belongs to the closing job
ROLLOVER_GRACE = timedelta(minutes=10)


async def startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Initialize DB, the app Redis client and the outcome consumer."""
    settings = get_settings()
    setup_logging(settings)
    await init_db(settings.database_url)

    redis_client = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
    )
    ctx["app_redis"] = redis_client
    ctx["consumer"] = OutcomeConsumer(
        redis_client=redis_client,
        session_factory=get_session_factory(),
        stream=settings.outcome_stream,
        group=settings.outcome_consumer_group,
        consumer_name=settings.outcome_consumer_name,
    )

    # ctx["redis"] is arq's own pool; one consumer job per worker name
    await ctx["redis"].enqueue_job("consume_outcomes", _job_id=f"consume_outcomes:{settings.outcome_consumer_name}")
    logger.info("Worker started (consumer=%s)", settings.outcome_consumer_name)


async def shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    """Clean up on worker shutdown."""
    consumer: OutcomeConsumer | None = ctx.get("consumer")
    if consumer:
        consumer.stop()

    redis_client: aioredis.Redis | None = ctx.get("app_redis")
    if redis_client:
        await redis_client.aclose()
    await close_db()
    logger.info("Worker shut down")


async def consume_outcomes(ctx: dict) -> None:  # type: ignore[type-arg]
    """Long-running job: apply learning outcomes from the Redis stream."""
    consumer: OutcomeConsumer = ctx["consumer"]
    await consumer.run()


def _in_rollover(period: str, now: datetime) -> bool:
    _key, start, _end = period_window(period, now)
    return start is not None and now - start < ROLLOVER_GRACE


async def snapshot_leaderboards(ctx: dict) -> int:  # type: ignore[type-arg]
    """Every 5 minutes: weekly boards. First run of each hour: every other board too.

    Boards whose period just rolled over are left to close_week / close_month,
    which snapshot the old period before its counters are reset.
    """
    now = datetime.now(timezone.utc)
    board_types = list(WEEKLY_BOARDS)
    if now.minute < 5:
        board_types += HOURLY_BOARDS
    board_types = [b for b in board_types if not _in_rollover(BOARD_PERIODS[b], now)]
    if not board_types:
        return 0

    async with get_session_factory()() as db:
        written = await snapshot_boards(db, board_types, at=now, redis=ctx.get("app_redis"))
    logger.info("Leaderboard snapshot complete: %d boards", written)
    return written


async def close_week(ctx: dict) -> int:  # type: ignore[type-arg]
    """Monday 00:00 UTC: final snapshots of last week, then weekly counter reset."""
    at = datetime.now(timezone.utc).replace(second=0, microsecond=0) - timedelta(minutes=1)
    async with get_session_factory()() as db:
        written = await snapshot_boards(db, WEEKLY_BOARDS, at=at, redis=ctx.get("app_redis"))
        reset = await reset_period_counters(db, "weekly")
    logger.info("Weekly snapshot complete: %d boards, %d accounts reset", written, reset)
    return written


async def close_month(ctx: dict) -> int:  # type: ignore[type-arg]
    """1st of the month 00:05 UTC: final snapshots of last month, then monthly reset."""
    now = datetime.now(timezone.utc)
    at = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0) - timedelta(minutes=1)
    async with get_session_factory()() as db:
        written = await snapshot_boards(db, MONTHLY_BOARDS, at=at, redis=ctx.get("app_redis"))
        reset = await reset_period_counters(db, "monthly")
    logger.info("Monthly snapshot complete: %d boards, %d accounts reset", written, reset)
    return written


async def relay_notifications(ctx: dict) -> int:  # type: ignore[type-arg]
    """Every minute: re-publish notifications whose first publish failed."""
    async with get_session_factory()() as db:
        relayed = await relay_undelivered(db, ctx["app_redis"])
    if relayed:
        logger.info("Relayed %d undelivered notifications", relayed)
    return relayed


class WorkerSettings:
    """arq worker settings for scheduled jobs and the outcome consumer."""

    functions = [func(consume_outcomes, timeout=timedelta(days=365), keep_result=0, max_tries=1)]
    cron_jobs = [
        cron(snapshot_leaderboards, minute=set(range(0, 60, 5))),
        cron(close_week, weekday=0, hour=0, minute=0, unique=True),
        cron(close_month, day=1, hour=0, minute=5, unique=True),
        cron(relay_notifications, second=0, unique=True),
    ]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = RedisSettings.from_dsn(get_settings().redis_url)
    max_jobs = 4
    job_timeout = 600
    allow_abort_jobs = True
