"""Notification outbox for the external notification collaborator.

Notifications are:
1. Persisted in the database in the same transaction as the change that caused them
2. Published to Redis pub/sub once that transaction has committed
3. Re-published by the relay job if the first publish did not go through

This service never formats or delivers messages to students itself.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tutorxp.config import get_settings
from tutorxp.db.models import Notification

logger = logging.getLogger(__name__)

VALID_TYPES = {
    "badge_earned", "level_up", "challenge_completed", "leaderboard_rank", "xp_milestone", "fulfillment_requested",
}

PENDING_KEY = "pending_notifications"


async def emit_notification(
    db: AsyncSession,
    student_id: int,
    type_: str,
    title: str,
    message: str,
    data: dict[str, Any] | None = None,
) -> Notification:
    """Persist a notification and queue it for publishing after commit."""
    if type_ not in VALID_TYPES:
        raise ValueError(f"Invalid notification type: {type_}. Must be one of {VALID_TYPES}")

    notification = Notification(
        student_id=student_id,
        type=type_,
        title=title,
        message=message,
        data=data or {},
        delivered=False,
        created_at=datetime.now(timezone.utc),
    )
    db.add(notification)
    await db.flush()

    db.info.setdefault(PENDING_KEY, []).append(notification)
    return notification


def discard_pending(db: AsyncSession) -> None:
    """Forget queued notifications of a rolled back transaction."""
    db.info.pop(PENDING_KEY, None)


def to_payload(notification: Notification) -> dict[str, Any]:
    return {
        "id": notification.id,
        "student_id": notification.student_id,
        "type": notification.type,
        "title": notification.title,
        "message": notification.message,
        "data": notification.data,
        "timestamp": notification.created_at.isoformat() if notification.created_at else None,
    }


async def _publish(redis: Any, notification: Notification) -> bool:
    try:
        await redis.publish(get_settings().notification_channel, json.dumps(to_payload(notification)))
    except Exception:
        logger.warning(
            "Failed to publish notification %s for student %s",
            notification.id,
            notification.student_id,
            exc_info=True,
        )
        return False
    return True


async def publish_pending(db: AsyncSession, redis: Any | None) -> int:
    """Publish notifications queued by the last committed transaction.

    Must be called after commit. Returns the number published; anything that
    fails stays undelivered for the relay job.
    """
    pending: list[Notification] = db.info.pop(PENDING_KEY, [])
    if redis is None or not pending:
        return 0

    published = 0
    for notification in pending:
        if await _publish(redis, notification):
            notification.delivered = True
            published += 1
    if published:
        await db.commit()
    return published


async def relay_undelivered(
    db: AsyncSession,
    redis: Any,
    min_age_seconds: int = 30,
    batch_size: int = 200,
) -> int:
    """Re-publish notifications whose first publish never happened."""
    cutoff = datetime.now(timezone.utc) - timedelta(seconds=min_age_seconds)
    result = await db.execute(
        select(Notification)
        .where(Notification.delivered.is_(False), Notification.created_at <= cutoff)
        .order_by(Notification.id.asc())
        .limit(batch_size)
    )
    rows = list(result.scalars().all())

    relayed = 0
    for notification in rows:
        if not await _publish(redis, notification):
            break
        notification.delivered = True
        relayed += 1
    await db.commit()
    return relayed


async def get_notifications(
    db: AsyncSession,
    student_id: int,
    page: int = 1,
    per_page: int = 20,
) -> tuple[list[Notification], int]:
    """Get a student's notifications (paginated, most recent first)."""
    offset = (page - 1) * per_page

    total_result = await db.execute(
        select(func.count()).select_from(Notification).where(Notification.student_id == student_id)
    )
    total = total_result.scalar_one()

    result = await db.execute(
        select(Notification)
        .where(Notification.student_id == student_id)
        .order_by(Notification.id.desc())
        .offset(offset)
        .limit(per_page)
    )
    return list(result.scalars().all()), total
