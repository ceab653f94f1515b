"""Per-account unit of work.

Every balance-mutating operation for one account runs through ``serialized``:
the read -> validate -> write -> commit span holds a per-account lock in this
process, and the account row is locked with SELECT ... FOR UPDATE in the
database so other processes queue behind it too.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from tutorxp.config import get_settings
from tutorxp.errors import ConcurrentModificationConflict
from tutorxp.notifications.notification_service import discard_pending, publish_pending

logger = logging.getLogger(__name__)

T = TypeVar("T")

# serialization_failure, deadlock_detected, lock_not_available
CONTENTION_SQLSTATES = {"40001", "40P01", "55P03"}

_locks: weakref.WeakValueDictionary[int, asyncio.Lock] = weakref.WeakValueDictionary()


def account_lock(account_id: int) -> asyncio.Lock:
    """Get the process-local lock for an account."""
    lock = _locks.get(account_id)
    if lock is None:
        lock = asyncio.Lock()
        _locks[account_id] = lock
    return lock


def is_contention(exc: BaseException) -> bool:
    """True for lock/serialization failures worth retrying."""
    if isinstance(exc, OperationalError):
        return True
    if isinstance(exc, DBAPIError):
        orig = exc.orig
        code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
        return code in CONTENTION_SQLSTATES
    return False


async def serialized(
    db: AsyncSession,
    account_id: int,
    operation: Callable[[], Awaitable[T]],
    redis: Any | None = None,
) -> T:
    """Run ``operation`` as one committed unit for ``account_id``.

    ``operation`` must be safe to re-run from scratch: on contention the
    transaction is rolled back and retried with exponential backoff. Other
    errors roll back and propagate. Queued notifications are published after
    the commit.
    """
    settings = get_settings()
    attempt = 0
    while True:
        async with account_lock(account_id):
            try:
                result = await operation()
                await db.commit()
            except DBAPIError as exc:
                await db.rollback()
                discard_pending(db)
                if not is_contention(exc):
                    raise
                if attempt >= settings.ledger_max_retries:
                    logger.warning(
                        "Account %s: contention persisted after %d retries",
                        account_id,
                        attempt,
                    )
                    raise ConcurrentModificationConflict(
                        f"Account {account_id} is busy, retry later"
                    ) from exc
            except Exception:
                await db.rollback()
                discard_pending(db)
                raise
            else:
                break

        attempt += 1
        delay = settings.ledger_retry_backoff_seconds * (2 ** (attempt - 1))
        logger.info("Account %s: retrying after contention (attempt %d, %.3fs)", account_id, attempt, delay)
        await asyncio.sleep(delay)

    await publish_pending(db, redis)
    return result
