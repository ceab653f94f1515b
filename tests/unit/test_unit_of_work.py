"""Per-account unit of work: contention retries, conflicts, concurrent callers."""

from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from tutorxp.config import get_settings
from tutorxp.db.models import LedgerEntry, Notification
from tutorxp.errors import ConcurrentModificationConflict
from tutorxp.ledger.ledger_service import award, get_account, verify_chain
from tutorxp.ledger.unit import is_contention, serialized
from tutorxp.notifications.notification_service import emit_notification


class _DriverError(Exception):
    def __init__(self, sqlstate: str) -> None:
        super().__init__(sqlstate)
        self.sqlstate = sqlstate


def _locked() -> OperationalError:
    return OperationalError("UPDATE accounts", {}, Exception("database is locked"))


@pytest.fixture
def no_backoff(monkeypatch):
    monkeypatch.setenv("TXP_LEDGER_RETRY_BACKOFF_SECONDS", "0")
    monkeypatch.setenv("TXP_LEDGER_MAX_RETRIES", "2")
    get_settings.cache_clear()


class TestIsContention:
    def test_operational_error(self):
        assert is_contention(_locked()) is True

    @pytest.mark.parametrize("sqlstate", ["40001", "40P01", "55P03"])
    def test_postgres_contention_codes(self, sqlstate):
        assert is_contention(DBAPIError("UPDATE accounts", {}, _DriverError(sqlstate))) is True

    def test_unique_violation_is_not_contention(self):
        assert is_contention(IntegrityError("INSERT", {}, _DriverError("23505"))) is False

    def test_plain_errors(self):
        assert is_contention(ValueError("nope")) is False


class TestSerialized:
    """Retry, give up, propagate."""

    @pytest.mark.asyncio
    async def test_contention_retried_then_committed(self, db_session, no_backoff):
        db = db_session
        failures = [_locked(), _locked()]
        attempts: list[int] = []

        async def operation():
            attempts.append(len(attempts) + 1)
            entry = await award(db, 1, 25, source="test")
            if failures:
                raise failures.pop()
            return entry

        entry = await serialized(db, 1, operation)

        assert attempts == [1, 2, 3]
        assert entry.balance_before == 0
        assert entry.balance_after == 25
        assert (await get_account(db, 1)).available == 25
        assert (await verify_chain(db, 1))["entries"] == 1

    @pytest.mark.asyncio
    async def test_persistent_contention_raises_conflict(self, db_session, no_backoff):
        db = db_session
        attempts: list[int] = []

        async def operation():
            attempts.append(1)
            await award(db, 1, 25, source="test")
            raise _locked()

        with pytest.raises(ConcurrentModificationConflict):
            await serialized(db, 1, operation)

        assert len(attempts) == 3  # first try + TXP_LEDGER_MAX_RETRIES
        assert await get_account(db, 1) is None

    @pytest.mark.asyncio
    async def test_other_database_errors_not_retried(self, db_session, no_backoff):
        attempts: list[int] = []

        async def operation():
            attempts.append(1)
            raise IntegrityError("INSERT", {}, _DriverError("23505"))

        with pytest.raises(IntegrityError):
            await serialized(db_session, 1, operation)
        assert attempts == [1]

    @pytest.mark.asyncio
    async def test_rolled_back_attempt_publishes_nothing(self, db_session, publisher, no_backoff):
        db = db_session
        failures = [_locked()]

        async def operation():
            await emit_notification(db, 1, "xp_milestone", "500 XP", "Milestone reached")
            if failures:
                raise failures.pop()

        await serialized(db, 1, operation, redis=publisher)

        assert publisher.publish.await_count == 1
        result = await db.execute(select(Notification).where(Notification.student_id == 1))
        assert len(result.scalars().all()) == 1


class TestConcurrentCallers:
    """Callers on one account queue behind each other."""

    @pytest.mark.asyncio
    async def test_same_key_awarded_once(self, db_session):
        db = db_session

        entries = await asyncio.gather(*[
            serialized(db, 1, lambda: award(db, 1, 40, source="test", idempotency_key="outcome:evt-9"))
            for _ in range(5)
        ])

        assert len({e.id for e in entries}) == 1
        account = await get_account(db, 1)
        assert account.available == 40
        assert account.total_earned == 40
        result = await db.execute(select(LedgerEntry).where(LedgerEntry.idempotency_key == "outcome:evt-9"))
        assert len(result.scalars().all()) == 1

    @pytest.mark.asyncio
    async def test_distinct_awards_all_land_in_chain(self, db_session):
        db = db_session

        await asyncio.gather(*[
            serialized(db, 1, lambda amount=amount: award(db, 1, amount, source="test"))
            for amount in (5, 10, 15, 20)
        ])

        assert (await get_account(db, 1)).available == 50
        verification = await verify_chain(db, 1)
        assert verification["ok"] is True
        assert verification["entries"] == 4
