"""Redis Stream consumer for learning outcomes.

Reads ``settings.outcome_stream`` with XREADGROUP. Each message is validated,
applied through ``process_outcome`` in its own session and acknowledged only
after the unit commits, so delivery is at-least-once and replays are absorbed
by the outcome key. Messages that fail stay pending and are re-read by the
run loop after the next fresh read.
"""

from __future__ import annotations

import asyncio
import json
import logging

import redis.asyncio as aioredis
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tutorxp.errors import RuleConfigurationError
from tutorxp.events.outcome_service import process_outcome
from tutorxp.events.schemas import OutcomeReport

logger = logging.getLogger(__name__)


def parse_message(data: dict[str, str]) -> OutcomeReport:
    """Build a report from a stream message (``data`` JSON field or flat fields)."""
    raw = data.get("data")
    payload = json.loads(raw) if isinstance(raw, str) else dict(data)
    return OutcomeReport.model_validate(payload)


class OutcomeConsumer:
    """Processes learning outcomes from a Redis Stream."""

    def __init__(
        self,
        redis_client: aioredis.Redis,
        session_factory: async_sessionmaker[AsyncSession],
        stream: str,
        group: str,
        consumer_name: str = "txp-worker-1",
    ) -> None:
        self.redis = redis_client
        self.session_factory = session_factory
        self.stream = stream
        self.group = group
        self.consumer_name = consumer_name
        self._running = False
        self._processed = 0
        self._rejected = 0
        self._errors = 0
        self._retry_pending = False

    async def setup_group(self) -> None:
        """Create the consumer group (idempotent)."""
        try:
            await self.redis.xgroup_create(self.stream, self.group, id="0", mkstream=True)
            logger.info("Created consumer group %s for %s", self.group, self.stream)
        except aioredis.ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def handle(self, data: dict[str, str]) -> dict | None:
        """Apply one message. Returns the outcome result, None if rejected."""
        try:
            report = parse_message(data)
        except (json.JSONDecodeError, ValidationError) as e:
            self._rejected += 1
            logger.warning("Rejected malformed outcome message: %s", e)
            return None

        async with self.session_factory() as db:
            try:
                return await process_outcome(db, self.redis, **report.model_dump())
            except (ValueError, RuleConfigurationError) as e:
                self._rejected += 1
                logger.warning("Rejected outcome for student %s: %s", report.student_id, e)
                return None

    async def consume(self, count: int = 100, block_ms: int | None = 5000, start_id: str = ">") -> int:
        """Read and process a batch. Returns the number of acknowledged messages.

        ``start_id="0"`` re-reads this consumer's pending (unacknowledged) messages.
        """
        try:
            events = await self.redis.xreadgroup(
                groupname=self.group,
                consumername=self.consumer_name,
                streams={self.stream: start_id},
                count=count,
                block=block_ms,
            )
        except aioredis.ResponseError as e:
            logger.error("XREADGROUP error: %s", e)
            return 0

        if not events:
            return 0

        acked = 0
        for _stream_name, messages in events:
            for msg_id, data in messages:
                try:
                    await self.handle(data)
                    await self.redis.xack(self.stream, self.group, msg_id)
                    acked += 1
                    self._processed += 1
                except Exception:
                    # Left pending; the run loop re-reads it
                    self._errors += 1
                    self._retry_pending = True
                    logger.exception("Error handling outcome message %s", msg_id)
        return acked

    async def run(self) -> None:
        """Main consumer loop; runs until ``stop()``."""
        await self.setup_group()
        self._running = True
        while await self.consume(start_id="0", block_ms=None):
            pass
        logger.info("Outcome consumer started (consumer=%s, stream=%s)", self.consumer_name, self.stream)

        reread = False
        while self._running:
            try:
                if reread:
                    self._retry_pending = False
                    await self.consume(start_id="0", block_ms=None)
                else:
                    await self.consume()
            except Exception:
                logger.exception("Consumer loop error")
                await asyncio.sleep(1)
            # Failed entries are retried between fresh reads until a retry pass clears them
            reread = self._retry_pending and not reread

        logger.info(
            "Outcome consumer stopped: processed=%d rejected=%d errors=%d",
            self._processed, self._rejected, self._errors,
        )

    def stop(self) -> None:
        """Signal the consumer to stop."""
        self._running = False
