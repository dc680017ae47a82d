"""Pending-upload tracking with a time-to-live and a dead-letter stream.

Every staged image upload is registered with a deadline. A CREATE event
referencing the image confirms it; anything still pending at its deadline
is moved to the dead-letter stream for the reconciler to clean up.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from redis.asyncio import Redis

from steal_token_indexer.queue.streams import MessageDecodeError, QueueMessage, RedisStreamQueue
from steal_token_indexer.storage.repos import EntityRepository

if TYPE_CHECKING:
    from steal_token_indexer.assets import AssetStore
    from steal_token_indexer.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


def _epoch_ms(ts: datetime) -> int:
    if ts.tzinfo is None:
        raise ValueError("timestamp must be timezone-aware")
    return int(ts.timestamp() * 1000)


@dataclass(frozen=True)
class UploadCheckConfig:
    ttl: timedelta = timedelta(seconds=300)
    pending_key: str = "steal_token:upload_check_queue"
    sweep_batch_size: int = 100


class UploadCheckQueue:
    """Sorted set of pending cids scored by their deadline (epoch ms)."""

    def __init__(self, redis: Redis, dead_letters: RedisStreamQueue, *, config: UploadCheckConfig) -> None:
        self._redis = redis
        self._dead_letters = dead_letters
        self._cfg = config

    async def enqueue(self, cid: str, *, now: datetime | None = None) -> datetime:
        """Start tracking an upload; returns its deadline."""
        deadline = (now or datetime.now(UTC)) + self._cfg.ttl
        await self._redis.zadd(self._cfg.pending_key, {cid: _epoch_ms(deadline)})
        logger.debug("Tracking upload %s until %s", cid, deadline.isoformat())
        return deadline

    async def confirm(self, cid: str) -> bool:
        """Stop tracking an upload. Returns True if it was still pending."""
        removed = await self._redis.zrem(self._cfg.pending_key, cid)
        return int(removed) > 0

    async def deadline(self, cid: str) -> datetime | None:
        score = await self._redis.zscore(self._cfg.pending_key, cid)
        if score is None:
            return None
        return datetime.fromtimestamp(float(score) / 1000, tz=UTC)

    async def expire_due(self, *, now: datetime | None = None) -> list[str]:
        """Dead-letter every upload whose deadline has passed.

        Removal from the pending set gates the dead-letter publish, so with
        several sweepers each expired cid is dead-lettered once.
        """
        now = now or datetime.now(UTC)
        due = await self._redis.zrangebyscore(
            self._cfg.pending_key,
            min=0,
            max=_epoch_ms(now),
            start=0,
            num=self._cfg.sweep_batch_size,
            withscores=True,
        )
        expired: list[str] = []
        for raw, score in due:
            cid = raw.decode() if isinstance(raw, bytes) else str(raw)
            if not int(await self._redis.zrem(self._cfg.pending_key, cid)):
                continue
            deadline = datetime.fromtimestamp(float(score) / 1000, tz=UTC)
            await self._dead_letters.publish(
                {"cid": cid, "deadline": deadline.isoformat(), "expired_at": now.isoformat()}
            )
            expired.append(cid)

        if expired:
            logger.warning("Dead-lettered %d unconfirmed upload(s)", len(expired))
        return expired


class UploadReconciler:
    """Consumes expired uploads and discards assets no entity references."""

    def __init__(
        self,
        dead_letters: RedisStreamQueue,
        db: DatabaseManager,
        asset_store: AssetStore,
    ) -> None:
        self._dead_letters = dead_letters
        self._db = db
        self._assets = asset_store

    async def handle(self, message: QueueMessage) -> None:
        try:
            cid = str(message.json()["cid"])
        except (MessageDecodeError, KeyError) as e:
            logger.error("Dropping malformed upload dead letter %s: %s", message.message_id, e)
            await self._dead_letters.nack(message, requeue=False, reason=str(e))
            return

        try:
            async with self._db.get_async_session() as session:
                in_use = await EntityRepository(session).image_in_use(cid)
            if in_use:
                # CREATE landed after the deadline; the asset is live.
                logger.info("Upload %s expired but is referenced by an entity; keeping it", cid)
            else:
                await self._assets.discard(cid)
        except Exception as e:
            logger.warning("Reconciling upload %s failed, requeueing: %s", cid, e)
            await self._dead_letters.nack(message, requeue=True, reason=str(e))
            return

        await self._dead_letters.ack(message)

    async def run_once(self) -> int:
        messages = await self._dead_letters.read()
        for message in messages:
            await self.handle(message)
        return len(messages)
