"""Queue consumer that applies ingestion events to the projection store."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from steal_token_indexer.assets import AssetStore, LoggingAssetStore
from steal_token_indexer.consumer.applier import ProjectionApplier
from steal_token_indexer.ingestor.models import IngestionEvent, MalformedEventError
from steal_token_indexer.queue.streams import MessageDecodeError, QueueMessage

if TYPE_CHECKING:
    from steal_token_indexer.consumer.outbox import OutboxRelay
    from steal_token_indexer.queue.streams import RedisStreamQueue
    from steal_token_indexer.queue.upload_checks import UploadCheckQueue
    from steal_token_indexer.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


@dataclass
class ConsumerStats:
    """Statistics for the event consumer."""

    acked: int = 0
    requeued: int = 0
    dead_lettered: int = 0
    duplicates: int = 0
    last_event_time: datetime | None = None
    last_error: str | None = None


class EventConsumer:
    """Applies events from the durable queue with manual acknowledgement.

    A message is acknowledged only after its projection change committed.
    Any failure while applying sends it back to the queue; a body that
    cannot be decoded goes straight to the dead-letter stream.
    """

    def __init__(
        self,
        events: RedisStreamQueue,
        db: DatabaseManager,
        *,
        applier: ProjectionApplier | None = None,
        upload_checks: UploadCheckQueue | None = None,
        asset_store: AssetStore | None = None,
        outbox_relay: OutboxRelay | None = None,
    ) -> None:
        self._events = events
        self._db = db
        self._applier = applier or ProjectionApplier()
        self._upload_checks = upload_checks
        self._assets = asset_store or LoggingAssetStore()
        self._outbox_relay = outbox_relay
        self._stats = ConsumerStats()

    @property
    def stats(self) -> ConsumerStats:
        return self._stats

    async def handle(self, message: QueueMessage) -> bool:
        """Process one message. Returns True if it was acknowledged."""
        try:
            event = IngestionEvent.from_dict(message.json())
        except (MessageDecodeError, MalformedEventError) as e:
            logger.error("Poison message %s: %s", message.message_id, e)
            await self._events.nack(message, requeue=False, reason=f"undecodable: {e}")
            self._stats.dead_lettered += 1
            return False

        try:
            async with self._db.get_async_session() as session:
                result = await self._applier.apply(session, event)

            if result.asset_cid:
                if self._upload_checks is not None:
                    await self._upload_checks.confirm(result.asset_cid)
                await self._assets.promote(result.asset_cid)
        except Exception as e:
            logger.warning(
                "Applying %s %s failed (attempt %d), requeueing: %s",
                event.kind.value,
                event.id,
                message.attempts + 1,
                e,
            )
            self._stats.requeued += 1
            self._stats.last_error = str(e)
            await self._events.nack(message, requeue=True, reason=str(e))
            return False

        await self._events.ack(message)
        self._stats.acked += 1
        self._stats.last_event_time = event.observed_at
        if not result.history_inserted:
            self._stats.duplicates += 1
        if self._outbox_relay is not None:
            self._outbox_relay.wake()
        return True

    async def run_once(self) -> int:
        """Read and handle one batch. Returns the number of messages seen."""
        messages = await self._events.read()
        for message in messages:
            await self.handle(message)
        return len(messages)

    async def run(self, stop_event: asyncio.Event) -> None:
        """Consume until ``stop_event`` is set; the current batch finishes first."""
        while not stop_event.is_set():
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._stats.last_error = str(e)
                logger.warning("Consumer read error: %s", e)
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=1.0)
                except TimeoutError:
                    pass
