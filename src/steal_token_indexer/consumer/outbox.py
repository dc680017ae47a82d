"""Publishes pending notifications from the outbox table."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from redis.exceptions import RedisError

from steal_token_indexer.storage.repos import NotificationOutboxRepository

if TYPE_CHECKING:
    from steal_token_indexer.queue.streams import RedisStreamQueue
    from steal_token_indexer.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


class OutboxRelay:
    """Moves committed notifications to the notification stream.

    A row is marked published only after its XADD succeeded, so a crash
    in between republishes it on the next pass (at-least-once).
    """

    def __init__(
        self,
        db: DatabaseManager,
        notifications: RedisStreamQueue,
        *,
        batch_size: int = 100,
    ) -> None:
        self._db = db
        self._notifications = notifications
        self._batch_size = batch_size
        self._wake = asyncio.Event()

    def wake(self) -> None:
        """Ask the relay loop to publish without waiting for its interval."""
        self._wake.set()

    async def publish_pending(self) -> int:
        """Publish one batch of pending notifications.

        Returns:
            Number of notifications published.

        Raises:
            RedisError: If the stream rejected a publish; rows published
                before the failure are still marked.
        """
        published: list[str] = []
        error: RedisError | None = None

        async with self._db.get_async_session() as session:
            repo = NotificationOutboxRepository(session)
            for dto in await repo.list_pending(limit=self._batch_size):
                try:
                    await self._notifications.publish(dto.to_payload())
                except RedisError as e:
                    error = e
                    break
                published.append(dto.event_id)
            await repo.mark_published(published)

        if published:
            logger.debug("Published %d notification(s)", len(published))
        if error is not None:
            raise error
        return len(published)

    async def run(self, stop_event: asyncio.Event, *, interval: float = 1.0) -> None:
        while not stop_event.is_set():
            try:
                while await self.publish_pending() >= self._batch_size:
                    pass
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning("Outbox relay error: %s", e)

            try:
                await asyncio.wait_for(self._wake.wait(), timeout=interval)
            except TimeoutError:
                pass
            self._wake.clear()
