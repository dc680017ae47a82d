"""Tests for the notification outbox relay."""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from steal_token_indexer.consumer.outbox import OutboxRelay
from steal_token_indexer.storage.database import DatabaseManager
from steal_token_indexer.storage.repos import NotificationDTO, NotificationOutboxRepository

ENTITY_ID = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"
HOLDER = "4Nd1mBQtrMJVYVfKf2PJy9NZUZdTAsp7D4xWLs4gDB4T"
STEALER = "5ZWj7a1f8tWkjBESHKgrLmXshuXxqeY9SYcfbshpAqPG"


async def _seed(db: DatabaseManager, count: int) -> None:
    async with db.get_async_session() as session:
        repo = NotificationOutboxRepository(session)
        for i in range(count):
            await repo.insert_if_absent(
                NotificationDTO(
                    event_id=f"sig-{i}",
                    kind="steal",
                    entity_id=ENTITY_ID,
                    from_address=STEALER,
                    to_address=HOLDER,
                    amount=Decimal("0.56"),
                )
            )


async def _pending(db: DatabaseManager) -> list[str]:
    async with db.get_async_session() as session:
        return [dto.event_id for dto in await NotificationOutboxRepository(session).list_pending()]


class TestPublishPending:
    """Tests for OutboxRelay.publish_pending."""

    @pytest.mark.asyncio
    async def test_publishes_and_marks(self, db_manager: DatabaseManager) -> None:
        await _seed(db_manager, 2)
        notifications = AsyncMock()

        assert await OutboxRelay(db_manager, notifications).publish_pending() == 2

        payload = notifications.publish.await_args_list[0].args[0]
        assert payload == {
            "kind": "steal",
            "from": STEALER,
            "to": HOLDER,
            "entity_id": ENTITY_ID,
            "amount": "0.56",
        }
        assert await _pending(db_manager) == []

    @pytest.mark.asyncio
    async def test_nothing_pending(self, db_manager: DatabaseManager) -> None:
        notifications = AsyncMock()
        assert await OutboxRelay(db_manager, notifications).publish_pending() == 0
        notifications.publish.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_partial_failure_marks_published_rows(self, db_manager: DatabaseManager) -> None:
        await _seed(db_manager, 3)
        notifications = AsyncMock()
        notifications.publish.side_effect = [None, RedisConnectionError("down"), None]

        with pytest.raises(RedisConnectionError):
            await OutboxRelay(db_manager, notifications).publish_pending()

        assert len(await _pending(db_manager)) == 2

    @pytest.mark.asyncio
    async def test_batch_size(self, db_manager: DatabaseManager) -> None:
        await _seed(db_manager, 3)
        notifications = AsyncMock()

        assert await OutboxRelay(db_manager, notifications, batch_size=2).publish_pending() == 2
        assert len(await _pending(db_manager)) == 1


class TestRun:
    """Tests for the relay loop."""

    @pytest.mark.asyncio
    async def test_wake_publishes_promptly(self, db_manager: DatabaseManager) -> None:
        notifications = AsyncMock()
        relay = OutboxRelay(db_manager, notifications)
        stop = asyncio.Event()
        task = asyncio.create_task(relay.run(stop, interval=30))

        await asyncio.sleep(0.05)
        await _seed(db_manager, 1)
        relay.wake()
        for _ in range(100):
            if notifications.publish.await_count:
                break
            await asyncio.sleep(0.01)

        stop.set()
        relay.wake()
        await asyncio.wait_for(task, timeout=1.0)
        assert notifications.publish.await_count == 1
