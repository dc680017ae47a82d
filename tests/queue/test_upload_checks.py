"""Tests for pending-upload tracking and reconciliation."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from steal_token_indexer.ingestor.models import EntitySnapshot
from steal_token_indexer.queue.streams import QueueMessage
from steal_token_indexer.queue.upload_checks import (
    UploadCheckConfig,
    UploadCheckQueue,
    UploadReconciler,
)
from steal_token_indexer.storage.database import DatabaseManager
from steal_token_indexer.storage.repos import EntityRepository

CID = "QmYwAPJzv5CZsnA625s3Xf2nemtYgPpHdWEz79ojWnPbdG"
PENDING = "steal_token:upload_check_queue"
NOW = datetime(2026, 10, 17, 12, 0, tzinfo=UTC)


@pytest.fixture
def mock_redis() -> MagicMock:
    redis = MagicMock()
    redis.zadd = AsyncMock(return_value=1)
    redis.zrem = AsyncMock(return_value=1)
    redis.zscore = AsyncMock(return_value=None)
    redis.zrangebyscore = AsyncMock(return_value=[])
    return redis


@pytest.fixture
def dead_letters() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def upload_checks(mock_redis: MagicMock, dead_letters: AsyncMock) -> UploadCheckQueue:
    config = UploadCheckConfig(ttl=timedelta(minutes=5), pending_key=PENDING)
    return UploadCheckQueue(mock_redis, dead_letters, config=config)


class TestUploadCheckQueue:
    """Tests for UploadCheckQueue."""

    @pytest.mark.asyncio
    async def test_enqueue_scores_by_deadline(
        self, upload_checks: UploadCheckQueue, mock_redis: MagicMock
    ) -> None:
        deadline = await upload_checks.enqueue(CID, now=NOW)

        assert deadline == NOW + timedelta(minutes=5)
        mock_redis.zadd.assert_awaited_once_with(PENDING, {CID: int(deadline.timestamp() * 1000)})

    @pytest.mark.asyncio
    async def test_confirm(self, upload_checks: UploadCheckQueue, mock_redis: MagicMock) -> None:
        assert await upload_checks.confirm(CID) is True
        mock_redis.zrem.return_value = 0
        assert await upload_checks.confirm(CID) is False

    @pytest.mark.asyncio
    async def test_deadline(self, upload_checks: UploadCheckQueue, mock_redis: MagicMock) -> None:
        assert await upload_checks.deadline(CID) is None
        mock_redis.zscore.return_value = NOW.timestamp() * 1000
        assert await upload_checks.deadline(CID) == NOW

    @pytest.mark.asyncio
    async def test_naive_timestamp_rejected(self, upload_checks: UploadCheckQueue) -> None:
        with pytest.raises(ValueError):
            await upload_checks.enqueue(CID, now=datetime(2026, 10, 17))

    @pytest.mark.asyncio
    async def test_expire_due_dead_letters(
        self, upload_checks: UploadCheckQueue, mock_redis: MagicMock, dead_letters: AsyncMock
    ) -> None:
        deadline_ms = NOW.timestamp() * 1000 - 1
        mock_redis.zrangebyscore.return_value = [(CID.encode(), deadline_ms)]

        expired = await upload_checks.expire_due(now=NOW)

        assert expired == [CID]
        assert mock_redis.zrangebyscore.await_args.kwargs["max"] == int(NOW.timestamp() * 1000)
        payload = dead_letters.publish.await_args.args[0]
        assert payload["cid"] == CID
        assert payload["expired_at"] == NOW.isoformat()

    @pytest.mark.asyncio
    async def test_expire_skips_cids_claimed_elsewhere(
        self, upload_checks: UploadCheckQueue, mock_redis: MagicMock, dead_letters: AsyncMock
    ) -> None:
        mock_redis.zrangebyscore.return_value = [(CID.encode(), 1.0)]
        mock_redis.zrem.return_value = 0

        assert await upload_checks.expire_due(now=NOW) == []
        dead_letters.publish.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_nothing_due(self, upload_checks: UploadCheckQueue, dead_letters: AsyncMock) -> None:
        assert await upload_checks.expire_due(now=NOW) == []
        dead_letters.publish.assert_not_awaited()


class TestUploadReconciler:
    """Tests for UploadReconciler."""

    @pytest.mark.asyncio
    async def test_discards_orphan(self, dead_letters: AsyncMock, db_manager: DatabaseManager) -> None:
        assets = AsyncMock()
        msg = QueueMessage("1-0", f'{{"cid": "{CID}"}}')

        await UploadReconciler(dead_letters, db_manager, assets).handle(msg)

        assets.discard.assert_awaited_once_with(CID)
        dead_letters.ack.assert_awaited_once_with(msg)

    @pytest.mark.asyncio
    async def test_keeps_referenced_asset(
        self, dead_letters: AsyncMock, db_manager: DatabaseManager, sample_snapshot: EntitySnapshot
    ) -> None:
        async with db_manager.get_async_session() as session:
            await EntityRepository(session).upsert_snapshot(sample_snapshot, state_slot=1000)
        assets = AsyncMock()
        msg = QueueMessage("1-0", f'{{"cid": "{CID}"}}')

        await UploadReconciler(dead_letters, db_manager, assets).handle(msg)

        assets.discard.assert_not_awaited()
        dead_letters.ack.assert_awaited_once_with(msg)

    @pytest.mark.asyncio
    async def test_malformed_rejected(self, dead_letters: AsyncMock, db_manager: DatabaseManager) -> None:
        assets = AsyncMock()
        msg = QueueMessage("1-0", '{"nope": 1}')

        await UploadReconciler(dead_letters, db_manager, assets).handle(msg)

        dead_letters.nack.assert_awaited_once()
        assert dead_letters.nack.await_args.kwargs["requeue"] is False
        assets.discard.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_store_failure_requeues(self, dead_letters: AsyncMock, db_manager: DatabaseManager) -> None:
        assets = AsyncMock()
        assets.discard.side_effect = RuntimeError("pinning service down")
        msg = QueueMessage("1-0", f'{{"cid": "{CID}"}}')

        await UploadReconciler(dead_letters, db_manager, assets).handle(msg)

        assert dead_letters.nack.await_args.kwargs["requeue"] is True
        dead_letters.ack.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_run_once(self, dead_letters: AsyncMock, db_manager: DatabaseManager) -> None:
        dead_letters.read.return_value = [QueueMessage("1-0", f'{{"cid": "{CID}"}}')]
        assets = AsyncMock()

        assert await UploadReconciler(dead_letters, db_manager, assets).run_once() == 1
        assets.discard.assert_awaited_once_with(CID)
