"""Tests for the Redis Streams queue."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ResponseError

from steal_token_indexer.queue.streams import (
    MessageDecodeError,
    QueueBroker,
    QueueError,
    QueueMessage,
    RedisStreamQueue,
)

STREAM = "steal_token:transaction_queue"
DLQ = "steal_token:transaction_queue:dlq"


@pytest.fixture
def pipe() -> MagicMock:
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[b"1-0", b"1-1"])
    return pipe


@pytest.fixture
def mock_redis(pipe: MagicMock) -> MagicMock:
    redis = MagicMock()
    redis.pipeline.return_value = pipe
    redis.xadd = AsyncMock(return_value=b"1-0")
    redis.xgroup_create = AsyncMock()
    redis.xautoclaim = AsyncMock(return_value=[b"0-0", [], []])
    redis.xreadgroup = AsyncMock(return_value=[])
    return redis


def _queue(redis: MagicMock, **kwargs) -> RedisStreamQueue:
    return RedisStreamQueue(redis, STREAM, group="indexer", consumer="c1", **kwargs)


class TestQueueMessage:
    """Tests for QueueMessage."""

    def test_from_entry_decodes_bytes(self) -> None:
        msg = QueueMessage.from_entry(b"5-0", {b"payload": b'{"id": "x"}', b"attempts": b"2"})
        assert msg.message_id == "5-0"
        assert msg.attempts == 2
        assert msg.json() == {"id": "x"}

    def test_missing_attempts_defaults_to_zero(self) -> None:
        assert QueueMessage.from_entry("5-0", {"payload": "{}"}).attempts == 0

    def test_invalid_json(self) -> None:
        with pytest.raises(MessageDecodeError):
            QueueMessage("5-0", "{nope").json()

    def test_non_object_json(self) -> None:
        with pytest.raises(MessageDecodeError):
            QueueMessage("5-0", "[1, 2]").json()


class TestPublish:
    """Tests for publishing."""

    @pytest.mark.asyncio
    async def test_publish(self, mock_redis: MagicMock) -> None:
        message_id = await _queue(mock_redis).publish({"id": "sig"})

        assert message_id == "1-0"
        mock_redis.xadd.assert_awaited_once_with(STREAM, {"payload": '{"id": "sig"}', "attempts": "0"})

    @pytest.mark.asyncio
    async def test_publish_many_is_transactional(self, mock_redis: MagicMock, pipe: MagicMock) -> None:
        ids = await _queue(mock_redis).publish_many([{"id": "a"}, {"id": "b"}])

        assert ids == ["1-0", "1-1"]
        mock_redis.pipeline.assert_called_once_with(transaction=True)
        assert pipe.xadd.call_count == 2
        assert json.loads(pipe.xadd.call_args_list[1].args[1]["payload"]) == {"id": "b"}

    @pytest.mark.asyncio
    async def test_publish_many_empty(self, mock_redis: MagicMock) -> None:
        assert await _queue(mock_redis).publish_many([]) == []
        mock_redis.pipeline.assert_not_called()


class TestEnsureGroup:
    """Tests for consumer group creation."""

    @pytest.mark.asyncio
    async def test_creates_group(self, mock_redis: MagicMock) -> None:
        await _queue(mock_redis).ensure_group()
        mock_redis.xgroup_create.assert_awaited_once_with(STREAM, "indexer", id="0", mkstream=True)

    @pytest.mark.asyncio
    async def test_existing_group_ignored(self, mock_redis: MagicMock) -> None:
        mock_redis.xgroup_create.side_effect = ResponseError("BUSYGROUP Consumer Group name already exists")
        await _queue(mock_redis).ensure_group()

    @pytest.mark.asyncio
    async def test_other_errors_raised(self, mock_redis: MagicMock) -> None:
        mock_redis.xgroup_create.side_effect = ResponseError("WRONGTYPE")
        with pytest.raises(ResponseError):
            await _queue(mock_redis).ensure_group()


class TestRead:
    """Tests for reading."""

    @pytest.mark.asyncio
    async def test_reads_new_messages(self, mock_redis: MagicMock) -> None:
        mock_redis.xreadgroup.return_value = [
            [b"steal_token:transaction_queue", [(b"1-0", {b"payload": b"{}", b"attempts": b"0"})]]
        ]

        messages = await _queue(mock_redis, block_ms=50).read(count=5)

        assert [m.message_id for m in messages] == ["1-0"]
        mock_redis.xreadgroup.assert_awaited_once_with(
            "indexer", "c1", {STREAM: ">"}, count=5, block=50
        )

    @pytest.mark.asyncio
    async def test_reads_resp3_dict(self, mock_redis: MagicMock) -> None:
        mock_redis.xreadgroup.return_value = {STREAM: [("1-0", {"payload": "{}", "attempts": "0"})]}

        messages = await _queue(mock_redis).read()

        assert len(messages) == 1

    @pytest.mark.asyncio
    async def test_reclaimed_messages_first(self, mock_redis: MagicMock) -> None:
        mock_redis.xautoclaim.return_value = [
            b"0-0",
            [(b"1-0", {b"payload": b"{}", b"attempts": b"1"}), (b"1-1", None)],
            [],
        ]

        messages = await _queue(mock_redis, claim_idle_ms=1000).read()

        assert [m.message_id for m in messages] == ["1-0"]
        mock_redis.xreadgroup.assert_not_awaited()
        assert mock_redis.xautoclaim.await_args.kwargs["min_idle_time"] == 1000

    @pytest.mark.asyncio
    async def test_empty_read(self, mock_redis: MagicMock) -> None:
        mock_redis.xreadgroup.return_value = None
        assert await _queue(mock_redis).read() == []


class TestAckNack:
    """Tests for acknowledgement."""

    @pytest.mark.asyncio
    async def test_ack_removes_entry(self, mock_redis: MagicMock, pipe: MagicMock) -> None:
        await _queue(mock_redis).ack(QueueMessage("1-0", "{}"))

        pipe.xack.assert_called_once_with(STREAM, "indexer", "1-0")
        pipe.xdel.assert_called_once_with(STREAM, "1-0")
        pipe.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_nack_requeues_with_attempts(self, mock_redis: MagicMock, pipe: MagicMock) -> None:
        await _queue(mock_redis, dead_letter_stream=DLQ).nack(QueueMessage("1-0", '{"id": "x"}', attempts=1))

        pipe.xadd.assert_called_once_with(STREAM, {"payload": '{"id": "x"}', "attempts": "2"})
        pipe.xack.assert_called_once_with(STREAM, "indexer", "1-0")

    @pytest.mark.asyncio
    async def test_nack_without_requeue_dead_letters(self, mock_redis: MagicMock, pipe: MagicMock) -> None:
        await _queue(mock_redis, dead_letter_stream=DLQ).nack(
            QueueMessage("1-0", "garbage"), requeue=False, reason="bad json"
        )

        stream, fields = pipe.xadd.call_args.args
        assert stream == DLQ
        assert fields["reason"] == "bad json"
        assert fields["source_stream"] == STREAM
        assert fields["payload"] == "garbage"

    @pytest.mark.asyncio
    async def test_max_deliveries_dead_letters(self, mock_redis: MagicMock, pipe: MagicMock) -> None:
        queue = _queue(mock_redis, dead_letter_stream=DLQ, max_deliveries=3)

        await queue.nack(QueueMessage("1-0", "{}", attempts=2))

        stream, fields = pipe.xadd.call_args.args
        assert stream == DLQ
        assert fields["attempts"] == "3"
        assert fields["reason"] == "max deliveries exceeded"

    @pytest.mark.asyncio
    async def test_reject_without_dead_letter_stream_drops(self, mock_redis: MagicMock, pipe: MagicMock) -> None:
        await _queue(mock_redis).nack(QueueMessage("1-0", "{}"), requeue=False)

        pipe.xadd.assert_not_called()
        pipe.xack.assert_called_once()


class TestQueueBroker:
    """Tests for QueueBroker."""

    def test_not_connected(self) -> None:
        with pytest.raises(QueueError):
            _ = QueueBroker("redis://localhost:6379").redis

    @pytest.mark.asyncio
    async def test_injected_connection_not_closed(self, mock_redis: MagicMock) -> None:
        mock_redis.ping = AsyncMock()
        mock_redis.aclose = AsyncMock()

        async with QueueBroker("redis://localhost:6379", redis=mock_redis) as broker:
            queue = broker.queue(STREAM, group="indexer", consumer="c1")
            assert queue.stream == STREAM

        mock_redis.ping.assert_awaited_once()
        mock_redis.aclose.assert_not_awaited()
