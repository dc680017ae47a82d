"""Durable, acknowledgement-based queues on Redis Streams.

Each queue is a stream read through a consumer group. A message stays in
the group's pending list until it is acknowledged, so a consumer crash
leaves it to be reclaimed by ``read`` once it has been idle long enough.
Negative acknowledgement re-appends the message with an incremented
attempt counter, or moves it to a dead-letter stream.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import ResponseError

logger = logging.getLogger(__name__)

PAYLOAD_FIELD = "payload"
ATTEMPTS_FIELD = "attempts"
REASON_FIELD = "reason"
SOURCE_FIELD = "source_stream"


class QueueError(Exception):
    """Base exception for queue errors."""


class MessageDecodeError(QueueError):
    """Raised when a message body is not a JSON object."""


def _decode(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode()
    return str(value)


@dataclass(frozen=True)
class QueueMessage:
    """A delivered stream entry."""

    message_id: str
    body: str
    attempts: int = 0

    def json(self) -> dict[str, Any]:
        """Decode the body.

        Raises:
            MessageDecodeError: If the body is not a JSON object.
        """
        try:
            data = json.loads(self.body)
        except json.JSONDecodeError as e:
            raise MessageDecodeError(f"Message {self.message_id} is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise MessageDecodeError(f"Message {self.message_id} is not a JSON object")
        return data

    @classmethod
    def from_entry(cls, message_id: Any, fields: dict[Any, Any]) -> QueueMessage:
        decoded = {_decode(k): _decode(v) for k, v in fields.items()}
        try:
            attempts = int(decoded.get(ATTEMPTS_FIELD, "0"))
        except ValueError:
            attempts = 0
        return cls(
            message_id=_decode(message_id),
            body=decoded.get(PAYLOAD_FIELD, ""),
            attempts=attempts,
        )


class RedisStreamQueue:
    """One durable queue: a stream, a consumer group and an optional dead-letter stream."""

    def __init__(
        self,
        redis: Redis,
        stream: str,
        *,
        group: str,
        consumer: str,
        dead_letter_stream: str | None = None,
        max_deliveries: int | None = None,
        claim_idle_ms: int = 60_000,
        block_ms: int = 1000,
        batch_size: int = 10,
    ) -> None:
        self._redis = redis
        self._stream = stream
        self._group = group
        self._consumer = consumer
        self._dead_letter_stream = dead_letter_stream
        self._max_deliveries = max_deliveries
        self._claim_idle_ms = claim_idle_ms
        self._block_ms = block_ms
        self._batch_size = batch_size

    @property
    def stream(self) -> str:
        return self._stream

    @property
    def dead_letter_stream(self) -> str | None:
        return self._dead_letter_stream

    async def ensure_group(self) -> None:
        """Create the stream and consumer group if they do not exist."""
        try:
            await self._redis.xgroup_create(self._stream, self._group, id="0", mkstream=True)
            logger.info("Created consumer group %s on %s", self._group, self._stream)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    @staticmethod
    def _fields(body: str, attempts: int) -> dict[str, str]:
        return {PAYLOAD_FIELD: body, ATTEMPTS_FIELD: str(attempts)}

    async def publish(self, payload: dict[str, Any]) -> str:
        """Append one JSON message; the stream is persisted by Redis (AOF/RDB)."""
        message_id = await self._redis.xadd(self._stream, self._fields(json.dumps(payload), 0))
        return _decode(message_id)

    async def publish_many(self, payloads: list[dict[str, Any]]) -> list[str]:
        """Append several messages in one MULTI/EXEC round trip."""
        if not payloads:
            return []
        pipe = self._redis.pipeline(transaction=True)
        for payload in payloads:
            pipe.xadd(self._stream, self._fields(json.dumps(payload), 0))
        ids = await pipe.execute()
        return [_decode(i) for i in ids]

    async def _reclaim(self, count: int) -> list[QueueMessage]:
        """Take over entries another consumer left unacknowledged for too long."""
        result = await self._redis.xautoclaim(
            self._stream,
            self._group,
            self._consumer,
            min_idle_time=self._claim_idle_ms,
            start_id="0-0",
            count=count,
        )
        entries = result[1] if len(result) > 1 else []
        messages: list[QueueMessage] = []
        for message_id, fields in entries:
            # Entries deleted from the stream while pending come back empty.
            if not fields:
                continue
            messages.append(QueueMessage.from_entry(message_id, fields))
        if messages:
            logger.info("Reclaimed %d idle message(s) from %s", len(messages), self._stream)
        return messages

    async def read(self, *, count: int | None = None, block_ms: int | None = None) -> list[QueueMessage]:
        """Read the next batch for this consumer, reclaiming idle entries first."""
        count = count or self._batch_size
        reclaimed = await self._reclaim(count)
        if reclaimed:
            return reclaimed

        response = await self._redis.xreadgroup(
            self._group,
            self._consumer,
            {self._stream: ">"},
            count=count,
            block=self._block_ms if block_ms is None else block_ms,
        )
        if not response:
            return []

        streams = response.items() if isinstance(response, dict) else response
        messages: list[QueueMessage] = []
        for _stream_name, entries in streams:
            for message_id, fields in entries:
                if fields:
                    messages.append(QueueMessage.from_entry(message_id, fields))
        return messages

    async def ack(self, message: QueueMessage) -> None:
        """Acknowledge and delete a processed message."""
        pipe = self._redis.pipeline(transaction=True)
        pipe.xack(self._stream, self._group, message.message_id)
        pipe.xdel(self._stream, message.message_id)
        await pipe.execute()

    async def nack(self, message: QueueMessage, *, requeue: bool = True, reason: str | None = None) -> None:
        """Reject a message.

        With ``requeue`` the message is appended again with ``attempts + 1``;
        without it, or once ``max_deliveries`` is reached, it moves to the
        dead-letter stream (or is dropped with an error log if there is none).
        """
        attempts = message.attempts + 1
        exhausted = self._max_deliveries is not None and attempts >= self._max_deliveries

        pipe = self._redis.pipeline(transaction=True)
        if requeue and not exhausted:
            pipe.xadd(self._stream, self._fields(message.body, attempts))
        elif self._dead_letter_stream:
            fields = self._fields(message.body, attempts)
            fields[REASON_FIELD] = reason or ("max deliveries exceeded" if exhausted else "rejected")
            fields[SOURCE_FIELD] = self._stream
            pipe.xadd(self._dead_letter_stream, fields)
            logger.warning(
                "Dead-lettering message %s from %s after %d attempt(s): %s",
                message.message_id,
                self._stream,
                attempts,
                fields[REASON_FIELD],
            )
        else:
            logger.error(
                "Dropping message %s from %s (no dead-letter stream): %s",
                message.message_id,
                self._stream,
                reason,
            )
        pipe.xack(self._stream, self._group, message.message_id)
        pipe.xdel(self._stream, message.message_id)
        await pipe.execute()


class QueueBroker:
    """Owns the Redis connection shared by every queue.

    Example:
        ```python
        async with QueueBroker("redis://localhost:6379") as broker:
            events = broker.queue("steal_token:transaction_queue", group="indexer", consumer="c1")
            await events.ensure_group()
            await events.publish({"id": "..."})
        ```
    """

    def __init__(self, url: str, *, redis: Redis | None = None) -> None:
        self._url = url
        self._redis = redis
        self._owns_connection = redis is None

    @property
    def redis(self) -> Redis:
        if self._redis is None:
            raise QueueError("Broker is not connected")
        return self._redis

    async def connect(self) -> Redis:
        """Open the connection and verify the broker answers."""
        if self._redis is None:
            self._redis = Redis.from_url(self._url)
            self._owns_connection = True
        await self._redis.ping()
        logger.info("Connected to queue broker")
        return self._redis

    async def close(self) -> None:
        if self._redis is not None and self._owns_connection:
            await self._redis.aclose()
        self._redis = None
        logger.debug("Queue broker connection closed")

    def queue(self, stream: str, **kwargs: Any) -> RedisStreamQueue:
        return RedisStreamQueue(self.redis, stream, **kwargs)

    async def __aenter__(self) -> QueueBroker:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()
