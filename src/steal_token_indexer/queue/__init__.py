"""Durable Redis Streams queues for ingestion events, notifications and uploads."""

from steal_token_indexer.queue.streams import (
    MessageDecodeError,
    QueueBroker,
    QueueError,
    QueueMessage,
    RedisStreamQueue,
)
from steal_token_indexer.queue.upload_checks import (
    UploadCheckConfig,
    UploadCheckQueue,
    UploadReconciler,
)

__all__ = [
    "MessageDecodeError",
    "QueueBroker",
    "QueueError",
    "QueueMessage",
    "RedisStreamQueue",
    "UploadCheckConfig",
    "UploadCheckQueue",
    "UploadReconciler",
]
