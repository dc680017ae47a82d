"""Consumer module: applies queued events to the projection store."""

from steal_token_indexer.consumer.applier import ApplyResult, ProjectionApplier
from steal_token_indexer.consumer.outbox import OutboxRelay
from steal_token_indexer.consumer.worker import ConsumerStats, EventConsumer

__all__ = [
    "ApplyResult",
    "ConsumerStats",
    "EventConsumer",
    "OutboxRelay",
    "ProjectionApplier",
]
