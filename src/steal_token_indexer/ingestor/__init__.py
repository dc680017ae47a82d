"""Ingestion layer - block scanning and transaction classification."""

from steal_token_indexer.ingestor.models import (
    EntitySnapshot,
    EventKind,
    IngestionEvent,
    ParsedTransaction,
)

__all__ = [
    "EntitySnapshot",
    "EventKind",
    "IngestionEvent",
    "ParsedTransaction",
]
