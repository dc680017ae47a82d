"""Applies ingestion events to the projection store."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from steal_token_indexer.assets import extract_cid
from steal_token_indexer.ingestor.models import EventKind, IngestionEvent
from steal_token_indexer.storage.repos import (
    EntityRepository,
    NotificationDTO,
    NotificationOutboxRepository,
    TransactionHistoryDTO,
    TransactionHistoryRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ApplyResult:
    """Outcome of applying one event."""

    event_id: str
    history_inserted: bool
    state_written: bool
    asset_cid: str | None = None


class ProjectionApplier:
    """Per-kind projection rules.

    All writes go through the caller's session so the entity change, the
    history row and the outbox row commit together. Entity writes are
    guarded by slot, history and outbox rows by event id, so applying the
    same event twice leaves the store unchanged.
    """

    async def apply(self, session: AsyncSession, event: IngestionEvent) -> ApplyResult:
        entities = EntityRepository(session)

        if event.kind == EventKind.CREATE:
            state_written, cid = await self._apply_create(entities, event)
        elif event.kind == EventKind.STEAL:
            state_written = await self._apply_steal(entities, event)
            cid = None
        elif event.kind == EventKind.TRANSFER:
            state_written = await entities.update_holder(
                event.entity_id, event.to_address, state_slot=event.block_height
            )
            cid = None
        else:
            raise ValueError(f"Cannot apply event {event.id} of kind {event.kind.value}")

        history_inserted = await TransactionHistoryRepository(session).insert_if_absent(
            TransactionHistoryDTO(
                id=event.id,
                token_id=event.entity_id,
                type=event.kind.value,
                from_address=event.from_address,
                to_address=event.to_address,
                amount=event.amount,
                timestamp=event.observed_at,
                block_number=event.block_height,
                success=event.success,
            )
        )
        await NotificationOutboxRepository(session).insert_if_absent(
            NotificationDTO(
                event_id=event.id,
                kind=event.kind.value,
                entity_id=event.entity_id,
                from_address=event.from_address,
                to_address=event.to_address,
                amount=event.amount,
            )
        )

        if not history_inserted:
            logger.debug("Event %s already applied", event.id)
        if not state_written and (event.kind == EventKind.TRANSFER or event.entity_snapshot is not None):
            logger.info(
                "Entity %s holds state newer than slot %d; %s %s left it unchanged",
                event.entity_id,
                event.state_slot,
                event.kind.value,
                event.id,
            )

        return ApplyResult(
            event_id=event.id,
            history_inserted=history_inserted,
            state_written=state_written,
            asset_cid=cid,
        )

    async def _apply_create(self, entities: EntityRepository, event: IngestionEvent) -> tuple[bool, str | None]:
        if event.entity_snapshot is None:
            logger.warning("CREATE %s has no snapshot; recording minter as holder only", event.id)
            written = await entities.update_holder(
                event.entity_id, event.to_address, state_slot=event.block_height
            )
            cid = None
        else:
            written = await entities.upsert_snapshot(event.entity_snapshot, state_slot=event.state_slot)
            cid = extract_cid(event.entity_snapshot.image)
        await entities.touch_activity(event.entity_id, last_create=event.observed_at)
        return written, cid

    async def _apply_steal(self, entities: EntityRepository, event: IngestionEvent) -> bool:
        if event.entity_snapshot is None:
            # Prices are never derived from the transfer legs.
            logger.warning("STEAL %s has no snapshot; entity state not updated", event.id)
            await entities.ensure_exists(event.entity_id)
            written = False
        else:
            written = await entities.upsert_snapshot(event.entity_snapshot, state_slot=event.state_slot)
        await entities.touch_activity(event.entity_id, last_steal=event.observed_at)
        return written
