"""Repository pattern implementations for data access.

This module provides data access abstractions for token entities, the
transaction history, scanner cursors, failed blocks and the notification
outbox. Writes are idempotent upserts so redelivered events are harmless.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from steal_token_indexer.storage.models import (
    BlockFailureModel,
    EntityModel,
    NotificationOutboxModel,
    ScanCursorModel,
    TransactionHistoryModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from steal_token_indexer.ingestor.models import EntitySnapshot

logger = logging.getLogger(__name__)


def _insert(session: AsyncSession, model: type[Any]) -> Any:
    """Dialect-specific INSERT supporting ON CONFLICT (PostgreSQL or SQLite)."""
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


@dataclass
class EntityDTO:
    """Data transfer object for token entities."""

    id: str
    name: str | None = None
    symbol: str | None = None
    description: str | None = None
    image: str | None = None
    current_holder: str | None = None
    minter: str | None = None
    fee_recipient: str | None = None
    current_price: Decimal | None = None
    next_price: Decimal | None = None
    state_slot: int = 0
    last_steal: datetime | None = None
    last_create: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: EntityModel) -> EntityDTO:
        """Create DTO from SQLAlchemy model."""
        return cls(
            id=model.id,
            name=model.name,
            symbol=model.symbol,
            description=model.description,
            image=model.image,
            current_holder=model.current_holder,
            minter=model.minter,
            fee_recipient=model.fee_recipient,
            current_price=model.current_price,
            next_price=model.next_price,
            state_slot=model.state_slot,
            last_steal=model.last_steal,
            last_create=model.last_create,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )


class EntityRepository:
    """Repository for the token entity projection.

    Every state write is guarded by ``state_slot``: a row only accepts
    state from the same or a newer slot.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, entity_id: str) -> EntityDTO | None:
        result = await self.session.execute(
            select(EntityModel)
            .where(EntityModel.id == entity_id)
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return EntityDTO.from_model(model) if model else None

    async def upsert_snapshot(self, snapshot: EntitySnapshot, *, state_slot: int) -> bool:
        """Insert or overwrite an entity from an on-chain snapshot.

        Returns:
            True if the row was written, False if it already held newer state.
        """
        now = datetime.now(UTC)
        values = {
            "id": snapshot.pubkey,
            "name": snapshot.name,
            "symbol": snapshot.symbol,
            "description": snapshot.description,
            "image": snapshot.image,
            "current_holder": snapshot.holder,
            "minter": snapshot.minter,
            "fee_recipient": snapshot.fee_recipient,
            "current_price": snapshot.current_price,
            "next_price": snapshot.next_price,
            "state_slot": state_slot,
        }
        stmt = _insert(self.session, EntityModel).values(**values, created_at=now, updated_at=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=["id"],
            set_={
                "name": stmt.excluded.name,
                "symbol": stmt.excluded.symbol,
                "description": stmt.excluded.description,
                "image": stmt.excluded.image,
                "current_holder": stmt.excluded.current_holder,
                "minter": stmt.excluded.minter,
                "fee_recipient": stmt.excluded.fee_recipient,
                "current_price": stmt.excluded.current_price,
                "next_price": stmt.excluded.next_price,
                "state_slot": stmt.excluded.state_slot,
                "updated_at": now,
            },
            where=EntityModel.state_slot <= stmt.excluded.state_slot,
        )
        result = await self.session.execute(stmt)
        await self.session.flush()
        return bool(result.rowcount)

    async def update_holder(self, entity_id: str, holder: str, *, state_slot: int) -> bool:
        """Set only the holder, creating a placeholder row if the entity is unknown.

        Returns:
            True if the holder was written, False if the row held newer state.
        """
        now = datetime.now(UTC)
        stmt = _insert(self.session, EntityModel).values(
            id=entity_id,
            current_holder=holder,
            state_slot=state_slot,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["id"],
            set_={
                "current_holder": stmt.excluded.current_holder,
                "state_slot": stmt.excluded.state_slot,
                "updated_at": now,
            },
            where=EntityModel.state_slot <= stmt.excluded.state_slot,
        )
        result = await self.session.execute(stmt)
        await self.session.flush()
        return bool(result.rowcount)

    async def ensure_exists(self, entity_id: str) -> bool:
        """Insert an empty placeholder row unless the entity exists.

        Returns:
            True if a placeholder was created.
        """
        now = datetime.now(UTC)
        stmt = _insert(self.session, EntityModel).values(
            id=entity_id,
            state_slot=0,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["id"])
        result = await self.session.execute(stmt)
        await self.session.flush()
        return bool(result.rowcount)

    async def touch_activity(
        self,
        entity_id: str,
        *,
        last_create: datetime | None = None,
        last_steal: datetime | None = None,
    ) -> None:
        """Advance last_create / last_steal, never moving them backwards."""
        if last_create is not None:
            await self.session.execute(
                update(EntityModel)
                .where(EntityModel.id == entity_id)
                .where(or_(EntityModel.last_create.is_(None), EntityModel.last_create < last_create))
                .values(last_create=last_create)
            )
        if last_steal is not None:
            await self.session.execute(
                update(EntityModel)
                .where(EntityModel.id == entity_id)
                .where(or_(EntityModel.last_steal.is_(None), EntityModel.last_steal < last_steal))
                .values(last_steal=last_steal)
            )
        await self.session.flush()

    async def image_in_use(self, cid: str) -> bool:
        """Check whether any entity's image URL ends with ``cid``."""
        result = await self.session.execute(
            select(EntityModel.id)
            .where(or_(EntityModel.image == cid, EntityModel.image.like(f"%/{cid}")))
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def list_by_holder(self, holder: str, *, limit: int = 100) -> list[EntityDTO]:
        result = await self.session.execute(
            select(EntityModel)
            .where(EntityModel.current_holder == holder)
            .order_by(EntityModel.updated_at.desc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return [EntityDTO.from_model(m) for m in result.scalars().all()]

    async def list_by_minter(self, minter: str, *, limit: int = 100) -> list[EntityDTO]:
        result = await self.session.execute(
            select(EntityModel)
            .where(EntityModel.minter == minter)
            .order_by(EntityModel.created_at.desc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return [EntityDTO.from_model(m) for m in result.scalars().all()]


@dataclass
class TransactionHistoryDTO:
    """Data transfer object for history rows."""

    id: str
    token_id: str
    type: str
    from_address: str
    to_address: str
    timestamp: datetime
    block_number: int
    amount: Decimal | None = None
    success: bool = True
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: TransactionHistoryModel) -> TransactionHistoryDTO:
        return cls(
            id=model.id,
            token_id=model.token_id,
            type=model.type,
            from_address=model.from_address,
            to_address=model.to_address,
            timestamp=model.timestamp,
            block_number=model.block_number,
            amount=model.amount,
            success=model.success,
            created_at=model.created_at,
        )


class TransactionHistoryRepository:
    """Repository for the append-only transaction history."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_if_absent(self, dto: TransactionHistoryDTO) -> bool:
        """Insert a history row keyed by transaction signature.

        Returns:
            True if inserted, False if the row already existed.
        """
        stmt = _insert(self.session, TransactionHistoryModel).values(
            id=dto.id,
            token_id=dto.token_id,
            type=dto.type,
            from_address=dto.from_address,
            to_address=dto.to_address,
            amount=dto.amount,
            timestamp=dto.timestamp,
            block_number=dto.block_number,
            success=dto.success,
            created_at=datetime.now(UTC),
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["id"])
        result = await self.session.execute(stmt)
        await self.session.flush()
        return bool(result.rowcount)

    async def get(self, tx_id: str) -> TransactionHistoryDTO | None:
        result = await self.session.execute(
            select(TransactionHistoryModel).where(TransactionHistoryModel.id == tx_id)
        )
        model = result.scalar_one_or_none()
        return TransactionHistoryDTO.from_model(model) if model else None

    async def list_by_entity(self, token_id: str, *, limit: int = 100) -> list[TransactionHistoryDTO]:
        result = await self.session.execute(
            select(TransactionHistoryModel)
            .where(TransactionHistoryModel.token_id == token_id)
            .order_by(TransactionHistoryModel.timestamp.desc(), TransactionHistoryModel.block_number.desc())
            .limit(limit)
        )
        return [TransactionHistoryDTO.from_model(m) for m in result.scalars().all()]

    async def list_by_address(self, address: str, *, limit: int = 100) -> list[TransactionHistoryDTO]:
        result = await self.session.execute(
            select(TransactionHistoryModel)
            .where(
                or_(
                    TransactionHistoryModel.from_address == address,
                    TransactionHistoryModel.to_address == address,
                )
            )
            .order_by(TransactionHistoryModel.timestamp.desc())
            .limit(limit)
        )
        return [TransactionHistoryDTO.from_model(m) for m in result.scalars().all()]


class ScanCursorRepository:
    """Repository for per-scanner cursors."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, scanner_name: str) -> int | None:
        result = await self.session.execute(
            select(ScanCursorModel.last_processed_slot).where(ScanCursorModel.scanner_name == scanner_name)
        )
        return result.scalar_one_or_none()

    async def save(self, scanner_name: str, last_processed_slot: int) -> None:
        """Upsert the cursor; it never moves backwards."""
        now = datetime.now(UTC)
        stmt = _insert(self.session, ScanCursorModel).values(
            scanner_name=scanner_name,
            last_processed_slot=last_processed_slot,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["scanner_name"],
            set_={
                "last_processed_slot": stmt.excluded.last_processed_slot,
                "updated_at": now,
            },
            where=ScanCursorModel.last_processed_slot <= stmt.excluded.last_processed_slot,
        )
        await self.session.execute(stmt)
        await self.session.flush()


@dataclass
class BlockFailureDTO:
    scanner_name: str
    slot: int
    error_type: str
    message: str
    attempts: int = 1
    resolved: bool = False
    created_at: datetime | None = None
    resolved_at: datetime | None = None

    @classmethod
    def from_model(cls, model: BlockFailureModel) -> BlockFailureDTO:
        return cls(
            scanner_name=model.scanner_name,
            slot=model.slot,
            error_type=model.error_type,
            message=model.message,
            attempts=model.attempts,
            resolved=model.resolved,
            created_at=model.created_at,
            resolved_at=model.resolved_at,
        )


class BlockFailureRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def record(self, dto: BlockFailureDTO) -> None:
        """Record a failed block, bumping ``attempts`` if already known."""
        now = datetime.now(UTC)
        stmt = _insert(self.session, BlockFailureModel).values(
            scanner_name=dto.scanner_name,
            slot=dto.slot,
            error_type=dto.error_type,
            message=dto.message,
            attempts=1,
            resolved=False,
            created_at=dto.created_at or now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["scanner_name", "slot"],
            set_={
                "error_type": stmt.excluded.error_type,
                "message": stmt.excluded.message,
                "attempts": BlockFailureModel.attempts + 1,
                "resolved": False,
                "resolved_at": None,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()

    async def list_unresolved(self, scanner_name: str, *, limit: int = 100) -> list[BlockFailureDTO]:
        result = await self.session.execute(
            select(BlockFailureModel)
            .where(BlockFailureModel.scanner_name == scanner_name)
            .where(BlockFailureModel.resolved.is_(False))
            .order_by(BlockFailureModel.slot.asc())
            .limit(limit)
        )
        return [BlockFailureDTO.from_model(m) for m in result.scalars().all()]

    async def mark_resolved(self, scanner_name: str, slot: int) -> None:
        await self.session.execute(
            update(BlockFailureModel)
            .where(BlockFailureModel.scanner_name == scanner_name)
            .where(BlockFailureModel.slot == slot)
            .values(resolved=True, resolved_at=datetime.now(UTC))
        )
        await self.session.flush()


@dataclass
class NotificationDTO:
    """Pending or published notification for one applied event."""

    event_id: str
    kind: str
    entity_id: str
    from_address: str
    to_address: str
    amount: Decimal | None = None
    created_at: datetime | None = None
    published_at: datetime | None = None

    @classmethod
    def from_model(cls, model: NotificationOutboxModel) -> NotificationDTO:
        return cls(
            event_id=model.event_id,
            kind=model.kind,
            entity_id=model.entity_id,
            from_address=model.from_address,
            to_address=model.to_address,
            amount=model.amount,
            created_at=model.created_at,
            published_at=model.published_at,
        )

    def to_payload(self) -> dict[str, Any]:
        """Message body published to the notification stream."""
        return {
            "kind": self.kind,
            "from": self.from_address,
            "to": self.to_address,
            "entity_id": self.entity_id,
            "amount": format(self.amount.normalize(), "f") if self.amount is not None else None,
        }


class NotificationOutboxRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_if_absent(self, dto: NotificationDTO) -> bool:
        stmt = _insert(self.session, NotificationOutboxModel).values(
            event_id=dto.event_id,
            kind=dto.kind,
            entity_id=dto.entity_id,
            from_address=dto.from_address,
            to_address=dto.to_address,
            amount=dto.amount,
            created_at=dto.created_at or datetime.now(UTC),
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["event_id"])
        result = await self.session.execute(stmt)
        await self.session.flush()
        return bool(result.rowcount)

    async def list_pending(self, *, limit: int = 100) -> list[NotificationDTO]:
        result = await self.session.execute(
            select(NotificationOutboxModel)
            .where(NotificationOutboxModel.published_at.is_(None))
            .order_by(NotificationOutboxModel.created_at.asc())
            .limit(limit)
        )
        return [NotificationDTO.from_model(m) for m in result.scalars().all()]

    async def mark_published(self, event_ids: list[str]) -> None:
        if not event_ids:
            return
        await self.session.execute(
            update(NotificationOutboxModel)
            .where(NotificationOutboxModel.event_id.in_(event_ids))
            .values(published_at=datetime.now(UTC))
        )
        await self.session.flush()
