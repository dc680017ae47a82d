"""SQLAlchemy models for persistent storage.

This module defines the projection schema: token entities, the immutable
transaction history, scanner cursors, failed blocks awaiting rescan and
the notification outbox.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class EntityModel(Base):
    """Current state of one program token account.

    Descriptive columns are nullable because a TRANSFER may be applied
    before the CREATE that fills them in.
    """

    __tablename__ = "tokens"

    id: Mapped[str] = mapped_column(String(44), primary_key=True)
    name: Mapped[str | None] = mapped_column(String(32), nullable=True)
    symbol: Mapped[str | None] = mapped_column(String(8), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    image: Mapped[str | None] = mapped_column(Text, nullable=True)

    current_holder: Mapped[str | None] = mapped_column(String(44), nullable=True)
    minter: Mapped[str | None] = mapped_column(String(44), nullable=True)
    fee_recipient: Mapped[str | None] = mapped_column(String(44), nullable=True)

    # SOL, 9 decimal places (lamport precision)
    current_price: Mapped[Decimal | None] = mapped_column(Numeric(20, 9), nullable=True)
    next_price: Mapped[Decimal | None] = mapped_column(Numeric(20, 9), nullable=True)

    # Slot of the newest state applied; older deliveries never overwrite it.
    state_slot: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    last_steal: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_create: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    __table_args__ = (
        Index("idx_tokens_current_holder", "current_holder"),
        Index("idx_tokens_minter", "minter"),
    )


class TransactionHistoryModel(Base):
    """Immutable log of applied program transactions."""

    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(88), primary_key=True)
    token_id: Mapped[str] = mapped_column(String(44), nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    from_address: Mapped[str] = mapped_column(String(44), nullable=False)
    to_address: Mapped[str] = mapped_column(String(44), nullable=False)
    amount: Mapped[Decimal | None] = mapped_column(Numeric(20, 9), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        Index("idx_transactions_token_id", "token_id"),
        Index("idx_transactions_timestamp", "timestamp"),
        Index("idx_transactions_from_address", "from_address"),
        Index("idx_transactions_to_address", "to_address"),
    )


class ScanCursorModel(Base):
    """Last fully processed slot per scanner instance."""

    __tablename__ = "scanner_state"

    scanner_name: Mapped[str] = mapped_column(String(50), primary_key=True)
    last_processed_slot: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )


class BlockFailureModel(Base):
    """Blocks the scanner skipped after exhausting its fetch budget."""

    __tablename__ = "block_failures"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    scanner_name: Mapped[str] = mapped_column(String(50), nullable=False)
    slot: Mapped[int] = mapped_column(BigInteger, nullable=False)
    error_type: Mapped[str] = mapped_column(String(80), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("scanner_name", "slot", name="uq_block_failures_scanner_slot"),
        Index("idx_block_failures_unresolved", "scanner_name", "resolved"),
    )


class NotificationOutboxModel(Base):
    """Notifications written with the projection change, published afterwards."""

    __tablename__ = "notification_outbox"

    event_id: Mapped[str] = mapped_column(String(88), primary_key=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(44), nullable=False)
    from_address: Mapped[str] = mapped_column(String(44), nullable=False)
    to_address: Mapped[str] = mapped_column(String(44), nullable=False)
    amount: Mapped[Decimal | None] = mapped_column(Numeric(20, 9), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("idx_notification_outbox_published", "published_at"),)
