"""Initial schema for the token projection, history, cursors and outbox.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-17 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Token entity projection
    op.create_table(
        "tokens",
        sa.Column("id", sa.String(44), nullable=False),
        sa.Column("name", sa.String(32), nullable=True),
        sa.Column("symbol", sa.String(8), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("image", sa.Text(), nullable=True),
        sa.Column("current_holder", sa.String(44), nullable=True),
        sa.Column("minter", sa.String(44), nullable=True),
        sa.Column("fee_recipient", sa.String(44), nullable=True),
        sa.Column("current_price", sa.Numeric(20, 9), nullable=True),
        sa.Column("next_price", sa.Numeric(20, 9), nullable=True),
        sa.Column("state_slot", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("last_steal", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_create", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_tokens_current_holder", "tokens", ["current_holder"])
    op.create_index("idx_tokens_minter", "tokens", ["minter"])

    # Append-only transaction history
    op.create_table(
        "transactions",
        sa.Column("id", sa.String(88), nullable=False),
        sa.Column("token_id", sa.String(44), nullable=False),
        sa.Column("type", sa.String(16), nullable=False),
        sa.Column("from_address", sa.String(44), nullable=False),
        sa.Column("to_address", sa.String(44), nullable=False),
        sa.Column("amount", sa.Numeric(20, 9), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_transactions_token_id", "transactions", ["token_id"])
    op.create_index("idx_transactions_timestamp", "transactions", ["timestamp"])
    op.create_index("idx_transactions_from_address", "transactions", ["from_address"])
    op.create_index("idx_transactions_to_address", "transactions", ["to_address"])

    # Scanner cursors
    op.create_table(
        "scanner_state",
        sa.Column("scanner_name", sa.String(50), nullable=False),
        sa.Column("last_processed_slot", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("scanner_name"),
    )

    # Blocks skipped after exhausting the fetch budget
    op.create_table(
        "block_failures",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("scanner_name", sa.String(50), nullable=False),
        sa.Column("slot", sa.BigInteger(), nullable=False),
        sa.Column("error_type", sa.String(80), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("resolved", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("scanner_name", "slot", name="uq_block_failures_scanner_slot"),
    )
    op.create_index("idx_block_failures_unresolved", "block_failures", ["scanner_name", "resolved"])

    # Notification outbox
    op.create_table(
        "notification_outbox",
        sa.Column("event_id", sa.String(88), nullable=False),
        sa.Column("kind", sa.String(16), nullable=False),
        sa.Column("entity_id", sa.String(44), nullable=False),
        sa.Column("from_address", sa.String(44), nullable=False),
        sa.Column("to_address", sa.String(44), nullable=False),
        sa.Column("amount", sa.Numeric(20, 9), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_index("idx_notification_outbox_published", "notification_outbox", ["published_at"])


def downgrade() -> None:
    op.drop_index("idx_notification_outbox_published", table_name="notification_outbox")
    op.drop_table("notification_outbox")

    op.drop_index("idx_block_failures_unresolved", table_name="block_failures")
    op.drop_table("block_failures")

    op.drop_table("scanner_state")

    op.drop_index("idx_transactions_to_address", table_name="transactions")
    op.drop_index("idx_transactions_from_address", table_name="transactions")
    op.drop_index("idx_transactions_timestamp", table_name="transactions")
    op.drop_index("idx_transactions_token_id", table_name="transactions")
    op.drop_table("transactions")

    op.drop_index("idx_tokens_minter", table_name="tokens")
    op.drop_index("idx_tokens_current_holder", table_name="tokens")
    op.drop_table("tokens")
