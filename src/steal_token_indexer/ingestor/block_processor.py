"""Turns one confirmed block into ingestion events.

The processor is stateless apart from read-only configuration, so the
scanner may run it concurrently for different slots.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from steal_token_indexer.chain.client import SlotSkippedError, SolanaClient
from steal_token_indexer.chain.layout import AccountLayoutError, decode_entity_account
from steal_token_indexer.ingestor.classifier import (
    AccountIndices,
    ProgramInstruction,
    classify_transaction,
)
from steal_token_indexer.ingestor.models import (
    ConfirmedBlock,
    EntitySnapshot,
    EventKind,
    IngestionEvent,
    ParsedTransaction,
)

logger = logging.getLogger(__name__)

SNAPSHOT_KINDS = frozenset({EventKind.CREATE, EventKind.STEAL})


class BlockProcessor:
    """Fetches a block and emits one IngestionEvent per program transaction.

    Transactions that failed on chain, do not list the program among their
    static account keys, or cannot be classified are dropped. CREATE and
    STEAL events carry a fresh account snapshot read at or after the
    block's slot.

    Raises from ``process``:
        BlockUnavailableError: The block (or a snapshot it needs) could not
            be read within the client's retry budget.
    """

    def __init__(
        self,
        client: SolanaClient,
        *,
        program_id: str,
        indices: AccountIndices | None = None,
    ) -> None:
        self._client = client
        self._program_id = program_id
        self._indices = indices or AccountIndices()

    async def process(self, slot: int) -> list[IngestionEvent]:
        try:
            raw_block = await self._client.get_block(slot)
        except SlotSkippedError:
            logger.debug("Slot %d skipped by the ledger", slot)
            return []
        if raw_block is None:
            logger.debug("Slot %d has no block", slot)
            return []

        block = ConfirmedBlock.from_rpc(slot, raw_block)
        observed_at = block.block_time or datetime.now(UTC)

        events: list[IngestionEvent] = []
        for raw_tx in block.transactions:
            try:
                tx = ParsedTransaction.from_rpc(raw_tx)
            except (KeyError, IndexError, TypeError, ValueError, AttributeError) as e:
                logger.warning("Skipping malformed transaction in slot %d: %s", slot, e)
                continue

            # Logs of a failed transaction are not authoritative.
            if not tx.succeeded:
                continue
            if not tx.involves(self._program_id):
                continue

            instruction = classify_transaction(tx, program_id=self._program_id, indices=self._indices)
            if instruction is None:
                continue

            snapshot = None
            if instruction.kind in SNAPSHOT_KINDS:
                snapshot = await self._fetch_snapshot(instruction, slot)

            events.append(
                IngestionEvent(
                    id=tx.signature,
                    entity_id=instruction.entity_id,
                    kind=instruction.kind,
                    from_address=instruction.from_address,
                    to_address=instruction.to_address,
                    amount=instruction.amount,
                    block_height=slot,
                    observed_at=observed_at,
                    entity_snapshot=snapshot,
                    success=True,
                )
            )

        if events:
            logger.info("Slot %d: %d program event(s)", slot, len(events))
        return events

    async def _fetch_snapshot(self, instruction: ProgramInstruction, slot: int) -> EntitySnapshot | None:
        """Read the entity account as of ``slot`` or later.

        Missing or undecodable accounts yield None; RPC unavailability
        propagates so the whole block is retried later.
        """
        account = await self._client.get_account_info(instruction.entity_id, min_context_slot=slot)
        if account is None:
            logger.warning(
                "Account %s for %s in slot %d not found",
                instruction.entity_id,
                instruction.kind.value,
                slot,
            )
            return None
        if account.owner != self._program_id:
            logger.warning(
                "Account %s is owned by %s, not the program; ignoring snapshot",
                instruction.entity_id,
                account.owner,
            )
            return None
        try:
            return decode_entity_account(
                account.data,
                pubkey=instruction.entity_id,
                context_slot=account.context_slot,
            )
        except AccountLayoutError as e:
            logger.warning("Failed to decode account %s: %s", instruction.entity_id, e)
            return None
