"""One-off population of the projection store straight from chain state.

Entity rows come from the program's accounts as they are now; history
rows come from each entity's signature list. Both writes are guarded the
same way the consumer's are (by state slot and by transaction id), so a
backfill can run next to a live pipeline and be repeated safely.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from steal_token_indexer.chain.layout import AccountLayoutError, decode_entity_account
from steal_token_indexer.ingestor.classifier import AccountIndices, classify_transaction
from steal_token_indexer.ingestor.models import ParsedTransaction
from steal_token_indexer.storage.repos import (
    EntityRepository,
    TransactionHistoryDTO,
    TransactionHistoryRepository,
)

if TYPE_CHECKING:
    from steal_token_indexer.chain.client import SolanaClient
    from steal_token_indexer.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

SIGNATURE_PAGE_SIZE = 1000


@dataclass
class BackfillStats:
    """Counters for one backfill run."""

    accounts_seen: int = 0
    entities_written: int = 0
    accounts_skipped: int = 0
    signatures_seen: int = 0
    history_inserted: int = 0
    transactions_skipped: int = 0


class Backfill:
    """Populates entities and their history from RPC reads.

    Example:
        ```python
        backfill = Backfill(client, db, program_id=settings.solana.program_id)
        entity_ids = await backfill.entities()
        for entity_id in entity_ids:
            await backfill.history(entity_id)
        ```
    """

    def __init__(
        self,
        client: SolanaClient,
        db: DatabaseManager,
        *,
        program_id: str,
        indices: AccountIndices | None = None,
        page_size: int = SIGNATURE_PAGE_SIZE,
    ) -> None:
        self._client = client
        self._db = db
        self._program_id = program_id
        self._indices = indices or AccountIndices()
        self._page_size = page_size
        self._stats = BackfillStats()

    @property
    def stats(self) -> BackfillStats:
        return self._stats

    async def entities(self, *, limit: int | None = None) -> list[str]:
        """Upsert every decodable program account.

        Returns:
            Ids of all program accounts that decoded, written or not.
        """
        accounts = await self._client.get_program_accounts(self._program_id)
        if limit is not None:
            accounts = accounts[:limit]
        logger.info("Found %d program account(s)", len(accounts))

        entity_ids: list[str] = []
        async with self._db.get_async_session() as session:
            repo = EntityRepository(session)
            for account in accounts:
                self._stats.accounts_seen += 1
                if account.owner != self._program_id:
                    self._stats.accounts_skipped += 1
                    continue
                try:
                    snapshot = decode_entity_account(
                        account.data, pubkey=account.pubkey, context_slot=account.context_slot
                    )
                except AccountLayoutError as e:
                    logger.warning("Skipping account %s: %s", account.pubkey, e)
                    self._stats.accounts_skipped += 1
                    continue

                entity_ids.append(snapshot.pubkey)
                if await repo.upsert_snapshot(snapshot, state_slot=account.context_slot):
                    self._stats.entities_written += 1
                else:
                    logger.debug("Entity %s already holds newer state", snapshot.pubkey)

        logger.info(
            "Entity backfill: %d written, %d skipped", self._stats.entities_written, self._stats.accounts_skipped
        )
        return entity_ids

    async def history(self, entity_id: str) -> int:
        """Insert history rows for every classifiable transaction of ``entity_id``.

        Entity state is left alone; older transactions never overwrite
        the snapshot the entity pass wrote.

        Returns:
            Number of new history rows.
        """
        inserted = 0
        before: str | None = None
        while True:
            page = await self._client.get_signatures_for_address(entity_id, before=before, limit=self._page_size)
            for entry in page:
                self._stats.signatures_seen += 1
                if entry.get("err") is not None:
                    continue
                if await self._backfill_transaction(str(entry["signature"]), entry.get("blockTime")):
                    inserted += 1
            if len(page) < self._page_size:
                break
            before = str(page[-1]["signature"])

        self._stats.history_inserted += inserted
        logger.info("History backfill for %s: %d new row(s)", entity_id, inserted)
        return inserted

    async def _backfill_transaction(self, signature: str, block_time: int | None) -> bool:
        raw = await self._client.get_transaction(signature)
        if raw is None:
            logger.warning("Transaction %s not available", signature)
            self._stats.transactions_skipped += 1
            return False

        try:
            tx = ParsedTransaction.from_rpc(raw)
        except (KeyError, IndexError, TypeError, ValueError, AttributeError) as e:
            logger.warning("Skipping malformed transaction %s: %s", signature, e)
            self._stats.transactions_skipped += 1
            return False
        if not tx.succeeded or not tx.involves(self._program_id):
            return False

        instruction = classify_transaction(tx, program_id=self._program_id, indices=self._indices)
        if instruction is None:
            self._stats.transactions_skipped += 1
            return False

        raw_time = raw.get("blockTime", block_time)
        timestamp = datetime.fromtimestamp(int(raw_time), tz=UTC) if raw_time is not None else datetime.now(UTC)
        async with self._db.get_async_session() as session:
            return await TransactionHistoryRepository(session).insert_if_absent(
                TransactionHistoryDTO(
                    id=tx.signature,
                    token_id=instruction.entity_id,
                    type=instruction.kind.value,
                    from_address=instruction.from_address,
                    to_address=instruction.to_address,
                    amount=instruction.amount,
                    timestamp=timestamp,
                    block_number=int(raw.get("slot", 0)),
                )
            )
