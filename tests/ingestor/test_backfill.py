"""Tests for populating the store from chain reads."""

import dataclasses
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from steal_token_indexer.chain.client import AccountInfo
from steal_token_indexer.chain.layout import encode_entity_account
from steal_token_indexer.ingestor.backfill import Backfill
from steal_token_indexer.ingestor.models import EntitySnapshot
from steal_token_indexer.storage.database import DatabaseManager
from steal_token_indexer.storage.repos import EntityRepository, TransactionHistoryRepository

ENTITY_ID = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"
OTHER_ID = "3Kz9ZbQp4n6VvCwJb8rVjB3yWQk7GZrZzD2HtdPC9u8L"
STEALER = "5ZWj7a1f8tWkjBESHKgrLmXshuXxqeY9SYcfbshpAqPG"
HOLDER = "4Nd1mBQtrMJVYVfKf2PJy9NZUZdTAsp7D4xWLs4gDB4T"


def _account(snapshot: EntitySnapshot, owner: str, context_slot: int = 2000) -> AccountInfo:
    return AccountInfo(
        pubkey=snapshot.pubkey,
        data=encode_entity_account(snapshot),
        owner=owner,
        lamports=3_500_000,
        context_slot=context_slot,
    )


def _confirmed(tx: dict, slot: int, block_time: int = 1_792_238_400) -> dict:
    return {**tx, "slot": slot, "blockTime": block_time}


@pytest.fixture
def client() -> AsyncMock:
    return AsyncMock()


class TestEntities:
    """Tests for the program-account pass."""

    @pytest.mark.asyncio
    async def test_upserts_decodable_accounts(
        self, client: AsyncMock, db_manager: DatabaseManager, sample_snapshot: EntitySnapshot, program_id: str
    ) -> None:
        foreign = dataclasses.replace(sample_snapshot, pubkey=OTHER_ID)
        client.get_program_accounts.return_value = [
            _account(sample_snapshot, program_id),
            _account(foreign, "11111111111111111111111111111111"),
            AccountInfo(pubkey="Broken", data=b"\x00" * 16, owner=program_id, lamports=1, context_slot=2000),
        ]
        backfill = Backfill(client, db_manager, program_id=program_id)

        assert await backfill.entities() == [ENTITY_ID]

        async with db_manager.get_async_session() as session:
            repo = EntityRepository(session)
            entity = await repo.get(ENTITY_ID)
            assert await repo.get(OTHER_ID) is None
        assert entity is not None
        assert entity.current_holder == sample_snapshot.holder
        assert entity.current_price == Decimal("0.1")
        assert entity.state_slot == 2000
        assert backfill.stats.entities_written == 1
        assert backfill.stats.accounts_skipped == 2
        client.get_program_accounts.assert_awaited_once_with(program_id)

    @pytest.mark.asyncio
    async def test_newer_state_not_overwritten(
        self, client: AsyncMock, db_manager: DatabaseManager, sample_snapshot: EntitySnapshot, program_id: str
    ) -> None:
        async with db_manager.get_async_session() as session:
            await EntityRepository(session).update_holder(ENTITY_ID, STEALER, state_slot=5000)
        client.get_program_accounts.return_value = [_account(sample_snapshot, program_id, context_slot=2000)]
        backfill = Backfill(client, db_manager, program_id=program_id)

        assert await backfill.entities() == [ENTITY_ID]

        async with db_manager.get_async_session() as session:
            entity = await EntityRepository(session).get(ENTITY_ID)
        assert entity is not None
        assert entity.current_holder == STEALER
        assert backfill.stats.entities_written == 0

    @pytest.mark.asyncio
    async def test_limit(
        self, client: AsyncMock, db_manager: DatabaseManager, sample_snapshot: EntitySnapshot, program_id: str
    ) -> None:
        other = dataclasses.replace(sample_snapshot, pubkey=OTHER_ID)
        client.get_program_accounts.return_value = [
            _account(sample_snapshot, program_id),
            _account(other, program_id),
        ]

        ids = await Backfill(client, db_manager, program_id=program_id).entities(limit=1)

        assert ids == [ENTITY_ID]


class TestHistory:
    """Tests for the per-entity signature pass."""

    @pytest.mark.asyncio
    async def test_pages_and_inserts_classified_transactions(
        self,
        client: AsyncMock,
        db_manager: DatabaseManager,
        program_id: str,
        create_tx: dict,
        steal_tx: dict,
        transfer_tx: dict,
    ) -> None:
        pages = {
            None: [
                {"signature": "t" * 88, "slot": 1020, "err": None},
                {"signature": "f" * 88, "slot": 1015, "err": {"InstructionError": [0, {"Custom": 1}]}},
            ],
            "f" * 88: [
                {"signature": "s" * 88, "slot": 1010, "err": None},
                {"signature": "c" * 88, "slot": 1000, "err": None},
            ],
            "c" * 88: [],
        }
        transactions = {
            "t" * 88: _confirmed(transfer_tx, 1020),
            "s" * 88: _confirmed(steal_tx, 1010),
            "c" * 88: _confirmed(create_tx, 1000),
        }

        async def get_signatures_for_address(address: str, *, before: str | None, limit: int) -> list[dict]:
            assert address == ENTITY_ID
            return pages[before]

        async def get_transaction(signature: str) -> dict:
            return transactions[signature]

        client.get_signatures_for_address.side_effect = get_signatures_for_address
        client.get_transaction.side_effect = get_transaction
        backfill = Backfill(client, db_manager, program_id=program_id, page_size=2)

        assert await backfill.history(ENTITY_ID) == 3

        async with db_manager.get_async_session() as session:
            rows = await TransactionHistoryRepository(session).list_by_entity(ENTITY_ID)
            entity = await EntityRepository(session).get(ENTITY_ID)
        by_id = {row.id: row for row in rows}
        assert set(by_id) == {"t" * 88, "s" * 88, "c" * 88}
        assert by_id["s" * 88].type == "steal"
        assert by_id["s" * 88].amount == Decimal("0.56")
        assert by_id["s" * 88].block_number == 1010
        assert (by_id["t" * 88].from_address, by_id["t" * 88].to_address) == (HOLDER, STEALER)
        assert entity is None
        assert client.get_signatures_for_address.await_count == 3
        assert backfill.stats.signatures_seen == 4

    @pytest.mark.asyncio
    async def test_rerun_inserts_nothing(
        self, client: AsyncMock, db_manager: DatabaseManager, program_id: str, transfer_tx: dict
    ) -> None:
        client.get_signatures_for_address.return_value = [{"signature": "t" * 88, "slot": 1020, "err": None}]
        client.get_transaction.return_value = _confirmed(transfer_tx, 1020)
        backfill = Backfill(client, db_manager, program_id=program_id)

        assert await backfill.history(ENTITY_ID) == 1
        assert await backfill.history(ENTITY_ID) == 0

    @pytest.mark.asyncio
    async def test_unavailable_and_malformed_transactions_skipped(
        self, client: AsyncMock, db_manager: DatabaseManager, program_id: str, transfer_tx: dict
    ) -> None:
        client.get_signatures_for_address.return_value = [
            {"signature": "m" * 88, "slot": 1030, "err": None},
            {"signature": "x" * 88, "slot": 1025, "err": None},
            {"signature": "t" * 88, "slot": 1020, "err": None},
        ]
        transactions = {"m" * 88: None, "x" * 88: {"slot": 1025, "meta": {}}, "t" * 88: _confirmed(transfer_tx, 1020)}

        async def get_transaction(signature: str) -> dict | None:
            return transactions[signature]

        client.get_transaction.side_effect = get_transaction
        backfill = Backfill(client, db_manager, program_id=program_id)

        assert await backfill.history(ENTITY_ID) == 1
        assert backfill.stats.transactions_skipped == 2
