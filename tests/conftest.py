"""Pytest configuration and fixtures."""

from datetime import UTC, datetime

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from steal_token_indexer.ingestor.models import EntitySnapshot, EventKind, IngestionEvent
from steal_token_indexer.storage.database import DatabaseManager
from steal_token_indexer.storage.models import Base

PROGRAM_ID = "9P9GUVz1EMfe3KF6NKgM7kMGkuETKGLei7yHmoETD9gN"
ENTITY_ID = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"
MINTER = "HN7cABqLq46Es1jh92dQQisAq662SmxELLLsHHe4YWrH"
HOLDER = "4Nd1mBQtrMJVYVfKf2PJy9NZUZdTAsp7D4xWLs4gDB4T"
STEALER = "5ZWj7a1f8tWkjBESHKgrLmXshuXxqeY9SYcfbshpAqPG"
FEE_RECIPIENT = "2wmVCSfPxGPjrnMMn7rchp4uaeoTqN39mXFC2zhPdri9"


@pytest.fixture
def program_id() -> str:
    return PROGRAM_ID


@pytest.fixture
def sample_snapshot() -> EntitySnapshot:
    """Snapshot of a freshly created token."""
    return EntitySnapshot(
        pubkey=ENTITY_ID,
        name="Golden Goose",
        symbol="GOOSE",
        description="Steal me if you can",
        image="https://gateway.pinata.cloud/ipfs/QmYwAPJzv5CZsnA625s3Xf2nemtYgPpHdWEz79ojWnPbdG",
        holder=MINTER,
        minter=MINTER,
        fee_recipient=FEE_RECIPIENT,
        current_price_lamports=100_000_000,
        next_price_lamports=120_000_000,
        context_slot=1000,
    )


@pytest.fixture
def create_event(sample_snapshot: EntitySnapshot) -> IngestionEvent:
    return IngestionEvent(
        id="5" * 88,
        entity_id=ENTITY_ID,
        kind=EventKind.CREATE,
        from_address="System",
        to_address=MINTER,
        block_height=1000,
        observed_at=datetime(2026, 10, 17, 12, 0, tzinfo=UTC),
        entity_snapshot=sample_snapshot,
    )


@pytest.fixture
async def async_engine():
    """Create an async SQLite engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def async_session(async_engine) -> AsyncSession:
    """Create an async session for testing."""
    session_factory = async_sessionmaker(bind=async_engine, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
def db_manager(async_engine) -> DatabaseManager:
    """DatabaseManager bound to the in-memory engine."""
    return DatabaseManager("sqlite+aiosqlite:///:memory:", engine=async_engine)


SYSTEM_PROGRAM = "11111111111111111111111111111111"


def _system_transfer(source: str, destination: str, lamports: int) -> dict:
    return {
        "program": "system",
        "programId": SYSTEM_PROGRAM,
        "parsed": {
            "type": "transfer",
            "info": {"source": source, "destination": destination, "lamports": lamports},
        },
        "stackHeight": 2,
    }


def _program_logs(marker: str, inner_calls: int) -> list[str]:
    logs = [f"Program {PROGRAM_ID} invoke [1]", f"Program log: {marker}"]
    for _ in range(inner_calls):
        logs += [f"Program {SYSTEM_PROGRAM} invoke [2]", f"Program {SYSTEM_PROGRAM} success"]
    logs += [
        f"Program {PROGRAM_ID} consumed 21500 of 200000 compute units",
        f"Program {PROGRAM_ID} success",
    ]
    return logs


@pytest.fixture
def make_rpc_tx():
    """Build a jsonParsed ``getBlock`` transaction entry."""

    def _make(
        *,
        signature: str,
        logs: list[str],
        accounts: list[str],
        inner: list[dict] | None = None,
        err: object = None,
        static_keys: list[str] | None = None,
    ) -> dict:
        keys = static_keys if static_keys is not None else [*accounts, SYSTEM_PROGRAM, PROGRAM_ID]
        return {
            "transaction": {
                "signatures": [signature],
                "message": {
                    "accountKeys": [
                        {"pubkey": k, "signer": i == 0, "writable": True, "source": "transaction"}
                        for i, k in enumerate(keys)
                    ],
                    "instructions": [
                        {"programId": PROGRAM_ID, "accounts": accounts, "data": "3Bxs4h24hBtQy9rw", "stackHeight": None}
                    ],
                },
            },
            "meta": {
                "err": err,
                "logMessages": logs,
                "innerInstructions": [{"index": 0, "instructions": inner or []}],
            },
        }

    return _make


@pytest.fixture
def create_tx(make_rpc_tx) -> dict:
    create_account = {
        "program": "system",
        "programId": SYSTEM_PROGRAM,
        "parsed": {
            "type": "createAccount",
            "info": {
                "source": MINTER,
                "newAccount": ENTITY_ID,
                "lamports": 3_500_000,
                "space": 420,
                "owner": PROGRAM_ID,
            },
        },
        "stackHeight": 2,
    }
    return make_rpc_tx(
        signature="c" * 88,
        logs=_program_logs("Instruction: Initialize", 1),
        accounts=[ENTITY_ID, MINTER, SYSTEM_PROGRAM],
        inner=[create_account],
    )


@pytest.fixture
def steal_tx(make_rpc_tx) -> dict:
    """Steal paying 0.5 SOL to the holder, 0.05 fee and 0.01 royalty."""
    tx = make_rpc_tx(
        signature="s" * 88,
        logs=_program_logs("Instruction: Steal", 3),
        accounts=[ENTITY_ID, STEALER, HOLDER, FEE_RECIPIENT, MINTER, SYSTEM_PROGRAM],
        inner=[
            _system_transfer(STEALER, HOLDER, 500_000_000),
            _system_transfer(STEALER, FEE_RECIPIENT, 50_000_000),
        ],
    )
    # The royalty leg lands in a second inner-instruction group.
    tx["meta"]["innerInstructions"].append(
        {"index": 1, "instructions": [_system_transfer(STEALER, MINTER, 10_000_000)]}
    )
    return tx


@pytest.fixture
def transfer_tx(make_rpc_tx) -> dict:
    return make_rpc_tx(
        signature="t" * 88,
        logs=_program_logs("Instruction: Transfer", 0),
        accounts=[ENTITY_ID, HOLDER, STEALER],
    )
