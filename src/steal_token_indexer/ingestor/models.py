"""Data models for the ingestor module."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

LAMPORTS_PER_SOL = Decimal(1_000_000_000)

SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"


def lamports_to_sol(lamports: int) -> Decimal:
    """Convert lamports to SOL without float rounding."""
    return Decimal(lamports) / LAMPORTS_PER_SOL


class MalformedEventError(ValueError):
    """Raised when a queued event cannot be turned back into an IngestionEvent."""


class EventKind(str, Enum):
    """Program operation a transaction performed."""

    CREATE = "create"
    STEAL = "steal"
    TRANSFER = "transfer"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class EntitySnapshot:
    """Point-in-time read of a program-owned token account.

    Prices are held in lamports; ``current_price``/``next_price`` expose
    the display unit (SOL).
    """

    pubkey: str
    name: str
    symbol: str
    description: str
    image: str
    holder: str
    minter: str
    fee_recipient: str
    current_price_lamports: int
    next_price_lamports: int
    context_slot: int | None = None

    @property
    def current_price(self) -> Decimal:
        return lamports_to_sol(self.current_price_lamports)

    @property
    def next_price(self) -> Decimal:
        return lamports_to_sol(self.next_price_lamports)

    def to_dict(self) -> dict[str, Any]:
        return {
            "pubkey": self.pubkey,
            "name": self.name,
            "symbol": self.symbol,
            "description": self.description,
            "image": self.image,
            "holder": self.holder,
            "minter": self.minter,
            "fee_recipient": self.fee_recipient,
            "current_price_lamports": self.current_price_lamports,
            "next_price_lamports": self.next_price_lamports,
            "context_slot": self.context_slot,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EntitySnapshot":
        """Create an EntitySnapshot from a dictionary."""
        context_slot = data.get("context_slot")
        return cls(
            pubkey=str(data["pubkey"]),
            name=str(data.get("name", "")),
            symbol=str(data.get("symbol", "")),
            description=str(data.get("description", "")),
            image=str(data.get("image", "")),
            holder=str(data["holder"]),
            minter=str(data["minter"]),
            fee_recipient=str(data.get("fee_recipient", "")),
            current_price_lamports=int(data["current_price_lamports"]),
            next_price_lamports=int(data["next_price_lamports"]),
            context_slot=int(context_slot) if context_slot is not None else None,
        )


@dataclass(frozen=True)
class IngestionEvent:
    """One classified program transaction, as carried on the event queue.

    ``id`` is the transaction signature and doubles as the idempotency key.
    """

    id: str
    entity_id: str
    kind: EventKind
    from_address: str
    to_address: str
    block_height: int
    observed_at: datetime
    amount: Decimal | None = None
    entity_snapshot: EntitySnapshot | None = None
    success: bool = True

    @property
    def state_slot(self) -> int:
        """Slot the carried state reflects (snapshot context if newer)."""
        if self.entity_snapshot is not None and self.entity_snapshot.context_slot is not None:
            return max(self.block_height, self.entity_snapshot.context_slot)
        return self.block_height

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "entity_id": self.entity_id,
            "entity_snapshot": self.entity_snapshot.to_dict() if self.entity_snapshot else None,
            "kind": self.kind.value,
            "from": self.from_address,
            "to": self.to_address,
            "amount": str(self.amount) if self.amount is not None else None,
            "block_height": self.block_height,
            "success": self.success,
            "observed_at": self.observed_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IngestionEvent":
        """Create an IngestionEvent from its queue representation.

        Raises:
            MalformedEventError: If any field is missing or cannot be parsed.
        """
        try:
            snapshot_data = data.get("entity_snapshot")
            amount = data.get("amount")
            observed_at = datetime.fromisoformat(str(data["observed_at"]).replace("Z", "+00:00"))
            if observed_at.tzinfo is None:
                observed_at = observed_at.replace(tzinfo=UTC)
            return cls(
                id=str(data["id"]),
                entity_id=str(data["entity_id"]),
                kind=EventKind(data["kind"]),
                from_address=str(data.get("from", "")),
                to_address=str(data.get("to", "")),
                block_height=int(data["block_height"]),
                observed_at=observed_at,
                amount=Decimal(str(amount)) if amount is not None else None,
                entity_snapshot=EntitySnapshot.from_dict(snapshot_data) if snapshot_data else None,
                success=bool(data.get("success", True)),
            )
        # InvalidOperation from Decimal is an ArithmeticError, not a ValueError.
        except (KeyError, TypeError, ValueError, AttributeError, ArithmeticError) as e:
            raise MalformedEventError(f"Malformed ingestion event: {e!r}") from e


@dataclass(frozen=True)
class SystemTransfer:
    """A lamport transfer executed by the system program."""

    source: str
    destination: str
    lamports: int


@dataclass(frozen=True)
class ParsedInstruction:
    """An instruction as returned by ``jsonParsed`` encoding.

    Instructions of programs the node can decode carry ``parsed``; others
    (including the indexed program) carry raw ``accounts``.
    """

    program_id: str
    accounts: tuple[str, ...] = ()
    program: str | None = None
    parsed: dict[str, Any] | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ParsedInstruction":
        parsed = data.get("parsed")
        return cls(
            program_id=str(data.get("programId", "")),
            accounts=tuple(str(a) for a in data.get("accounts") or ()),
            program=data.get("program"),
            parsed=parsed if isinstance(parsed, dict) else None,
        )

    @property
    def info(self) -> dict[str, Any] | None:
        if self.parsed is None:
            return None
        info = self.parsed.get("info")
        return info if isinstance(info, dict) else None

    def as_system_transfer(self) -> SystemTransfer | None:
        """Return the lamport transfer this instruction performs, if any."""
        if self.program_id != SYSTEM_PROGRAM_ID or self.parsed is None:
            return None
        if self.parsed.get("type") != "transfer":
            return None
        info = self.info or {}
        if "source" not in info or "destination" not in info or "lamports" not in info:
            return None
        return SystemTransfer(
            source=str(info["source"]),
            destination=str(info["destination"]),
            lamports=int(info["lamports"]),
        )


@dataclass(frozen=True)
class InnerInstructionGroup:
    """Inner instructions emitted while executing outer instruction ``index``."""

    index: int
    instructions: tuple[ParsedInstruction, ...]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InnerInstructionGroup":
        return cls(
            index=int(data.get("index", 0)),
            instructions=tuple(ParsedInstruction.from_dict(i) for i in data.get("instructions") or ()),
        )


@dataclass(frozen=True)
class ParsedTransaction:
    """Typed view over a ``jsonParsed`` block transaction."""

    signature: str
    static_account_keys: tuple[str, ...]
    instructions: tuple[ParsedInstruction, ...]
    inner_instructions: tuple[InnerInstructionGroup, ...] = ()
    log_messages: tuple[str, ...] = ()
    err: Any = None

    @property
    def succeeded(self) -> bool:
        return self.err is None

    def involves(self, program_id: str) -> bool:
        return program_id in self.static_account_keys

    @classmethod
    def from_rpc(cls, data: dict[str, Any]) -> "ParsedTransaction":
        """Create a ParsedTransaction from a ``getBlock`` transaction entry.

        Raises:
            KeyError: If the transaction has no signature or message.
        """
        tx = data["transaction"]
        message = tx["message"]
        meta = data.get("meta") or {}

        static_keys: list[str] = []
        for key in message.get("accountKeys") or ():
            if isinstance(key, dict):
                # Keys resolved from address lookup tables are not static.
                if key.get("source") == "lookupTable":
                    continue
                static_keys.append(str(key["pubkey"]))
            else:
                static_keys.append(str(key))

        return cls(
            signature=str(tx["signatures"][0]),
            static_account_keys=tuple(static_keys),
            instructions=tuple(ParsedInstruction.from_dict(i) for i in message.get("instructions") or ()),
            inner_instructions=tuple(
                InnerInstructionGroup.from_dict(g) for g in meta.get("innerInstructions") or ()
            ),
            log_messages=tuple(str(m) for m in meta.get("logMessages") or ()),
            err=meta.get("err"),
        )


@dataclass(frozen=True)
class ConfirmedBlock:
    """A fetched block reduced to what the processor needs."""

    slot: int
    block_time: datetime | None
    transactions: tuple[dict[str, Any], ...] = field(default_factory=tuple)

    @classmethod
    def from_rpc(cls, slot: int, data: dict[str, Any]) -> "ConfirmedBlock":
        block_time_raw = data.get("blockTime")
        block_time = (
            datetime.fromtimestamp(int(block_time_raw), tz=UTC) if block_time_raw is not None else None
        )
        return cls(
            slot=slot,
            block_time=block_time,
            transactions=tuple(data.get("transactions") or ()),
        )
