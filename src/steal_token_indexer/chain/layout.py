"""Binary layout of the program's token account.

Layout (Borsh, as written by Anchor):

    [8]  account discriminator
    [4+n] name          (u32 LE length prefix + UTF-8)
    [4+n] symbol
    [4+n] description
    [4+n] image URL
    [32] holder
    [32] minter
    [32] fee recipient
    [8]  current price  (u64 LE, lamports)
    [8]  next price     (u64 LE, lamports)
"""

from __future__ import annotations

import hashlib
import struct

from solders.pubkey import Pubkey

from steal_token_indexer.ingestor.models import EntitySnapshot

ACCOUNT_DISCRIMINATOR = hashlib.sha256(b"account:CustomToken").digest()[:8]

MAX_NAME_LENGTH = 32
MAX_SYMBOL_LENGTH = 8
MAX_DESCRIPTION_LENGTH = 200
MAX_IMAGE_LENGTH = 200

_PUBKEY_LENGTH = 32
_U32 = struct.Struct("<I")
_U64 = struct.Struct("<Q")


class AccountLayoutError(ValueError):
    """Raised when account data does not match the expected layout."""


class _Reader:
    def __init__(self, data: bytes) -> None:
        self._data = data
        self._offset = 0

    def take(self, n: int, what: str) -> bytes:
        end = self._offset + n
        if end > len(self._data):
            raise AccountLayoutError(
                f"{what} needs {n} bytes at offset {self._offset}, buffer has {len(self._data)}"
            )
        chunk = self._data[self._offset : end]
        self._offset = end
        return chunk

    def string(self, what: str) -> str:
        (length,) = _U32.unpack(self.take(_U32.size, f"{what} length"))
        raw = self.take(length, what)
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise AccountLayoutError(f"{what} is not valid UTF-8") from e

    def pubkey(self, what: str) -> str:
        return str(Pubkey.from_bytes(self.take(_PUBKEY_LENGTH, what)))

    def u64(self, what: str) -> int:
        (value,) = _U64.unpack(self.take(_U64.size, what))
        return int(value)


def decode_entity_account(
    data: bytes,
    *,
    pubkey: str,
    context_slot: int | None = None,
) -> EntitySnapshot:
    """Decode raw account data into an EntitySnapshot.

    Args:
        data: Raw account bytes.
        pubkey: Address of the account (the entity id).
        context_slot: Slot the data was read at, if known.

    Raises:
        AccountLayoutError: On a wrong discriminator or any field that would
            read past the end of the buffer.
    """
    reader = _Reader(data)
    if reader.take(len(ACCOUNT_DISCRIMINATOR), "discriminator") != ACCOUNT_DISCRIMINATOR:
        raise AccountLayoutError(f"Account {pubkey} is not a token account (discriminator mismatch)")

    name = reader.string("name")
    symbol = reader.string("symbol")
    description = reader.string("description")
    image = reader.string("image")
    holder = reader.pubkey("holder")
    minter = reader.pubkey("minter")
    fee_recipient = reader.pubkey("fee recipient")
    current_price = reader.u64("current price")
    next_price = reader.u64("next price")

    return EntitySnapshot(
        pubkey=pubkey,
        name=name,
        symbol=symbol,
        description=description,
        image=image,
        holder=holder,
        minter=minter,
        fee_recipient=fee_recipient,
        current_price_lamports=current_price,
        next_price_lamports=next_price,
        context_slot=context_slot,
    )


def _encode_string(value: str, *, what: str, limit: int) -> bytes:
    if len(value) > limit:
        raise AccountLayoutError(f"{what} exceeds {limit} characters")
    raw = value.encode("utf-8")
    return _U32.pack(len(raw)) + raw


def _encode_pubkey(value: str, *, what: str) -> bytes:
    try:
        return bytes(Pubkey.from_string(value))
    except Exception as e:
        raise AccountLayoutError(f"{what} is not a valid public key: {value}") from e


def encode_entity_account(snapshot: EntitySnapshot) -> bytes:
    """Encode an EntitySnapshot into the on-chain account layout.

    Raises:
        AccountLayoutError: If a field exceeds the program's limits.
    """
    for what, price in (
        ("current price", snapshot.current_price_lamports),
        ("next price", snapshot.next_price_lamports),
    ):
        if not 0 <= price < 2**64:
            raise AccountLayoutError(f"{what} does not fit in u64: {price}")

    return b"".join(
        (
            ACCOUNT_DISCRIMINATOR,
            _encode_string(snapshot.name, what="name", limit=MAX_NAME_LENGTH),
            _encode_string(snapshot.symbol, what="symbol", limit=MAX_SYMBOL_LENGTH),
            _encode_string(snapshot.description, what="description", limit=MAX_DESCRIPTION_LENGTH),
            _encode_string(snapshot.image, what="image", limit=MAX_IMAGE_LENGTH),
            _encode_pubkey(snapshot.holder, what="holder"),
            _encode_pubkey(snapshot.minter, what="minter"),
            _encode_pubkey(snapshot.fee_recipient, what="fee recipient"),
            _U64.pack(snapshot.current_price_lamports),
            _U64.pack(snapshot.next_price_lamports),
        )
    )
