"""Chain reader - Solana RPC, slot notifications and account layout."""

from steal_token_indexer.chain.client import (
    AccountInfo,
    BlockUnavailableError,
    RPCError,
    RPCUnavailableError,
    SlotSkippedError,
    SolanaClient,
    SolanaClientError,
)
from steal_token_indexer.chain.layout import (
    AccountLayoutError,
    decode_entity_account,
    encode_entity_account,
)
from steal_token_indexer.chain.slots import SlotStreamHandler

__all__ = [
    "AccountInfo",
    "AccountLayoutError",
    "BlockUnavailableError",
    "RPCError",
    "RPCUnavailableError",
    "SlotSkippedError",
    "SlotStreamHandler",
    "SolanaClient",
    "SolanaClientError",
    "decode_entity_account",
    "encode_entity_account",
]
