"""Solana JSON-RPC client with rate limiting, retry and failover.

This module provides a read-only Solana client for the indexer with:
- Rate limiting to respect provider limits
- Retry logic with exponential backoff for transient node errors
- Failover to secondary RPC URL
- Typed errors separating skipped slots from unavailable blocks
"""

import asyncio
import base64
import itertools
import logging
import time
from dataclasses import dataclass
from typing import Any

import httpx

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_MAX_REQUESTS_PER_SECOND = 10
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 0.5
DEFAULT_REQUEST_TIMEOUT = 30.0

# Slot was skipped by the leader, or is missing from long-term storage.
SKIPPED_SLOT_ERROR_CODES = frozenset({-32007, -32009})

# Block not available yet, node behind, block status not yet available,
# minimum context slot not reached.
TRANSIENT_ERROR_CODES = frozenset({-32004, -32005, -32014, -32016})


class SolanaClientError(Exception):
    """Base exception for Solana client errors."""


class RPCError(SolanaClientError):
    """Raised when the node answers with a JSON-RPC error object."""

    def __init__(self, code: int, message: str, *, method: str | None = None) -> None:
        super().__init__(f"{method or 'rpc'} error {code}: {message}")
        self.code = code
        self.message = message
        self.method = method

    @property
    def is_transient(self) -> bool:
        return self.code in TRANSIENT_ERROR_CODES


class SlotSkippedError(RPCError):
    """Raised when the requested slot has no block (skipped by the ledger)."""


class RateLimitError(SolanaClientError):
    """Raised when the provider rejects a request with HTTP 429."""


class RPCUnavailableError(SolanaClientError):
    """Raised when a call still fails after all retries and failover."""


class BlockUnavailableError(RPCUnavailableError):
    """Raised when a block could not be fetched within the retry budget."""

    def __init__(self, slot: int, reason: str) -> None:
        super().__init__(f"Block {slot} unavailable: {reason}")
        self.slot = slot


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> "RateLimiter":
        """Create a rate limiter with specified max requests per second."""
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


@dataclass(frozen=True)
class AccountInfo:
    """Raw account state returned by ``getAccountInfo``."""

    pubkey: str
    data: bytes
    owner: str
    lamports: int
    context_slot: int


class SolanaClient:
    """Read-only Solana JSON-RPC client.

    Example:
        ```python
        client = SolanaClient(
            "https://api.devnet.solana.com",
            fallback_rpc_url="https://devnet.helius-rpc.com/?api-key=...",
        )
        tip = await client.get_slot()
        block = await client.get_block(tip - 2)
        await client.aclose()
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        fallback_rpc_url: str | None = None,
        commitment: str = "confirmed",
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the Solana client.

        Args:
            rpc_url: Primary JSON-RPC endpoint URL.
            fallback_rpc_url: Optional fallback endpoint for failover.
            commitment: Commitment level for every read.
            max_requests_per_second: Rate limit for RPC calls.
            max_retries: Attempts per endpoint before giving up.
            retry_delay_seconds: Initial delay between retries.
            timeout_seconds: HTTP request timeout.
            transport: Optional httpx transport (used by tests).
        """
        self._rpc_url = rpc_url
        self._fallback_rpc_url = fallback_rpc_url
        self._commitment = commitment
        self._max_retries = max(1, max_retries)
        self._retry_delay = retry_delay_seconds

        self._http = httpx.AsyncClient(timeout=timeout_seconds, transport=transport)
        self._rate_limiter = RateLimiter.create(max_requests_per_second)
        self._request_ids = itertools.count(1)

        # Track primary RPC health
        self._primary_healthy = True
        self._last_primary_check = 0.0
        self._primary_recovery_interval = 60.0

    @property
    def commitment(self) -> str:
        return self._commitment

    async def aclose(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._http.aclose()

    def _should_try_primary(self) -> bool:
        if self._primary_healthy or not self._fallback_rpc_url:
            return True
        now = time.monotonic()
        if now - self._last_primary_check > self._primary_recovery_interval:
            self._last_primary_check = now
            return True
        return False

    async def _call(self, url: str, method: str, params: list[Any]) -> Any:
        """Perform a single JSON-RPC request against ``url``."""
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._request_ids),
            "method": method,
            "params": params,
        }
        response = await self._http.post(url, json=payload)
        if response.status_code == 429:
            raise RateLimitError(f"{method} rate limited by {url}")
        response.raise_for_status()
        body = response.json()
        error = body.get("error")
        if error:
            code = int(error.get("code", 0))
            message = str(error.get("message", ""))
            if code in SKIPPED_SLOT_ERROR_CODES:
                raise SlotSkippedError(code, message, method=method)
            raise RPCError(code, message, method=method)
        return body.get("result")

    async def _attempt_endpoint(
        self,
        url: str,
        label: str,
        method: str,
        params: list[Any],
    ) -> tuple[bool, Any, Exception | None]:
        delay = self._retry_delay
        last_error: Exception | None = None
        for attempt in range(self._max_retries):
            try:
                result = await self._call(url, method, params)
                return True, result, None
            except RPCError as e:
                if not e.is_transient:
                    raise
                last_error = e
            except (RateLimitError, httpx.HTTPError) as e:
                last_error = e
            logger.warning(
                "%s RPC %s failed (attempt %d/%d): %s",
                label,
                method,
                attempt + 1,
                self._max_retries,
                last_error,
            )
            if attempt < self._max_retries - 1:
                await asyncio.sleep(delay)
                delay *= 2  # Exponential backoff
        return False, None, last_error

    async def _execute_with_retry(self, method: str, params: list[Any]) -> Any:
        """Execute an RPC call with retry and failover logic.

        Non-transient RPC errors (including skipped slots) propagate
        immediately; transient ones are retried on the primary and then
        the fallback endpoint.

        Raises:
            RPCError: For a non-transient node error.
            RPCUnavailableError: If all retries and failover fail.
        """
        await self._rate_limiter.acquire()

        last_error: Exception | None = None

        if self._should_try_primary():
            ok, result, last_error = await self._attempt_endpoint(self._rpc_url, "Primary", method, params)
            if ok:
                self._primary_healthy = True
                return result
            self._primary_healthy = False
            self._last_primary_check = time.monotonic()

        if self._fallback_rpc_url:
            ok, result, fallback_error = await self._attempt_endpoint(
                self._fallback_rpc_url, "Fallback", method, params
            )
            if ok:
                logger.info("Fallback RPC succeeded for %s", method)
                return result
            last_error = fallback_error or last_error

        raise RPCUnavailableError(f"RPC call {method} failed after all retries: {last_error}")

    async def get_slot(self, commitment: str | None = None) -> int:
        """Get the current slot at the given (or configured) commitment."""
        result = await self._execute_with_retry(
            "getSlot",
            [{"commitment": commitment or self._commitment}],
        )
        return int(result)

    async def get_block(self, slot: int) -> dict[str, Any] | None:
        """Fetch a block with ``jsonParsed`` transactions.

        Returns:
            The raw block object, or None if the node returned no block.

        Raises:
            SlotSkippedError: If the slot was skipped by the ledger.
            BlockUnavailableError: If the block stayed unavailable after retries.
        """
        params: list[Any] = [
            slot,
            {
                "encoding": "jsonParsed",
                "maxSupportedTransactionVersion": 0,
                "transactionDetails": "full",
                "rewards": False,
                "commitment": self._commitment,
            },
        ]
        try:
            result = await self._execute_with_retry("getBlock", params)
        except RPCUnavailableError as e:
            raise BlockUnavailableError(slot, str(e)) from e
        return result if isinstance(result, dict) else None

    async def get_account_info(
        self,
        pubkey: str,
        *,
        min_context_slot: int | None = None,
    ) -> AccountInfo | None:
        """Fetch raw account data.

        Args:
            pubkey: Account address (base58).
            min_context_slot: Require the node to have processed at least this slot.

        Returns:
            AccountInfo, or None if the account does not exist.
        """
        config: dict[str, Any] = {"encoding": "base64", "commitment": self._commitment}
        if min_context_slot is not None:
            config["minContextSlot"] = min_context_slot
        result = await self._execute_with_retry("getAccountInfo", [pubkey, config])
        if not isinstance(result, dict):
            return None
        value = result.get("value")
        if not value:
            return None
        context_slot = int((result.get("context") or {}).get("slot", 0))
        return _account_info(pubkey, value, context_slot)

    async def get_program_accounts(self, program_id: str) -> list[AccountInfo]:
        """Fetch every account owned by ``program_id``.

        All returned accounts share the context slot the node answered at.
        """
        config = {"encoding": "base64", "commitment": self._commitment, "withContext": True}
        result = await self._execute_with_retry("getProgramAccounts", [program_id, config])
        if isinstance(result, dict):
            context_slot = int((result.get("context") or {}).get("slot", 0))
            entries = result.get("value") or []
        else:
            context_slot = 0
            entries = result or []
        return [_account_info(str(entry["pubkey"]), entry["account"], context_slot) for entry in entries]

    async def get_signatures_for_address(
        self,
        address: str,
        *,
        before: str | None = None,
        limit: int = 1000,
    ) -> list[dict[str, Any]]:
        """Fetch one page of signatures for ``address``, newest first."""
        config: dict[str, Any] = {"limit": limit, "commitment": self._commitment}
        if before:
            config["before"] = before
        result = await self._execute_with_retry("getSignaturesForAddress", [address, config])
        return list(result or [])

    async def get_transaction(self, signature: str) -> dict[str, Any] | None:
        """Fetch one ``jsonParsed`` transaction, or None if the node does not have it."""
        config = {
            "encoding": "jsonParsed",
            "maxSupportedTransactionVersion": 0,
            "commitment": self._commitment,
        }
        result = await self._execute_with_retry("getTransaction", [signature, config])
        return result if isinstance(result, dict) else None


def _account_info(pubkey: str, value: dict[str, Any], context_slot: int) -> AccountInfo:
    raw_data = value.get("data")
    if isinstance(raw_data, list):
        encoded = raw_data[0]
    else:
        encoded = raw_data or ""
    return AccountInfo(
        pubkey=pubkey,
        data=base64.b64decode(encoded),
        owner=str(value.get("owner", "")),
        lamports=int(value.get("lamports", 0)),
        context_slot=context_slot,
    )
