"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
Steal Token Indexer, loading and validating environment variables at
startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from solders.pubkey import Pubkey

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

DEFAULT_PROGRAM_ID = "9P9GUVz1EMfe3KF6NKgM7kMGkuETKGLei7yHmoETD9gN"

Command = Literal[
    "run",
    "scan",
    "consume",
    "upload-checks",
    "init-db",
    "rescan-failed",
    "track-upload",
    "backfill",
]


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="redis://localhost:6379",
        alias="REDIS_URL",
        description="Redis connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate Redis URL format."""
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class SolanaSettings(BaseSettings):
    """Solana RPC settings."""

    model_config = SettingsConfigDict(env_prefix="SOLANA_", extra="ignore")

    rpc_url: str = Field(
        default="https://api.devnet.solana.com",
        alias="SOLANA_RPC_URL",
        description="Primary Solana JSON-RPC endpoint",
    )
    fallback_rpc_url: str | None = Field(
        default=None,
        alias="SOLANA_FALLBACK_RPC_URL",
        description="Fallback Solana JSON-RPC endpoint",
    )
    ws_url: str = Field(
        default="wss://api.devnet.solana.com",
        alias="SOLANA_WS_URL",
        description="Solana PubSub WebSocket endpoint (slot notifications)",
    )
    program_id: str = Field(
        default=DEFAULT_PROGRAM_ID,
        alias="SOLANA_PROGRAM_ID",
        description="Address of the steal_token program to index",
    )
    commitment: Literal["confirmed", "finalized"] = Field(
        default="confirmed",
        alias="SOLANA_COMMITMENT",
        description="Commitment level treated as final",
    )
    max_requests_per_second: float = Field(
        default=10.0,
        alias="SOLANA_MAX_REQUESTS_PER_SECOND",
        gt=0.0,
        le=1000.0,
        description="Client-side RPC rate limit",
    )

    @field_validator("rpc_url", "fallback_rpc_url")
    @classmethod
    def validate_rpc_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v

    @field_validator("ws_url")
    @classmethod
    def validate_ws_url(cls, v: str) -> str:
        """Validate WebSocket URL format."""
        if not v.startswith(("ws://", "wss://")):
            raise ValueError("WebSocket URL must start with ws:// or wss://")
        return v

    @field_validator("program_id")
    @classmethod
    def validate_program_id(cls, v: str) -> str:
        try:
            Pubkey.from_string(v)
        except Exception as e:
            raise ValueError(f"SOLANA_PROGRAM_ID is not a valid public key: {v}") from e
        return v


class ScannerSettings(BaseSettings):
    """Block scanner settings."""

    model_config = SettingsConfigDict(env_prefix="SCANNER_", extra="ignore")

    name: str = Field(
        default="transaction_scanner",
        alias="SCANNER_NAME",
        max_length=50,
        description="Cursor key for this scanner instance",
    )
    window_size: int = Field(
        default=10,
        alias="SCANNER_WINDOW_SIZE",
        ge=1,
        le=1000,
        description="Slots scheduled per window before the cursor is persisted",
    )
    concurrency: int = Field(
        default=5,
        alias="SCANNER_CONCURRENCY",
        ge=1,
        le=100,
        description="Maximum blocks fetched concurrently within a window",
    )
    lag: int = Field(
        default=2,
        alias="SCANNER_LAG",
        ge=0,
        le=1000,
        description="Slots to stay behind the confirmed tip",
    )
    start_slot: int | None = Field(
        default=None,
        alias="SCANNER_START_SLOT",
        ge=0,
        description="Explicit start slot when no cursor is persisted",
    )
    fetch_retries: int = Field(
        default=3,
        alias="SCANNER_FETCH_RETRIES",
        ge=1,
        le=20,
        description="Attempts per block before it is recorded as failed",
    )
    fetch_backoff_seconds: float = Field(
        default=0.5,
        alias="SCANNER_FETCH_BACKOFF_SECONDS",
        ge=0.0,
        le=60.0,
        description="Initial delay between block fetch attempts",
    )
    poll_interval_seconds: float = Field(
        default=2.0,
        alias="SCANNER_POLL_INTERVAL_SECONDS",
        ge=0.1,
        le=300.0,
        description="Tip re-check interval when no slot notification arrives",
    )


class QueueSettings(BaseSettings):
    """Durable queue (Redis Streams) settings."""

    model_config = SettingsConfigDict(env_prefix="QUEUE_", extra="ignore")

    events_stream: str = Field(
        default="steal_token:transaction_queue",
        alias="QUEUE_EVENTS_STREAM",
        description="Stream holding ingestion events",
    )
    events_dead_letter_stream: str = Field(
        default="steal_token:transaction_dlq",
        alias="QUEUE_EVENTS_DEAD_LETTER_STREAM",
        description="Stream receiving undeliverable ingestion events",
    )
    notifications_stream: str = Field(
        default="steal_token:email_queue",
        alias="QUEUE_NOTIFICATIONS_STREAM",
        description="Stream receiving user notification fan-out",
    )
    group: str = Field(
        default="indexer",
        alias="QUEUE_GROUP",
        description="Consumer group name",
    )
    consumer_name: str = Field(
        default="consumer-1",
        alias="QUEUE_CONSUMER_NAME",
        description="Consumer name within the group",
    )
    batch_size: int = Field(
        default=10,
        alias="QUEUE_BATCH_SIZE",
        ge=1,
        le=1000,
        description="Messages read per call",
    )
    block_ms: int = Field(
        default=1000,
        alias="QUEUE_BLOCK_MS",
        ge=1,
        le=60_000,
        description="Blocking read timeout (milliseconds)",
    )
    claim_idle_ms: int = Field(
        default=60_000,
        alias="QUEUE_CLAIM_IDLE_MS",
        ge=1000,
        description="Pending entries idle longer than this are reclaimed",
    )
    max_deliveries: int | None = Field(
        default=None,
        alias="QUEUE_MAX_DELIVERIES",
        ge=1,
        description="Dead-letter after this many deliveries (unset = retry forever)",
    )
    consumer_concurrency: int = Field(
        default=1,
        alias="QUEUE_CONSUMER_CONCURRENCY",
        ge=1,
        le=64,
        description="Concurrent consumer workers",
    )


class UploadCheckSettings(BaseSettings):
    """Pending asset upload tracking settings."""

    model_config = SettingsConfigDict(env_prefix="UPLOAD_CHECK_", extra="ignore")

    ttl_seconds: int = Field(
        default=300,
        alias="UPLOAD_CHECK_TTL_SECONDS",
        ge=1,
        le=7 * 24 * 3600,
        description="Time an upload may stay unconfirmed before dead-lettering",
    )
    sweep_interval_seconds: float = Field(
        default=10.0,
        alias="UPLOAD_CHECK_SWEEP_INTERVAL_SECONDS",
        ge=0.1,
        le=3600.0,
        description="How often expired uploads are swept",
    )
    pending_key: str = Field(
        default="steal_token:upload_check_queue",
        alias="UPLOAD_CHECK_PENDING_KEY",
        description="Sorted set of pending uploads keyed by deadline",
    )
    dead_letter_stream: str = Field(
        default="steal_token:upload_check_dlq",
        alias="UPLOAD_CHECK_DEAD_LETTER_STREAM",
        description="Stream receiving expired uploads",
    )


class InstructionLayoutSettings(BaseSettings):
    """Positional account indices of the program's outer instructions."""

    model_config = SettingsConfigDict(env_prefix="LAYOUT_", extra="ignore")

    entity_account_index: int = Field(
        default=0,
        alias="LAYOUT_ENTITY_ACCOUNT_INDEX",
        ge=0,
        le=63,
    )
    transfer_from_index: int = Field(
        default=1,
        alias="LAYOUT_TRANSFER_FROM_INDEX",
        ge=0,
        le=63,
    )
    transfer_to_index: int = Field(
        default=2,
        alias="LAYOUT_TRANSFER_TO_INDEX",
        ge=0,
        le=63,
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from steal_token_indexer.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.scanner.window_size)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    solana: SolanaSettings = Field(
        default_factory=lambda: SolanaSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    scanner: ScannerSettings = Field(
        default_factory=lambda: ScannerSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    queue: QueueSettings = Field(
        default_factory=lambda: QueueSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    upload_check: UploadCheckSettings = Field(
        default_factory=lambda: UploadCheckSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    layout: InstructionLayoutSettings = Field(
        default_factory=lambda: InstructionLayoutSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url),
            "solana": {
                "rpc_url": self._redact_url(self.solana.rpc_url),
                "fallback_rpc_url": (
                    self._redact_url(self.solana.fallback_rpc_url)
                    if self.solana.fallback_rpc_url
                    else "(not set)"
                ),
                "ws_url": self._redact_url(self.solana.ws_url),
                "program_id": self.solana.program_id,
                "commitment": self.solana.commitment,
            },
            "scanner": {
                "name": self.scanner.name,
                "window_size": str(self.scanner.window_size),
                "concurrency": str(self.scanner.concurrency),
                "lag": str(self.scanner.lag),
                "start_slot": str(self.scanner.start_slot) if self.scanner.start_slot is not None else "(not set)",
            },
            "queue": {
                "events_stream": self.queue.events_stream,
                "notifications_stream": self.queue.notifications_stream,
                "group": self.queue.group,
                "consumer_name": self.queue.consumer_name,
                "max_deliveries": str(self.queue.max_deliveries) if self.queue.max_deliveries else "(unbounded)",
            },
            "upload_check": {
                "ttl_seconds": str(self.upload_check.ttl_seconds),
                "dead_letter_stream": self.upload_check.dead_letter_stream,
            },
            "log_level": self.log_level,
        }

    def validate_requirements(self, *, command: Command) -> None:
        """Validate command-specific requirements.

        This is strict by design: if a capability is required for a command
        and not configured, the application must refuse to run.
        """
        if command in ("run", "scan", "rescan-failed", "backfill"):
            if self.layout.transfer_from_index == self.layout.transfer_to_index:
                raise ValueError("LAYOUT_TRANSFER_FROM_INDEX and LAYOUT_TRANSFER_TO_INDEX must differ")
        if command in ("run", "scan") and self.scanner.concurrency > self.scanner.window_size:
            logging.getLogger(__name__).warning(
                "SCANNER_CONCURRENCY (%d) exceeds SCANNER_WINDOW_SIZE (%d); effective concurrency is %d",
                self.scanner.concurrency,
                self.scanner.window_size,
                self.scanner.window_size,
            )

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Uses LRU cache to ensure settings are loaded only once and
    reused across the application.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
