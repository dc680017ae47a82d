"""Main pipeline orchestrator for the Steal Token Indexer.

This module provides the IndexerPipeline class that wires the scanner,
the event consumers and the upload-check workers to their shared
resources and manages their lifecycle.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

from steal_token_indexer.assets import AssetStore, LoggingAssetStore
from steal_token_indexer.chain.client import SolanaClient
from steal_token_indexer.chain.slots import SlotStreamHandler
from steal_token_indexer.config import Settings, get_settings
from steal_token_indexer.consumer.outbox import OutboxRelay
from steal_token_indexer.consumer.worker import EventConsumer
from steal_token_indexer.ingestor.backfill import Backfill
from steal_token_indexer.ingestor.block_processor import BlockProcessor
from steal_token_indexer.ingestor.classifier import AccountIndices
from steal_token_indexer.ingestor.scanner import BlockScanner
from steal_token_indexer.queue.streams import QueueBroker, RedisStreamQueue
from steal_token_indexer.queue.upload_checks import UploadCheckConfig, UploadCheckQueue, UploadReconciler
from steal_token_indexer.storage.database import DatabaseManager

if TYPE_CHECKING:
    from steal_token_indexer.consumer.worker import ConsumerStats
    from steal_token_indexer.ingestor.scanner import ScannerStats

logger = logging.getLogger(__name__)

SHUTDOWN_GRACE_SECONDS = 30.0
OUTBOX_INTERVAL_SECONDS = 1.0


class PipelineState(str, Enum):
    """Pipeline lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


class PipelineRole(str, Enum):
    """Workloads a pipeline process can run."""

    SCAN = "scan"
    CONSUME = "consume"
    UPLOAD_CHECKS = "upload-checks"


ALL_ROLES = frozenset(PipelineRole)


@dataclass
class PipelineStats:
    """Statistics for the pipeline."""

    started_at: datetime | None = None
    uploads_expired: int = 0
    errors: int = 0
    last_error: str | None = None


def create_solana_client(settings: Settings) -> SolanaClient:
    return SolanaClient(
        settings.solana.rpc_url,
        fallback_rpc_url=settings.solana.fallback_rpc_url,
        commitment=settings.solana.commitment,
        max_requests_per_second=settings.solana.max_requests_per_second,
        max_retries=settings.scanner.fetch_retries,
        retry_delay_seconds=settings.scanner.fetch_backoff_seconds,
    )


def create_account_indices(settings: Settings) -> AccountIndices:
    return AccountIndices(
        entity=settings.layout.entity_account_index,
        transfer_from=settings.layout.transfer_from_index,
        transfer_to=settings.layout.transfer_to_index,
    )


def create_block_processor(client: SolanaClient, settings: Settings) -> BlockProcessor:
    return BlockProcessor(client, program_id=settings.solana.program_id, indices=create_account_indices(settings))


def create_backfill(client: SolanaClient, db: DatabaseManager, settings: Settings) -> Backfill:
    return Backfill(client, db, program_id=settings.solana.program_id, indices=create_account_indices(settings))


def create_events_queue(broker: QueueBroker, settings: Settings, *, consumer: str | None = None) -> RedisStreamQueue:
    q = settings.queue
    return broker.queue(
        q.events_stream,
        group=q.group,
        consumer=consumer or q.consumer_name,
        dead_letter_stream=q.events_dead_letter_stream,
        max_deliveries=q.max_deliveries,
        claim_idle_ms=q.claim_idle_ms,
        block_ms=q.block_ms,
        batch_size=q.batch_size,
    )


def create_upload_dead_letters(broker: QueueBroker, settings: Settings) -> RedisStreamQueue:
    q = settings.queue
    return broker.queue(
        settings.upload_check.dead_letter_stream,
        group=q.group,
        consumer=q.consumer_name,
        claim_idle_ms=q.claim_idle_ms,
        block_ms=q.block_ms,
        batch_size=q.batch_size,
    )


def create_upload_check_queue(broker: QueueBroker, settings: Settings) -> UploadCheckQueue:
    return UploadCheckQueue(
        broker.redis,
        create_upload_dead_letters(broker, settings),
        config=UploadCheckConfig(
            ttl=timedelta(seconds=settings.upload_check.ttl_seconds),
            pending_key=settings.upload_check.pending_key,
        ),
    )


def create_block_scanner(
    client: SolanaClient,
    events: RedisStreamQueue,
    db: DatabaseManager,
    settings: Settings,
) -> BlockScanner:
    s = settings.scanner
    return BlockScanner(
        client,
        create_block_processor(client, settings),
        events,
        db,
        name=s.name,
        window_size=s.window_size,
        concurrency=s.concurrency,
        lag=s.lag,
        start_slot=s.start_slot,
        poll_interval_seconds=s.poll_interval_seconds,
    )


async def _drain_task(task: asyncio.Task[None] | None, *, timeout: float) -> None:
    """Let a task finish on its own, cancelling it after ``timeout``."""
    if task is None:
        return
    try:
        await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
    except TimeoutError:
        logger.warning("Task %s did not finish within %.0fs; cancelling", task.get_name(), timeout)
    except Exception as e:
        logger.debug("Task %s failed: %s", task.get_name(), e)
    if not task.done():
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


async def _cancel_task(task: asyncio.Task[None] | None) -> None:
    if task is None:
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


class IndexerPipeline:
    """Main pipeline orchestrator for the Steal Token Indexer.

    Pipeline flow:
        Slot stream → Block Scanner → Block Processor → events stream
        → Event Consumer → projection store (+ outbox → notifications stream)

    Example:
        ```python
        from steal_token_indexer.config import get_settings
        from steal_token_indexer.pipeline import IndexerPipeline

        pipeline = IndexerPipeline(get_settings())

        await pipeline.start()
        # Pipeline runs until stop() is called
        await pipeline.stop()
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        roles: Iterable[PipelineRole] | None = None,
        asset_store: AssetStore | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            roles: Workloads to run. Defaults to all of them.
            asset_store: Pinning-service adapter. Defaults to a logging stub.
        """
        self._settings = settings or get_settings()
        self._roles = frozenset(roles) if roles is not None else ALL_ROLES
        if not self._roles:
            raise ValueError("At least one pipeline role is required")
        self._asset_store = asset_store or LoggingAssetStore()
        self._asset_store_configured = asset_store is not None

        self._state = PipelineState.STOPPED
        self._stats = PipelineStats()

        # Components (initialized in start())
        self._broker: QueueBroker | None = None
        self._db_manager: DatabaseManager | None = None
        self._client: SolanaClient | None = None
        self._scanner: BlockScanner | None = None
        self._slot_stream: SlotStreamHandler | None = None
        self._consumers: list[EventConsumer] = []
        self._outbox_relay: OutboxRelay | None = None
        self._upload_checks: UploadCheckQueue | None = None
        self._reconciler: UploadReconciler | None = None

        # Synchronization
        self._stop_event: asyncio.Event | None = None
        self._scanner_task: asyncio.Task[None] | None = None
        self._slot_stream_task: asyncio.Task[None] | None = None
        self._consumer_tasks: list[asyncio.Task[None]] = []
        self._outbox_task: asyncio.Task[None] | None = None
        self._sweep_task: asyncio.Task[None] | None = None
        self._reconcile_task: asyncio.Task[None] | None = None
        self._task_failure: BaseException | None = None

    @property
    def state(self) -> PipelineState:
        """Current pipeline state."""
        return self._state

    @property
    def stats(self) -> PipelineStats:
        """Current pipeline statistics."""
        return self._stats

    @property
    def roles(self) -> frozenset[PipelineRole]:
        return self._roles

    @property
    def scanner_stats(self) -> ScannerStats | None:
        return self._scanner.stats if self._scanner else None

    @property
    def consumer_stats(self) -> list[ConsumerStats]:
        return [c.stats for c in self._consumers]

    @property
    def is_running(self) -> bool:
        """Check if pipeline is running."""
        return self._state == PipelineState.RUNNING

    async def start(self) -> None:
        """Start the pipeline.

        Connects to the broker, the database and (for scanning) the RPC
        node, then starts the background workers for the configured roles.

        Raises:
            RuntimeError: If pipeline is already running.
            Exception: If any component fails to initialize.
        """
        if self._state != PipelineState.STOPPED:
            raise RuntimeError(f"Cannot start pipeline in state {self._state}")

        self._state = PipelineState.STARTING
        self._stop_event = asyncio.Event()
        self._task_failure = None
        logger.info("Starting pipeline (roles: %s)...", ", ".join(sorted(r.value for r in self._roles)))

        try:
            await self._initialize_components()
            await self._start_background_services()
            self._stats.started_at = datetime.now(UTC)
            self._state = PipelineState.RUNNING
            logger.info("Pipeline started successfully")
        except Exception as e:
            self._state = PipelineState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start pipeline: %s", e)
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Stop the pipeline gracefully.

        New work stops being scheduled, in-flight windows and batches
        finish, pending notifications are flushed, then resources close.
        """
        if self._state in (PipelineState.STOPPED, PipelineState.STOPPING):
            return

        self._state = PipelineState.STOPPING
        logger.info("Stopping pipeline...")

        if self._stop_event:
            self._stop_event.set()

        await self._stop_background_services()
        await self._cleanup()

        self._state = PipelineState.STOPPED
        logger.info("Pipeline stopped")

    async def _initialize_components(self) -> None:
        """Initialize all pipeline components."""
        settings = self._settings

        logger.debug("Connecting to queue broker...")
        self._broker = QueueBroker(settings.redis.url)
        await self._broker.connect()

        logger.debug("Initializing database manager...")
        self._db_manager = DatabaseManager(settings.database.url)
        await self._db_manager.ping()

        self._upload_checks = create_upload_check_queue(self._broker, settings)

        if not self._asset_store_configured and self._roles & {PipelineRole.CONSUME, PipelineRole.UPLOAD_CHECKS}:
            logger.warning("No asset store configured; image promotion and upload cleanup will only be logged")

        if PipelineRole.SCAN in self._roles:
            logger.debug("Initializing Solana client...")
            self._client = create_solana_client(settings)
            tip = await self._client.get_slot()
            logger.info("Connected to Solana RPC at slot %d", tip)

            events = create_events_queue(self._broker, settings)
            await events.ensure_group()
            self._scanner = create_block_scanner(self._client, events, self._db_manager, settings)
            self._slot_stream = SlotStreamHandler(host=settings.solana.ws_url, on_slot=self._scanner.on_slot)

        if PipelineRole.CONSUME in self._roles:
            notifications = self._broker.queue(
                settings.queue.notifications_stream,
                group=settings.queue.group,
                consumer=settings.queue.consumer_name,
            )
            self._outbox_relay = OutboxRelay(self._db_manager, notifications)

            workers = settings.queue.consumer_concurrency
            for i in range(workers):
                name = settings.queue.consumer_name if workers == 1 else f"{settings.queue.consumer_name}-{i}"
                events = create_events_queue(self._broker, settings, consumer=name)
                await events.ensure_group()
                self._consumers.append(
                    EventConsumer(
                        events,
                        self._db_manager,
                        upload_checks=self._upload_checks,
                        asset_store=self._asset_store,
                        outbox_relay=self._outbox_relay,
                    )
                )

        if PipelineRole.UPLOAD_CHECKS in self._roles:
            dead_letters = create_upload_dead_letters(self._broker, settings)
            await dead_letters.ensure_group()
            self._reconciler = UploadReconciler(dead_letters, self._db_manager, self._asset_store)

    async def _start_background_services(self) -> None:
        """Start background services."""
        if self._scanner and self._stop_event:
            logger.debug("Starting block scanner...")
            self._scanner_task = self._watch(asyncio.create_task(self._scanner.run(self._stop_event), name="scanner"))
        if self._slot_stream:
            logger.debug("Starting slot stream...")
            self._slot_stream_task = asyncio.create_task(self._slot_stream.start(), name="slot-stream")

        if self._stop_event:
            for i, consumer in enumerate(self._consumers):
                self._consumer_tasks.append(
                    self._watch(asyncio.create_task(consumer.run(self._stop_event), name=f"consumer-{i}"))
                )
        if self._outbox_relay and self._stop_event:
            logger.debug("Starting outbox relay...")
            self._outbox_task = self._watch(
                asyncio.create_task(
                    self._outbox_relay.run(self._stop_event, interval=OUTBOX_INTERVAL_SECONDS),
                    name="outbox-relay",
                )
            )

        if self._reconciler:
            logger.debug("Starting upload sweep and reconciler...")
            self._sweep_task = self._watch(asyncio.create_task(self._run_upload_sweep_loop(), name="upload-sweep"))
            self._reconcile_task = self._watch(
                asyncio.create_task(self._run_reconcile_loop(), name="upload-reconciler")
            )

    def _watch(self, task: asyncio.Task[None]) -> asyncio.Task[None]:
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        """Stop the whole pipeline when a worker dies on its own."""
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            return

        logger.error("Task %s failed, stopping pipeline: %s", task.get_name(), error, exc_info=error)
        self._stats.errors += 1
        self._stats.last_error = str(error)
        if self._task_failure is None:
            self._task_failure = error
        if self._stop_event:
            self._stop_event.set()

    async def _run_upload_sweep_loop(self) -> None:
        if not self._stop_event or not self._upload_checks:
            return

        interval = self._settings.upload_check.sweep_interval_seconds
        while not self._stop_event.is_set():
            try:
                expired = await self._upload_checks.expire_due()
                self._stats.uploads_expired += len(expired)
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._stats.errors += 1
                self._stats.last_error = str(e)
                logger.warning("Upload sweep error: %s", e)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                break
            except TimeoutError:
                pass

    async def _run_reconcile_loop(self) -> None:
        if not self._stop_event or not self._reconciler:
            return

        while not self._stop_event.is_set():
            try:
                await self._reconciler.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._stats.errors += 1
                self._stats.last_error = str(e)
                logger.warning("Upload reconciler error: %s", e)
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=1.0)
                except TimeoutError:
                    pass

    async def _stop_background_services(self) -> None:
        """Stop background services."""
        if self._slot_stream:
            logger.debug("Stopping slot stream...")
            await self._slot_stream.stop()
        await _cancel_task(self._slot_stream_task)
        self._slot_stream_task = None

        # The scanner and consumers observe the stop event between units of work.
        await _drain_task(self._scanner_task, timeout=SHUTDOWN_GRACE_SECONDS)
        self._scanner_task = None
        for task in self._consumer_tasks:
            await _drain_task(task, timeout=SHUTDOWN_GRACE_SECONDS)
        self._consumer_tasks = []

        await _cancel_task(self._outbox_task)
        self._outbox_task = None
        if self._outbox_relay:
            try:
                await self._outbox_relay.publish_pending()
            except Exception as e:
                logger.warning("Final outbox flush failed: %s", e)

        await _cancel_task(self._sweep_task)
        self._sweep_task = None
        await _cancel_task(self._reconcile_task)
        self._reconcile_task = None

    async def _cleanup(self) -> None:
        """Clean up resources."""
        if self._client:
            await self._client.aclose()
            self._client = None

        # Close database connections
        if self._db_manager:
            await self._db_manager.dispose_async()
            self._db_manager = None

        # Close broker connection
        if self._broker:
            await self._broker.close()
            self._broker = None

        self._consumers = []
        self._scanner = None
        self._slot_stream = None
        self._outbox_relay = None
        self._upload_checks = None
        self._reconciler = None
        logger.debug("Resources cleaned up")

    async def run(self) -> None:
        """Start the pipeline and run until stopped.

        Raises:
            RuntimeError: If a worker task died; resources are released first.

        Example:
            ```python
            pipeline = IndexerPipeline()
            try:
                await pipeline.run()
            except KeyboardInterrupt:
                pass
            ```
        """
        await self.start()

        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

        failure = self._task_failure
        if failure is not None:
            self._state = PipelineState.ERROR
            raise RuntimeError(f"Pipeline task failed: {failure}") from failure

    def request_stop(self) -> None:
        """Signal-handler friendly stop request; ``run`` performs the shutdown."""
        if self._stop_event:
            self._stop_event.set()

    async def __aenter__(self) -> IndexerPipeline:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()
