"""Cursor-driven block scanner.

The scanner walks slots in windows of ``window_size``. Every slot in a
window is handed to the block processor, at most ``concurrency`` at a
time. Once the whole window has resolved, its events are published and
the cursor is persisted as the window's last slot. Blocks that failed are
recorded in the block-failure ledger and skipped, so one bad block never
stalls the scan.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING

from steal_token_indexer.storage.repos import (
    BlockFailureDTO,
    BlockFailureRepository,
    ScanCursorRepository,
)

if TYPE_CHECKING:
    from steal_token_indexer.chain.client import SolanaClient
    from steal_token_indexer.ingestor.block_processor import BlockProcessor
    from steal_token_indexer.ingestor.models import IngestionEvent
    from steal_token_indexer.queue.streams import RedisStreamQueue
    from steal_token_indexer.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


class ScannerState(str, Enum):
    """Scanner lifecycle states."""

    STOPPED = "stopped"
    CATCHING_UP = "catching_up"
    LIVE = "live"
    STOPPING = "stopping"


@dataclass
class ScannerStats:
    """Statistics for the block scanner."""

    started_at: datetime | None = None
    windows_completed: int = 0
    blocks_processed: int = 0
    blocks_failed: int = 0
    events_published: int = 0
    cursor: int | None = None
    tip: int | None = None
    last_error: str | None = None


@dataclass(frozen=True)
class WindowResult:
    """Outcome of one scanned window."""

    first_slot: int
    last_slot: int
    events: list[IngestionEvent] = field(default_factory=list)
    failed_slots: list[int] = field(default_factory=list)


class BlockScanner:
    """Advances a persisted cursor across confirmed blocks.

    Example:
        ```python
        scanner = BlockScanner(client, processor, events_queue, db, name="transaction_scanner")
        stop = asyncio.Event()
        await scanner.run(stop)
        ```
    """

    def __init__(
        self,
        client: SolanaClient,
        processor: BlockProcessor,
        events: RedisStreamQueue,
        db: DatabaseManager,
        *,
        name: str,
        window_size: int = 10,
        concurrency: int = 5,
        lag: int = 2,
        start_slot: int | None = None,
        poll_interval_seconds: float = 2.0,
    ) -> None:
        if window_size < 1:
            raise ValueError("window_size must be at least 1")
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")

        self._client = client
        self._processor = processor
        self._events = events
        self._db = db
        self._name = name
        self._window_size = window_size
        self._concurrency = concurrency
        self._lag = lag
        self._start_slot = start_slot
        self._poll_interval = poll_interval_seconds

        self._state = ScannerState.STOPPED
        self._stats = ScannerStats()
        self._tip_event = asyncio.Event()

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> ScannerState:
        return self._state

    @property
    def stats(self) -> ScannerStats:
        return self._stats

    def _set_state(self, new_state: ScannerState) -> None:
        if self._state != new_state:
            logger.info("Scanner %s: %s -> %s", self._name, self._state.value, new_state.value)
            self._state = new_state

    async def on_slot(self, slot: int) -> None:
        """Slot-notification callback; wakes a LIVE scanner."""
        self._tip_event.set()

    async def load_cursor(self) -> int:
        """Resolve the slot to resume after.

        The persisted cursor wins, then the configured start slot, then
        the current confirmed tip minus lag.
        """
        async with self._db.get_async_session() as session:
            saved = await ScanCursorRepository(session).get(self._name)
        if saved is not None:
            logger.info("Scanner %s resuming after slot %d", self._name, saved)
            return saved
        if self._start_slot is not None:
            logger.info("Scanner %s starting at configured slot %d", self._name, self._start_slot)
            return self._start_slot - 1
        tip = await self._client.get_slot()
        cursor = max(tip - self._lag - 1, -1)
        logger.info("Scanner %s has no cursor; starting at tip slot %d", self._name, cursor + 1)
        return cursor

    async def _process_slot(self, semaphore: asyncio.Semaphore, slot: int) -> list[IngestionEvent]:
        async with semaphore:
            return await self._processor.process(slot)

    async def process_window(self, first_slot: int, last_slot: int) -> WindowResult:
        """Process ``first_slot..last_slot`` inclusive and wait for all of them.

        Never raises for an individual block; failures are returned.
        """
        slots = list(range(first_slot, last_slot + 1))
        semaphore = asyncio.Semaphore(self._concurrency)
        results = await asyncio.gather(
            *(self._process_slot(semaphore, slot) for slot in slots),
            return_exceptions=True,
        )

        events: list[IngestionEvent] = []
        failed: list[int] = []
        failures: list[BlockFailureDTO] = []
        for slot, result in zip(slots, results, strict=True):
            if isinstance(result, Exception):
                logger.warning("Block %d failed, skipping: %s", slot, result)
                failed.append(slot)
                failures.append(
                    BlockFailureDTO(
                        scanner_name=self._name,
                        slot=slot,
                        error_type=type(result).__name__,
                        message=str(result),
                    )
                )
            elif isinstance(result, BaseException):
                raise result
            else:
                events.extend(result)

        if failures:
            async with self._db.get_async_session() as session:
                repo = BlockFailureRepository(session)
                for failure in failures:
                    await repo.record(failure)

        self._stats.blocks_processed += len(slots) - len(failed)
        self._stats.blocks_failed += len(failed)
        return WindowResult(first_slot=first_slot, last_slot=last_slot, events=events, failed_slots=failed)

    async def scan_window(self, cursor: int, target: int) -> int:
        """Scan the next window after ``cursor`` up to ``target``.

        Events are published before the cursor is saved; if publishing
        fails the cursor stays put and the window is scanned again.

        Returns:
            The new cursor.
        """
        first_slot = cursor + 1
        last_slot = min(cursor + self._window_size, target)
        if last_slot < first_slot:
            return cursor

        result = await self.process_window(first_slot, last_slot)
        await self._events.publish_many([event.to_dict() for event in result.events])

        async with self._db.get_async_session() as session:
            await ScanCursorRepository(session).save(self._name, last_slot)

        self._stats.windows_completed += 1
        self._stats.events_published += len(result.events)
        self._stats.cursor = last_slot
        logger.debug(
            "Window %d-%d: %d event(s), %d failed block(s)",
            first_slot,
            last_slot,
            len(result.events),
            len(result.failed_slots),
        )
        return last_slot

    async def _wait_for_tip(self, stop_event: asyncio.Event) -> None:
        """Block until a slot notification, the poll interval or a stop request."""
        tip_wait = asyncio.create_task(self._tip_event.wait())
        stop_wait = asyncio.create_task(stop_event.wait())
        try:
            await asyncio.wait(
                {tip_wait, stop_wait},
                timeout=self._poll_interval,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            tip_wait.cancel()
            stop_wait.cancel()
        self._tip_event.clear()

    async def run(self, stop_event: asyncio.Event) -> None:
        """Scan until ``stop_event`` is set.

        A stop request takes effect between windows, so the persisted
        cursor only ever covers fully resolved blocks.
        """
        self._stats.started_at = datetime.now(UTC)
        cursor = await self.load_cursor()
        self._stats.cursor = cursor
        self._set_state(ScannerState.CATCHING_UP)

        try:
            while not stop_event.is_set():
                try:
                    tip = await self._client.get_slot()
                    self._stats.tip = tip
                    target = tip - self._lag

                    if cursor < target:
                        if target - cursor > self._window_size:
                            self._set_state(ScannerState.CATCHING_UP)
                        cursor = await self.scan_window(cursor, target)
                        continue
                    self._set_state(ScannerState.LIVE)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self._stats.last_error = str(e)
                    logger.warning("Scanner %s error at cursor %d: %s", self._name, cursor, e)

                await self._wait_for_tip(stop_event)
        finally:
            self._set_state(ScannerState.STOPPING)
            self._set_state(ScannerState.STOPPED)

    async def rescan_failed(self, *, limit: int = 100) -> int:
        """Re-process recorded block failures and publish their events.

        Returns:
            Number of blocks resolved.
        """
        async with self._db.get_async_session() as session:
            failures = await BlockFailureRepository(session).list_unresolved(self._name, limit=limit)

        resolved = 0
        for failure in failures:
            try:
                events = await self._processor.process(failure.slot)
            except Exception as e:
                logger.warning("Rescan of block %d failed again: %s", failure.slot, e)
                async with self._db.get_async_session() as session:
                    await BlockFailureRepository(session).record(
                        BlockFailureDTO(
                            scanner_name=self._name,
                            slot=failure.slot,
                            error_type=type(e).__name__,
                            message=str(e),
                        )
                    )
                continue

            await self._events.publish_many([event.to_dict() for event in events])
            async with self._db.get_async_session() as session:
                await BlockFailureRepository(session).mark_resolved(self._name, failure.slot)
            resolved += 1
            logger.info("Rescanned block %d: %d event(s)", failure.slot, len(events))

        return resolved
