"""Poller/Cursor: periodic batch publication of the change log."""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from changewire.capture.models import ChangeRecord
from changewire.capture.recorder import ChangeRecorder
from changewire.capture.store import ChangeLogStore
from changewire.config.models import PollerConfig
from changewire.errors import PublishError, StorageError
from changewire.pipeline.publisher import ChangePublisher

logger = logging.getLogger(__name__)


class PollerState(str, enum.Enum):
    IDLE = "IDLE"
    FETCHING = "FETCHING"
    PUBLISHING = "PUBLISHING"
    ADVANCING = "ADVANCING"


@dataclass(slots=True)
class CycleResult:
    """Outcome of one poll cycle."""

    fetched: int = 0
    published: int = 0
    escalated: int = 0
    cursor_before: int = 0
    cursor_after: int = 0
    failed_change_id: int | None = None
    error: str | None = None
    published_ids: list[int] = field(default_factory=list)

    @property
    def aborted(self) -> bool:
        return self.failed_change_id is not None or self.error is not None


class ChangePoller:
    """Reads unprocessed changes after the cursor and publishes them in id order.

    A batch stops at its first publish failure; only the published prefix is
    marked processed and the cursor never passes an unpublished record. At
    most one poller may run per change log.
    """

    def __init__(
        self,
        store: ChangeLogStore,
        publisher: ChangePublisher,
        *,
        config: PollerConfig | None = None,
        recorder: ChangeRecorder | None = None,
    ) -> None:
        self.store = store
        self.publisher = publisher
        self.config = config or PollerConfig()
        self.recorder = recorder

        self._state = PollerState.IDLE
        self._cursor: int | None = None
        self._cycle_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._running = False
        self._started_at: float | None = None
        self._changes_processed = 0
        self._escalated = 0
        self._cycles = 0
        self._failed_cycles = 0
        self._last_error: str | None = None

    @property
    def state(self) -> PollerState:
        return self._state

    @property
    def cursor(self) -> int | None:
        return self._cursor

    @property
    def running(self) -> bool:
        return self._running

    async def run_cycle(self) -> CycleResult:
        """Run one FETCHING → PUBLISHING → ADVANCING pass.

        Storage errors propagate to the caller; publish errors end the batch.
        """
        async with self._cycle_lock:
            try:
                return await self._run_cycle()
            finally:
                self._state = PollerState.IDLE

    async def _run_cycle(self) -> CycleResult:
        if self._cursor is None:
            self._cursor = await self.store.load_cursor(self.config.consumer_group)
        cursor = self._cursor
        result = CycleResult(cursor_before=cursor, cursor_after=cursor)

        self._state = PollerState.FETCHING
        batch = await self.store.fetch_unprocessed(cursor, self.config.batch_size)
        result.fetched = len(batch)
        if not batch:
            return result
        logger.debug("Fetched %d change(s) after id %d", len(batch), cursor)

        self._state = PollerState.PUBLISHING
        published: list[ChangeRecord] = []
        for record in batch:
            try:
                outcome = await self.publisher.publish_change(record)
            except PublishError as exc:
                result.failed_change_id = record.id
                result.error = str(exc)
                logger.error(
                    "Publish failed for change %d (%s:%s); %d later change(s) deferred to next cycle: %s",
                    record.id,
                    record.entity_table,
                    record.record_id,
                    len(batch) - len(published) - 1,
                    exc,
                )
                break
            published.append(record)
            if outcome.escalated:
                result.escalated += 1

        if not published:
            return result

        self._state = PollerState.ADVANCING
        through_id = published[-1].id
        await self.store.advance(self.config.consumer_group, after_id=cursor, through_id=through_id)
        self._cursor = through_id
        self._changes_processed += len(published)
        self._escalated += result.escalated
        result.published = len(published)
        result.published_ids = [record.id for record in published]
        result.cursor_after = through_id
        logger.info("Published %d change(s); cursor %d -> %d", len(published), cursor, through_id)
        return result

    async def start(self) -> None:
        """Load the cursor and begin the periodic loop.

        Failure to read the cursor at start-up is fatal: no progress is possible
        without storage access.
        """
        if self._running:
            raise RuntimeError("ChangePoller already running")
        self._cursor = await self.store.load_cursor(self.config.consumer_group)
        self._stop_event = asyncio.Event()
        self._running = True
        self._started_at = time.time()
        self._task = asyncio.create_task(self._loop(), name="changewire-poller")
        logger.info(
            "Change poller started at cursor %d (interval=%.1fs, batch_size=%d)",
            self._cursor,
            self.config.interval_seconds,
            self.config.batch_size,
        )

    async def stop(self) -> None:
        """Stop the loop after any in-progress batch finishes publishing and advancing."""
        if not self._running:
            return
        self._running = False
        self._stop_event.set()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        logger.info("Change poller stopped at cursor %s", self._cursor)

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            self._cycles += 1
            try:
                result = await self.run_cycle()
                if result.aborted:
                    self._failed_cycles += 1
                    self._last_error = result.error
            except StorageError as exc:
                self._failed_cycles += 1
                self._last_error = str(exc)
                logger.error("Poll cycle aborted, retrying next interval: %s", exc)
            except Exception as exc:
                self._failed_cycles += 1
                self._last_error = str(exc)
                logger.exception("Unexpected poll cycle failure")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.config.interval_seconds)
            except asyncio.TimeoutError:
                continue

    def status(self) -> dict[str, Any]:
        """Snapshot of poller state and counters."""
        uptime = 0.0 if self._started_at is None else round(time.time() - self._started_at, 3)
        recorder = self.recorder.describe() if self.recorder is not None else {"mode": "absent", "degraded": True}
        return {
            "state": self._state.value,
            "running": self._running,
            "cursor": self._cursor,
            "changes_processed": self._changes_processed,
            "critical_escalations": self._escalated,
            "cycles": self._cycles,
            "failed_cycles": self._failed_cycles,
            "last_error": self._last_error,
            "uptime_seconds": uptime,
            "interval_seconds": self.config.interval_seconds,
            "batch_size": self.config.batch_size,
            "capture_mode": recorder["mode"],
            "degraded": recorder["degraded"],
        }
