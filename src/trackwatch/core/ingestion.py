"""Ingestion queue with a coalescing flush timer.

Records from every source land in one queue. The first record after an empty
queue arms a one-shot timer; when it fires the whole queue is taken as one
batch, committed to the log store and published to observers, newest first like
the stored log. Records that arrive while the timer is armed ride along in the
same batch.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from trackwatch.core.base import FLUSH_WINDOW_MS, MAX_LOGS, LogRecord
from trackwatch.core.logstore import TrackingLogStore
from trackwatch.core.storage import StorageError

logger = logging.getLogger(__name__)

BatchObserver = Callable[[list[LogRecord]], Awaitable[None]]


class IngestionQueue:
    """Single owner of the pending queue and its flush timer."""

    def __init__(
        self,
        store: TrackingLogStore,
        *,
        window: float = FLUSH_WINDOW_MS / 1000,
    ) -> None:
        self._store = store
        self.window = window
        self._pending: list[LogRecord] = []
        self._timer: asyncio.TimerHandle | None = None
        self._flush_lock = asyncio.Lock()
        self._tasks: set[asyncio.Task[None]] = set()
        self._observers: list[BatchObserver] = []
        self.flush_count = 0

    @property
    def pending(self) -> int:
        return len(self._pending)

    @property
    def armed(self) -> bool:
        return self._timer is not None

    def subscribe(self, observer: BatchObserver) -> None:
        """Register a coroutine called with every committed batch."""
        self._observers.append(observer)

    def enqueue(self, record: LogRecord) -> None:
        """Queue *record*; arm the flush timer if the queue was empty.

        Must be called from within the running event loop.
        """
        logger.debug("Queueing log: %s", record.source)
        self._pending.append(record)
        if self._timer is None:
            loop = asyncio.get_running_loop()
            self._timer = loop.call_later(self.window, self._on_timer)

    def _take_batch(self) -> list[LogRecord]:
        batch, self._pending = self._pending, []
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        return batch

    def _on_timer(self) -> None:
        self._timer = None
        batch = self._take_batch()
        if not batch:
            return
        task = asyncio.get_running_loop().create_task(self._commit(batch))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _commit(self, batch: list[LogRecord]) -> None:
        async with self._flush_lock:
            try:
                await self._store.commit(batch)
            except StorageError as e:
                logger.error("Flush of %d records failed, re-queueing: %s", len(batch), e)
                self._requeue(batch)
                return
            self.flush_count += 1
            # Observers see the batch in stored order, newest first.
            newest_first = list(reversed(batch))
            for observer in list(self._observers):
                try:
                    await observer(newest_first)
                except Exception:
                    logger.exception("Batch observer failed")

    def _requeue(self, batch: list[LogRecord]) -> None:
        self._pending[:0] = batch
        if len(self._pending) > MAX_LOGS:
            del self._pending[: len(self._pending) - MAX_LOGS]
        if self._timer is None:
            self._timer = asyncio.get_running_loop().call_later(self.window, self._on_timer)

    async def flush(self) -> None:
        """Commit everything pending now and wait for in-flight flushes."""
        batch = self._take_batch()
        if batch:
            await self._commit(batch)
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
