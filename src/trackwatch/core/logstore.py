"""Bounded, retained, durable tracking log (most-recent-first)."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence

from trackwatch.core.base import MAX_LOGS, ONE_WEEK_MS, LogRecord, now_ms
from trackwatch.core.storage import KeyValueStore

logger = logging.getLogger(__name__)

LOGS_KEY = "trackingLogs"


class TrackingLogStore:
    """Append log persisted under ``trackingLogs`` in the local scope.

    Only :meth:`commit` (the flush path) and :meth:`sweep` (retention) mutate
    it, and both run inside the same lock.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        max_entries: int = MAX_LOGS,
        retention_ms: int = ONE_WEEK_MS,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self.max_entries = max_entries
        self.retention_ms = retention_ms
        self._clock = clock
        self._lock = asyncio.Lock()

    async def _load_raw(self) -> list[dict]:
        data = await self._store.get({LOGS_KEY: []})
        return list(data[LOGS_KEY])

    async def commit(self, batch: Sequence[LogRecord]) -> int:
        """Prepend *batch* (newest first), cap the log and persist it.

        Returns the log length after the commit.
        """
        async with self._lock:
            entries = await self._load_raw()
            fresh = [record.to_store() for record in reversed(batch)]
            entries = fresh + entries
            if len(entries) > self.max_entries:
                del entries[self.max_entries :]
            await self._store.set({LOGS_KEY: entries})
        logger.debug("Logs flushed to storage: %d (total %d)", len(batch), len(entries))
        return len(entries)

    async def sweep(self, now: int | None = None) -> int:
        """Drop entries older than the retention window. Returns how many were removed."""
        cutoff = (now if now is not None else self._clock()) - self.retention_ms
        async with self._lock:
            entries = await self._load_raw()
            kept = [e for e in entries if e.get("timestamp", 0) >= cutoff]
            removed = len(entries) - len(kept)
            if removed:
                await self._store.set({LOGS_KEY: kept})
        if removed:
            logger.info("Retention sweep removed %d expired log entries", removed)
        return removed

    async def read(self, limit: int | None = None) -> list[LogRecord]:
        entries = await self._load_raw()
        if limit is not None:
            entries = entries[:limit]
        records: list[LogRecord] = []
        for entry in entries:
            try:
                records.append(LogRecord.model_validate(entry))
            except ValueError:
                logger.warning("Skipping unreadable log entry: %r", entry)
        return records

    async def count(self) -> int:
        return len(await self._load_raw())

    async def clear(self) -> None:
        async with self._lock:
            await self._store.set({LOGS_KEY: []})
