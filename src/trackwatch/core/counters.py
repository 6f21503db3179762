"""Cumulative cookie and tracker counters."""

from __future__ import annotations

import asyncio

from trackwatch.core.base import Counters
from trackwatch.core.storage import KeyValueStore

_DEFAULTS = {"cookieCount": 0, "trackerCount": 0}


class CounterAggregator:
    """Persisted ``cookieCount``/``trackerCount`` pair in the local scope.

    The read-then-write runs under a lock so interleaved cookie events cannot
    lose increments.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store
        self._lock = asyncio.Lock()

    async def record(self, is_tracker: bool) -> Counters:
        """Count one explicit cookie mutation."""
        async with self._lock:
            data = await self._store.get(_DEFAULTS)
            counters = Counters(
                cookie_count=data["cookieCount"] + 1,
                tracker_count=data["trackerCount"] + (1 if is_tracker else 0),
            )
            await self._store.set(counters.to_store())
        return counters

    async def read(self) -> Counters:
        data = await self._store.get(_DEFAULTS)
        return Counters.model_validate(data)

    async def reset(self) -> None:
        async with self._lock:
            await self._store.set(_DEFAULTS)
