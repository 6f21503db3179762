"""Per-tab browsing sessions and the bounded history they are archived into."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING

from trackwatch.core.base import MAX_HISTORY, CookieSnapshot, SessionRecord, TabSession, now_ms
from trackwatch.core.normalizer import hostname_of
from trackwatch.core.storage import KeyValueStore

if TYPE_CHECKING:
    from trackwatch.core.host import CookieStore

logger = logging.getLogger(__name__)

HISTORY_KEY = "historySessions"


class SessionHistory:
    """Closed sessions in the sync scope, newest first, capped."""

    def __init__(self, store: KeyValueStore, *, max_entries: int = MAX_HISTORY) -> None:
        self._store = store
        self.max_entries = max_entries
        self._lock = asyncio.Lock()

    async def append(self, record: SessionRecord) -> int:
        async with self._lock:
            data = await self._store.get({HISTORY_KEY: []})
            sessions = [record.to_store(), *data[HISTORY_KEY]]
            del sessions[self.max_entries :]
            await self._store.set({HISTORY_KEY: sessions})
        return len(sessions)

    async def read(self) -> list[SessionRecord]:
        data = await self._store.get({HISTORY_KEY: []})
        return [SessionRecord.model_validate(s) for s in data[HISTORY_KEY]]

    async def clear(self) -> None:
        async with self._lock:
            await self._store.set({HISTORY_KEY: []})


class TabSessionTracker:
    """Lifecycle of each tab: NONE → OPEN (→ OPEN on navigation) → archived.

    Navigation replaces the live session wholesale, so the earlier open time
    of the same tab is not kept.
    """

    def __init__(
        self,
        cookies: CookieStore,
        history: SessionHistory,
        *,
        excluded_schemes: Iterable[str] = ("chrome://",),
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._cookies = cookies
        self.history = history
        self.excluded_schemes = tuple(excluded_schemes)
        self._clock = clock
        self._active: dict[int, TabSession] = {}

    def is_tracked_url(self, url: str | None) -> bool:
        return bool(url) and not url.startswith(self.excluded_schemes)

    def open(self, tab_id: int, url: str | None) -> TabSession | None:
        """Start (or replace) the live session of *tab_id*. Internal URLs are ignored."""
        if not self.is_tracked_url(url):
            return None
        session = TabSession(url=url, domain=hostname_of(url), open_time=self._clock())
        self._active[tab_id] = session
        return session

    def get(self, tab_id: int) -> TabSession | None:
        return self._active.get(tab_id)

    @property
    def active_count(self) -> int:
        return len(self._active)

    async def close(self, tab_id: int) -> SessionRecord | None:
        """Archive the live session of *tab_id* with a cookie snapshot of its URL."""
        # Taken before the first await so a second removal cannot archive twice.
        session = self._active.pop(tab_id, None)
        if session is None:
            return None

        cookies = await self._cookies.get_all(session.url)
        record = SessionRecord(
            url=session.url,
            domain=session.domain,
            open_time=session.open_time,
            close_time=self._clock(),
            cookie_snapshot=[
                CookieSnapshot(name=c.name, domain=c.domain, value=c.value) for c in cookies
            ],
        )
        await self.history.append(record)
        logger.debug("Archived session for tab %d (%s)", tab_id, session.domain)
        return record
