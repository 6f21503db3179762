"""Per-title rate limiting of user-facing alerts."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from trackwatch.core.base import THROTTLE_MS, now_ms

if TYPE_CHECKING:
    from trackwatch.core.host import AlertSink

logger = logging.getLogger(__name__)


class NotificationThrottler:
    """Let an alert title through at most once per cooldown window.

    The last-fire map is keyed by title and never pruned; titles come from a
    fixed set, so it stays small.
    """

    def __init__(
        self,
        sink: AlertSink,
        *,
        cooldown_ms: int = THROTTLE_MS,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._sink = sink
        self.cooldown_ms = cooldown_ms
        self._clock = clock
        self._last_fire: dict[str, int] = {}

    def notify(self, title: str, message: str) -> bool:
        """Fire the alert unless *title* fired within the cooldown. Returns whether it fired."""
        # No await between the check and the update: atomic on the event loop.
        now = self._clock()
        last = self._last_fire.get(title)
        if last is not None and now - last <= self.cooldown_ms:
            logger.debug("Alert throttled: %s", title)
            return False
        try:
            self._sink.create(title, message)
        except Exception:
            logger.exception("Alert sink failed for %r", title)
        self._last_fire[title] = now
        return True

    def last_fired(self, title: str) -> int | None:
        return self._last_fire.get(title)
