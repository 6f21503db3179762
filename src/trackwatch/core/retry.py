"""Bounded-time host calls with a single retry after a fixed backoff."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")

FETCH_TIMEOUT = 3.0  # seconds per attempt
RETRY_BACKOFF = 0.5

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (httpx.HTTPError, TimeoutError, OSError)


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    retries: int = 1,
    timeout: float = FETCH_TIMEOUT,
    backoff: float = RETRY_BACKOFF,
    context: str | None = None,
) -> T:
    """Await ``fn()`` with a per-attempt timeout, retrying transient failures.

    The last error is re-raised once *retries* extra attempts are used up.
    """
    for attempt in range(retries + 1):
        try:
            async with asyncio.timeout(timeout):
                return await fn()
        except TRANSIENT_ERRORS as e:
            if attempt >= retries:
                raise
            logger.warning(
                "Retrying %s after %s (attempt %d of %d)",
                context or "call",
                type(e).__name__,
                attempt + 1,
                retries,
            )
            await asyncio.sleep(backoff)
    raise AssertionError("unreachable")
