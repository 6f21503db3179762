"""Tests for the coalescing ingestion queue."""

import asyncio

import pytest

from trackwatch.core.base import LogRecord, SourceTag
from trackwatch.core.ingestion import IngestionQueue
from trackwatch.core.logstore import TrackingLogStore
from trackwatch.core.storage import MemoryStore, StorageError


def _record(n: int) -> LogRecord:
    return LogRecord(source=SourceTag.NETWORK_TRACKING, timestamp=n, url=f"https://example.com/{n}")


class FlakyStore(MemoryStore):
    """Memory store whose first *failures* writes raise."""

    def __init__(self, failures: int = 1) -> None:
        super().__init__()
        self.failures = failures

    async def set(self, values):
        if self.failures:
            self.failures -= 1
            raise StorageError("disk full")
        await super().set(values)


@pytest.mark.asyncio
async def test_records_within_window_form_one_batch():
    backing = MemoryStore()
    queue = IngestionQueue(TrackingLogStore(backing), window=0.02)
    batches = []

    async def _observe(batch):
        batches.append(batch)

    queue.subscribe(_observe)
    for n in range(3):
        queue.enqueue(_record(n))
    assert queue.armed
    assert queue.pending == 3

    await asyncio.sleep(0.1)

    assert queue.flush_count == 1
    assert backing.writes == 1
    assert not queue.armed
    assert len(batches) == 1 and len(batches[0]) == 3


@pytest.mark.asyncio
async def test_batch_is_stored_newest_first():
    store = TrackingLogStore(MemoryStore())
    queue = IngestionQueue(store, window=10)
    for n in range(3):
        queue.enqueue(_record(n))
    await queue.flush()

    stored = await store.read()
    assert [r.timestamp for r in stored] == [2, 1, 0]


@pytest.mark.asyncio
async def test_timer_armed_only_once():
    queue = IngestionQueue(TrackingLogStore(MemoryStore()), window=10)
    queue.enqueue(_record(1))
    timer = queue._timer
    queue.enqueue(_record(2))
    assert queue._timer is timer
    await queue.flush()
    assert not queue.armed


@pytest.mark.asyncio
async def test_flush_on_empty_queue_is_noop():
    backing = MemoryStore()
    queue = IngestionQueue(TrackingLogStore(backing))
    await queue.flush()
    assert backing.writes == 0
    assert queue.flush_count == 0


@pytest.mark.asyncio
async def test_failed_commit_requeues_batch():
    backing = FlakyStore(failures=1)
    store = TrackingLogStore(backing)
    queue = IngestionQueue(store, window=10)
    queue.enqueue(_record(1))
    queue.enqueue(_record(2))

    await queue.flush()
    assert queue.pending == 2
    assert queue.armed
    assert queue.flush_count == 0

    await queue.flush()
    assert queue.pending == 0
    assert await store.count() == 2


@pytest.mark.asyncio
async def test_observer_failure_does_not_stop_flush():
    store = TrackingLogStore(MemoryStore())
    queue = IngestionQueue(store, window=10)
    seen = []

    async def _broken(batch):
        raise RuntimeError("listener crashed")

    async def _ok(batch):
        seen.append(len(batch))

    queue.subscribe(_broken)
    queue.subscribe(_ok)
    queue.enqueue(_record(1))
    await queue.flush()

    assert seen == [1]
    assert await store.count() == 1


@pytest.mark.asyncio
async def test_published_batch_matches_stored_order():
    store = TrackingLogStore(MemoryStore())
    queue = IngestionQueue(store, window=10)
    published = []

    async def _observe(batch):
        published.extend(r.timestamp for r in batch)

    queue.subscribe(_observe)
    for n in range(3):
        queue.enqueue(_record(n))
    await queue.flush()

    assert published == [2, 1, 0]
    assert published == [r.timestamp for r in await store.read()]


@pytest.mark.asyncio
async def test_window_counts_from_first_record():
    queue = IngestionQueue(TrackingLogStore(MemoryStore()), window=0.3)
    loop = asyncio.get_running_loop()
    committed = []

    async def _observe(batch):
        committed.append((loop.time(), len(batch)))

    queue.subscribe(_observe)
    first = loop.time()
    queue.enqueue(_record(0))
    await asyncio.sleep(0.1)
    queue.enqueue(_record(1))
    await asyncio.sleep(0.1)
    last = loop.time()
    queue.enqueue(_record(2))
    assert queue.flush_count == 0

    await asyncio.sleep(0.3)

    assert queue.flush_count == 1
    assert len(committed) == 1
    commit_at, size = committed[0]
    assert size == 3
    assert commit_at - first >= 0.29
    assert commit_at - last < 0.3
