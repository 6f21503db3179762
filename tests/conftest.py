"""Shared test fixtures."""

from __future__ import annotations

import pytest

from trackwatch.core.base import Cookie
from trackwatch.core.host import CookieJar, LocalChannel, LoggingAlertSink
from trackwatch.core.monitor import Monitor
from trackwatch.core.storage import memory_storage


class FakeClock:
    """Manually advanced epoch-millisecond clock."""

    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage():
    return memory_storage()


@pytest.fixture
def jar():
    return CookieJar(
        [
            Cookie(name="IDE", domain=".doubleclick.net", value="abc"),
            Cookie(name="session", domain="example.com", value="s1", secure=True, http_only=True,
                   same_site="strict", host_only=True),
        ]
    )


@pytest.fixture
def alerts():
    return LoggingAlertSink()


@pytest.fixture
def channel():
    received = []
    chan = LocalChannel()

    async def _listen(message):
        received.append(message)

    chan.subscribe(_listen)
    chan.received = received
    return chan


@pytest.fixture
def monitor(storage, jar, alerts, channel, clock):
    return Monitor(storage, jar, alerts, channel, clock=clock)


@pytest.fixture(autouse=True)
def _isolated_state_dir(tmp_path, monkeypatch):
    """Keep every test away from the real ~/.local/share state."""
    monkeypatch.setenv("TW_DATA_DIR", str(tmp_path / "state"))
    monkeypatch.delenv("TW_LOG_LEVEL", raising=False)
