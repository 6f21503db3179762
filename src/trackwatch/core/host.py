"""Contracts for the host platform, plus in-process implementations.

The browser (or a replayed recording) provides cookie enumeration, alerts and
a message channel. Their observations arrive as :data:`HostEvent` values.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Annotated, Any, Literal, Protocol
from urllib.parse import urlsplit

from pydantic import BaseModel, Field, TypeAdapter

from trackwatch.core.base import Cookie, StoredModel
from trackwatch.core.messages import Message

logger = logging.getLogger(__name__)


class DeliveryError(Exception):
    """Raised when a message has no listener to receive it."""


class CookieStore(Protocol):
    async def get_all(self, url: str) -> list[Cookie]:
        """Cookies that would be sent with a request to *url*."""
        ...

    async def remove(self, url: str, name: str) -> bool: ...


class AlertSink(Protocol):
    def create(self, title: str, message: str) -> None: ...


class MessageChannel(Protocol):
    async def send(self, message: Message) -> None: ...

    async def send_to_tab(self, tab_id: int, message: Message) -> None: ...


# ---------------------------------------------------------------------------
# Observation payloads
# ---------------------------------------------------------------------------


class Header(BaseModel):
    name: str
    value: str = ""


class Tab(BaseModel):
    id: int
    url: str | None = None


class CookieChange(StoredModel):
    cookie: Cookie
    cause: str
    removed: bool = False


class MessageSender(StoredModel):
    tab_id: int | None = None
    tab_url: str | None = None


class HeadersReceived(StoredModel):
    event: Literal["headers_received"] = "headers_received"
    url: str
    headers: list[Header] = Field(default_factory=list)


class BeforeRequest(StoredModel):
    event: Literal["before_request"] = "before_request"
    url: str
    type: str = "other"


class RequestCompleted(StoredModel):
    event: Literal["completed"] = "completed"
    url: str
    type: str = "other"
    tab_id: int | None = None


class CookieChanged(StoredModel):
    event: Literal["cookie_changed"] = "cookie_changed"
    change: CookieChange


class TabCreated(StoredModel):
    event: Literal["tab_created"] = "tab_created"
    tab: Tab


class TabUpdated(StoredModel):
    event: Literal["tab_updated"] = "tab_updated"
    tab_id: int
    url: str | None = None


class TabRemoved(StoredModel):
    event: Literal["tab_removed"] = "tab_removed"
    tab_id: int


class MessageReceived(StoredModel):
    event: Literal["message"] = "message"
    message: dict[str, Any]
    sender: MessageSender = Field(default_factory=MessageSender)


HostEvent = Annotated[
    HeadersReceived
    | BeforeRequest
    | RequestCompleted
    | CookieChanged
    | TabCreated
    | TabUpdated
    | TabRemoved
    | MessageReceived,
    Field(discriminator="event"),
]

_event_adapter: TypeAdapter[HostEvent] = TypeAdapter(HostEvent)


def parse_host_event(raw: Any) -> HostEvent:
    """Validate one recorded host event. Raises pydantic.ValidationError when malformed."""
    return _event_adapter.validate_python(raw)


# ---------------------------------------------------------------------------
# In-process implementations
# ---------------------------------------------------------------------------


def _domain_matches(cookie: Cookie, host: str) -> bool:
    domain = cookie.domain.lstrip(".").lower()
    if cookie.host_only:
        return host == domain
    return host == domain or host.endswith("." + domain)


class CookieJar:
    """Cookie store kept in memory, fed by cookie change events."""

    def __init__(self, cookies: list[Cookie] | None = None) -> None:
        self._cookies: dict[tuple[str, str, str], Cookie] = {}
        for cookie in cookies or []:
            self.put(cookie)

    def put(self, cookie: Cookie) -> None:
        self._cookies[(cookie.domain, cookie.path, cookie.name)] = cookie

    def apply(self, change: CookieChange) -> None:
        key = (change.cookie.domain, change.cookie.path, change.cookie.name)
        if change.removed:
            self._cookies.pop(key, None)
        else:
            self._cookies[key] = change.cookie

    def __len__(self) -> int:
        return len(self._cookies)

    async def get_all(self, url: str) -> list[Cookie]:
        parts = urlsplit(url)
        host = (parts.hostname or "").lower()
        path = parts.path or "/"
        return [
            c
            for c in self._cookies.values()
            if _domain_matches(c, host)
            and path.startswith(c.path)
            and (not c.secure or parts.scheme == "https")
        ]

    async def remove(self, url: str, name: str) -> bool:
        for cookie in await self.get_all(url):
            if cookie.name == name:
                del self._cookies[(cookie.domain, cookie.path, cookie.name)]
                return True
        return False


class LoggingAlertSink:
    """Alert sink that writes alerts to the log and keeps them for inspection."""

    def __init__(self) -> None:
        self.alerts: list[tuple[str, str]] = []

    def create(self, title: str, message: str) -> None:
        logger.warning("%s: %s", title, message)
        self.alerts.append((title, message))


Listener = Callable[[Message], Awaitable[None]]


class LocalChannel:
    """Fan-out message channel. Sending with nobody listening raises DeliveryError."""

    def __init__(self) -> None:
        self._listeners: list[Listener] = []
        self._tab_listeners: dict[int, list[Listener]] = {}

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def subscribe_tab(self, tab_id: int, listener: Listener) -> None:
        self._tab_listeners.setdefault(tab_id, []).append(listener)

    async def send(self, message: Message) -> None:
        if not self._listeners:
            raise DeliveryError(f"No listener for {message.type}")
        for listener in list(self._listeners):
            await listener(message)

    async def send_to_tab(self, tab_id: int, message: Message) -> None:
        listeners = self._tab_listeners.get(tab_id)
        if not listeners:
            raise DeliveryError(f"No listener in tab {tab_id} for {message.type}")
        for listener in list(listeners):
            await listener(message)
