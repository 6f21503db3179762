"""Classify raw host observations and shape them into LogRecords."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from urllib.parse import urlsplit

from trackwatch.core.base import Cookie, LogRecord, SourceTag, now_ms
from trackwatch.core.classifier import COMPLETED_REQUEST_TYPES, DomainClassifier, default_classifier
from trackwatch.core.messages import (
    BehaviorTrackingMessage,
    CrossSiteTrackingMessage,
    DeviceFingerprintMessage,
    DnsDetectionMessage,
    LocalStorageTrackingMessage,
    Message,
)

if TYPE_CHECKING:
    from trackwatch.core.host import CookieChange, Header, MessageSender


class MalformedEventError(ValueError):
    """Raised when an observation cannot be interpreted."""


def hostname_of(url: str) -> str:
    """Hostname of *url*, ``""`` for host-less URLs such as ``about:blank`` or ``data:``.

    Raises MalformedEventError when *url* cannot be parsed or has no scheme.
    """
    try:
        parts = urlsplit(url)
        host = parts.hostname
    except ValueError as e:
        raise MalformedEventError(f"Invalid URL {url!r}: {e}") from e
    if not parts.scheme:
        raise MalformedEventError(f"Invalid URL {url!r}: no scheme")
    return host or ""


@dataclass
class HeaderVerdict:
    headers: list[Header]
    record: LogRecord | None = None
    stripped: bool = False


@dataclass
class RequestVerdict:
    record: LogRecord
    cancel: bool


@dataclass
class CookieFact:
    record: LogRecord
    is_tracker: bool


class EventNormalizer:
    """Turn network, cookie and page observations into canonical records.

    Timestamps are taken from *clock* when the record is built.
    """

    def __init__(
        self,
        classifier: DomainClassifier | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.classifier = classifier or default_classifier
        self._clock = clock

    def headers_received(self, url: str, headers: Sequence[Header]) -> HeaderVerdict:
        """Strip cookies planted by trackers/ads; flag ETag re-identification elsewhere."""
        domain = hostname_of(url)
        if self.classifier.is_tracker_or_ad(domain):
            kept = [h for h in headers if h.name.lower() != "set-cookie"]
            return HeaderVerdict(headers=kept, stripped=len(kept) != len(headers))

        etag = next((h for h in headers if h.name.lower() == "etag"), None)
        record = None
        if etag is not None:
            record = LogRecord(
                source=SourceTag.CACHE_TRACKING,
                timestamp=self._clock(),
                record_type="etag",
                value=etag.value,
                url=url,
                domain=domain,
            )
        return HeaderVerdict(headers=list(headers), record=record)

    def before_request(self, url: str, request_type: str) -> RequestVerdict | None:
        """Log ad and beacon/pixel requests; only ad-list hits are cancelled."""
        domain = hostname_of(url)
        is_ad = self.classifier.is_ad(domain)
        if not is_ad and not self.classifier.is_beacon(url):
            return None
        record = LogRecord(
            source=SourceTag.NETWORK_TRACKING,
            timestamp=self._clock(),
            record_type=request_type,
            url=url,
            domain=domain,
        )
        return RequestVerdict(record=record, cancel=is_ad)

    def cookie_changed(self, change: CookieChange) -> CookieFact | None:
        """Only explicit (user or script initiated) changes count."""
        if change.cause != "explicit":
            return None
        cookie = change.cookie
        record = self._cookie_record(cookie, SourceTag.ON_CHANGED)
        return CookieFact(record=record, is_tracker=self.classifier.is_tracker(cookie.domain))

    def wants_completed(self, request_type: str) -> bool:
        return request_type in COMPLETED_REQUEST_TYPES

    def completed(self, url: str, cookies: Sequence[Cookie]) -> list[LogRecord]:
        """One record per cookie foreign to the request host or set by a tracker."""
        domain = hostname_of(url)
        return [
            self._cookie_record(cookie, SourceTag.ON_COMPLETED)
            for cookie in cookies
            if self.classifier.is_foreign(cookie.domain, domain)
            or self.classifier.is_tracker(cookie.domain)
        ]

    def from_message(self, message: Message, sender: MessageSender | None = None) -> list[LogRecord]:
        """Records carried by a page message. Alert-only and outbound kinds yield none."""
        now = self._clock()
        match message:
            case LocalStorageTrackingMessage(data=items):
                domain = "localStorage"
                if sender is not None and sender.tab_url:
                    domain = hostname_of(sender.tab_url)
                return [
                    LogRecord(
                        source=SourceTag.LOCAL_STORAGE,
                        timestamp=now,
                        cookie_name=item.key,
                        domain=domain,
                        value=item.value,
                    )
                    for item in items
                ]
            case BehaviorTrackingMessage(data=data):
                return [
                    LogRecord(
                        source=SourceTag.BEHAVIOR_TRACKING,
                        timestamp=now,
                        record_type="behavior",
                        data=data.model_dump(),
                    )
                ]
            case CrossSiteTrackingMessage(data=cookies):
                return [self._cookie_record(c, SourceTag.CROSS_SITE_TRACKING, now) for c in cookies]
            case DeviceFingerprintMessage(data=data):
                return [self._action_record(SourceTag.DEVICE_FINGERPRINT, data, now)]
            case DnsDetectionMessage(data=data):
                return [self._action_record(SourceTag.DNS_DETECTION, data.to_store(), now)]
            case _:
                return []

    def location(self, data: dict[str, Any] | None = None, error: str | None = None) -> LogRecord:
        """Record for a location lookup, successful or not."""
        record = self._action_record(SourceTag.DEVICE_LOCATION, data, self._clock())
        if error is not None:
            record.data = {"error": error}
            record.error = error
        return record

    def _cookie_record(self, cookie: Cookie, source: SourceTag, timestamp: int | None = None) -> LogRecord:
        return LogRecord(
            source=source,
            timestamp=timestamp if timestamp is not None else self._clock(),
            cookie_name=cookie.name,
            domain=cookie.domain,
            value=cookie.value,
        )

    @staticmethod
    def _action_record(source: SourceTag, data: Any, timestamp: int) -> LogRecord:
        return LogRecord(source=source, timestamp=timestamp, action=source.value, data=data)
