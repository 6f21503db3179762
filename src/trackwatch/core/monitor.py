"""The monitoring service: host observations in, log records, alerts and scores out.

One :class:`Monitor` owns every piece of mutable state (ingestion queue, live
tab sessions, alert throttle, counters) and runs on a single event loop.
Handlers never raise: a malformed event is logged and dropped, a failed host
call degrades to partial data.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Iterator, Sequence
from typing import Any, assert_never

import httpx
from pydantic import BaseModel

from trackwatch.core.base import HOURLY_MS, DnsDetection, LocationData, LogRecord, Settings, now_ms
from trackwatch.core.classifier import DomainClassifier
from trackwatch.core.config import MonitorConfig
from trackwatch.core.counters import CounterAggregator
from trackwatch.core.host import (
    AlertSink,
    BeforeRequest,
    CookieChange,
    CookieChanged,
    CookieStore,
    DeliveryError,
    Header,
    HeadersReceived,
    HostEvent,
    MessageChannel,
    MessageReceived,
    MessageSender,
    RequestCompleted,
    Tab,
    TabCreated,
    TabRemoved,
    TabUpdated,
)
from trackwatch.core.ingestion import IngestionQueue
from trackwatch.core.logstore import TrackingLogStore
from trackwatch.core.messages import (
    BehaviorTrackingMessage,
    CanvasFingerprintMessage,
    CookieTrackingMessage,
    CrossSiteTrackingMessage,
    DeviceFingerprintMessage,
    DeviceLocationMessage,
    DnsDetectionMessage,
    LocalStorageTrackingMessage,
    LogsUpdatedMessage,
    Message,
    WidgetNotificationMessage,
    parse_message,
)
from trackwatch.core.normalizer import EventNormalizer
from trackwatch.core.scoring import (
    BLOCK_THRESHOLD,
    compute_risk_score,
    get_risk_color,
    get_risk_label,
    is_high_risk,
    site_domain,
)
from trackwatch.core.sessions import SessionHistory, TabSessionTracker
from trackwatch.core.storage import Storage, StorageError, load_settings
from trackwatch.core.throttle import NotificationThrottler
from trackwatch.probes.dns import detect_dns

logger = logging.getLogger(__name__)

LocationFetcher = Callable[[], Awaitable[LocationData]]

COOKIE_ALERT = "Cookie Tracker"
LOCAL_STORAGE_ALERT = "LocalStorage Alert"
FINGERPRINT_ALERT = "Fingerprinting Alert"


class SiteAssessment(BaseModel):
    """Risk score of the cookies a site currently exposes."""

    url: str
    domain: str
    score: int
    cookie_count: int
    label: str
    color: str
    high_risk: bool


class Monitor:
    """Wires the normalizer, queue, stores, throttler and session tracker together."""

    def __init__(
        self,
        storage: Storage,
        cookies: CookieStore,
        alerts: AlertSink,
        channel: MessageChannel,
        *,
        config: MonitorConfig | None = None,
        classifier: DomainClassifier | None = None,
        clock: Callable[[], int] = now_ms,
        location_fetcher: LocationFetcher | None = None,
    ) -> None:
        config = config or MonitorConfig()
        self.storage = storage
        self.cookies = cookies
        self.channel = channel
        self._clock = clock
        self._seed_weights = config.risk_weights
        self._location_fetcher = location_fetcher

        self.normalizer = EventNormalizer(classifier, clock)
        self.log_store = TrackingLogStore(storage.local, clock=clock)
        self.queue = IngestionQueue(self.log_store, window=config.flush_window_ms / 1000)
        self.queue.subscribe(self._publish_batch)
        self.throttler = NotificationThrottler(alerts, clock=clock)
        self.sessions = TabSessionTracker(
            cookies,
            SessionHistory(storage.sync),
            excluded_schemes=config.excluded_schemes,
            clock=clock,
        )
        self.counters = CounterAggregator(storage.local)
        self._periodic: list[asyncio.Task[None]] = []

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        """Start the hourly retention sweep and, if configured, location refreshes."""
        self._periodic.append(
            asyncio.create_task(self._every(HOURLY_MS / 1000, self.log_store.sweep, "retention sweep"))
        )
        if self._location_fetcher is not None:
            await self.refresh_location()
            self._periodic.append(
                asyncio.create_task(self._every(HOURLY_MS / 1000, self.refresh_location, "location"))
            )

    async def stop(self) -> None:
        """Stop periodic jobs and commit whatever is still queued."""
        for task in self._periodic:
            task.cancel()
        await asyncio.gather(*self._periodic, return_exceptions=True)
        self._periodic.clear()
        await self.queue.flush()

    async def __aenter__(self) -> Monitor:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    async def _every(self, interval: float, job: Callable[[], Awaitable[Any]], name: str) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await job()
            except StorageError as e:
                logger.error("Periodic %s failed: %s", name, e)

    @contextlib.contextmanager
    def _isolate(self, where: str) -> Iterator[None]:
        """Drop one bad event without disturbing the rest of the pipeline."""
        try:
            yield
        except ValueError as e:
            logger.warning("Dropping malformed %s event: %s", where, e)
        except StorageError as e:
            logger.error("Storage failure while handling %s: %s", where, e)

    async def settings(self) -> Settings:
        return await load_settings(self.storage, self._seed_weights)

    # -- network observer --------------------------------------------------

    def on_headers_received(self, url: str, headers: Sequence[Header]) -> list[Header] | None:
        """Return the headers to keep (set-cookie stripped for trackers), or None on a bad event."""
        with self._isolate("onHeadersReceived"):
            verdict = self.normalizer.headers_received(url, headers)
            if verdict.stripped:
                logger.debug("Stripped set-cookie from %s", url)
            if verdict.record is not None:
                self.queue.enqueue(verdict.record)
            return verdict.headers
        return None

    def on_before_request(self, url: str, request_type: str) -> bool | None:
        """Return True when the request must be cancelled, None when it is not of interest."""
        with self._isolate("onBeforeRequest"):
            verdict = self.normalizer.before_request(url, request_type)
            if verdict is None:
                return None
            self.queue.enqueue(verdict.record)
            return verdict.cancel
        return None

    async def on_completed(self, url: str, request_type: str, tab_id: int | None = None) -> None:
        with self._isolate("onCompleted"):
            if not self.normalizer.wants_completed(request_type):
                return
            settings = await self.settings()
            if not settings.tracking_active:
                return
            cookies = await self.cookies.get_all(url)
            for record in self.normalizer.completed(url, cookies):
                await self._handle_cookie_event(record, tab_id, settings)
                self.throttler.notify(COOKIE_ALERT, f"{record.cookie_name} @ {record.domain}")

    # -- cookie store ------------------------------------------------------

    async def on_cookie_changed(self, change: CookieChange) -> None:
        with self._isolate("onChanged"):
            fact = self.normalizer.cookie_changed(change)
            if fact is None:
                return
            await self.counters.record(fact.is_tracker)
            await self._handle_cookie_event(fact.record)

    async def _handle_cookie_event(
        self,
        record: LogRecord,
        tab_id: int | None = None,
        settings: Settings | None = None,
    ) -> bool:
        settings = settings or await self.settings()
        if not settings.tracking_active:
            return False
        self.queue.enqueue(record)
        await self._send(CookieTrackingMessage(data=record))
        if tab_id is not None and tab_id >= 0:
            widget = WidgetNotificationMessage(message=f"{record.cookie_name} @ {record.domain}")
            await self._send(widget, tab_id=tab_id)
        return True

    # -- tabs --------------------------------------------------------------

    def on_tab_created(self, tab: Tab) -> None:
        with self._isolate("onCreated"):
            self.sessions.open(tab.id, tab.url)

    def on_tab_updated(self, tab_id: int, url: str | None) -> None:
        with self._isolate("onUpdated"):
            self.sessions.open(tab_id, url)

    async def on_tab_removed(self, tab_id: int) -> None:
        with self._isolate("onRemoved"):
            await self.sessions.close(tab_id)

    # -- messaging ---------------------------------------------------------

    async def on_message(self, raw: Message | dict[str, Any], sender: MessageSender | None = None) -> None:
        with self._isolate("onMessage"):
            message = parse_message(raw) if isinstance(raw, dict) else raw
            await self._handle_message(message, sender or MessageSender())

    async def _handle_message(self, message: Message, sender: MessageSender) -> None:
        records = self.normalizer.from_message(message, sender)
        match message:
            case LocalStorageTrackingMessage(data=items):
                settings = await self.settings()
                for record, item in zip(records, items, strict=True):
                    await self._handle_cookie_event(record, sender.tab_id, settings)
                    self.throttler.notify(LOCAL_STORAGE_ALERT, f"Key: {item.key}")
            case CanvasFingerprintMessage():
                self.throttler.notify(FINGERPRINT_ALERT, "Canvas fingerprinting detected!")
            case BehaviorTrackingMessage() | CrossSiteTrackingMessage():
                self._enqueue_all(records)
            case DeviceFingerprintMessage(data=data):
                await self.storage.local.set({"deviceFingerprint": data})
                self._enqueue_all(records)
            case DnsDetectionMessage(data=dns):
                logger.debug("Received DNS detection: %s", dns)
                await self.storage.local.set(dns.to_store())
                self._enqueue_all(records)
            case (
                DeviceLocationMessage()
                | CookieTrackingMessage()
                | LogsUpdatedMessage()
                | WidgetNotificationMessage()
            ):
                logger.debug("Ignoring outbound message kind %s", message.type)
            case _:
                assert_never(message)

    def _enqueue_all(self, records: list[LogRecord]) -> None:
        for record in records:
            self.queue.enqueue(record)

    async def _send(self, message: Message, *, tab_id: int | None = None) -> None:
        try:
            if tab_id is None:
                await self.channel.send(message)
            else:
                await self.channel.send_to_tab(tab_id, message)
        except DeliveryError as e:
            logger.info("Message delivery failed: %s", e)
        except Exception:
            logger.exception("Listener failed while handling %s", message.type)

    async def _publish_batch(self, batch: list[LogRecord]) -> None:
        await self._send(LogsUpdatedMessage(data=batch))

    # -- replay ------------------------------------------------------------

    async def dispatch(self, event: HostEvent) -> Any:
        """Route one host event to its handler and return the handler's verdict."""
        match event:
            case HeadersReceived(url=url, headers=headers):
                return self.on_headers_received(url, headers)
            case BeforeRequest(url=url, type=request_type):
                return self.on_before_request(url, request_type)
            case RequestCompleted(url=url, type=request_type, tab_id=tab_id):
                await self.on_completed(url, request_type, tab_id)
            case CookieChanged(change=change):
                await self.on_cookie_changed(change)
            case TabCreated(tab=tab):
                self.on_tab_created(tab)
            case TabUpdated(tab_id=tab_id, url=url):
                self.on_tab_updated(tab_id, url)
            case TabRemoved(tab_id=tab_id):
                await self.on_tab_removed(tab_id)
            case MessageReceived(message=raw, sender=sender):
                await self.on_message(raw, sender)
            case _:
                assert_never(event)
        return None

    # -- device probes -----------------------------------------------------

    async def refresh_location(self) -> LocationData | None:
        """Look up the device location; a failure is logged as a record carrying the error."""
        if self._location_fetcher is None:
            return None
        try:
            location = await self._location_fetcher()
        except (httpx.HTTPError, ValueError, TimeoutError) as e:
            error = str(e) or type(e).__name__
            logger.error("Location fetch failed: %s", error)
            self.queue.enqueue(self.normalizer.location(error=error))
            return None
        data = location.to_store()
        await self.storage.local.set({"locationData": data})
        self.queue.enqueue(self.normalizer.location(data))
        await self._send(DeviceLocationMessage(data=location))
        return location

    async def detect_dns(self, domain: str) -> DnsDetection:
        """Run the DNS probes for *domain* and ingest the result like a page report."""
        result = await detect_dns(domain, cache=self.storage.local)
        await self.on_message(DnsDetectionMessage(data=result))
        return result

    # -- site analysis -----------------------------------------------------

    async def assess_site(self, url: str) -> SiteAssessment:
        """Score the cookies visible to *url* with the stored risk weights."""
        settings = await self.settings()
        cookies = await self.cookies.get_all(url)
        domain = site_domain(url)
        score = compute_risk_score(
            cookies,
            domain,
            settings.risk_weights,
            now=self._clock(),
            classifier=self.normalizer.classifier,
        )
        return SiteAssessment(
            url=url,
            domain=domain,
            score=score,
            cookie_count=len(cookies),
            label=get_risk_label(score),
            color=get_risk_color(score),
            high_risk=is_high_risk(score),
        )

    async def remediate(self, url: str, *, threshold: int = BLOCK_THRESHOLD, force: bool = False) -> int:
        """Remove every cookie of *url* when its score reaches *threshold*. Returns the count removed."""
        if not force:
            assessment = await self.assess_site(url)
            if assessment.score < threshold:
                logger.info("Risk %d for %s is below the blocking threshold", assessment.score, url)
                return 0
        removed = 0
        for cookie in await self.cookies.get_all(url):
            if await self.cookies.remove(url, cookie.name):
                removed += 1
        logger.info("Removed %d cookies for %s", removed, url)
        return removed
