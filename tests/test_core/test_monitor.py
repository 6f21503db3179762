"""Integration tests for the monitoring service."""

import httpx
import pytest

from trackwatch.core.base import ONE_WEEK_MS, Cookie, LocationData, Settings, SourceTag
from trackwatch.core.host import (
    CookieChange,
    CookieJar,
    Header,
    LocalChannel,
    MessageSender,
    Tab,
    parse_host_event,
)
from trackwatch.core.messages import CookieTrackingMessage, LogsUpdatedMessage, WidgetNotificationMessage
from trackwatch.core.monitor import Monitor
from trackwatch.core.storage import save_settings

IDE = Cookie(name="IDE", domain=".doubleclick.net", value="abc")


async def _logs(monitor):
    await monitor.queue.flush()
    return await monitor.log_store.read()


# ---------------------------------------------------------------------------
# Network observer
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_tracker_response_cookies_are_stripped(monitor):
    headers = [Header(name="set-cookie", value="id=1"), Header(name="etag", value="v1")]
    kept = monitor.on_headers_received("https://stats.doubleclick.net/x", headers)
    assert kept == [Header(name="etag", value="v1")]
    assert await _logs(monitor) == []


@pytest.mark.asyncio
async def test_etag_is_logged(monitor):
    monitor.on_headers_received("https://cdn.example.com/app.js", [Header(name="ETag", value="abc")])
    logs = await _logs(monitor)
    assert [r.source for r in logs] == [SourceTag.CACHE_TRACKING]


@pytest.mark.asyncio
async def test_ad_request_cancelled_and_logged(monitor):
    assert monitor.on_before_request("https://ad.doubleclick.net/ad.js", "script") is True
    assert monitor.on_before_request("https://example.com/beacon", "ping") is False
    assert monitor.on_before_request("https://example.com/app.js", "script") is None
    assert len(await _logs(monitor)) == 2


@pytest.mark.asyncio
async def test_malformed_url_is_dropped(monitor):
    assert monitor.on_headers_received("garbage", []) is None
    assert monitor.on_before_request("garbage", "script") is None
    await monitor.on_completed("garbage", "script", 1)
    assert await _logs(monitor) == []


@pytest.mark.asyncio
async def test_data_url_pixel_is_logged(monitor):
    url = "data:image/gif;base64,pixel"
    assert monitor.on_before_request(url, "image") is False
    logs = await _logs(monitor)
    assert [(r.url, r.domain) for r in logs] == [(url, "")]


@pytest.mark.asyncio
async def test_completed_request_reports_tracker_cookies(monitor, alerts):
    widget = []

    async def _tab(message):
        widget.append(message)

    monitor.channel.subscribe_tab(5, _tab)
    await monitor.on_completed("https://stats.doubleclick.net/collect", "image", 5)

    logs = await _logs(monitor)
    assert [(r.source, r.cookie_name) for r in logs] == [(SourceTag.ON_COMPLETED, "IDE")]
    assert alerts.alerts == [("Cookie Tracker", "IDE @ .doubleclick.net")]
    assert widget == [WidgetNotificationMessage(message="IDE @ .doubleclick.net")]
    assert any(isinstance(m, CookieTrackingMessage) for m in monitor.channel.received)


@pytest.mark.asyncio
async def test_completed_ignores_uninteresting_types(monitor, alerts):
    await monitor.on_completed("https://stats.doubleclick.net/collect", "stylesheet", 5)
    assert await _logs(monitor) == []
    assert alerts.alerts == []


# ---------------------------------------------------------------------------
# Cookie store
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_explicit_cookie_change_logs_and_counts(monitor):
    await monitor.on_cookie_changed(CookieChange(cookie=IDE, cause="explicit"))
    await monitor.on_cookie_changed(CookieChange(cookie=IDE, cause="overwrite"))

    logs = await _logs(monitor)
    assert [r.source for r in logs] == [SourceTag.ON_CHANGED]
    totals = await monitor.counters.read()
    assert (totals.cookie_count, totals.tracker_count) == (1, 1)


@pytest.mark.asyncio
async def test_paused_tracking_still_counts(monitor, storage):
    await save_settings(storage, Settings(tracking_active=False))
    await monitor.on_cookie_changed(CookieChange(cookie=IDE, cause="explicit"))
    await monitor.on_completed("https://stats.doubleclick.net/collect", "image", 5)

    assert await _logs(monitor) == []
    assert (await monitor.counters.read()).cookie_count == 1


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_local_storage_message(monitor, alerts):
    sender = MessageSender(tab_id=2, tab_url="https://news.example.org/")
    await monitor.on_message(
        {"type": "localStorage_tracking", "data": [{"key": "_ga", "value": "1"}, {"key": "_fbp"}]},
        sender,
    )
    logs = await _logs(monitor)
    assert {r.cookie_name for r in logs} == {"_ga", "_fbp"}
    assert all(r.domain == "news.example.org" for r in logs)
    # Second key falls inside the throttle window
    assert alerts.alerts == [("LocalStorage Alert", "Key: _ga")]


@pytest.mark.asyncio
async def test_local_storage_message_from_file_page(monitor, alerts):
    sender = MessageSender(tab_id=4, tab_url="file:///home/u/page.html")
    await monitor.on_message({"type": "localStorage_tracking", "data": [{"key": "token", "value": "t"}]}, sender)
    logs = await _logs(monitor)
    assert [(r.cookie_name, r.domain) for r in logs] == [("token", "")]
    assert alerts.alerts == [("LocalStorage Alert", "Key: token")]


@pytest.mark.asyncio
async def test_canvas_message_alerts_only(monitor, alerts):
    await monitor.on_message({"type": "canvas_fingerprint_detected", "data": {"url": "https://x.com"}})
    assert alerts.alerts == [("Fingerprinting Alert", "Canvas fingerprinting detected!")]
    assert await _logs(monitor) == []


@pytest.mark.asyncio
async def test_fingerprint_and_dns_are_persisted(monitor, storage):
    await monitor.on_message({"type": "deviceFingerprint", "data": {"cores": 8, "platform": "Linux"}})
    await monitor.on_message({"type": "dnsDetection", "data": {"dnsServers": "9.9.9.9", "websiteDNS": "1.2.3.4"}})

    stored = await storage.local.get({"deviceFingerprint": None, "dnsServers": None, "websiteDNS": None})
    assert stored == {
        "deviceFingerprint": {"cores": 8, "platform": "Linux"},
        "dnsServers": "9.9.9.9",
        "websiteDNS": "1.2.3.4",
    }
    sources = {r.source for r in await _logs(monitor)}
    assert sources == {SourceTag.DEVICE_FINGERPRINT, SourceTag.DNS_DETECTION}


@pytest.mark.asyncio
async def test_behavior_and_cross_site_messages(monitor):
    await monitor.on_message({"type": "behavior_tracking", "data": {"moves": 10, "keys": 2, "scroll": 0.3}})
    await monitor.on_message({"type": "cross_site_tracking", "data": [{"name": "a", "domain": "x.com"}]})
    sources = [r.source for r in await _logs(monitor)]
    assert sources == [SourceTag.CROSS_SITE_TRACKING, SourceTag.BEHAVIOR_TRACKING]


@pytest.mark.asyncio
async def test_malformed_and_outbound_messages_are_dropped(monitor, alerts):
    await monitor.on_message({"type": "nonsense"})
    await monitor.on_message({"type": "widget_notification", "message": "echo"})
    assert await _logs(monitor) == []
    assert alerts.alerts == []


@pytest.mark.asyncio
async def test_flushed_batch_is_published(monitor):
    monitor.on_before_request("https://ad.doubleclick.net/ad.js", "script")
    await monitor.queue.flush()
    published = [m for m in monitor.channel.received if isinstance(m, LogsUpdatedMessage)]
    assert len(published) == 1
    assert published[0].data[0].url == "https://ad.doubleclick.net/ad.js"


@pytest.mark.asyncio
async def test_missing_listener_does_not_break_pipeline(storage, jar, alerts, clock):
    monitor = Monitor(storage, jar, alerts, LocalChannel(), clock=clock)
    await monitor.on_cookie_changed(CookieChange(cookie=IDE, cause="explicit"))
    assert len(await _logs(monitor)) == 1


@pytest.mark.asyncio
async def test_failing_listener_does_not_lose_counts(storage, jar, alerts, clock):
    channel = LocalChannel()

    async def _broken(message):
        raise RuntimeError("listener crashed")

    channel.subscribe(_broken)
    monitor = Monitor(storage, jar, alerts, channel, clock=clock)
    await monitor.on_cookie_changed(CookieChange(cookie=Cookie(name="fr", domain=".facebook.com"), cause="explicit"))

    totals = await monitor.counters.read()
    assert (totals.cookie_count, totals.tracker_count) == (1, 1)
    assert len(await _logs(monitor)) == 1


# ---------------------------------------------------------------------------
# Tabs and replay
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_tab_lifecycle_archives_session(monitor, clock):
    monitor.on_tab_created(Tab(id=1, url="https://example.com/"))
    clock.advance(2000)
    await monitor.on_tab_removed(1)

    history = await monitor.sessions.history.read()
    assert len(history) == 1
    assert history[0].close_time - history[0].open_time == 2000


@pytest.mark.asyncio
async def test_navigation_to_blank_page_replaces_session(monitor):
    monitor.on_tab_created(Tab(id=1, url="https://a.com/"))
    monitor.on_tab_updated(1, "about:blank")
    assert monitor.sessions.get(1).domain == ""

    await monitor.on_tab_removed(1)
    history = await monitor.sessions.history.read()
    assert [(s.url, s.domain) for s in history] == [("about:blank", "")]


@pytest.mark.asyncio
async def test_dispatch_routes_recorded_events(monitor, jar):
    events = [
        {"event": "tab_created", "tab": {"id": 9, "url": "chrome://newtab"}},
        {"event": "tab_updated", "tabId": 9, "url": "https://example.com/"},
        {"event": "before_request", "url": "https://ad.doubleclick.net/x", "type": "script"},
        {"event": "cookie_changed", "change": {"cause": "explicit", "cookie": {"name": "n", "domain": "example.com"}}},
        {"event": "tab_removed", "tabId": 9},
    ]
    verdicts = [await monitor.dispatch(parse_host_event(raw)) for raw in events]

    assert verdicts[2] is True
    assert len(await monitor.sessions.history.read()) == 1
    assert len(await _logs(monitor)) == 2


# ---------------------------------------------------------------------------
# Probes and analysis
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_refresh_location_success(storage, jar, alerts, channel, clock):
    async def _fetch():
        return LocationData(ip="203.0.113.1", city="Paris", country="FR")

    monitor = Monitor(storage, jar, alerts, channel, clock=clock, location_fetcher=_fetch)
    location = await monitor.refresh_location()

    assert location.city == "Paris"
    stored = (await storage.local.get({"locationData": None}))["locationData"]
    assert stored["city"] == "Paris"
    logs = await _logs(monitor)
    assert logs[0].source == SourceTag.DEVICE_LOCATION
    assert logs[0].data["ip"] == "203.0.113.1"


@pytest.mark.asyncio
async def test_refresh_location_failure_is_logged(storage, jar, alerts, channel, clock):
    async def _fetch():
        raise httpx.ConnectError("network down")

    monitor = Monitor(storage, jar, alerts, channel, clock=clock, location_fetcher=_fetch)
    assert await monitor.refresh_location() is None

    logs = await _logs(monitor)
    assert logs[0].error == "network down"
    assert (await storage.local.get({"locationData": None}))["locationData"] is None


@pytest.mark.asyncio
async def test_start_and_stop(storage, jar, alerts, channel, clock):
    calls = []

    async def _fetch():
        calls.append(1)
        return LocationData()

    async with Monitor(storage, jar, alerts, channel, clock=clock, location_fetcher=_fetch) as monitor:
        assert len(monitor._periodic) == 2
    assert calls == [1]
    assert monitor._periodic == []
    assert await monitor.log_store.count() == 1


@pytest.mark.asyncio
async def test_assess_and_remediate(storage, alerts, channel, clock):
    risky = Cookie(name="uid", domain=".tracker.doubleclick.net", expiration_date=(clock.now + 2 * ONE_WEEK_MS) / 1000)
    jar = CookieJar([risky, Cookie(name="safe", domain="ads.example.com", secure=True, http_only=True, same_site="lax")])
    monitor = Monitor(storage, jar, alerts, channel, clock=clock)

    quiet = await monitor.assess_site("https://example.com/")
    assert quiet.score == 0
    assert quiet.cookie_count == 0

    assessment = await monitor.assess_site("https://x.tracker.doubleclick.net/")
    assert assessment.cookie_count == 1
    assert assessment.score == 8
    assert assessment.label == "High"
    assert assessment.high_risk

    assert await monitor.remediate("https://example.com/") == 0
    assert await monitor.remediate("https://x.tracker.doubleclick.net/") == 1
    assert len(jar) == 1


@pytest.mark.asyncio
async def test_remediate_force(monitor, jar):
    assert await monitor.remediate("https://example.com/") == 0
    assert await monitor.remediate("https://example.com/", force=True) == 1
    assert len(jar) == 1
