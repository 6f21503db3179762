"""Shared record shapes. Every observation, cookie and session flows through these."""

from __future__ import annotations

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

ONE_WEEK_MS = 7 * 24 * 3600 * 1000
THROTTLE_MS = 60_000
MAX_LOGS = 1000
MAX_HISTORY = 50
FLUSH_WINDOW_MS = 1000
HOURLY_MS = 3_600_000


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class SourceTag(StrEnum):
    NETWORK_TRACKING = "network_tracking"
    CACHE_TRACKING = "cache_tracking"
    ON_CHANGED = "onChanged"
    ON_COMPLETED = "onCompleted"
    LOCAL_STORAGE = "localStorage"
    BEHAVIOR_TRACKING = "behavior_tracking"
    CROSS_SITE_TRACKING = "cross_site_tracking"
    DEVICE_LOCATION = "deviceLocation"
    DEVICE_FINGERPRINT = "deviceFingerprint"
    DNS_DETECTION = "dnsDetection"


class StoredModel(BaseModel):
    """Base for anything persisted: camelCase keys on disk, snake_case in code."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_store(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class LogRecord(StoredModel):
    """One normalized tracking observation. Append-only, duplicates allowed."""

    source: SourceTag
    timestamp: int  # epoch ms, assigned at normalization
    domain: str | None = None
    url: str | None = None
    cookie_name: str | None = None
    value: str | None = None
    action: str | None = None
    record_type: str | None = Field(default=None, alias="type")
    data: Any = None
    error: str | None = None


class Cookie(StoredModel):
    """A cookie as enumerated by the host cookie store."""

    name: str
    domain: str
    value: str = ""
    path: str = "/"
    secure: bool = False
    http_only: bool = False
    same_site: str | None = None  # "no_restriction", "lax", "strict", "unspecified"
    expiration_date: float | None = None  # epoch seconds, None for session cookies
    host_only: bool = False
    session: bool = False


class CookieSnapshot(StoredModel):
    name: str
    domain: str
    value: str = ""


class TabSession(StoredModel):
    """Live session of a tab on its current URL."""

    url: str
    domain: str
    open_time: int


class SessionRecord(StoredModel):
    """A closed tab session, archived with the cookies visible at close time."""

    url: str
    domain: str
    open_time: int
    close_time: int
    cookie_snapshot: list[CookieSnapshot] = Field(default_factory=list)


class RiskWeights(StoredModel):
    """Multipliers for each contributing cookie risk factor."""

    third_party: float = Field(default=1, ge=0)
    secure: float = Field(default=0.5, ge=0)
    http_only: float = Field(default=0.5, ge=0)
    same_site: float = Field(default=0.5, ge=0)
    expiration: float = Field(default=1, ge=0)
    tracker: float = Field(default=1, ge=0)


class Counters(StoredModel):
    cookie_count: int = 0
    tracker_count: int = 0


class Settings(StoredModel):
    """User settings kept in the synced storage scope."""

    risk_weights: RiskWeights = Field(default_factory=RiskWeights)
    whitelist: str = ""
    notifications_enabled: bool = True
    tracking_active: bool = True
    block_fingerprinting: bool = False
    badge_color: str = "red"
    theme: str = "light"


class LocationData(StoredModel):
    ip: str | None = None
    city: str | None = None
    region: str | None = None
    country: str | None = None
    loc: str | None = None
    org: str = "N/A"
    timezone: str = "N/A"


class DnsDetection(StoredModel):
    dns_servers: str
    website_dns: str = Field(alias="websiteDNS")
