"""Typed messages exchanged with page scripts and UI listeners.

Every message kind is one model; :data:`Message` is the discriminated union
over the ``type`` field.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter

from trackwatch.core.base import Cookie, DnsDetection, LocationData, LogRecord, StoredModel


class StorageItem(BaseModel):
    key: str
    value: str | None = None


class BehaviorData(BaseModel):
    moves: int = 0
    keys: int = 0
    scroll: float = 0


class CanvasData(BaseModel):
    url: str | None = None


class DeviceFingerprintMessage(StoredModel):
    type: Literal["deviceFingerprint"] = "deviceFingerprint"
    data: dict[str, Any]


class DeviceLocationMessage(StoredModel):
    type: Literal["deviceLocation"] = "deviceLocation"
    data: LocationData


class DnsDetectionMessage(StoredModel):
    type: Literal["dnsDetection"] = "dnsDetection"
    data: DnsDetection


class BehaviorTrackingMessage(StoredModel):
    type: Literal["behavior_tracking"] = "behavior_tracking"
    data: BehaviorData


class CrossSiteTrackingMessage(StoredModel):
    type: Literal["cross_site_tracking"] = "cross_site_tracking"
    data: list[Cookie]


class LocalStorageTrackingMessage(StoredModel):
    type: Literal["localStorage_tracking"] = "localStorage_tracking"
    data: list[StorageItem]


class CanvasFingerprintMessage(StoredModel):
    type: Literal["canvas_fingerprint_detected"] = "canvas_fingerprint_detected"
    data: CanvasData = Field(default_factory=CanvasData)


class CookieTrackingMessage(StoredModel):
    type: Literal["cookie_tracking"] = "cookie_tracking"
    data: LogRecord


class LogsUpdatedMessage(StoredModel):
    type: Literal["logs_updated"] = "logs_updated"
    data: list[LogRecord]


class WidgetNotificationMessage(StoredModel):
    type: Literal["widget_notification"] = "widget_notification"
    message: str


Message = Annotated[
    DeviceFingerprintMessage
    | DeviceLocationMessage
    | DnsDetectionMessage
    | BehaviorTrackingMessage
    | CrossSiteTrackingMessage
    | LocalStorageTrackingMessage
    | CanvasFingerprintMessage
    | CookieTrackingMessage
    | LogsUpdatedMessage
    | WidgetNotificationMessage,
    Field(discriminator="type"),
]

_message_adapter: TypeAdapter[Message] = TypeAdapter(Message)


def parse_message(raw: Any) -> Message:
    """Validate a raw message dict. Raises pydantic.ValidationError when malformed."""
    return _message_adapter.validate_python(raw)
