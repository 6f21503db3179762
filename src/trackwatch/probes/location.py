"""IP geolocation lookup: what any site can learn about where you are."""

from __future__ import annotations

from typing import Any

import httpx

from trackwatch.core.base import LocationData

_GEOLOCATION_API = "https://ipinfo.io/json"
_API_TIMEOUT = 5


def parse_location(payload: dict[str, Any]) -> LocationData:
    """Map an ipinfo.io response onto LocationData."""
    return LocationData(
        ip=payload.get("ip"),
        city=payload.get("city"),
        region=payload.get("region"),
        country=payload.get("country"),
        loc=payload.get("loc"),
        org=payload.get("org") or "N/A",
        timezone=payload.get("timezone") or "N/A",
    )


async def fetch_location() -> LocationData:
    """Query the geolocation API. Raises httpx.HTTPError or ValueError on failure."""
    async with httpx.AsyncClient(timeout=_API_TIMEOUT) as client:
        resp = await client.get(_GEOLOCATION_API)
        resp.raise_for_status()
        data = resp.json()
    if not isinstance(data, dict):
        raise ValueError("Unexpected geolocation payload")
    return parse_location(data)
