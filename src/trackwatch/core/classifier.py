"""Tracker and ad domain classification.

Matching is plain substring inclusion against two fixed watch-lists, so
``"notfacebook.com.example"`` counts as a facebook.com tracker. Every caller
goes through :class:`DomainClassifier`, which is the single place to swap in
suffix or eTLD-aware matching.
"""

from __future__ import annotations

from collections.abc import Iterable

import yaml

from trackwatch.core.paths import DATA_DIR


def _load_domains() -> dict[str, list[str]]:
    path = DATA_DIR / "domains.yaml"
    with open(path) as f:
        return yaml.safe_load(f)


_DOMAINS = _load_domains()

TRACKER_DOMAINS: tuple[str, ...] = tuple(_DOMAINS["trackers"])
AD_DOMAINS: tuple[str, ...] = tuple(_DOMAINS["ad_domains"])
COMPLETED_REQUEST_TYPES: frozenset[str] = frozenset(_DOMAINS["completed_request_types"])
BEACON_MARKERS: tuple[str, ...] = tuple(_DOMAINS["beacon_markers"])


class DomainClassifier:
    """Judge hostnames against the tracker and ad watch-lists."""

    def __init__(
        self,
        trackers: Iterable[str] = TRACKER_DOMAINS,
        ad_domains: Iterable[str] = AD_DOMAINS,
    ) -> None:
        self.trackers = tuple(trackers)
        self.ad_domains = tuple(ad_domains)

    def tracker_match(self, host: str) -> str | None:
        """Return the first tracker entry contained in *host*, if any."""
        for entry in self.trackers:
            if entry in host:
                return entry
        return None

    def is_tracker(self, host: str) -> bool:
        return self.tracker_match(host) is not None

    def is_ad(self, host: str) -> bool:
        return any(entry in host for entry in self.ad_domains)

    def is_tracker_or_ad(self, host: str) -> bool:
        return self.is_tracker(host) or self.is_ad(host)

    def is_foreign(self, cookie_domain: str, request_host: str) -> bool:
        """A cookie is foreign to a request unless its domain contains the request host."""
        return request_host not in cookie_domain

    def is_beacon(self, url: str) -> bool:
        return any(marker in url for marker in BEACON_MARKERS)


default_classifier = DomainClassifier()
