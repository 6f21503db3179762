"""Scoring engine: turn a site's cookie set into a 0-10 risk score."""

from __future__ import annotations

import math
from collections.abc import Sequence
from typing import TypedDict
from urllib.parse import urlsplit

import yaml

from trackwatch.core.base import ONE_WEEK_MS, Cookie, RiskWeights, now_ms
from trackwatch.core.classifier import DomainClassifier, default_classifier
from trackwatch.core.paths import DATA_DIR

MAX_SCORE = 10
LARGE_VALUE_BYTES = 1024
# Number of weighted factors; the per-cookie average is normalized by it.
_FACTOR_COUNT = 6


class _ScoreTier(TypedDict):
    min: int
    label: str
    color: str


def _load_scoring() -> tuple[int, int, list[_ScoreTier]]:
    path = DATA_DIR / "scoring.yaml"
    with open(path) as f:
        data = yaml.safe_load(f)
    return data["block_threshold"], data["warning_threshold"], data["score_tiers"]


BLOCK_THRESHOLD, WARNING_THRESHOLD, _SCORE_TIERS = _load_scoring()


def _round_half_up(value: float) -> int:
    # Python's round() is banker's rounding; scores must round 2.5 up to 3.
    return math.floor(value + 0.5)


def cookie_risk(
    cookie: Cookie,
    site_domain: str,
    weights: RiskWeights,
    week_cutoff_ms: int,
    classifier: DomainClassifier,
) -> float:
    """Additive risk contributed by a single cookie."""
    risk = 0.0
    if cookie.domain.removeprefix(".") != site_domain:
        risk += weights.third_party
    if not cookie.secure:
        risk += weights.secure
    if not cookie.http_only:
        risk += weights.http_only
    if not cookie.same_site or cookie.same_site == "unspecified":
        risk += weights.same_site
    if cookie.expiration_date and cookie.expiration_date * 1000 > week_cutoff_ms:
        risk += weights.expiration
    if classifier.is_tracker(cookie.domain):
        risk += weights.tracker
    if len(cookie.value.encode("utf-8")) > LARGE_VALUE_BYTES:
        risk += 1
    return risk


def compute_risk_score(
    cookies: Sequence[Cookie],
    site_domain: str,
    weights: RiskWeights | None = None,
    *,
    now: int | None = None,
    classifier: DomainClassifier | None = None,
) -> int:
    """Compute the risk score of *cookies* as seen from *site_domain*.

    Returns an integer from 0 (no cookies / harmless) to 10 (every factor hit).
    """
    if not cookies:
        return 0

    weights = weights or RiskWeights()
    classifier = classifier or default_classifier
    week_cutoff = (now if now is not None else now_ms()) + ONE_WEEK_MS

    total = sum(cookie_risk(c, site_domain, weights, week_cutoff, classifier) for c in cookies)
    score = _round_half_up(total / len(cookies) / _FACTOR_COUNT * 10)
    return max(0, min(score, MAX_SCORE))


def site_domain(url: str) -> str:
    """Hostname of *url* with a leading ``www.`` removed."""
    host = urlsplit(url).hostname or ""
    return host.removeprefix("www.")


def should_block(score: int) -> bool:
    return score >= BLOCK_THRESHOLD


def is_high_risk(score: int) -> bool:
    return score > WARNING_THRESHOLD


def get_risk_label(score: int) -> str:
    """Return a human-readable label for a score."""
    for tier in _SCORE_TIERS:
        if score >= tier["min"]:
            return str(tier["label"])
    return "Low"


def get_risk_color(score: int) -> str:
    """Return a Rich color name for a score."""
    for tier in _SCORE_TIERS:
        if score >= tier["min"]:
            return str(tier["color"])
    return "green"
