"""DNS resolver detection over DNS-over-HTTPS.

Finds which resolver the user's lookups go through and what a website's name
resolves to. Every request gets a fixed timeout and one retry; a failed
lookup degrades to a descriptive string instead of raising.
"""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Any
from urllib.parse import quote

import httpx

from trackwatch.core.base import DnsDetection
from trackwatch.core.retry import TRANSIENT_ERRORS, with_retry
from trackwatch.core.storage import KeyValueStore

logger = logging.getLogger(__name__)

DNS_CACHE_KEY = "dnsCache"
DETECTION_FAILED = "Detection failed"


def _parse_akamai(resp: httpx.Response) -> str:
    return resp.text.strip() or "Unknown (Akamai)"


def _parse_google(resp: httpx.Response) -> str:
    answers = resp.json().get("Answer") or [{}]
    return answers[0].get("data") or "Unknown (Google DNS)"


# Tried in order; the first service that answers wins.
USER_DNS_SERVICES = [
    ("https://whoami.akamai.net/", "application/json", _parse_akamai),
    ("https://dns.google/resolve?name=whoami.akamai.net", "application/json", _parse_google),
]


async def _get(client: httpx.AsyncClient, url: str, accept: str) -> httpx.Response:
    resp = await client.get(url, headers={"accept": accept})
    resp.raise_for_status()
    return resp


async def detect_user_dns(client: httpx.AsyncClient) -> str:
    """Identify the resolver the user's DNS queries leave through."""
    error = "no service available"
    for url, accept, parse in USER_DNS_SERVICES:
        try:
            resp = await with_retry(partial(_get, client, url, accept), context=url)
            result = parse(resp)
            logger.info("User DNS detected via %s: %s", url, result)
            return result
        except (*TRANSIENT_ERRORS, ValueError) as e:
            logger.warning("User DNS detection failed via %s: %s", url, e)
            error = str(e) or type(e).__name__
    return f"Error: {error}"


async def detect_website_dns(client: httpx.AsyncClient, domain: str) -> str:
    """Resolve *domain*'s A record through Cloudflare's DoH endpoint."""
    url = f"https://1.1.1.1/dns-query?name={quote(domain)}&type=A"
    try:
        resp = await with_retry(partial(_get, client, url, "application/dns-json"), context=url)
        data: dict[str, Any] = resp.json()
    except (*TRANSIENT_ERRORS, ValueError) as e:
        logger.warning("Website DNS detection failed for %s: %s", domain, e)
        return f"Error: {str(e) or type(e).__name__}"

    answers = data.get("Answer") or []
    if not answers:
        return "No DNS answer received"
    return answers[0].get("data") or "Unknown (Cloudflare)"


async def detect_dns(domain: str, cache: KeyValueStore | None = None) -> DnsDetection:
    """Run both detections concurrently, caching the outcome per domain."""
    cache_key = f"{domain}_dns"
    entries: dict[str, Any] = {}
    if cache is not None:
        entries = (await cache.get({DNS_CACHE_KEY: {}}))[DNS_CACHE_KEY]
        cached = entries.get(cache_key)
        if cached:
            logger.debug("Using cached DNS results for %s", domain)
            return DnsDetection(dns_servers=cached["userDNS"], website_dns=cached["websiteDNS"])

    async with httpx.AsyncClient() as client:
        user_result, website_result = await asyncio.gather(
            detect_user_dns(client),
            detect_website_dns(client, domain),
            return_exceptions=True,
        )

    user_dns = user_result if isinstance(user_result, str) else DETECTION_FAILED
    website_dns = website_result if isinstance(website_result, str) else DETECTION_FAILED

    if cache is not None:
        entries[cache_key] = {"userDNS": user_dns, "websiteDNS": website_dns}
        await cache.set({DNS_CACHE_KEY: entries})

    return DnsDetection(dns_servers=user_dns, website_dns=website_dns)
