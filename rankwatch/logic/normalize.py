"""Normalization of raw search performance rows into keyword/page aggregates."""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date
from typing import Iterable
from urllib.parse import urlsplit

from rankwatch.ingest.models import RawPerformanceRow

logger = logging.getLogger(__name__)

DOMAIN_PROPERTY_PREFIX = "sc-domain:"

KeywordPageKey = tuple[str, str]


def normalize_keyword(value: str) -> str:
    return value.strip().lower()


def parse_keyword_whitelist(raw: str | None) -> set[str]:
    """Split the newline-delimited campaign keyword list into normalized keywords."""
    if not raw:
        return set()
    keywords = (normalize_keyword(line) for line in raw.splitlines())
    return {keyword for keyword in keywords if keyword}


def _strip_www(host: str) -> str:
    return host[4:] if host.startswith("www.") else host


def site_host(site: str | None) -> str | None:
    """Host of a registered site, accepting ``sc-domain:example.com`` properties."""
    if not site or not isinstance(site, str):
        return None
    value = site.strip()
    if value.lower().startswith(DOMAIN_PROPERTY_PREFIX):
        value = "https://" + value[len(DOMAIN_PROPERTY_PREFIX):]
    elif "://" not in value:
        value = "https://" + value
    return page_host(value)


def page_host(url: str | None) -> str | None:
    if not url or not isinstance(url, str):
        return None
    try:
        parts = urlsplit(url.strip())
        host = parts.hostname
    except ValueError:
        return None
    if not parts.scheme or not host:
        return None
    return _strip_www(host.lower())


def _in_window(row_date: date | None, start: date | None, end: date | None) -> bool:
    if row_date is None:
        return start is None and end is None
    if start is not None and row_date < start:
        return False
    if end is not None and row_date > end:
        return False
    return True


def normalize_rows(
    rows: Iterable[RawPerformanceRow],
    whitelist: str | Iterable[str] | None,
    site: str | None,
    *,
    start: date | None = None,
    end: date | None = None,
) -> dict[KeywordPageKey, int]:
    """Sum impressions per ``(keyword, page_url)`` over the window.

    Rows for keywords outside the whitelist, pages on another host, or rows
    that cannot be read are dropped. Never raises for a bad row.
    """
    if isinstance(whitelist, str) or whitelist is None:
        allowed = parse_keyword_whitelist(whitelist)
    else:
        allowed = {normalize_keyword(k) for k in whitelist if isinstance(k, str) and k.strip()}
    campaign_host = site_host(site)
    totals: dict[KeywordPageKey, int] = defaultdict(int)
    seen = dropped_keyword = dropped_domain = dropped_malformed = 0

    for row in rows:
        seen += 1
        try:
            if not isinstance(row.query, str) or not isinstance(row.page, str):
                dropped_malformed += 1
                continue
            if not _in_window(row.date, start, end):
                dropped_malformed += 1
                continue
            keyword = normalize_keyword(row.query)
            if keyword not in allowed:
                dropped_keyword += 1
                continue
            if campaign_host is None or page_host(row.page) != campaign_host:
                dropped_domain += 1
                continue
            impressions = int(row.impressions or 0)
        except (AttributeError, TypeError, ValueError):
            logger.debug("Dropping unreadable row %r", row)
            dropped_malformed += 1
            continue
        if impressions < 0:
            dropped_malformed += 1
            continue
        totals[(keyword, row.page)] += impressions

    logger.info(
        "Normalized %s rows into %s keyword/page pairs (keyword filtered %s, off-site %s, malformed %s)",
        seen,
        len(totals),
        dropped_keyword,
        dropped_domain,
        dropped_malformed,
    )
    return dict(totals)
