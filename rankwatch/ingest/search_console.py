"""Search Console search analytics client."""

from __future__ import annotations

import logging
import os
from datetime import date
from typing import Any, Protocol, Sequence
from urllib.parse import quote

import httpx

from rankwatch.ingest.models import GoogleAccount, RawPerformanceRow
from rankwatch.utils.dates import format_date
from rankwatch.utils.retry import RetryableStatus, retry_async

logger = logging.getLogger(__name__)

SEARCH_ANALYTICS_ENDPOINT = "https://www.googleapis.com/webmasters/v3/sites/{site}/searchAnalytics/query"
ROW_LIMIT = int(os.environ.get("SEARCH_CONSOLE_ROW_LIMIT", 25000))


class SearchConsoleError(RuntimeError):
    pass


class PerformanceDataProvider(Protocol):
    async def fetch_rows(
        self,
        site: str,
        account: GoogleAccount,
        start: date,
        end: date,
        dimensions: Sequence[str],
    ) -> list[RawPerformanceRow]: ...


def _with_date_dimension(dimensions: Sequence[str]) -> list[str]:
    dims = list(dimensions)
    if "date" not in dims:
        dims.insert(0, "date")
    return dims


def _is_quota_error(response: httpx.Response) -> bool:
    if response.status_code == 429:
        return True
    return response.status_code == 403 and "quota" in response.text.lower()


class SearchConsoleClient:
    def __init__(self, *, session: httpx.AsyncClient | None = None, row_limit: int = ROW_LIMIT) -> None:
        self._session = session
        self.row_limit = row_limit

    @property
    def session(self) -> httpx.AsyncClient:
        if self._session is None:
            self._session = httpx.AsyncClient(timeout=60.0)
        return self._session

    async def close(self) -> None:
        if self._session is not None:
            await self._session.aclose()

    async def fetch_rows(
        self,
        site: str,
        account: GoogleAccount,
        start: date,
        end: date,
        dimensions: Sequence[str] = ("query", "page"),
    ) -> list[RawPerformanceRow]:
        dims = _with_date_dimension(dimensions)
        url = SEARCH_ANALYTICS_ENDPOINT.format(site=quote(site, safe=""))
        headers = {"Authorization": f"Bearer {account.access_token}"}
        rows: list[RawPerformanceRow] = []
        start_row = 0
        logger.info("Fetching search analytics for %s from %s to %s", site, format_date(start), format_date(end))
        while True:
            body = {
                "startDate": format_date(start),
                "endDate": format_date(end),
                "dimensions": dims,
                "startRow": start_row,
                "rowLimit": self.row_limit,
            }
            try:
                payload = await retry_async(self._query)(url, body, headers)
            except (httpx.HTTPError, RetryableStatus) as exc:
                raise SearchConsoleError(f"Search analytics query failed for {site}: {exc}") from exc
            page = payload.get("rows") or []
            for item in page:
                row = _parse_row(item, dims)
                if row is not None:
                    rows.append(row)
            if len(page) < self.row_limit:
                break
            start_row += self.row_limit
        logger.info("Received %s rows for %s", len(rows), site)
        return rows

    async def _query(self, url: str, body: dict[str, Any], headers: dict[str, str]) -> dict[str, Any]:
        response = await self.session.post(url, json=body, headers=headers)
        if _is_quota_error(response) or response.status_code >= 500:
            raise RetryableStatus(f"HTTP {response.status_code}")
        response.raise_for_status()
        return response.json()


def _parse_row(item: dict[str, Any], dimensions: list[str]) -> RawPerformanceRow | None:
    try:
        return RawPerformanceRow.from_api(item, dimensions)
    except (TypeError, ValueError):
        logger.debug("Dropping malformed search analytics row: %r", item)
        return None
