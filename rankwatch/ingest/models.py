"""Ingestion data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any

from rankwatch.utils.dates import coerce_date


@dataclass(slots=True)
class GoogleAccount:
    id: int
    email: str
    access_token: str
    refresh_token: str | None = None
    is_active: bool = True


@dataclass(slots=True)
class Campaign:
    id: int
    name: str
    keywords: str
    search_console_site: str
    google_account: GoogleAccount | None
    starting_date: date | None = None
    status: str = "ACTIVE"


@dataclass(slots=True)
class RawPerformanceRow:
    date: date | None
    query: str | None
    page: str | None
    impressions: int = 0
    clicks: int = 0
    position: float = 0.0

    @classmethod
    def from_api(cls, payload: dict[str, Any], dimensions: list[str]) -> "RawPerformanceRow | None":
        keys = payload.get("keys") or []
        if len(keys) < len(dimensions):
            return None
        values = dict(zip(dimensions, keys))
        return cls(
            date=coerce_date(values.get("date")),
            query=values.get("query"),
            page=values.get("page"),
            impressions=int(payload.get("impressions") or 0),
            clicks=int(payload.get("clicks") or 0),
            position=float(payload.get("position") or 0.0),
        )


@dataclass(slots=True)
class RankingDailySample:
    date: date | None
    average_rank: float
    search_volume: int
    top_ranking_page_url: str = ""


@dataclass(slots=True)
class TrackedKeyword:
    id: int
    keyword: str
    initial_position: float = 0.0
    samples: list[RankingDailySample] = field(default_factory=list)
