"""Impression-weighted ranking aggregation over daily keyword samples."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterable, Sequence

import numpy as np

from rankwatch.ingest.models import RankingDailySample
from rankwatch.utils.dates import coerce_date, days_in_month, month_bounds

logger = logging.getLogger(__name__)

STABLE_WINDOW_DAYS = 7
INITIAL_RANK_WINDOW_DAYS = 7


@dataclass(slots=True)
class RankingSummary:
    average_position: float
    total_search_volume: int
    day_count: int
    top_ranking_page_url: str = ""


def _dated(samples: Iterable[RankingDailySample]) -> list[tuple[date, RankingDailySample]]:
    dated = []
    for sample in samples:
        sample_date = coerce_date(getattr(sample, "date", None))
        if sample_date is None:
            logger.debug("Skipping sample without a usable date: %r", sample)
            continue
        dated.append((sample_date, sample))
    dated.sort(key=lambda item: item[0])
    return dated


def aggregate_position(samples: Iterable[RankingDailySample], days: int) -> RankingSummary | None:
    """Weighted mean position over the last ``days`` samples by date.

    Returns ``None`` for an empty window. When the window has no impressions
    the earliest sample's raw position is used instead of dividing by zero.
    """
    if days <= 0:
        return None
    window = [sample for _, sample in _dated(samples)][-days:]
    if not window:
        return None
    positions = np.array([float(s.average_rank or 0.0) for s in window], dtype=float)
    volumes = np.array([max(int(s.search_volume or 0), 0) for s in window], dtype=float)
    total = float(volumes.sum())
    if total > 0:
        average = float(np.dot(positions, volumes) / total)
    else:
        average = float(positions[0])
    return RankingSummary(
        average_position=average,
        total_search_volume=int(total),
        day_count=len(window),
        top_ranking_page_url=_top_page(window),
    )


def _between(samples: Iterable[RankingDailySample], start: date, end: date) -> list[RankingDailySample]:
    return [sample for sample_date, sample in _dated(samples) if start <= sample_date <= end]


def _top_page(window: Sequence[RankingDailySample]) -> str:
    best = max(window, key=lambda s: int(s.search_volume or 0))
    return best.top_ranking_page_url or ""


def monthly_position(
    samples: Iterable[RankingDailySample], year: int, month: int, today: date
) -> RankingSummary | None:
    """Month figure: trailing week of a finished month, every day so far otherwise."""
    start, end = month_bounds(year, month)
    in_month = _between(samples, start, end)
    if (year, month) == (today.year, today.month):
        days = days_in_month(year, month)
    else:
        days = STABLE_WINDOW_DAYS
    return aggregate_position(in_month, days)


def initial_rank(samples: Iterable[RankingDailySample], start_date: date) -> RankingSummary | None:
    """Baseline from the week ending the day before ``start_date``."""
    window_end = start_date - timedelta(days=1)
    window_start = window_end - timedelta(days=INITIAL_RANK_WINDOW_DAYS - 1)
    before = _between(samples, window_start, window_end)
    return aggregate_position(before, INITIAL_RANK_WINDOW_DAYS)


def display_position(summary: RankingSummary | None) -> float:
    """Rounded position for presentation; unknown ranks read as 0."""
    if summary is None:
        return 0.0
    return round(summary.average_position, 2)
