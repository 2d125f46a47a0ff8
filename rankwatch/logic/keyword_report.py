"""Per-keyword ranking report for a campaign."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from urllib.parse import unquote

from rankwatch.db.store import ResultsStore
from rankwatch.ingest.models import TrackedKeyword
from rankwatch.logic.audit import CampaignNotFoundError
from rankwatch.logic.ranking import RankingSummary, display_position, initial_rank, monthly_position
from rankwatch.utils.dates import previous_month

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class KeywordRanking:
    keyword: str
    initial_rank: float
    position: float
    search_volume: int
    monthly_change: float
    overall_change: float
    top_page_url: str
    monthly_data: dict[str, float | None] = field(default_factory=dict)


@dataclass(slots=True)
class CampaignRankings:
    months: list[str]
    keywords: list[KeywordRanking]


def month_key(year: int, month: int) -> str:
    return f"{month}/{year}"


def reported_months(starting_date: date | None, today: date) -> list[tuple[int, int]]:
    """Months from the campaign start through the last completed month."""
    last_year, last_month = previous_month(today)
    if starting_date is None:
        return [(last_year, last_month)]
    year, month = starting_date.year, starting_date.month
    months: list[tuple[int, int]] = []
    while (year, month) <= (last_year, last_month):
        months.append((year, month))
        month += 1
        if month > 12:
            year, month = year + 1, 1
    return months


def _decode(url: str) -> str:
    try:
        return unquote(url, errors="strict")
    except UnicodeDecodeError:
        return url


def keyword_ranking(
    keyword: TrackedKeyword, months: list[tuple[int, int]], starting_date: date | None, today: date
) -> KeywordRanking:
    by_month: dict[tuple[int, int], RankingSummary | None] = {
        ym: monthly_position(keyword.samples, ym[0], ym[1], today) for ym in months
    }
    monthly_data = {month_key(y, m): (display_position(s) if s else None) for (y, m), s in by_month.items()}

    baseline = keyword.initial_position or 0.0
    if not baseline and starting_date is not None:
        baseline = display_position(initial_rank(keyword.samples, starting_date))

    filled = [(ym, s) for ym, s in by_month.items() if s is not None]
    current = filled[-1][1] if filled else None
    previous = filled[-2][1] if len(filled) > 1 else None
    position = display_position(current)
    monthly_change = round(display_position(previous) - position, 2) if previous and current else 0.0
    overall_change = round(baseline - position, 2) if current else 0.0

    return KeywordRanking(
        keyword=keyword.keyword,
        initial_rank=round(baseline, 2),
        position=position,
        search_volume=current.total_search_volume if current else 0,
        monthly_change=monthly_change,
        overall_change=overall_change,
        top_page_url=_decode(current.top_ranking_page_url) if current else "",
        monthly_data=monthly_data,
    )


def campaign_rankings(store: ResultsStore, campaign_id: int, today: date) -> CampaignRankings:
    campaign = store.get_campaign(campaign_id)
    if campaign is None:
        raise CampaignNotFoundError(f"Campaign {campaign_id} not found")
    months = reported_months(campaign.starting_date, today)
    rankings = []
    for keyword in store.tracked_keywords(campaign_id):
        try:
            rankings.append(keyword_ranking(keyword, months, campaign.starting_date, today))
        except (TypeError, ValueError):
            logger.exception("Could not build ranking for keyword %r", keyword.keyword)
            rankings.append(
                KeywordRanking(keyword.keyword, keyword.initial_position or 0.0, 0.0, 0, 0.0, 0.0, "")
            )
    return CampaignRankings(months=[month_key(y, m) for y, m in months], keywords=rankings)


def rollup_monthly_rankings(store: ResultsStore, campaign_id: int, year: int, month: int, today: date) -> int:
    """Persist the month figure for every tracked keyword; returns how many were stored."""
    campaign = store.get_campaign(campaign_id)
    stored = 0
    for keyword in store.tracked_keywords(campaign_id):
        summary = monthly_position(keyword.samples, year, month, today)
        if summary is None:
            continue
        store.upsert_monthly_stat(keyword.id, year, month, summary)
        stored += 1
        if not keyword.initial_position and campaign is not None and campaign.starting_date is not None:
            baseline = initial_rank(keyword.samples, campaign.starting_date)
            if baseline is not None:
                store.set_initial_position(keyword.id, display_position(baseline))
    logger.info("Rolled up %s keyword rankings for campaign %s (%s/%s)", stored, campaign_id, month, year)
    return stored
