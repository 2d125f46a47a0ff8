"""Keyword cannibalization detection over keyword/page impression totals."""

from __future__ import annotations

import os
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Mapping, Sequence

import numpy as np

CANNIBALIZATION_THRESHOLD = float(os.environ.get("CANNIBALIZATION_THRESHOLD", 20))
HIGH_IMPACT_OVERLAP = float(os.environ.get("HIGH_IMPACT_OVERLAP", 50))
TOP_PAGE_OVERLAP = 100.0


@dataclass(slots=True)
class PageImpressions:
    url: str
    impressions: int


@dataclass(slots=True)
class CompetingPage:
    url: str
    impressions: int
    overlap_percentage: float


@dataclass(slots=True)
class CannibalizationFinding:
    keyword: str
    top_page: PageImpressions
    competing_pages: list[CompetingPage] = field(default_factory=list)

    @property
    def competitors(self) -> list[CompetingPage]:
        """Competing pages other than the top page itself."""
        return [p for p in self.competing_pages if p.url != self.top_page.url]

    @property
    def max_competitor_overlap(self) -> float:
        others = [p.overlap_percentage for p in self.competitors]
        return max(others) if others else 0.0


def overlap_percentage(impressions: int, top_impressions: int) -> float:
    if top_impressions <= 0:
        return 0.0
    return impressions / top_impressions * 100


def rank_pages(pages: Mapping[str, int]) -> list[PageImpressions]:
    """Pages by impressions descending; equal totals fall back to URL order."""
    ordered = sorted(pages.items(), key=lambda item: (-item[1], item[0]))
    return [PageImpressions(url=url, impressions=impressions) for url, impressions in ordered]


def analyze_cannibalization(
    aggregates: Mapping[tuple[str, str], int],
    threshold: float = CANNIBALIZATION_THRESHOLD,
) -> list[CannibalizationFinding]:
    by_keyword: dict[str, dict[str, int]] = defaultdict(dict)
    for (keyword, page_url), impressions in aggregates.items():
        pages = by_keyword[keyword]
        pages[page_url] = pages.get(page_url, 0) + int(impressions)

    findings: list[CannibalizationFinding] = []
    for keyword in sorted(by_keyword):
        pages = by_keyword[keyword]
        if len(pages) < 2:
            continue
        ranked = rank_pages(pages)
        top = ranked[0]
        competing = [CompetingPage(url=top.url, impressions=top.impressions, overlap_percentage=TOP_PAGE_OVERLAP)]
        for page in ranked[1:]:
            overlap = overlap_percentage(page.impressions, top.impressions)
            if overlap >= threshold:
                competing.append(CompetingPage(url=page.url, impressions=page.impressions, overlap_percentage=overlap))
        if len(competing) > 1:
            findings.append(CannibalizationFinding(keyword=keyword, top_page=top, competing_pages=competing))
    return findings


@dataclass(slots=True)
class CannibalizationSummary:
    total_keywords: int
    keywords_with_cannibalization: int
    cannibalization_rate: float
    total_competing_pages: int
    average_overlap_percentage: float
    high_impact_cannibalization: int


def summarize(
    total_keywords: int,
    findings: Sequence[CannibalizationFinding],
    high_impact: float = HIGH_IMPACT_OVERLAP,
) -> CannibalizationSummary:
    """Headline statistics for one audit's stored results.

    The average overlap is the mean over keywords of each keyword's mean
    overlap, top page included. High impact counts keywords where a page other
    than the top page exceeds ``high_impact`` percent.
    """
    populated = [f for f in findings if f.competing_pages]
    count = len(populated)
    competing_total = sum(len(f.competing_pages) for f in populated)
    if count:
        per_keyword = [
            float(np.mean(np.array([p.overlap_percentage for p in f.competing_pages], dtype=float)))
            for f in populated
        ]
        average = round(float(np.mean(per_keyword)), 2)
    else:
        average = 0.0
    high = sum(1 for f in populated if any(p.overlap_percentage > high_impact for p in f.competitors))
    rate = count / total_keywords * 100 if total_keywords > 0 else 0.0
    return CannibalizationSummary(
        total_keywords=total_keywords,
        keywords_with_cannibalization=count,
        cannibalization_rate=rate,
        total_competing_pages=competing_total,
        average_overlap_percentage=average,
        high_impact_cannibalization=high,
    )


def top_cannibalized(findings: Sequence[CannibalizationFinding], limit: int = 10) -> list[CannibalizationFinding]:
    ordered = sorted(findings, key=lambda f: (-f.max_competitor_overlap, f.keyword))
    return ordered[:limit]
