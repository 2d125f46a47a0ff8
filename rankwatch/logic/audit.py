"""Cannibalization audit runs: execution, presets and result selection."""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from datetime import date, timedelta

from rankwatch.db.store import AuditRun, AuditStatus, AuditType, ResultsStore
from rankwatch.ingest.models import Campaign
from rankwatch.ingest.search_console import PerformanceDataProvider
from rankwatch.logic.cannibalization import (
    CANNIBALIZATION_THRESHOLD,
    CannibalizationFinding,
    CannibalizationSummary,
    analyze_cannibalization,
    summarize,
    top_cannibalized,
)
from rankwatch.logic.normalize import normalize_keyword, normalize_rows
from rankwatch.utils.dates import subtract_months, today_in_tz, utcnow

logger = logging.getLogger(__name__)

SEARCH_CONSOLE_DELAY_DAYS = int(os.environ.get("SEARCH_CONSOLE_DELAY_DAYS", 3))
INITIAL_AUDIT_MONTHS = int(os.environ.get("INITIAL_AUDIT_MONTHS", 3))
SCHEDULED_AUDIT_WEEKS = int(os.environ.get("SCHEDULED_AUDIT_WEEKS", 2))
DEFAULT_RESULTS_MONTHS = 3
AUDIT_DIMENSIONS = ("query", "page")


class CampaignNotFoundError(LookupError):
    pass


class AuditRunController:
    """Runs cannibalization audits against injected store and data provider."""

    def __init__(
        self,
        store: ResultsStore,
        provider: PerformanceDataProvider,
        *,
        threshold: float = CANNIBALIZATION_THRESHOLD,
        today: Callable[[], date] = today_in_tz,
    ) -> None:
        self.store = store
        self.provider = provider
        self.threshold = threshold
        self.today = today

    # -- running -----------------------------------------------------------

    def resolve_campaign(self, campaign_id: int) -> Campaign:
        campaign = self.store.get_campaign(campaign_id)
        if campaign is None:
            raise CampaignNotFoundError(f"Campaign {campaign_id} not found")
        if campaign.google_account is None:
            raise CampaignNotFoundError(f"Google account not found for campaign {campaign_id}")
        return campaign

    def start_audit(
        self, campaign_id: int, start: date, end: date, audit_type: AuditType = AuditType.CUSTOM
    ) -> int:
        """Create a PENDING run and return its id without analysing anything."""
        if start > end:
            raise ValueError(f"Audit range starts after it ends: {start} > {end}")
        self.resolve_campaign(campaign_id)
        run = self.store.create_run(campaign_id, start, end, audit_type)
        logger.info("Created %s audit %s for campaign %s (%s to %s)", run.audit_type.value, run.id, campaign_id, start, end)
        return run.id

    async def execute_audit(self, audit_id: int) -> AuditRun:
        run = self.store.get_run(audit_id)
        if run is None:
            raise LookupError(f"Audit {audit_id} not found")
        self.store.update_run_status(audit_id, AuditStatus.RUNNING)
        try:
            campaign = self.resolve_campaign(run.campaign_id)
            rows = await self.provider.fetch_rows(
                campaign.search_console_site,
                campaign.google_account,
                run.start_date,
                run.end_date,
                AUDIT_DIMENSIONS,
            )
            aggregates = normalize_rows(
                rows, campaign.keywords, campaign.search_console_site, start=run.start_date, end=run.end_date
            )
            if not aggregates:
                logger.info("Audit %s found no matching rows", audit_id)
                return self.store.update_run_status(
                    audit_id, AuditStatus.COMPLETED, total_keywords=0, cannibalization_count=0
                )
            findings = analyze_cannibalization(aggregates, self.threshold)
            self.store.save_results(audit_id, findings)
            cannibalized = sum(1 for f in findings if len(f.competing_pages) > 1)
            completed = self.store.update_run_status(
                audit_id,
                AuditStatus.COMPLETED,
                total_keywords=len(findings),
                cannibalization_count=cannibalized,
            )
        except Exception:
            logger.exception("Cannibalization audit %s failed", audit_id)
            self.store.update_run_status(audit_id, AuditStatus.FAILED)
            raise
        logger.info("Completed audit %s: %s keywords, %s cannibalized", audit_id, len(findings), cannibalized)
        return completed

    def dispatch_audit(self, audit_id: int, enqueue: Callable[[int], None]) -> None:
        """Hand a PENDING run to ``enqueue``; a run that cannot be handed off is failed."""
        try:
            enqueue(audit_id)
        except Exception:
            logger.exception("Could not queue audit %s", audit_id)
            self.store.update_run_status(audit_id, AuditStatus.RUNNING)
            self.store.update_run_status(audit_id, AuditStatus.FAILED)
            raise

    async def run_audit(
        self, campaign_id: int, start: date, end: date, audit_type: AuditType = AuditType.CUSTOM
    ) -> AuditRun:
        audit_id = self.start_audit(campaign_id, start, end, audit_type)
        return await self.execute_audit(audit_id)

    # -- presets -----------------------------------------------------------

    def data_anchor(self) -> date:
        return self.today() - timedelta(days=SEARCH_CONSOLE_DELAY_DAYS)

    def initial_range(self) -> tuple[date, date]:
        end = self.data_anchor()
        return subtract_months(end, INITIAL_AUDIT_MONTHS), end

    def scheduled_range(self) -> tuple[date, date]:
        end = self.data_anchor()
        return end - timedelta(weeks=SCHEDULED_AUDIT_WEEKS), end

    def start_initial_audit(self, campaign_id: int) -> int:
        start, end = self.initial_range()
        return self.start_audit(campaign_id, start, end, AuditType.INITIAL)

    def start_scheduled_audit(self, campaign_id: int) -> int:
        start, end = self.scheduled_range()
        return self.start_audit(campaign_id, start, end, AuditType.SCHEDULED)

    async def run_initial_audit(self, campaign_id: int) -> AuditRun:
        return await self.execute_audit(self.start_initial_audit(campaign_id))

    async def run_scheduled_audit(self, campaign_id: int) -> AuditRun:
        return await self.execute_audit(self.start_scheduled_audit(campaign_id))

    def campaigns_needing_audit(self) -> list[int]:
        since = utcnow() - timedelta(weeks=SCHEDULED_AUDIT_WEEKS)
        statuses = (AuditStatus.COMPLETED, AuditStatus.RUNNING)
        return [
            campaign_id
            for campaign_id in self.store.active_campaign_ids()
            if not self.store.has_recent_run(campaign_id, since, statuses)
        ]

    # -- reading -----------------------------------------------------------

    def get_results(
        self,
        campaign_id: int,
        limit: int = 50,
        start: date | None = None,
        end: date | None = None,
    ) -> AuditRun | None:
        """Latest completed run overlapping the range, with its results.

        Without a range the last three months are used. Returns ``None`` when
        no run qualifies or the run holds no cannibalized keywords.
        """
        if (start is None) != (end is None):
            raise ValueError("Provide both start and end, or neither")
        if start is None or end is None:
            today = self.today()
            start, end = subtract_months(today, DEFAULT_RESULTS_MONTHS), today
        run = self.store.find_latest_completed_run(campaign_id, start, end)
        if run is None:
            return None
        run.results = self.store.load_findings(run.id, limit=limit)
        if not run.results:
            return None
        return run

    def get_audit_history(self, campaign_id: int, limit: int = 10) -> list[AuditRun]:
        return self.store.list_runs(campaign_id, limit)

    def get_keyword_details(self, campaign_id: int, keyword: str) -> CannibalizationFinding | None:
        run = self.store.find_latest_completed_run(campaign_id)
        if run is None:
            return None
        findings = self.store.load_findings(run.id, keyword=normalize_keyword(keyword))
        return findings[0] if findings else None

    def get_summary(self, campaign_id: int) -> tuple[AuditRun, CannibalizationSummary] | None:
        run = self.store.find_latest_completed_run(campaign_id)
        if run is None:
            return None
        run.results = self.store.load_findings(run.id)
        return run, summarize(run.total_keywords, run.results)

    def get_top_cannibalized(self, campaign_id: int, limit: int = 10) -> list[CannibalizationFinding]:
        run = self.store.find_latest_completed_run(campaign_id)
        if run is None:
            return []
        return top_cannibalized(self.store.load_findings(run.id), limit)
