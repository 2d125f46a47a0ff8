"""Persistence adapter for audit runs, their results and ranking samples."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Iterable, Protocol, Sequence

from sqlalchemy import and_, exists, insert, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.sql import text

from rankwatch.db.tables import (
    campaigns,
    cannibalization_audits,
    cannibalization_results,
    competing_pages,
    google_accounts,
    keyword_daily_stats,
    tracked_keywords,
)
from rankwatch.ingest.models import Campaign, GoogleAccount, RankingDailySample, TrackedKeyword
from rankwatch.logic.cannibalization import CannibalizationFinding, CompetingPage, PageImpressions
from rankwatch.logic.ranking import RankingSummary
from rankwatch.utils.dates import utcnow

logger = logging.getLogger(__name__)


class AuditStatus(str, enum.Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class AuditType(str, enum.Enum):
    INITIAL = "INITIAL"
    SCHEDULED = "SCHEDULED"
    CUSTOM = "CUSTOM"


ALLOWED_TRANSITIONS: dict[AuditStatus, frozenset[AuditStatus]] = {
    AuditStatus.PENDING: frozenset({AuditStatus.RUNNING}),
    AuditStatus.RUNNING: frozenset({AuditStatus.COMPLETED, AuditStatus.FAILED}),
    AuditStatus.COMPLETED: frozenset(),
    AuditStatus.FAILED: frozenset(),
}


class InvalidStatusTransition(RuntimeError):
    def __init__(self, audit_id: int, current: AuditStatus, target: AuditStatus) -> None:
        super().__init__(f"Audit {audit_id} cannot move from {current.value} to {target.value}")
        self.audit_id = audit_id
        self.current = current
        self.target = target


@dataclass(slots=True)
class AuditRun:
    id: int
    campaign_id: int
    start_date: date
    end_date: date
    audit_type: AuditType
    status: AuditStatus
    total_keywords: int
    cannibalization_count: int
    created_at: datetime
    results: list[CannibalizationFinding] = field(default_factory=list)


class ResultsStore(Protocol):
    def get_campaign(self, campaign_id: int) -> Campaign | None: ...

    def create_run(self, campaign_id: int, start: date, end: date, audit_type: AuditType) -> AuditRun: ...

    def update_run_status(
        self,
        audit_id: int,
        status: AuditStatus,
        *,
        total_keywords: int | None = None,
        cannibalization_count: int | None = None,
    ) -> AuditRun: ...

    def save_results(self, audit_id: int, findings: Sequence[CannibalizationFinding]) -> None: ...

    def get_run(self, audit_id: int) -> AuditRun | None: ...

    def find_latest_completed_run(
        self, campaign_id: int, start: date | None = None, end: date | None = None
    ) -> AuditRun | None: ...

    def list_runs(self, campaign_id: int, limit: int) -> list[AuditRun]: ...

    def load_findings(
        self, audit_id: int, limit: int | None = None, keyword: str | None = None
    ) -> list[CannibalizationFinding]: ...

    def active_campaign_ids(self) -> list[int]: ...

    def has_recent_run(self, campaign_id: int, since: datetime, statuses: Iterable[AuditStatus]) -> bool: ...

    def tracked_keywords(self, campaign_id: int) -> list[TrackedKeyword]: ...

    def upsert_monthly_stat(self, keyword_id: int, year: int, month: int, summary: RankingSummary) -> None: ...

    def set_initial_position(self, keyword_id: int, position: float) -> None: ...


def _run_from_row(row) -> AuditRun:
    return AuditRun(
        id=row["id"],
        campaign_id=row["campaign_id"],
        start_date=row["start_date"],
        end_date=row["end_date"],
        audit_type=AuditType(row["audit_type"]),
        status=AuditStatus(row["status"]),
        total_keywords=row["total_keywords"],
        cannibalization_count=row["cannibalization_count"],
        created_at=row["created_at"],
    )


class SqlResultsStore:
    """ResultsStore backed by a SQLAlchemy engine."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def get_campaign(self, campaign_id: int) -> Campaign | None:
        query = (
            select(campaigns, google_accounts.c.id.label("account_id"), google_accounts.c.email,
                   google_accounts.c.access_token, google_accounts.c.refresh_token, google_accounts.c.is_active)
            .select_from(campaigns.outerjoin(google_accounts, campaigns.c.google_account_id == google_accounts.c.id))
            .where(campaigns.c.id == campaign_id)
        )
        with self.engine.connect() as conn:
            row = conn.execute(query).mappings().first()
        if row is None:
            return None
        account = None
        if row["account_id"] is not None:
            account = GoogleAccount(
                id=row["account_id"],
                email=row["email"],
                access_token=row["access_token"],
                refresh_token=row["refresh_token"],
                is_active=bool(row["is_active"]),
            )
        return Campaign(
            id=row["id"],
            name=row["name"],
            keywords=row["keywords"] or "",
            search_console_site=row["search_console_site"],
            google_account=account,
            starting_date=row["starting_date"],
            status=row["status"],
        )

    def create_run(self, campaign_id: int, start: date, end: date, audit_type: AuditType) -> AuditRun:
        now = utcnow()
        with self.engine.begin() as conn:
            result = conn.execute(
                insert(cannibalization_audits).values(
                    campaign_id=campaign_id,
                    start_date=start,
                    end_date=end,
                    audit_type=AuditType(audit_type).value,
                    status=AuditStatus.PENDING.value,
                    total_keywords=0,
                    cannibalization_count=0,
                    created_at=now,
                    updated_at=now,
                )
            )
            audit_id = result.inserted_primary_key[0]
        run = self.get_run(audit_id)
        if run is None:
            raise LookupError(f"Audit {audit_id} not found")
        return run

    def update_run_status(
        self,
        audit_id: int,
        status: AuditStatus,
        *,
        total_keywords: int | None = None,
        cannibalization_count: int | None = None,
    ) -> AuditRun:
        target = AuditStatus(status)
        with self.engine.begin() as conn:
            current_value = conn.execute(
                select(cannibalization_audits.c.status)
                .where(cannibalization_audits.c.id == audit_id)
                .with_for_update()
            ).scalar_one_or_none()
            if current_value is None:
                raise LookupError(f"Audit {audit_id} not found")
            current = AuditStatus(current_value)
            if target not in ALLOWED_TRANSITIONS[current]:
                raise InvalidStatusTransition(audit_id, current, target)
            values: dict[str, object] = {"status": target.value, "updated_at": utcnow()}
            if total_keywords is not None:
                values["total_keywords"] = total_keywords
            if cannibalization_count is not None:
                values["cannibalization_count"] = cannibalization_count
            conn.execute(
                update(cannibalization_audits).where(cannibalization_audits.c.id == audit_id).values(**values)
            )
        run = self.get_run(audit_id)
        if run is None:
            raise LookupError(f"Audit {audit_id} not found")
        return run

    def save_results(self, audit_id: int, findings: Sequence[CannibalizationFinding]) -> None:
        with self.engine.begin() as conn:
            for finding in findings:
                result = conn.execute(
                    insert(cannibalization_results).values(
                        audit_id=audit_id,
                        keyword=finding.keyword,
                        top_page_url=finding.top_page.url,
                        top_page_impressions=finding.top_page.impressions,
                    )
                )
                result_id = result.inserted_primary_key[0]
                if finding.competing_pages:
                    conn.execute(
                        insert(competing_pages),
                        [
                            {
                                "result_id": result_id,
                                "page_url": page.url,
                                "impressions": page.impressions,
                                "overlap_percentage": page.overlap_percentage,
                            }
                            for page in finding.competing_pages
                        ],
                    )
        logger.info("Stored %s cannibalization results for audit %s", len(findings), audit_id)

    def get_run(self, audit_id: int) -> AuditRun | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(cannibalization_audits).where(cannibalization_audits.c.id == audit_id)
            ).mappings().first()
        return _run_from_row(row) if row else None

    def find_latest_completed_run(
        self, campaign_id: int, start: date | None = None, end: date | None = None
    ) -> AuditRun | None:
        query = select(cannibalization_audits).where(
            cannibalization_audits.c.campaign_id == campaign_id,
            cannibalization_audits.c.status == AuditStatus.COMPLETED.value,
        )
        if start is not None and end is not None:
            query = query.where(
                and_(cannibalization_audits.c.start_date <= end, cannibalization_audits.c.end_date >= start)
            )
        query = query.order_by(cannibalization_audits.c.created_at.desc(), cannibalization_audits.c.id.desc()).limit(1)
        with self.engine.connect() as conn:
            row = conn.execute(query).mappings().first()
        return _run_from_row(row) if row else None

    def list_runs(self, campaign_id: int, limit: int) -> list[AuditRun]:
        query = (
            select(cannibalization_audits)
            .where(cannibalization_audits.c.campaign_id == campaign_id)
            .order_by(cannibalization_audits.c.created_at.desc(), cannibalization_audits.c.id.desc())
            .limit(limit)
        )
        with self.engine.connect() as conn:
            return [_run_from_row(row) for row in conn.execute(query).mappings()]

    def load_findings(
        self, audit_id: int, limit: int | None = None, keyword: str | None = None
    ) -> list[CannibalizationFinding]:
        has_pages = exists().where(competing_pages.c.result_id == cannibalization_results.c.id)
        query = (
            select(cannibalization_results)
            .where(cannibalization_results.c.audit_id == audit_id, has_pages)
            .order_by(cannibalization_results.c.keyword.asc())
        )
        if keyword is not None:
            query = query.where(cannibalization_results.c.keyword == keyword)
        if limit is not None:
            query = query.limit(limit)
        with self.engine.connect() as conn:
            results = conn.execute(query).mappings().all()
            if not results:
                return []
            ids = [row["id"] for row in results]
            pages = conn.execute(
                select(competing_pages)
                .where(competing_pages.c.result_id.in_(ids))
                .order_by(competing_pages.c.overlap_percentage.desc(), competing_pages.c.id.asc())
            ).mappings().all()
        pages_by_result: dict[int, list[CompetingPage]] = {result_id: [] for result_id in ids}
        for page in pages:
            pages_by_result[page["result_id"]].append(
                CompetingPage(url=page["page_url"], impressions=page["impressions"],
                              overlap_percentage=page["overlap_percentage"])
            )
        return [
            CannibalizationFinding(
                keyword=row["keyword"],
                top_page=PageImpressions(url=row["top_page_url"], impressions=row["top_page_impressions"]),
                competing_pages=pages_by_result[row["id"]],
            )
            for row in results
        ]

    def active_campaign_ids(self) -> list[int]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(campaigns.c.id).where(campaigns.c.status == "ACTIVE").order_by(campaigns.c.id)
            )
            return [row[0] for row in rows]

    def has_recent_run(self, campaign_id: int, since: datetime, statuses: Iterable[AuditStatus]) -> bool:
        query = select(cannibalization_audits.c.id).where(
            cannibalization_audits.c.campaign_id == campaign_id,
            cannibalization_audits.c.created_at >= since,
            cannibalization_audits.c.status.in_([AuditStatus(s).value for s in statuses]),
        ).limit(1)
        with self.engine.connect() as conn:
            return conn.execute(query).first() is not None

    def tracked_keywords(self, campaign_id: int) -> list[TrackedKeyword]:
        with self.engine.connect() as conn:
            keyword_rows = conn.execute(
                select(tracked_keywords)
                .where(tracked_keywords.c.campaign_id == campaign_id)
                .order_by(tracked_keywords.c.keyword)
            ).mappings().all()
            keywords = {
                row["id"]: TrackedKeyword(id=row["id"], keyword=row["keyword"],
                                          initial_position=row["initial_position"] or 0.0)
                for row in keyword_rows
            }
            if not keywords:
                return []
            stats = conn.execute(
                select(keyword_daily_stats)
                .where(keyword_daily_stats.c.keyword_id.in_(list(keywords)))
                .order_by(keyword_daily_stats.c.date)
            ).mappings()
            for stat in stats:
                keywords[stat["keyword_id"]].samples.append(
                    RankingDailySample(
                        date=stat["date"],
                        average_rank=stat["average_rank"],
                        search_volume=stat["search_volume"],
                        top_ranking_page_url=stat["top_ranking_page_url"] or "",
                    )
                )
        return list(keywords.values())

    def upsert_monthly_stat(self, keyword_id: int, year: int, month: int, summary: RankingSummary) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO keyword_monthly_stats
                      (keyword_id, year, month, average_rank, search_volume, top_ranking_page_url, updated_at)
                    VALUES (:keyword_id, :year, :month, :average_rank, :search_volume, :top_page, CURRENT_TIMESTAMP)
                    ON CONFLICT (keyword_id, year, month) DO UPDATE SET
                      average_rank = EXCLUDED.average_rank,
                      search_volume = EXCLUDED.search_volume,
                      top_ranking_page_url = EXCLUDED.top_ranking_page_url,
                      updated_at = CURRENT_TIMESTAMP
                    """
                ),
                {
                    "keyword_id": keyword_id,
                    "year": year,
                    "month": month,
                    "average_rank": summary.average_position,
                    "search_volume": summary.total_search_volume,
                    "top_page": summary.top_ranking_page_url,
                },
            )

    def set_initial_position(self, keyword_id: int, position: float) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                update(tracked_keywords).where(tracked_keywords.c.id == keyword_id).values(initial_position=position)
            )
