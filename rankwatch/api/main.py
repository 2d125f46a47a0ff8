"""FastAPI application exposing audits, cannibalization results and rankings."""

from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import date, datetime
from typing import Any, AsyncIterator, Callable

from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel

from rankwatch.db.session import create_engine_from_env
from rankwatch.db.store import AuditRun, SqlResultsStore
from rankwatch.ingest.search_console import SearchConsoleClient
from rankwatch.jobs.audits import enqueue_audit
from rankwatch.logic.audit import AuditRunController, CampaignNotFoundError
from rankwatch.logic.cannibalization import CannibalizationFinding
from rankwatch.logic.keyword_report import campaign_rankings

logger = logging.getLogger(__name__)

app = FastAPI(title="Rankwatch API")

NO_CANNIBALIZATION_MESSAGE = "No keyword cannibalization detected"


class AuditRequest(BaseModel):
    start_date: date | None = None
    end_date: date | None = None


class AuditStarted(BaseModel):
    audit_id: int


class CompetingPageOut(BaseModel):
    url: str
    impressions: int
    overlap_percentage: float


class ResultOut(BaseModel):
    keyword: str
    top_page_url: str
    top_page_impressions: int
    competing_pages: list[CompetingPageOut]


class AuditSummaryOut(BaseModel):
    id: int
    audit_type: str
    status: str
    start_date: date
    end_date: date
    total_keywords: int
    cannibalization_count: int
    created_at: datetime


class AuditWithResultsOut(AuditSummaryOut):
    results: list[ResultOut]


class ResultsResponse(BaseModel):
    message: str | None = None
    audit: AuditWithResultsOut | None = None


class TopCannibalizedOut(BaseModel):
    keyword: str
    max_overlap: float
    competing_pages_count: int


async def get_controller() -> AsyncIterator[AuditRunController]:
    client = SearchConsoleClient()
    try:
        yield AuditRunController(SqlResultsStore(create_engine_from_env()), client)
    finally:
        await client.close()


def get_enqueue() -> Callable[[int], None]:
    return enqueue_audit


def _result_out(finding: CannibalizationFinding) -> ResultOut:
    return ResultOut(
        keyword=finding.keyword,
        top_page_url=finding.top_page.url,
        top_page_impressions=finding.top_page.impressions,
        competing_pages=[CompetingPageOut(**asdict(p)) for p in finding.competing_pages],
    )


def _summary_out(run: AuditRun) -> AuditSummaryOut:
    return AuditSummaryOut(
        id=run.id,
        audit_type=run.audit_type.value,
        status=run.status.value,
        start_date=run.start_date,
        end_date=run.end_date,
        total_keywords=run.total_keywords,
        cannibalization_count=run.cannibalization_count,
        created_at=run.created_at,
    )


def _start(
    controller: AuditRunController, starter: Callable[[], int], enqueue: Callable[[int], None]
) -> AuditStarted:
    try:
        audit_id = starter()
    except CampaignNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    controller.dispatch_audit(audit_id, enqueue)
    return AuditStarted(audit_id=audit_id)


@app.post("/campaigns/{campaign_id}/audits", response_model=AuditStarted, status_code=202)
async def start_audit(
    campaign_id: int,
    payload: AuditRequest | None = None,
    controller: AuditRunController = Depends(get_controller),
    enqueue: Callable[[int], None] = Depends(get_enqueue),
) -> AuditStarted:
    payload = payload or AuditRequest()
    default_start, default_end = controller.scheduled_range()
    start = payload.start_date or default_start
    end = payload.end_date or default_end
    return _start(controller, lambda: controller.start_audit(campaign_id, start, end), enqueue)


@app.post("/campaigns/{campaign_id}/audits/initial", response_model=AuditStarted, status_code=202)
async def start_initial_audit(
    campaign_id: int,
    controller: AuditRunController = Depends(get_controller),
    enqueue: Callable[[int], None] = Depends(get_enqueue),
) -> AuditStarted:
    return _start(controller, lambda: controller.start_initial_audit(campaign_id), enqueue)


@app.post("/campaigns/{campaign_id}/audits/scheduled", response_model=AuditStarted, status_code=202)
async def start_scheduled_audit(
    campaign_id: int,
    controller: AuditRunController = Depends(get_controller),
    enqueue: Callable[[int], None] = Depends(get_enqueue),
) -> AuditStarted:
    return _start(controller, lambda: controller.start_scheduled_audit(campaign_id), enqueue)


@app.get("/campaigns/{campaign_id}/audits", response_model=list[AuditSummaryOut])
async def audit_history(
    campaign_id: int,
    limit: int = Query(10, ge=1, le=50),
    controller: AuditRunController = Depends(get_controller),
) -> list[AuditSummaryOut]:
    return [_summary_out(run) for run in controller.get_audit_history(campaign_id, limit)]


@app.get("/campaigns/{campaign_id}/cannibalization", response_model=ResultsResponse)
async def cannibalization_results(
    campaign_id: int,
    limit: int = Query(50, ge=1, le=100),
    start: date | None = None,
    end: date | None = None,
    controller: AuditRunController = Depends(get_controller),
) -> ResultsResponse:
    if (start is None) != (end is None):
        raise HTTPException(status_code=400, detail="Provide both start and end, or neither")
    run = controller.get_results(campaign_id, limit, start, end)
    if run is None:
        return ResultsResponse(message=NO_CANNIBALIZATION_MESSAGE)
    audit = AuditWithResultsOut(**_summary_out(run).model_dump(), results=[_result_out(f) for f in run.results])
    return ResultsResponse(audit=audit)


@app.get("/campaigns/{campaign_id}/cannibalization/summary")
async def cannibalization_summary(
    campaign_id: int, controller: AuditRunController = Depends(get_controller)
) -> dict[str, Any] | None:
    found = controller.get_summary(campaign_id)
    if found is None:
        return None
    run, summary = found
    return {
        "audit_id": run.id,
        "audit_type": run.audit_type.value,
        "audit_date": run.created_at,
        "date_range": {"start_date": run.start_date, "end_date": run.end_date},
        **asdict(summary),
    }


@app.get("/campaigns/{campaign_id}/cannibalization/top", response_model=list[TopCannibalizedOut])
async def top_cannibalized(
    campaign_id: int,
    limit: int = Query(10, ge=1, le=20),
    controller: AuditRunController = Depends(get_controller),
) -> list[TopCannibalizedOut]:
    return [
        TopCannibalizedOut(
            keyword=f.keyword,
            max_overlap=f.max_competitor_overlap,
            competing_pages_count=len(f.competing_pages),
        )
        for f in controller.get_top_cannibalized(campaign_id, limit)
    ]


@app.get("/campaigns/{campaign_id}/cannibalization/keywords/{keyword}", response_model=ResultOut | None)
async def keyword_details(
    campaign_id: int, keyword: str, controller: AuditRunController = Depends(get_controller)
) -> ResultOut | None:
    finding = controller.get_keyword_details(campaign_id, keyword)
    return _result_out(finding) if finding else None


@app.get("/campaigns/{campaign_id}/rankings")
async def rankings(campaign_id: int, controller: AuditRunController = Depends(get_controller)) -> dict[str, Any]:
    try:
        report = campaign_rankings(controller.store, campaign_id, controller.today())
    except CampaignNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return asdict(report)
