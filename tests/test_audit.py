from datetime import date, datetime

import pytest
from sqlalchemy import insert, select

from rankwatch.db.store import AuditStatus, AuditType, SqlResultsStore
from rankwatch.db.tables import cannibalization_audits
from rankwatch.ingest.search_console import SearchConsoleError
from rankwatch.logic.audit import AuditRunController, CampaignNotFoundError
from rankwatch.logic.cannibalization import CannibalizationFinding, CompetingPage, PageImpressions

from conftest import FakeProvider, row

START = date(2025, 3, 1)
END = date(2025, 3, 14)


def controller_for(store, rows=None, error=None, today=date(2025, 3, 20)):
    return AuditRunController(store, FakeProvider(rows=rows, error=error), today=lambda: today)


class RecordingStore(SqlResultsStore):
    def __init__(self, engine):
        super().__init__(engine)
        self.statuses = []

    def update_run_status(self, audit_id, status, **kwargs):
        self.statuses.append(AuditStatus(status))
        return super().update_run_status(audit_id, status, **kwargs)


@pytest.mark.asyncio
async def test_empty_window_completes_with_no_results(seeded_store):
    controller = controller_for(seeded_store)
    run = await controller.run_audit(1, START, END)
    assert run.status is AuditStatus.COMPLETED
    assert run.total_keywords == 0
    assert run.cannibalization_count == 0
    assert controller.get_results(1, start=START, end=END) is None


@pytest.mark.asyncio
async def test_simple_cannibalization_is_persisted(seeded_store):
    rows = [
        row("k1", "https://example.com/a", 60),
        row("K1 ", "https://example.com/a", 40, day=date(2025, 3, 11)),
        row("k1", "https://example.com/b", 50),
        row("unlisted", "https://example.com/b", 500),
    ]
    controller = controller_for(seeded_store, rows)
    run = await controller.run_audit(1, START, END)
    assert run.status is AuditStatus.COMPLETED
    assert run.total_keywords == 1
    assert run.cannibalization_count == 1

    fetched = controller.get_results(1, start=START, end=END)
    assert fetched.id == run.id
    assert fetched.results == [
        CannibalizationFinding(
            keyword="k1",
            top_page=PageImpressions("https://example.com/a", 100),
            competing_pages=[
                CompetingPage("https://example.com/a", 100, 100.0),
                CompetingPage("https://example.com/b", 50, 50.0),
            ],
        )
    ]


@pytest.mark.asyncio
async def test_fetch_uses_campaign_site_and_run_window(seeded_store):
    controller = controller_for(seeded_store)
    await controller.run_audit(1, START, END)
    call = controller.provider.calls[0]
    assert call["site"] == "sc-domain:example.com"
    assert call["account"].access_token == "token"
    assert (call["start"], call["end"]) == (START, END)
    assert call["dimensions"] == ("query", "page")


@pytest.mark.asyncio
async def test_off_domain_rows_do_not_create_results(seeded_store):
    rows = [row("k1", "https://example.com/a", 100), row("k1", "https://other.com/b", 90)]
    controller = controller_for(seeded_store, rows)
    run = await controller.run_audit(1, START, END)
    assert run.status is AuditStatus.COMPLETED
    assert run.cannibalization_count == 0
    assert controller.get_results(1, start=START, end=END) is None


@pytest.mark.asyncio
async def test_rows_outside_window_are_ignored(seeded_store):
    rows = [
        row("k1", "https://example.com/a", 100),
        row("k1", "https://example.com/b", 90, day=date(2025, 2, 27)),
    ]
    controller = controller_for(seeded_store, rows)
    run = await controller.run_audit(1, START, END)
    assert run.cannibalization_count == 0


@pytest.mark.asyncio
async def test_provider_failure_marks_run_failed(seeded_engine):
    store = RecordingStore(seeded_engine)
    controller = controller_for(store, error=SearchConsoleError("quota"))
    audit_id = controller.start_audit(1, START, END)
    with pytest.raises(SearchConsoleError):
        await controller.execute_audit(audit_id)
    assert store.get_run(audit_id).status is AuditStatus.FAILED
    assert store.statuses == [AuditStatus.RUNNING, AuditStatus.FAILED]
    assert controller.get_results(1, start=START, end=END) is None


@pytest.mark.asyncio
async def test_status_moves_forward_only(seeded_engine):
    store = RecordingStore(seeded_engine)
    controller = controller_for(store, [row("k1", "https://example.com/a", 10)])
    run = await controller.run_audit(1, START, END)
    assert store.statuses == [AuditStatus.RUNNING, AuditStatus.COMPLETED]
    assert run.status is AuditStatus.COMPLETED


@pytest.mark.parametrize("campaign_id", [99, 2])
def test_missing_campaign_or_account_creates_no_run(seeded_store, seeded_engine, campaign_id):
    controller = controller_for(seeded_store)
    with pytest.raises(CampaignNotFoundError):
        controller.start_audit(campaign_id, START, END)
    with seeded_engine.connect() as conn:
        assert conn.execute(select(cannibalization_audits)).first() is None


def test_inverted_range_is_rejected(seeded_store):
    with pytest.raises(ValueError):
        controller_for(seeded_store).start_audit(1, END, START)


def _insert_run(engine, start, end, created_at, status="COMPLETED"):
    with engine.begin() as conn:
        result = conn.execute(insert(cannibalization_audits).values(
            campaign_id=1,
            start_date=start,
            end_date=end,
            audit_type="CUSTOM",
            status=status,
            total_keywords=1,
            cannibalization_count=1,
            created_at=created_at,
            updated_at=created_at,
        ))
        return result.inserted_primary_key[0]


def _finding(keyword):
    return CannibalizationFinding(
        keyword=keyword,
        top_page=PageImpressions("https://example.com/a", 10),
        competing_pages=[
            CompetingPage("https://example.com/a", 10, 100.0),
            CompetingPage("https://example.com/b", 8, 80.0),
        ],
    )


def test_results_come_from_latest_overlapping_run(seeded_store, seeded_engine):
    january = _insert_run(seeded_engine, date(2025, 1, 1), date(2025, 1, 31), datetime(2025, 2, 1))
    march = _insert_run(seeded_engine, date(2025, 3, 1), date(2025, 3, 31), datetime(2025, 4, 1))
    seeded_store.save_results(january, [_finding("k1")])
    seeded_store.save_results(march, [_finding("k2")])
    controller = controller_for(seeded_store)

    run = controller.get_results(1, start=date(2025, 2, 15), end=date(2025, 3, 15))
    assert run.id == march
    assert [f.keyword for f in run.results] == ["k2"]

    run = controller.get_results(1, start=date(2025, 1, 10), end=date(2025, 1, 20))
    assert run.id == january


def test_results_default_to_recent_months(seeded_store, seeded_engine):
    old = _insert_run(seeded_engine, date(2024, 1, 1), date(2024, 1, 31), datetime(2024, 2, 1))
    seeded_store.save_results(old, [_finding("k1")])
    assert controller_for(seeded_store, today=date(2025, 3, 20)).get_results(1) is None
    assert controller_for(seeded_store, today=date(2024, 3, 1)).get_results(1).id == old


def test_failed_runs_are_never_selected(seeded_store, seeded_engine):
    failed = _insert_run(seeded_engine, START, END, datetime(2025, 3, 15), status="FAILED")
    seeded_store.save_results(failed, [_finding("k1")])
    assert controller_for(seeded_store).get_results(1, start=START, end=END) is None


def test_history_is_newest_first(seeded_store, seeded_engine):
    first = _insert_run(seeded_engine, START, END, datetime(2025, 3, 15))
    second = _insert_run(seeded_engine, START, END, datetime(2025, 3, 16), status="FAILED")
    third = _insert_run(seeded_engine, START, END, datetime(2025, 3, 16))
    history = controller_for(seeded_store).get_audit_history(1)
    assert [run.id for run in history] == [third, second, first]
    assert [run.id for run in controller_for(seeded_store).get_audit_history(1, limit=1)] == [third]


def test_summary_and_keyword_details(seeded_store, seeded_engine):
    audit_id = _insert_run(seeded_engine, START, END, datetime(2025, 3, 15))
    seeded_store.save_results(audit_id, [_finding("k1"), _finding("k2")])
    controller = controller_for(seeded_store)

    run, summary = controller.get_summary(1)
    assert run.id == audit_id
    assert summary.keywords_with_cannibalization == 2
    assert summary.average_overlap_percentage == 90.0
    assert summary.high_impact_cannibalization == 2

    detail = controller.get_keyword_details(1, " K2 ")
    assert detail.keyword == "k2"
    assert controller.get_keyword_details(1, "missing") is None
    assert [f.keyword for f in controller.get_top_cannibalized(1, limit=1)] == ["k1"]


def test_presets_anchor_on_reporting_delay(seeded_store):
    controller = controller_for(seeded_store, today=date(2025, 5, 20))
    assert controller.initial_range() == (date(2025, 2, 17), date(2025, 5, 17))
    assert controller.scheduled_range() == (date(2025, 5, 3), date(2025, 5, 17))

    run = seeded_store.get_run(controller.start_initial_audit(1))
    assert run.audit_type is AuditType.INITIAL
    assert run.status is AuditStatus.PENDING
    assert (run.start_date, run.end_date) == (date(2025, 2, 17), date(2025, 5, 17))


def test_campaigns_needing_audit_skips_paused_and_recent(seeded_store):
    controller = controller_for(seeded_store)
    assert controller.campaigns_needing_audit() == [1, 2]
    audit_id = controller.start_scheduled_audit(1)
    assert controller.campaigns_needing_audit() == [1, 2]
    seeded_store.update_run_status(audit_id, AuditStatus.RUNNING)
    assert controller.campaigns_needing_audit() == [2]


def test_half_open_result_range_is_rejected(seeded_store):
    controller = controller_for(seeded_store)
    with pytest.raises(ValueError):
        controller.get_results(1, start=START)
    with pytest.raises(ValueError):
        controller.get_results(1, end=END)


def test_dispatch_failure_fails_the_run(seeded_engine):
    store = RecordingStore(seeded_engine)
    controller = controller_for(store)
    audit_id = controller.start_audit(1, START, END)

    def broken_enqueue(_audit_id):
        raise ConnectionError("broker unreachable")

    with pytest.raises(ConnectionError):
        controller.dispatch_audit(audit_id, broken_enqueue)
    assert store.get_run(audit_id).status is AuditStatus.FAILED
    assert store.statuses == [AuditStatus.RUNNING, AuditStatus.FAILED]


def test_dispatch_leaves_queued_run_pending(seeded_store):
    queued = []
    controller = controller_for(seeded_store)
    audit_id = controller.start_audit(1, START, END)
    controller.dispatch_audit(audit_id, queued.append)
    assert queued == [audit_id]
    assert seeded_store.get_run(audit_id).status is AuditStatus.PENDING
