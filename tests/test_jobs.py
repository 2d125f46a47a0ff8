from datetime import date

import pytest
from sqlalchemy import insert, select

from rankwatch.db.store import AuditStatus, AuditType
from rankwatch.db.tables import keyword_daily_stats, keyword_monthly_stats
from rankwatch.jobs.monthly import run_monthly_rollup
from rankwatch.jobs.audits import run_scheduled_sweep
from rankwatch.logic.audit import AuditRunController

from conftest import FakeProvider


def test_sweep_queues_scheduled_audits_and_skips_orphans(seeded_store):
    queued = []
    controller = AuditRunController(seeded_store, FakeProvider(), today=lambda: date(2025, 3, 20))
    ids = run_scheduled_sweep(controller, enqueue=queued.append)
    assert ids == queued
    assert len(ids) == 1
    run = seeded_store.get_run(ids[0])
    assert run.campaign_id == 1
    assert run.audit_type is AuditType.SCHEDULED
    assert run.status is AuditStatus.PENDING


def test_monthly_rollup_covers_previous_month(seeded_store, seeded_engine):
    with seeded_engine.begin() as conn:
        conn.execute(insert(keyword_daily_stats), [
            {"keyword_id": 2, "date": date(2025, 2, day), "average_rank": 3.0, "search_volume": 4}
            for day in range(1, 15)
        ])
    assert run_monthly_rollup(as_of=date(2025, 3, 2), store=seeded_store) == 1
    with seeded_engine.connect() as conn:
        row = conn.execute(select(keyword_monthly_stats)).mappings().one()
    assert (row["keyword_id"], row["year"], row["month"], row["average_rank"]) == (2, 2025, 2, 3.0)


def test_sweep_fails_runs_it_cannot_queue(seeded_store):
    def broken_enqueue(_audit_id):
        raise ConnectionError("broker unreachable")

    controller = AuditRunController(seeded_store, FakeProvider(), today=lambda: date(2025, 3, 20))
    with pytest.raises(ConnectionError):
        run_scheduled_sweep(controller, enqueue=broken_enqueue)
    history = seeded_store.list_runs(1, 10)
    assert [run.status for run in history] == [AuditStatus.FAILED]
    assert controller.campaigns_needing_audit() == [1, 2]
