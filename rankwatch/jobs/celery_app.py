"""Celery configuration for audit execution and scheduled jobs."""

from __future__ import annotations

import os

from celery import Celery
from celery.schedules import crontab

from rankwatch.utils.dates import timezone_name

broker_url = os.environ.get("REDIS_URL", "redis://redis:6379/0")
backend_url = os.environ.get("REDIS_URL", "redis://redis:6379/0")

celery_app = Celery("rankwatch", broker=broker_url, backend=backend_url, include=["rankwatch.jobs.audits", "rankwatch.jobs.monthly"])
celery_app.conf.timezone = timezone_name()
celery_app.conf.beat_schedule = {
    "scheduled-audits": {
        "task": "rankwatch.jobs.audits.run_scheduled_sweep",
        "schedule": crontab(hour=int(os.environ.get("AUDIT_HOUR", "6")), minute=int(os.environ.get("AUDIT_MINUTE", "0"))),
    },
    "monthly-rankings": {
        "task": "rankwatch.jobs.monthly.run_monthly_rollup",
        "schedule": crontab(day_of_month="1", hour=2, minute=0),
    },
}


@celery_app.task(name="rankwatch.jobs.audits.execute_audit")
def execute_audit_task(audit_id: int):  # pragma: no cover - executed by worker
    import asyncio

    from rankwatch.jobs.audits import execute_audit

    run = asyncio.run(execute_audit(audit_id))
    return {"audit_id": run.id, "status": run.status.value}


@celery_app.task(name="rankwatch.jobs.audits.run_scheduled_sweep")
def run_scheduled_sweep_task():  # pragma: no cover - executed by worker
    from rankwatch.jobs.audits import run_scheduled_sweep

    return run_scheduled_sweep()


@celery_app.task(name="rankwatch.jobs.monthly.run_monthly_rollup")
def run_monthly_rollup_task():  # pragma: no cover - executed by worker
    from rankwatch.jobs.monthly import run_monthly_rollup

    return run_monthly_rollup()
