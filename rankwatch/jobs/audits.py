"""Out-of-band audit execution and the scheduled audit sweep."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from dotenv import load_dotenv

from rankwatch.db.session import create_engine_from_env
from rankwatch.db.store import AuditRun, SqlResultsStore
from rankwatch.ingest.search_console import SearchConsoleClient
from rankwatch.logic.audit import AuditRunController, CampaignNotFoundError

logger = logging.getLogger(__name__)


def enqueue_audit(audit_id: int) -> None:
    """Hand a PENDING run to the worker queue."""
    from rankwatch.jobs.celery_app import execute_audit_task

    execute_audit_task.delay(audit_id)
    logger.info("Queued audit %s", audit_id)


async def execute_audit(audit_id: int) -> AuditRun:
    load_dotenv()
    engine = create_engine_from_env()
    client = SearchConsoleClient()
    controller = AuditRunController(SqlResultsStore(engine), client)
    try:
        return await controller.execute_audit(audit_id)
    finally:
        await client.close()


def run_scheduled_sweep(
    controller: AuditRunController | None = None,
    enqueue: Callable[[int], None] = enqueue_audit,
) -> list[int]:
    """Start a scheduled audit for every campaign without a recent one."""
    if controller is None:
        load_dotenv()
        # No HTTP session is opened until a fetch; the sweep never fetches.
        controller = AuditRunController(SqlResultsStore(create_engine_from_env()), SearchConsoleClient())
    queued: list[int] = []
    for campaign_id in controller.campaigns_needing_audit():
        try:
            audit_id = controller.start_scheduled_audit(campaign_id)
        except CampaignNotFoundError as exc:
            logger.warning("Skipping campaign %s: %s", campaign_id, exc)
            continue
        controller.dispatch_audit(audit_id, enqueue)
        queued.append(audit_id)
    logger.info("Scheduled sweep queued %s audits", len(queued))
    return queued


if __name__ == "__main__":
    import sys

    asyncio.run(execute_audit(int(sys.argv[1])))
