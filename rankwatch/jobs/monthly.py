"""Monthly ranking rollup job."""

from __future__ import annotations

import logging
from datetime import date

from dotenv import load_dotenv

from rankwatch.db.session import create_engine_from_env
from rankwatch.db.store import SqlResultsStore
from rankwatch.logic.keyword_report import rollup_monthly_rankings
from rankwatch.utils.dates import previous_month, today_in_tz

logger = logging.getLogger(__name__)


def run_monthly_rollup(as_of: date | None = None, store: SqlResultsStore | None = None) -> int:
    if store is None:
        load_dotenv()
        store = SqlResultsStore(create_engine_from_env())
    today = as_of or today_in_tz()
    year, month = previous_month(today)
    total = 0
    for campaign_id in store.active_campaign_ids():
        try:
            total += rollup_monthly_rankings(store, campaign_id, year, month, today)
        except Exception:  # pragma: no cover - database errors
            logger.exception("Monthly rollup failed for campaign %s", campaign_id)
    return total


if __name__ == "__main__":
    run_monthly_rollup()
