from datetime import date

import pytest
from sqlalchemy import create_engine, insert
from sqlalchemy.pool import StaticPool

from rankwatch.db.store import SqlResultsStore
from rankwatch.db.tables import campaigns, google_accounts, metadata, tracked_keywords
from rankwatch.ingest.models import RawPerformanceRow


class FakeProvider:
    def __init__(self, rows=None, error=None):
        self.rows = rows or []
        self.error = error
        self.calls = []

    async def fetch_rows(self, site, account, start, end, dimensions):
        self.calls.append({"site": site, "account": account, "start": start, "end": end, "dimensions": tuple(dimensions)})
        if self.error:
            raise self.error
        return list(self.rows)


def row(query, page, impressions, day=date(2025, 3, 10), clicks=0, position=1.0):
    return RawPerformanceRow(date=day, query=query, page=page, impressions=impressions, clicks=clicks, position=position)


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        future=True,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def store(engine):
    return SqlResultsStore(engine)


@pytest.fixture()
def seeded_engine(engine):
    with engine.begin() as conn:
        conn.execute(insert(google_accounts), [
            {"email": "seo@example.com", "access_token": "token"},
        ])
        conn.execute(insert(campaigns), [
            {
                "name": "Example",
                "keywords": "K1\nk2 \n\nrunning shoes",
                "search_console_site": "sc-domain:example.com",
                "google_account_id": 1,
                "starting_date": date(2025, 1, 15),
                "status": "ACTIVE",
            },
            {
                "name": "Orphan",
                "keywords": "a\nb",
                "search_console_site": "https://orphan.com/",
                "google_account_id": None,
                "starting_date": None,
                "status": "ACTIVE",
            },
            {
                "name": "Paused",
                "keywords": "a",
                "search_console_site": "https://paused.com/",
                "google_account_id": 1,
                "starting_date": None,
                "status": "PAUSED",
            },
        ])
        conn.execute(insert(tracked_keywords), [
            {"campaign_id": 1, "keyword": "k1", "initial_position": 0.0},
            {"campaign_id": 1, "keyword": "k2", "initial_position": 12.5},
        ])
    return engine


@pytest.fixture()
def seeded_store(seeded_engine):
    return SqlResultsStore(seeded_engine)
