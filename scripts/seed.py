"""Seed database with demo campaigns and their tracked keywords."""

from __future__ import annotations

import os

from dotenv import load_dotenv
from sqlalchemy import insert, select

from rankwatch.db.migrate import run_migrations
from rankwatch.db.session import create_engine_from_env
from rankwatch.db.tables import campaigns, google_accounts, tracked_keywords
from rankwatch.ingest import load_campaigns
from rankwatch.logic.normalize import parse_keyword_whitelist


def main() -> None:
    load_dotenv()
    engine = create_engine_from_env()
    run_migrations(engine)
    token = os.environ.get("SEARCH_CONSOLE_ACCESS_TOKEN", "dev-token")
    with engine.begin() as conn:
        for item in load_campaigns():
            account_id = conn.execute(
                select(google_accounts.c.id).where(google_accounts.c.email == item["account_email"])
            ).scalar_one_or_none()
            if account_id is None:
                account_id = conn.execute(
                    insert(google_accounts).values(email=item["account_email"], access_token=token)
                ).inserted_primary_key[0]
            campaign_id = conn.execute(
                insert(campaigns).values(
                    name=item["name"],
                    keywords=item["keywords"],
                    search_console_site=item["search_console_site"],
                    google_account_id=account_id,
                    starting_date=item.get("starting_date"),
                )
            ).inserted_primary_key[0]
            for keyword in sorted(parse_keyword_whitelist(item["keywords"])):
                conn.execute(insert(tracked_keywords).values(campaign_id=campaign_id, keyword=keyword))
    print("Seed complete")


if __name__ == "__main__":
    main()
