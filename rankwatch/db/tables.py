"""Table definitions shared by the store, migrations and tests."""

from __future__ import annotations

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)

from rankwatch.utils.dates import utcnow

metadata = MetaData()

google_accounts = Table(
    "google_accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", Text, nullable=False, unique=True),
    Column("access_token", Text, nullable=False),
    Column("refresh_token", Text),
    Column("is_active", Boolean, nullable=False, default=True),
)

campaigns = Table(
    "campaigns",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", Text, nullable=False),
    Column("keywords", Text, nullable=False, default=""),
    Column("search_console_site", Text, nullable=False),
    Column("google_account_id", Integer, ForeignKey("google_accounts.id", ondelete="SET NULL")),
    Column("starting_date", Date),
    Column("status", String(16), nullable=False, default="ACTIVE"),
)

tracked_keywords = Table(
    "tracked_keywords",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("campaign_id", Integer, ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False),
    Column("keyword", Text, nullable=False),
    Column("initial_position", Float, nullable=False, default=0.0),
    UniqueConstraint("campaign_id", "keyword", name="uq_tracked_keywords_campaign_keyword"),
)

keyword_daily_stats = Table(
    "keyword_daily_stats",
    metadata,
    Column("keyword_id", Integer, ForeignKey("tracked_keywords.id", ondelete="CASCADE"), primary_key=True),
    Column("date", Date, primary_key=True),
    Column("average_rank", Float, nullable=False),
    Column("search_volume", Integer, nullable=False, default=0),
    Column("top_ranking_page_url", Text, nullable=False, default=""),
)

keyword_monthly_stats = Table(
    "keyword_monthly_stats",
    metadata,
    Column("keyword_id", Integer, ForeignKey("tracked_keywords.id", ondelete="CASCADE"), primary_key=True),
    Column("year", Integer, primary_key=True),
    Column("month", Integer, primary_key=True),
    Column("average_rank", Float, nullable=False),
    Column("search_volume", Integer, nullable=False, default=0),
    Column("top_ranking_page_url", Text, nullable=False, default=""),
    Column("updated_at", DateTime, nullable=False, default=utcnow, onupdate=utcnow),
)

cannibalization_audits = Table(
    "cannibalization_audits",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("campaign_id", Integer, ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False),
    Column("start_date", Date, nullable=False),
    Column("end_date", Date, nullable=False),
    Column("audit_type", String(16), nullable=False, default="CUSTOM"),
    Column("status", String(16), nullable=False, default="PENDING"),
    Column("total_keywords", Integer, nullable=False, default=0),
    Column("cannibalization_count", Integer, nullable=False, default=0),
    Column("created_at", DateTime, nullable=False, default=utcnow),
    Column("updated_at", DateTime, nullable=False, default=utcnow, onupdate=utcnow),
    Index("ix_cannibalization_audits_campaign_id", "campaign_id"),
    Index("ix_cannibalization_audits_created_at", "created_at"),
)

cannibalization_results = Table(
    "cannibalization_results",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("audit_id", Integer, ForeignKey("cannibalization_audits.id", ondelete="CASCADE"), nullable=False),
    Column("keyword", Text, nullable=False),
    Column("top_page_url", Text, nullable=False),
    Column("top_page_impressions", Integer, nullable=False),
    UniqueConstraint("audit_id", "keyword", name="uq_cannibalization_results_audit_keyword"),
)

competing_pages = Table(
    "competing_pages",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("result_id", Integer, ForeignKey("cannibalization_results.id", ondelete="CASCADE"), nullable=False),
    Column("page_url", Text, nullable=False),
    Column("impressions", Integer, nullable=False),
    Column("overlap_percentage", Float, nullable=False),
    Index("ix_competing_pages_result_id", "result_id"),
)
