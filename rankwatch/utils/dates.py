"""Datetime helpers."""

from __future__ import annotations

import calendar
import os
from datetime import date, datetime, timedelta, timezone

import pendulum

DEFAULT_TZ = "America/Los_Angeles"


def timezone_name() -> str:
    return os.environ.get("TIMEZONE", DEFAULT_TZ)


def now_in_tz() -> pendulum.DateTime:
    tz = pendulum.timezone(timezone_name())
    return pendulum.now(tz)


def today_in_tz() -> date:
    return now_in_tz().date()


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_iso_date(value: str) -> date:
    return pendulum.parse(value).date()


def coerce_date(value: object) -> date | None:
    """Return a date for date/datetime/ISO string input, ``None`` if unusable."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return parse_iso_date(value.strip())
        except (ValueError, AttributeError):
            return None
    return None


def format_date(value: date) -> str:
    return value.strftime("%Y-%m-%d")


def subtract_months(value: date, months: int) -> date:
    return pendulum.date(value.year, value.month, value.day).subtract(months=months)


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def month_bounds(year: int, month: int) -> tuple[date, date]:
    return date(year, month, 1), date(year, month, days_in_month(year, month))


def previous_month(value: date) -> tuple[int, int]:
    first = value.replace(day=1) - timedelta(days=1)
    return first.year, first.month
