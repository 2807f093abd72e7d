"""Date manipulation utilities"""

from datetime import date, datetime, timezone

from dateutil.relativedelta import relativedelta

DAYS_PER_MONTH = 30


def utc_now() -> datetime:
    """Current timezone-aware UTC timestamp"""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Normalize to aware UTC; naive datetimes (e.g. read back from SQLite) are taken as UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def add_months(from_date: date, months: int) -> date:
    """Calendar month addition; clamps to the last day of shorter months"""
    return from_date + relativedelta(months=months)


def months_between(start: datetime, end: datetime) -> int:
    """Whole 30-day months elapsed between two timestamps (never negative)"""
    days = (ensure_utc(end) - ensure_utc(start)).days
    return max(days, 0) // DAYS_PER_MONTH


def days_overdue(due_date: date, now: datetime) -> int:
    """Days past the due date as of `now` (negative while not yet due)"""
    return (ensure_utc(now).date() - due_date).days
