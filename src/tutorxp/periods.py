"""Period boundary utilities for counters, challenges and leaderboards."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from stores that drop the offset."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def get_week_iso(dt: datetime) -> str:
    """Get ISO week string e.g. '2026-W09'. Uses %G-W%V (ISO year + ISO week)."""
    return dt.strftime("%G-W%V")


def get_month_key(dt: datetime) -> str:
    """Get month key e.g. '2026-10'."""
    return dt.strftime("%Y-%m")


def get_monday(dt: datetime | date) -> date:
    """Get the Monday of the ISO week containing dt."""
    d = dt.date() if isinstance(dt, datetime) else dt
    return d - timedelta(days=d.weekday())


def get_week_boundaries(dt: datetime | None = None) -> tuple[datetime, datetime]:
    """Get (Monday 00:00 UTC, next Monday 00:00 UTC) for the ISO week containing dt."""
    if dt is None:
        dt = utcnow()
    monday = get_monday(dt)
    start = datetime.combine(monday, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=7)


def get_month_boundaries(dt: datetime | None = None) -> tuple[datetime, datetime]:
    """Get (first day 00:00 UTC, first day of next month 00:00 UTC)."""
    if dt is None:
        dt = utcnow()
    start = datetime(dt.year, dt.month, 1, tzinfo=timezone.utc)
    if dt.month == 12:
        end = datetime(dt.year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        end = datetime(dt.year, dt.month + 1, 1, tzinfo=timezone.utc)
    return start, end


def period_window(period: str, dt: datetime | None = None) -> tuple[str, datetime | None, datetime | None]:
    """Return (period_key, start, end) for 'weekly', 'monthly' or 'alltime'."""
    if dt is None:
        dt = utcnow()
    if period == "weekly":
        start, end = get_week_boundaries(dt)
        return get_week_iso(dt), start, end
    if period == "monthly":
        start, end = get_month_boundaries(dt)
        return get_month_key(dt), start, end
    if period == "alltime":
        return "alltime", None, None
    raise ValueError(f"Unknown period: {period}")


def calculate_percentile(rank: int, total: int) -> float:
    """Calculate percentile from rank and total participants.

    Rank 1 out of 100 -> 99.0 (top 1%)
    Rank 100 out of 100 -> 0.0 (bottom)
    """
    if total <= 0 or rank <= 0:
        return 0.0
    return round(100 - (rank / total * 100), 2)
