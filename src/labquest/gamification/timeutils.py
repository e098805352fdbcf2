"""UTC helpers shared by the gamification services."""

from __future__ import annotations

from datetime import date, datetime, time, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | date | None) -> datetime | None:
    """Coerce a stored or incoming timestamp to an aware UTC datetime.

    Naive values are assumed to already be UTC (SQLite drops tzinfo).
    A bare date means midnight UTC of that day.
    """
    if value is None:
        return None
    if not isinstance(value, datetime):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def within_window(now: datetime, starts_at: datetime | None, ends_at: datetime | None) -> bool:
    """True when now falls inside the optional [starts_at, ends_at] window."""
    start = as_utc(starts_at)
    end = as_utc(ends_at)
    if start is not None and now < start:
        return False
    if end is not None and now > end:
        return False
    return True


def iso_week(value: datetime) -> str:
    """Return ISO week string like '2026-W08'."""
    iso = value.isocalendar()
    return f"{iso[0]}-W{iso[1]:02d}"
