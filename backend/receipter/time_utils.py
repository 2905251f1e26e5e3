from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional

UK_DATE_FORMAT = "%d/%m/%Y"
UK_DATETIME_FORMAT = "%d/%m/%Y %H:%M"


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utc_today(now: Optional[datetime] = None) -> date:
    """UTC calendar date of `now` (defaults to utcnow()); naive values are taken as UTC."""
    now = now or utcnow()
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return now.date()


def parse_iso_date(value: Optional[str]) -> Optional[date]:
    """
    Parse a calendar date in YYYY-MM-DD form.

    - None / "" -> None
    - Anything else that is not a valid date raises ValueError
    """
    if value is None:
        return None
    s = value.strip()
    if not s:
        return None
    return datetime.strptime(s, "%Y-%m-%d").date()


def format_uk_date(value: Optional[date]) -> str:
    """DD/MM/YYYY, or "" for None."""
    if value is None:
        return ""
    return value.strftime(UK_DATE_FORMAT)


def format_uk_datetime(value: Optional[datetime]) -> str:
    """DD/MM/YYYY HH:MM, or "" for None."""
    if value is None:
        return ""
    return value.strftime(UK_DATETIME_FORMAT)


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """
    Serializes datetime to ISO-8601 with trailing 'Z'.
    If dt is naive, it is treated as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt_utc = dt.astimezone(timezone.utc).replace(microsecond=0)
    return dt_utc.isoformat().replace("+00:00", "Z")


def to_iso_date(value: Optional[date]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()
