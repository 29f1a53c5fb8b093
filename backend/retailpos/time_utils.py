from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional

# All timestamps are stored UTC-naive. Sale-number days and report
# buckets are UTC calendar days.


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _strip_to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    "2024-05-01"              -> 2024-05-01 00:00 UTC
    "2024-05-01T09:30"        -> naive, taken as UTC
    "2024-05-01T09:30Z"       -> UTC
    "2024-05-01T11:30+02:00"  -> converted to 09:30 UTC
    None / blank              -> None

    Raises ValueError for anything fromisoformat rejects.
    """
    if value is None or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return _strip_to_utc(datetime.fromisoformat(text))


def normalize_datetime(value) -> Optional[datetime]:
    """Coerce None, date, datetime or ISO string to a UTC-naive datetime."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return _strip_to_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str):
        return parse_iso_datetime(value)
    raise ValueError(f"invalid datetime: {value!r}")


def business_date_prefix(dt: Optional[datetime] = None) -> str:
    """YYYYMMDD of the UTC day; defaults to today."""
    return (normalize_datetime(dt) or utcnow()).strftime("%Y%m%d")


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """ISO-8601 to the second with a trailing 'Z'. Naive input is UTC."""
    if dt is None:
        return None
    stamp = _strip_to_utc(dt).replace(microsecond=0)
    return stamp.isoformat() + "Z"
