from __future__ import annotations

from datetime import datetime, time as dtime, timedelta, timezone
from typing import Any, Optional

from dateutil import parser, tz


def parse_any_date(value: Any) -> Optional[datetime]:
    """Best-effort date parser that returns aware UTC datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        try:
            dt = datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    else:
        text = str(value).strip()
        if not text:
            return None
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            try:
                dt = parser.parse(text)
            except (ValueError, OverflowError):
                return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_timestamp(value: Any) -> Optional[float]:
    """Coerce an epoch number, ISO string or datetime into epoch seconds."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    dt = parse_any_date(value)
    return dt.timestamp() if dt else None


def _zone(tz_name: Optional[str]):
    return tz.gettz(tz_name or "UTC") or tz.UTC


def start_of_local_day(ts: float, tz_name: Optional[str] = None) -> float:
    """Epoch seconds of local midnight on the day containing ts."""
    zone = _zone(tz_name)
    local = datetime.fromtimestamp(float(ts), tz=zone)
    midnight = datetime.combine(local.date(), dtime(0, 0), tzinfo=zone)
    return midnight.timestamp()


def local_midnight_after_days(ts: float, days: int, tz_name: Optional[str] = None) -> float:
    """Local midnight of the calendar day that is `days` days after ts."""
    zone = _zone(tz_name)
    local = datetime.fromtimestamp(float(ts), tz=zone)
    target = local.date() + timedelta(days=int(days))
    return datetime.combine(target, dtime(0, 0), tzinfo=zone).timestamp()


def to_isoformat(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(float(ts), tz=timezone.utc).replace(microsecond=0).isoformat()
