"""
Timezone-aware datetime helpers.
- Store and compute in UTC.
- Local-timezone mirrors are derived from a schedule's IANA zone for display only.
"""
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

UTC = timezone.utc


def now_utc() -> datetime:
    """Current time in UTC (timezone-aware)."""
    return datetime.now(UTC)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """If dt is naive, treat as UTC and return timezone-aware UTC. If already aware, convert to UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    else:
        dt = dt.astimezone(UTC)
    return dt


def to_local(dt: Optional[datetime], tz_name: Optional[str]) -> Optional[datetime]:
    """Convert to the given IANA zone. Naive datetimes are treated as UTC; no zone means UTC."""
    if dt is None:
        return None
    dt = ensure_utc(dt)
    if not tz_name:
        return dt
    return dt.astimezone(ZoneInfo(tz_name))



def seconds_between(start: datetime, end: datetime) -> int:
    """Whole seconds from start to end (negative if end precedes start)."""
    return int((ensure_utc(end) - ensure_utc(start)).total_seconds())


def floor_minutes(seconds: float) -> int:
    """Floor a second count to whole minutes, never below zero."""
    if seconds <= 0:
        return 0
    return int(seconds // 60)


def minutes_between(start: datetime, end: datetime) -> int:
    """Whole elapsed minutes from start to end (floored, never negative)."""
    return floor_minutes(seconds_between(start, end))
