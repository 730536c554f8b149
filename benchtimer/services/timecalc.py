from __future__ import annotations
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime | None) -> str | None:
    """Serialize an aware datetime as a UTC ISO-8601 string with a Z suffix."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def parse_iso(ts: str | None, tz: str = "UTC") -> datetime | None:
    """Parse an ISO-8601 timestamp string.
    If naive, attach the provided tz. Returns None if ts is falsy.
    """
    if not ts:
        return None
    dt = datetime.fromisoformat(ts.replace('Z', '+00:00'))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=ZoneInfo(tz))
    return dt


def parse_range_bound(value: str | None, tz: str = "UTC", *, end: bool = False) -> datetime | None:
    """Parse a report range bound given as a timestamp or a bare date.

    A bare date means local midnight in ``tz``. As an ``end`` bound it means
    the following midnight, so the whole day is included. Raises ValueError
    for anything else.
    """
    if not value:
        return None
    try:
        day = date.fromisoformat(value)
    except ValueError:
        return parse_iso(value, tz)
    start = datetime(day.year, day.month, day.day, tzinfo=ZoneInfo(tz))
    return start + timedelta(days=1) if end else start


def elapsed_between(start: datetime | None, end: datetime | None) -> int:
    """Return whole seconds between start and end (non-negative)."""
    if not start or not end:
        return 0
    return max(int((end - start).total_seconds()), 0)


def seconds_to_minutes(seconds: int) -> int:
    """
    Billing rule, used for display and persistence alike:
      - whole minutes, rounded half-up (30 seconds and over rounds up)
      - negative input counts as zero
    """
    if seconds <= 0:
        return 0
    return (int(seconds) + 30) // 60


def format_elapsed(seconds: int) -> str:
    """HH:MM:SS for the running-timer display."""
    seconds = max(int(seconds), 0)
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"
