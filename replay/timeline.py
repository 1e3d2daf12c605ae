"""Session timeline helpers.

OpenF1 provides timestamps as ISO date strings. The replay works on one
timeline: milliseconds since the session's date_start (time_ms).
"""
from datetime import datetime, timedelta, timezone


def parse_iso(dt_str: str) -> datetime:
    """Parse an ISO timestamp string and return a timezone-aware UTC datetime."""
    s = dt_str.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def ms_since(start: datetime, t: datetime) -> float:
    """Milliseconds between two datetimes (used to compute time_ms)."""
    return (t - start).total_seconds() * 1000.0


def at_ms(start: datetime, time_ms: float) -> datetime:
    """Wall-clock instant of a time_ms on the session timeline."""
    return start + timedelta(milliseconds=time_ms)
