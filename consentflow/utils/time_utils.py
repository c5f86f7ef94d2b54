"""
Time Utilities

Helpers for coercing timestamps into timezone-aware UTC datetimes and for
deriving contract windows (start + duration) used by the wizard and the
contract backend.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional


DEFAULT_DURATION_MINUTES = 120


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def coerce_dt(value: Any) -> Optional[datetime]:
    """
    Coerce an ISO string or datetime into a tz-aware datetime.

    Naive values are assumed to be UTC. A trailing "Z" (as emitted by
    JavaScript clients) is accepted.

    Args:
        value: datetime, ISO-8601 string, or None

    Returns:
        Timezone-aware datetime, or None if the value cannot be parsed
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    return None


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    coerced = coerce_dt(dt)
    return coerced.isoformat() if coerced else None


def to_epoch(dt: Optional[datetime]) -> Optional[int]:
    if dt is None:
        return None
    coerced = coerce_dt(dt)
    return int(coerced.timestamp()) if coerced else None


def compute_end_time(start: datetime, duration_minutes: int) -> datetime:
    """
    Derive a contract end time from its start and duration.

    Args:
        start: Contract start time
        duration_minutes: Duration in minutes (must be positive)

    Returns:
        start + duration as a tz-aware datetime

    Raises:
        ValueError: If the duration is not positive
    """
    if duration_minutes <= 0:
        raise ValueError(f"Duration must be positive, got {duration_minutes}")
    return coerce_dt(start) + timedelta(minutes=duration_minutes)


def duration_between(start: datetime, end: datetime) -> int:
    """Whole minutes between two instants (never negative)."""
    delta = coerce_dt(end) - coerce_dt(start)
    return max(0, int(delta.total_seconds() // 60))


def format_duration(minutes: int) -> str:
    """
    Render a duration for contract summaries.

    Examples:
        >>> format_duration(90)
        '1 hour 30 minutes'
        >>> format_duration(1440)
        '24 hours'
    """
    if minutes < 60:
        return f"{minutes} minutes"
    hours, rest = divmod(minutes, 60)
    label = f"{hours} hour" if hours == 1 else f"{hours} hours"
    if rest:
        label += f" {rest} minutes"
    return label
