"""Time utilities for half-hour slot handling.

KEY PRINCIPLE: slot boundaries are timezone-aware UTC datetimes. Local time is
only used where a human or the inverter thinks in wall-clock terms (scheduled
actions, inverter time windows, "today" and "tomorrow" forecast totals).
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)

# Constants - NOT configurable
TIMEZONE = ZoneInfo("Europe/London")
UTC = timezone.utc
INTERVAL_MINUTES = 30


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def ensure_utc(dt: datetime) -> datetime:
    """Return ``dt`` as an aware UTC datetime. Naive values are assumed UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def parse_iso_datetime(value: str) -> datetime:
    """Parse an ISO 8601 timestamp, accepting a trailing ``Z``."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(value))


def round_to_half_hour(dt: datetime) -> datetime:
    """Round down to the start of the half-hour slot containing ``dt``.

    Example:
        >>> round_to_half_hour(datetime(2025, 1, 6, 14, 47, 12, tzinfo=UTC))
        datetime(2025, 1, 6, 14, 30, tzinfo=UTC)
    """
    return dt.replace(minute=(dt.minute // INTERVAL_MINUTES) * INTERVAL_MINUTES,
                      second=0, microsecond=0)


def to_local(dt: datetime) -> datetime:
    return ensure_utc(dt).astimezone(TIMEZONE)


def local_date(dt: datetime) -> date:
    return to_local(dt).date()


def local_time_of_day(dt: datetime) -> time:
    """Wall-clock time of day of a slot boundary, without seconds."""
    local = to_local(dt)
    return time(local.hour, local.minute)


def format_local_hhmm(dt: datetime) -> str:
    return to_local(dt).strftime("%H:%M")


def half_hour_range(start: datetime, end: datetime):
    """Yield consecutive 30-minute slot starts in ``[start, end)``."""
    step = timedelta(minutes=INTERVAL_MINUTES)
    current = start
    while current < end:
        yield current
        current += step
