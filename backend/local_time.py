"""
Floating local time.

Scheduled times are wall-clock values ("take at 08:00") with no timezone
attached. They are stored and compared as naive datetimes so the calendar
day of an obligation never shifts when the device or server timezone
changes. `LocalDateTime` is the validated field type used across models;
tz-aware values are rejected instead of silently converted.
"""

from datetime import date, datetime, time, timedelta
from typing import Annotated, Tuple

from pydantic import AfterValidator


def _ensure_floating(value: datetime) -> datetime:
    if value.tzinfo is not None:
        raise ValueError(
            "Scheduled times are floating local times; drop the timezone offset"
        )
    return value.replace(microsecond=0)


LocalDateTime = Annotated[datetime, AfterValidator(_ensure_floating)]


def local_now() -> datetime:
    """Current wall-clock time on this machine, without tzinfo."""

    return datetime.now().replace(microsecond=0)


def local_day(value: datetime) -> date:
    return value.date()


def parse_slot(slot: str) -> time:
    """Parse an "HH:MM" time-of-day slot. Raises ValueError when malformed."""

    parts = slot.split(":")
    if len(parts) != 2 or not all(p.isdigit() and len(p) == 2 for p in parts):
        raise ValueError(f"Time slot must be HH:MM, got {slot!r}")
    hours, minutes = int(parts[0]), int(parts[1])
    if hours > 23 or minutes > 59:
        raise ValueError(f"Time slot out of range: {slot!r}")
    return time(hours, minutes)


def at_slot(day: date, slot: str) -> datetime:
    return datetime.combine(day, parse_slot(slot))


def day_bounds(day: date) -> Tuple[datetime, datetime]:
    """Half-open `[start, end)` range covering one local calendar day."""

    start = datetime.combine(day, time.min)
    return start, start + timedelta(days=1)


def iter_days(start: date, end: date):
    """Yield each calendar date in the inclusive range `[start, end]`."""

    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def sunday_based_weekday(day: date) -> int:
    """Day of week with 0 = Sunday ... 6 = Saturday."""

    return (day.weekday() + 1) % 7
