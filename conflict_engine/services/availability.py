"""Working-hours evaluation and timezone helpers."""

from __future__ import annotations

from datetime import datetime, tzinfo

from dateutil import tz

from conflict_engine.domain.errors import InvalidInputError, TimezoneRequiredError
from conflict_engine.domain.models import (
    WEEKDAY_KEYS,
    DayType,
    TimeOfDay,
    WorkingHours,
)


def resolve_timezone(name: str | None) -> tzinfo:
    """Return the tzinfo for an IANA name.

    Raises TimezoneRequiredError for a missing name and InvalidInputError for
    one the timezone database does not know.
    """
    if not name:
        raise TimezoneRequiredError()
    zone = tz.gettz(name)
    if zone is None:
        raise InvalidInputError(f"unknown timezone {name!r}")
    return zone


def to_local(instant: datetime, timezone: str) -> datetime:
    return instant.astimezone(resolve_timezone(timezone))


def is_within_working_hours(
    instant: datetime, working_hours: WorkingHours, timezone: str
) -> bool:
    """True if *instant*, seen in *timezone*, falls inside one of that weekday's ranges.

    Range bounds are inclusive, so a session may end exactly at closing time.
    """
    local = to_local(instant, timezone)
    day_ranges = working_hours.get(WEEKDAY_KEYS[local.weekday()]) or []
    clock = local.strftime("%H:%M")
    return any(r.start <= clock <= r.end for r in day_ranges)


def day_type_for(local: datetime) -> DayType:
    return DayType.WEEKEND if local.weekday() >= 5 else DayType.WEEKDAY


def time_of_day_for(hour: int) -> TimeOfDay:
    if hour < 11:
        return TimeOfDay.MORNING
    if hour < 14:
        return TimeOfDay.MIDDAY
    if hour < 17:
        return TimeOfDay.AFTERNOON
    return TimeOfDay.EVENING


def describe_working_hours(working_hours: WorkingHours, timezone: str) -> str:
    """Render working hours one weekday per line, for prompts."""
    names = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")
    lines = []
    for key, name in zip(WEEKDAY_KEYS, names):
        ranges = working_hours.get(key) or []
        if ranges:
            lines.append(f"{name}: " + ", ".join(f"{r.start}-{r.end}" for r in ranges))
        else:
            lines.append(f"{name}: Not available")
    lines.append(f"(All times in {timezone})")
    return "\n".join(lines)
