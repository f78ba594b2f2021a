"""Tests for working-hours evaluation and message templates."""

from datetime import datetime, timezone

import pytest

from conflict_engine.domain.errors import InvalidInputError, TimezoneRequiredError
from conflict_engine.domain.models import (
    AlternativeSlot,
    ConflictingEvent,
    DayType,
    TimeOfDay,
    WorkingHoursRange,
    default_working_hours,
)
from conflict_engine.services.availability import (
    is_within_working_hours,
    resolve_timezone,
    time_of_day_for,
)
from conflict_engine.services.messages import (
    format_conflict_message,
    format_long,
    format_long_gap_alert,
    format_post_session_prompt,
    format_reschedule_confirmation,
    format_schedule_conflict_alert,
    format_short,
)

_TZ = "America/Toronto"


def _utc(day: int, hour: int, minute: int = 0) -> datetime:
    # June 2026: the 1st is a Monday, Toronto is UTC-4.
    return datetime(2026, 6, day, hour, minute, tzinfo=timezone.utc)


def _conflict(title: str, start: datetime) -> ConflictingEvent:
    return ConflictingEvent(id=title.lower(), title=title, start_time=start, end_time=start)


# ---------------------------------------------------------------------------
# Timezones and working hours
# ---------------------------------------------------------------------------


def test_missing_timezone():
    with pytest.raises(TimezoneRequiredError):
        resolve_timezone("")


def test_unknown_timezone():
    with pytest.raises(InvalidInputError):
        resolve_timezone("Atlantis/Capital")


def test_working_hours_are_inclusive():
    hours = default_working_hours()
    assert is_within_working_hours(_utc(1, 13), hours, _TZ)  # 09:00
    assert is_within_working_hours(_utc(1, 21), hours, _TZ)  # 17:00
    assert not is_within_working_hours(_utc(1, 21, 1), hours, _TZ)
    assert not is_within_working_hours(_utc(1, 12, 59), hours, _TZ)


def test_weekend_unavailable_by_default():
    assert not is_within_working_hours(_utc(6, 15), default_working_hours(), _TZ)


def test_working_hours_use_the_given_timezone():
    hours = {"mon": [WorkingHoursRange(start="09:00", end="10:00")]}
    assert is_within_working_hours(_utc(1, 8, 30), hours, "Europe/London")
    assert not is_within_working_hours(_utc(1, 8, 30), hours, _TZ)


@pytest.mark.parametrize(
    "hour, expected",
    [
        (8, TimeOfDay.MORNING),
        (10, TimeOfDay.MORNING),
        (11, TimeOfDay.MIDDAY),
        (13, TimeOfDay.MIDDAY),
        (14, TimeOfDay.AFTERNOON),
        (17, TimeOfDay.EVENING),
    ],
)
def test_time_of_day_buckets(hour, expected):
    assert time_of_day_for(hour) == expected


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


def test_formats_in_local_time():
    assert format_short(_utc(2, 18, 30), _TZ) == "Tue 2:30 PM"
    assert format_long(_utc(2, 18, 30), _TZ) == "Tue, Jun 2 at 2:30 PM"


def test_conflict_message_without_alternatives():
    message = format_conflict_message(
        "Algebra", [_conflict("Physics", _utc(2, 14))], [], _TZ
    )
    assert message == (
        'Scheduling conflict detected for "Algebra".\n\n'
        'This overlaps with "Physics" (Tue 10:00 AM).\n\n'
        "Please choose a different time that doesn't conflict with your schedule.\n\n"
        "(Times shown in America/Toronto)"
    )


def test_conflict_message_single_alternative_is_singular():
    slot = AlternativeSlot(
        start_time=_utc(3, 14),
        end_time=_utc(3, 15),
        reason="Same time tomorrow - easiest to remember",
        score=80,
        day_type=DayType.WEEKDAY,
        time_of_day=TimeOfDay.MORNING,
    )
    message = format_conflict_message(
        "Algebra", [_conflict("Physics", _utc(2, 14))], [slot], _TZ
    )
    assert "I've found 1 alternative time that works better." in message


def test_conflict_message_caps_named_conflicts():
    conflicts = [
        _conflict("Physics", _utc(2, 14)),
        _conflict("Chemistry", _utc(2, 15)),
        _conflict("Biology", _utc(2, 16)),
        _conflict("History", _utc(2, 17)),
    ]
    message = format_conflict_message("Algebra", conflicts, [], "UTC")
    assert 'with "Physics" (Tue 2:00 PM) and "Chemistry" (Tue 3:00 PM) and 2 more.' in message
    assert "(Times shown in UTC)" in message


def test_reschedule_confirmation():
    assert (
        format_reschedule_confirmation("Algebra", _utc(3, 14), _TZ)
        == "I've rescheduled Algebra to Wed, Jun 3 at 10:00 AM."
    )


def test_post_session_prompt():
    prompt = format_post_session_prompt("Algebra")
    assert prompt.startswith('How did the "Algebra" session go?\n\n')


def test_long_gap_alert_counts_days():
    assert format_long_gap_alert(15).startswith("It's been 15 days since your last session.")
    assert format_long_gap_alert(1).startswith("It's been 1 day since")


def test_schedule_conflict_alert():
    assert format_schedule_conflict_alert("Physics", "Chemistry", 30) == (
        'Heads up: "Physics" and "Chemistry" overlap by 30 minutes.\n\n'
        "You may want to reschedule one of them."
    )
