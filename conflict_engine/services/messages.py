"""Templated assistant messages. No generator calls happen here."""

from __future__ import annotations

from datetime import datetime

from conflict_engine.domain.models import AlternativeSlot, ConflictingEvent
from conflict_engine.services.availability import to_local

MAX_NAMED_CONFLICTS = 2


def _clock(local: datetime) -> str:
    return f"{local.hour % 12 or 12}:{local:%M} {local:%p}"


def format_short(instant: datetime, timezone: str) -> str:
    """``Mon 2:30 PM`` in *timezone*."""
    local = to_local(instant, timezone)
    return f"{local:%a} {_clock(local)}"


def format_long(instant: datetime, timezone: str) -> str:
    """``Mon, Mar 2 at 2:30 PM`` in *timezone*."""
    local = to_local(instant, timezone)
    return f"{local:%a, %b} {local.day} at {_clock(local)}"


def format_conflict_message(
    proposed_title: str,
    conflicts: list[ConflictingEvent],
    alternatives: list[AlternativeSlot],
    timezone: str,
) -> str:
    named = " and ".join(
        f'"{c.title}" ({format_short(c.start_time, timezone)})'
        for c in conflicts[:MAX_NAMED_CONFLICTS]
    )
    extra = len(conflicts) - MAX_NAMED_CONFLICTS
    more = f" and {extra} more" if extra > 0 else ""

    message = f'Scheduling conflict detected for "{proposed_title}".\n\n'
    message += f"This overlaps with {named}{more}.\n\n"
    if alternatives:
        plural, verb = ("s", "work") if len(alternatives) > 1 else ("", "works")
        message += (
            f"I've found {len(alternatives)} alternative time{plural} that {verb} better. "
            "Tap one below to reschedule automatically.\n\n"
        )
    else:
        message += (
            "Please choose a different time that doesn't conflict with your schedule.\n\n"
        )
    message += f"(Times shown in {timezone})"
    return message


def format_reschedule_confirmation(title: str, new_start: datetime, timezone: str) -> str:
    return f"I've rescheduled {title} to {format_long(new_start, timezone)}."


def format_unconfirmed_nudge(
    title: str, start_time: datetime, hours_till_start: int, timezone: str
) -> str:
    return (
        f'Reminder: "{title}" is scheduled for {format_long(start_time, timezone)} '
        f"(in ~{hours_till_start} hours).\n\n"
        "This session hasn't been confirmed yet. You may want to follow up with "
        "participants to confirm attendance."
    )


def format_post_session_prompt(title: str) -> str:
    return (
        f'How did the "{title}" session go?\n\n'
        "Feel free to add any notes about topics covered, homework assigned, "
        "or areas to focus on next time."
    )


def format_long_gap_alert(days_since_last_session: int) -> str:
    day_word = "day" if days_since_last_session == 1 else "days"
    return (
        f"It's been {days_since_last_session} {day_word} since your last session.\n\n"
        "Consider scheduling a follow-up session to maintain momentum."
    )


def format_schedule_conflict_alert(
    first_title: str, second_title: str, overlap_minutes: int
) -> str:
    return (
        f'Heads up: "{first_title}" and "{second_title}" overlap by '
        f"{overlap_minutes} minutes.\n\n"
        "You may want to reschedule one of them."
    )
