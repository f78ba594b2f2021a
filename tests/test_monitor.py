"""Tests for the schedule monitor: unconfirmed-session nudges and conflict sweeps."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from conflict_engine.domain.bus import EventBus
from conflict_engine.domain.handlers import HandlerRegistry
from conflict_engine.domain.models import (
    RSVP,
    ArtifactKind,
    Event,
    EventStatus,
    NudgeType,
    RSVPResponse,
    TimelineEntryType,
    UserPreferences,
)
from conflict_engine.repos.memory import (
    ArtifactRepository,
    EventRepository,
    IdempotencyRepository,
    TimelineRepository,
    UserPreferenceRepository,
)
from conflict_engine.services.monitor import ScheduleMonitor
from conflict_engine.services.time_ranges import overlaps

_NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)
_CONV = "conv-1"


@pytest.fixture()
def env():
    bus = EventBus()
    event_repo = EventRepository()
    timeline_repo = TimelineRepository()
    HandlerRegistry(bus=bus, timeline_repo=timeline_repo)

    class Env:
        pass

    e = Env()
    e.event_repo = event_repo
    e.timeline_repo = timeline_repo
    e.artifacts = ArtifactRepository()
    e.preferences = UserPreferenceRepository()
    e.nudge_log = IdempotencyRepository("nudge_logs")
    e.monitor = ScheduleMonitor(
        event_repo=event_repo,
        preferences=e.preferences,
        artifacts=e.artifacts,
        nudge_log=e.nudge_log,
        bus=bus,
        clock=lambda: _NOW,
    )
    return e


def _add(env, title: str, start: datetime, minutes: int = 60, **overrides) -> Event:
    fields = dict(
        title=title,
        start_time=start,
        end_time=start + timedelta(minutes=minutes),
        participants=["tutor", "student"],
        created_by="tutor",
        conversation_id=_CONV,
    )
    fields.update(overrides)
    event = Event(**fields)
    env.event_repo.add(event)
    return event


# ---------------------------------------------------------------------------
# detect_unconfirmed_events
# ---------------------------------------------------------------------------


def test_detects_pending_event_about_a_day_out(env):
    event = _add(env, "Tomorrow", _NOW + timedelta(hours=24))

    [found] = env.monitor.detect_unconfirmed_events()
    assert found.event_id == event.id
    assert found.hours_till_start == 24
    assert found.conversation_id == _CONV


def test_window_bounds(env):
    _add(env, "Too soon", _NOW + timedelta(hours=19))
    _add(env, "Too late", _NOW + timedelta(hours=29))
    _add(env, "Early edge", _NOW + timedelta(hours=20))
    _add(env, "Late edge", _NOW + timedelta(hours=28))

    titles = sorted(u.title for u in env.monitor.detect_unconfirmed_events())
    assert titles == ["Early edge", "Late edge"]


def test_hours_are_rounded(env):
    _add(env, "Odd time", _NOW + timedelta(hours=22, minutes=40))
    [found] = env.monitor.detect_unconfirmed_events()
    assert found.hours_till_start == 23


def test_confirmed_events_are_skipped(env):
    _add(env, "Confirmed", _NOW + timedelta(hours=24), status=EventStatus.CONFIRMED)
    assert env.monitor.detect_unconfirmed_events() == []


def test_fully_responded_events_are_skipped(env):
    _add(
        env,
        "Solo",
        _NOW + timedelta(hours=24),
        participants=["tutor"],
        rsvps={"tutor": RSVP(response=RSVPResponse.ACCEPT, responded_at=_NOW)},
    )
    assert env.monitor.detect_unconfirmed_events() == []


def test_explicit_now_and_window(env):
    _add(env, "Next week", _NOW + timedelta(days=7))
    found = env.monitor.detect_unconfirmed_events(
        now=_NOW + timedelta(days=6),
        window=(timedelta(hours=20), timedelta(hours=28)),
    )
    assert [u.title for u in found] == ["Next week"]


# ---------------------------------------------------------------------------
# Nudges
# ---------------------------------------------------------------------------


def test_nudge_posts_reminder_once(env):
    event = _add(env, "Algebra", _NOW + timedelta(hours=24))
    [unconfirmed] = env.monitor.detect_unconfirmed_events()

    artifact_id = env.monitor.send_unconfirmed_event_nudge(unconfirmed)
    assert artifact_id is not None
    assert env.monitor.send_unconfirmed_event_nudge(unconfirmed) is None

    [artifact] = env.artifacts.list_for_conversation(_CONV)
    assert artifact.id == artifact_id
    assert artifact.kind == ArtifactKind.NUDGE
    assert artifact.text.startswith(
        'Reminder: "Algebra" is scheduled for Tue, Jun 2 at 8:00 AM (in ~24 hours).'
    )
    assert env.nudge_log.exists(f"{event.id}_{NudgeType.UNCONFIRMED_EVENT}")
    assert env.timeline_repo.list_for_event(event.id)[-1].type == TimelineEntryType.NUDGE_SENT


def test_nudge_uses_creator_timezone(env):
    env.preferences.set("tutor", UserPreferences(timezone="Europe/London"))
    _add(env, "Algebra", _NOW + timedelta(hours=24))
    [unconfirmed] = env.monitor.detect_unconfirmed_events()

    env.monitor.send_unconfirmed_event_nudge(unconfirmed)
    [artifact] = env.artifacts.list_for_conversation(_CONV)
    assert "Tue, Jun 2 at 1:00 PM" in artifact.text


def test_nudge_skipped_without_conversation(env):
    _add(env, "Offline", _NOW + timedelta(hours=24), conversation_id=None)
    [unconfirmed] = env.monitor.detect_unconfirmed_events()
    assert env.monitor.send_unconfirmed_event_nudge(unconfirmed) is None


def test_process_sweep_counts_and_is_repeatable(env):
    _add(env, "One", _NOW + timedelta(hours=21))
    _add(env, "Two", _NOW + timedelta(hours=26))
    _add(env, "Nowhere", _NOW + timedelta(hours=24), conversation_id=None)

    assert env.monitor.process_unconfirmed_events() == 2
    assert env.monitor.process_unconfirmed_events() == 0
    assert len(env.artifacts.list_for_conversation(_CONV)) == 2


# ---------------------------------------------------------------------------
# monitor_schedule_conflicts
# ---------------------------------------------------------------------------


def test_reports_overlapping_pairs(env):
    first = _add(env, "Physics", _NOW + timedelta(days=1))
    second = _add(env, "Chemistry", _NOW + timedelta(days=1, minutes=30), minutes=90)
    _add(env, "Biology", _NOW + timedelta(days=3))

    [conflict] = env.monitor.monitor_schedule_conflicts("tutor")
    assert (conflict.event1.id, conflict.event2.id) == (first.id, second.id)
    assert conflict.event1.title == "Physics"
    assert conflict.overlap_minutes == 30


def test_long_event_still_compared_with_later_starts(env):
    _add(env, "Workshop", _NOW + timedelta(days=2), minutes=36 * 60)
    _add(env, "Late check-in", _NOW + timedelta(days=3, hours=10))

    [conflict] = env.monitor.monitor_schedule_conflicts("tutor")
    assert conflict.event2.title == "Late check-in"
    assert conflict.overlap_minutes == 60


def test_sweep_ignores_back_to_back_and_other_users(env):
    _add(env, "First", _NOW + timedelta(days=1))
    _add(env, "Second", _NOW + timedelta(days=1, hours=1))
    _add(env, "Someone else's", _NOW + timedelta(days=1), participants=["x"], created_by="x")
    assert env.monitor.monitor_schedule_conflicts("tutor") == []


def test_sweep_skips_corrupt_documents_and_past_events(env):
    _add(env, "Past", _NOW - timedelta(hours=2), minutes=180)
    _add(env, "Now-ish", _NOW + timedelta(minutes=30))
    env.event_repo.put_raw(
        "corrupt",
        {"title": "Broken", "participants": ["tutor"], "start_time": _NOW + timedelta(hours=1)},
    )
    assert env.monitor.monitor_schedule_conflicts("tutor") == []


def test_sweep_respects_lookahead(env):
    _add(env, "Far A", _NOW + timedelta(days=20))
    _add(env, "Far B", _NOW + timedelta(days=20, minutes=15))

    assert env.monitor.monitor_schedule_conflicts("tutor") == []
    assert len(env.monitor.monitor_schedule_conflicts("tutor", lookahead_days=30)) == 1


def test_sweep_stops_comparing_past_the_horizon(env):
    for i in range(5):
        _add(env, f"Block {i}", _NOW + timedelta(days=1, hours=2 * i))
    _add(env, "Much later", _NOW + timedelta(days=5))

    with patch("conflict_engine.services.monitor.overlaps", wraps=overlaps) as spy:
        assert env.monitor.monitor_schedule_conflicts("tutor") == []

    # 6 events would need 15 comparisons without the early break.
    assert spy.call_count == 10


def test_sweep_writes_nothing(env):
    _add(env, "Physics", _NOW + timedelta(days=1))
    _add(env, "Chemistry", _NOW + timedelta(days=1, minutes=30))
    before = env.event_repo.list_all()

    env.monitor.monitor_schedule_conflicts("tutor")
    assert env.event_repo.list_all() == before
    assert env.artifacts.list_for_conversation(_CONV) == []


# ---------------------------------------------------------------------------
# Post-session notes
# ---------------------------------------------------------------------------


def test_detects_confirmed_sessions_that_just_ended(env):
    ended = _add(env, "Just ended", _NOW - timedelta(hours=2), status=EventStatus.CONFIRMED)
    _add(env, "Ended earlier", _NOW - timedelta(hours=4), status=EventStatus.CONFIRMED)
    _add(env, "Still running", _NOW - timedelta(minutes=30), status=EventStatus.CONFIRMED)
    _add(env, "Never confirmed", _NOW - timedelta(hours=2))

    [session] = env.monitor.detect_recently_ended_sessions()
    assert session.event_id == ended.id
    assert session.end_time == _NOW - timedelta(hours=1)


def test_note_prompt_posts_once(env):
    event = _add(env, "Algebra", _NOW - timedelta(hours=2), status=EventStatus.CONFIRMED)
    [session] = env.monitor.detect_recently_ended_sessions()

    assert env.monitor.send_post_session_note_prompt(session) is not None
    assert env.monitor.send_post_session_note_prompt(session) is None

    [artifact] = env.artifacts.list_for_conversation(_CONV)
    assert artifact.text.startswith('How did the "Algebra" session go?')
    assert artifact.meta["nudge_type"] == "post_session_note"
    assert env.nudge_log.exists(f"{event.id}_post_session_note")


def test_hourly_job_reports_both_kinds(env):
    _add(env, "Tomorrow", _NOW + timedelta(hours=24))
    _add(env, "Earlier today", _NOW - timedelta(hours=2), status=EventStatus.CONFIRMED)

    report = env.monitor.process_hourly()
    assert (report.nudges_sent, report.note_prompts_sent) == (1, 1)

    again = env.monitor.process_hourly()
    assert (again.nudges_sent, again.note_prompts_sent) == (0, 0)


# ---------------------------------------------------------------------------
# Long gaps
# ---------------------------------------------------------------------------


def test_detects_conversation_gone_quiet(env):
    _add(env, "Old", _NOW - timedelta(days=40))
    last = _add(env, "Last", _NOW - timedelta(days=20, hours=1))

    [gap] = env.monitor.detect_long_gaps("tutor")
    assert gap.conversation_id == _CONV
    assert gap.last_event_id == last.id
    assert gap.days_since_last_session == 20


def test_recent_or_upcoming_sessions_mean_no_gap(env):
    _add(env, "Recent", _NOW - timedelta(days=10), conversation_id="conv-recent")
    _add(env, "Old", _NOW - timedelta(days=30), conversation_id="conv-booked")
    _add(env, "Booked", _NOW + timedelta(days=3), conversation_id="conv-booked")
    _add(
        env,
        "Declined",
        _NOW - timedelta(days=2),
        conversation_id="conv-declined",
        status=EventStatus.DECLINED,
    )
    _add(env, "Older", _NOW - timedelta(days=25), conversation_id="conv-declined")

    gaps = env.monitor.detect_long_gaps("tutor")
    assert [g.conversation_id for g in gaps] == ["conv-declined"]


def test_gaps_only_count_sessions_the_user_created(env):
    _add(env, "Theirs", _NOW - timedelta(days=30), created_by="student")
    assert env.monitor.detect_long_gaps("tutor") == []


def test_long_gap_alert_posts_once(env):
    last = _add(env, "Last", _NOW - timedelta(days=20, hours=1))
    [gap] = env.monitor.detect_long_gaps("tutor")

    assert env.monitor.send_long_gap_alert(gap) is not None
    assert env.monitor.send_long_gap_alert(gap) is None

    [artifact] = env.artifacts.list_for_conversation(_CONV)
    assert artifact.text == (
        "It's been 20 days since your last session.\n\n"
        "Consider scheduling a follow-up session to maintain momentum."
    )
    assert env.nudge_log.exists(f"{last.id}_long_gap_alert")


# ---------------------------------------------------------------------------
# Daily job
# ---------------------------------------------------------------------------


def test_daily_job_alerts_conflicts_and_gaps_once(env):
    _add(env, "Physics", _NOW + timedelta(days=1))
    _add(env, "Chemistry", _NOW + timedelta(days=1, minutes=30))
    _add(env, "Lapsed", _NOW - timedelta(days=20), conversation_id="conv-quiet")

    report = env.monitor.process_daily()
    assert report.users_checked == 2
    assert report.schedule_conflicts == 2  # seen from both participants
    assert report.conflict_alerts_sent == 1
    assert report.long_gap_alerts_sent == 1

    [alert] = env.artifacts.list_for_conversation(_CONV)
    assert alert.text.startswith('Heads up: "Physics" and "Chemistry" overlap by 30 minutes.')
    assert len(env.artifacts.list_for_conversation("conv-quiet")) == 1

    again = env.monitor.process_daily()
    assert (again.conflict_alerts_sent, again.long_gap_alerts_sent) == (0, 0)


def test_conflict_alert_uses_second_conversation_when_first_has_none(env):
    _add(env, "Offline", _NOW + timedelta(days=1), conversation_id=None)
    _add(env, "Online", _NOW + timedelta(days=1, minutes=30), conversation_id="conv-2")
    [conflict] = env.monitor.monitor_schedule_conflicts("tutor")

    assert env.monitor.send_schedule_conflict_alert(conflict) is not None
    assert len(env.artifacts.list_for_conversation("conv-2")) == 1


def test_conflict_alert_skipped_without_any_conversation(env):
    _add(env, "A", _NOW + timedelta(days=1), conversation_id=None)
    _add(env, "B", _NOW + timedelta(days=1, minutes=30), conversation_id=None)
    [conflict] = env.monitor.monitor_schedule_conflicts("tutor")
    assert env.monitor.send_schedule_conflict_alert(conflict) is None
