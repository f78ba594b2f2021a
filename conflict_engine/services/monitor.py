"""Periodic schedule checks.

The hourly job reminds conversations about unconfirmed sessions starting in
about a day and asks for notes on sessions that just ended. The daily job
sweeps every active user's upcoming schedule for overlapping pairs and
alerts conversations that have gone quiet. Every nudge goes through the
nudge log, keyed by the entity it is about and the nudge type.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

from pydantic import ValidationError

from conflict_engine.domain.bus import EventBus
from conflict_engine.domain.errors import AlreadyExistsError, SchedulingError
from conflict_engine.domain.events import NudgeSent
from conflict_engine.domain.models import (
    Artifact,
    ArtifactKind,
    DailySweepReport,
    EndedSession,
    Event,
    EventRef,
    EventStatus,
    HourlySweepReport,
    LongGap,
    NudgeType,
    ScheduleConflict,
    UnconfirmedEvent,
)
from conflict_engine.repos.memory import (
    ArtifactRepository,
    EventRepository,
    IdempotencyRepository,
    UserPreferenceRepository,
)
from conflict_engine.services.conflicts import parse_event_document
from conflict_engine.services.messages import (
    format_long_gap_alert,
    format_post_session_prompt,
    format_schedule_conflict_alert,
    format_unconfirmed_nudge,
)
from conflict_engine.services.time_ranges import overlap_minutes, overlaps

logger = logging.getLogger(__name__)

SWEEP_HORIZON = timedelta(days=1)


def _load_events(documents: list[dict]) -> list[Event]:
    events = []
    for doc in documents:
        try:
            events.append(Event.model_validate(doc))
        except ValidationError:
            logger.warning("Event %s is malformed, skipping", doc.get("id", "?"))
    return events


class ScheduleMonitor:
    def __init__(
        self,
        event_repo: EventRepository,
        preferences: UserPreferenceRepository,
        artifacts: ArtifactRepository,
        nudge_log: IdempotencyRepository,
        bus: EventBus,
        window_start_hours: int = 20,
        window_end_hours: int = 28,
        lookahead_days: int = 14,
        query_limit: int = 500,
        post_session_window_hours: int = 2,
        long_gap_days: int = 14,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.event_repo = event_repo
        self.preferences = preferences
        self.artifacts = artifacts
        self.nudge_log = nudge_log
        self.bus = bus
        self.window = (timedelta(hours=window_start_hours), timedelta(hours=window_end_hours))
        self.lookahead_days = lookahead_days
        self.query_limit = query_limit
        self.post_session_window = timedelta(hours=post_session_window_hours)
        self.long_gap_days = long_gap_days
        self._now = clock or (lambda: datetime.now(timezone.utc))

    def _send_nudge(
        self,
        entity_id: str,
        nudge_type: NudgeType,
        conversation_id: str,
        text: str,
        event_id: str,
    ) -> str | None:
        """Post *text* once per (entity, nudge type) and return the artifact id.

        The log is checked before posting and written after, so two
        concurrent sweeps may both post; that is accepted.
        """
        log_key = f"{entity_id}_{nudge_type}"
        if self.nudge_log.exists(log_key):
            logger.debug("Nudge %s already sent", log_key)
            return None

        artifact_id = self.artifacts.post(
            conversation_id,
            Artifact(
                conversation_id=conversation_id,
                kind=ArtifactKind.NUDGE,
                text=text,
                meta={"event_id": event_id, "nudge_type": str(nudge_type)},
            ),
        )
        try:
            self.nudge_log.create(
                log_key,
                {
                    "entity_id": entity_id,
                    "nudge_type": str(nudge_type),
                    "artifact_id": artifact_id,
                    "sent_at": self._now(),
                },
            )
        except AlreadyExistsError:
            logger.warning("Nudge %s was sent concurrently", log_key)

        logger.info("Sent %s nudge for %s", nudge_type, entity_id)
        self.bus.publish(
            NudgeSent(event_id=event_id, nudge_type=str(nudge_type), artifact_id=artifact_id)
        )
        return artifact_id

    # ------------------------------------------------------------------
    # Unconfirmed sessions
    # ------------------------------------------------------------------

    def detect_unconfirmed_events(
        self,
        now: datetime | None = None,
        window: tuple[timedelta, timedelta] | None = None,
    ) -> list[UnconfirmedEvent]:
        """Pending events starting inside the window whose participants have not all answered."""
        now = now or self._now()
        window_start, window_end = window or self.window
        documents = self.event_repo.query(
            start_from=now + window_start,
            start_to=now + window_end,
            status=EventStatus.PENDING,
        )

        found: list[UnconfirmedEvent] = []
        for event in _load_events(documents):
            if event.all_responded():
                continue
            hours = round((event.start_time - now).total_seconds() / 3600)
            found.append(
                UnconfirmedEvent(
                    event_id=event.id,
                    title=event.title,
                    start_time=event.start_time,
                    participants=event.participants,
                    created_by=event.created_by,
                    conversation_id=event.conversation_id,
                    hours_till_start=hours,
                )
            )
        logger.info("Found %d unconfirmed event(s) starting in ~24h", len(found))
        return found

    def send_unconfirmed_event_nudge(self, event: UnconfirmedEvent) -> str | None:
        """Post one reminder per event into its conversation."""
        if not event.conversation_id:
            logger.debug("Event %s has no conversation, no nudge", event.event_id)
            return None
        tz_name = self.preferences.get_user_timezone(event.created_by)
        text = format_unconfirmed_nudge(
            event.title, event.start_time, event.hours_till_start, tz_name
        )
        return self._send_nudge(
            event.event_id,
            NudgeType.UNCONFIRMED_EVENT,
            event.conversation_id,
            text,
            event_id=event.event_id,
        )

    def process_unconfirmed_events(self, now: datetime | None = None) -> int:
        """Nudge every unconfirmed event in the window. Returns nudges sent."""
        sent = 0
        for event in self.detect_unconfirmed_events(now):
            try:
                if self.send_unconfirmed_event_nudge(event) is not None:
                    sent += 1
            except SchedulingError:
                logger.exception("Failed to nudge for event %s", event.event_id)
        logger.info("Unconfirmed-event sweep sent %d nudge(s)", sent)
        return sent

    # ------------------------------------------------------------------
    # Post-session notes
    # ------------------------------------------------------------------

    def detect_recently_ended_sessions(
        self, now: datetime | None = None, window: timedelta | None = None
    ) -> list[EndedSession]:
        """Confirmed events that ended within *window* before *now*."""
        now = now or self._now()
        since = now - (window or self.post_session_window)
        documents = self.event_repo.query(start_to=now, status=EventStatus.CONFIRMED)
        return [
            EndedSession(
                event_id=event.id,
                title=event.title,
                end_time=event.end_time,
                created_by=event.created_by,
                conversation_id=event.conversation_id,
            )
            for event in _load_events(documents)
            if since <= event.end_time <= now
        ]

    def send_post_session_note_prompt(self, session: EndedSession) -> str | None:
        if not session.conversation_id:
            return None
        return self._send_nudge(
            session.event_id,
            NudgeType.POST_SESSION_NOTE,
            session.conversation_id,
            format_post_session_prompt(session.title),
            event_id=session.event_id,
        )

    def process_post_session_prompts(self, now: datetime | None = None) -> int:
        sent = 0
        for session in self.detect_recently_ended_sessions(now):
            try:
                if self.send_post_session_note_prompt(session) is not None:
                    sent += 1
            except SchedulingError:
                logger.exception("Failed to prompt for notes on %s", session.event_id)
        logger.info("Post-session sweep sent %d prompt(s)", sent)
        return sent

    def process_hourly(self, now: datetime | None = None) -> HourlySweepReport:
        """Hourly job: unconfirmed-session reminders and post-session note prompts."""
        now = now or self._now()
        return HourlySweepReport(
            nudges_sent=self.process_unconfirmed_events(now),
            note_prompts_sent=self.process_post_session_prompts(now),
        )

    # ------------------------------------------------------------------
    # Long gaps
    # ------------------------------------------------------------------

    def detect_long_gaps(
        self,
        user_id: str,
        now: datetime | None = None,
        threshold_days: int | None = None,
    ) -> list[LongGap]:
        """Conversations *user_id* created sessions in whose last session ended long ago.

        Declined sessions never happened and are ignored. A conversation with
        a session still to come has no gap.
        """
        now = now or self._now()
        threshold = timedelta(days=threshold_days or self.long_gap_days)
        documents = self.event_repo.query(created_by=user_id)

        last: dict[str, Event] = {}
        upcoming: set[str] = set()
        for event in _load_events(documents):
            if not event.conversation_id or event.status == EventStatus.DECLINED:
                continue
            if event.end_time > now:
                upcoming.add(event.conversation_id)
                continue
            previous = last.get(event.conversation_id)
            if previous is None or event.end_time > previous.end_time:
                last[event.conversation_id] = event

        gaps: list[LongGap] = []
        for conversation_id, event in sorted(last.items()):
            if conversation_id in upcoming:
                continue
            elapsed = now - event.end_time
            if elapsed <= threshold:
                continue
            gaps.append(
                LongGap(
                    conversation_id=conversation_id,
                    user_id=user_id,
                    last_event_id=event.id,
                    last_session_end=event.end_time,
                    days_since_last_session=round(elapsed / timedelta(days=1)),
                )
            )
        return gaps

    def send_long_gap_alert(self, gap: LongGap) -> str | None:
        """Alert once per lapsed session, keyed by the last session's id."""
        return self._send_nudge(
            gap.last_event_id,
            NudgeType.LONG_GAP_ALERT,
            gap.conversation_id,
            format_long_gap_alert(gap.days_since_last_session),
            event_id=gap.last_event_id,
        )

    # ------------------------------------------------------------------
    # Conflict sweep
    # ------------------------------------------------------------------

    def monitor_schedule_conflicts(
        self,
        user_id: str,
        now: datetime | None = None,
        lookahead_days: int | None = None,
    ) -> list[ScheduleConflict]:
        """Report overlapping pairs among *user_id*'s upcoming events. Writes nothing."""
        now = now or self._now()
        horizon = now + timedelta(days=lookahead_days or self.lookahead_days)
        documents = self.event_repo.query(
            participant=user_id,
            start_from=now,
            start_to=horizon,
            order_by_start=True,
            limit=self.query_limit,
        )
        events = [e for e in map(parse_event_document, documents) if e is not None]
        events.sort(key=lambda e: e.start_time)

        conflicts: list[ScheduleConflict] = []
        for i, first in enumerate(events):
            for second in events[i + 1 :]:
                if second.start_time > first.end_time + SWEEP_HORIZON:
                    break
                if overlaps(first.start_time, first.end_time, second.start_time, second.end_time):
                    conflicts.append(
                        ScheduleConflict(
                            event1=EventRef(id=first.id, title=first.title),
                            event2=EventRef(id=second.id, title=second.title),
                            overlap_minutes=overlap_minutes(
                                first.start_time,
                                first.end_time,
                                second.start_time,
                                second.end_time,
                            ),
                        )
                    )
        if conflicts:
            logger.info("Found %d conflicting pair(s) for %s", len(conflicts), user_id)
        return conflicts

    def send_schedule_conflict_alert(self, conflict: ScheduleConflict) -> str | None:
        """Warn the first event's conversation (or the second's) once per pair."""
        conversation_id = None
        for ref in (conflict.event1, conflict.event2):
            doc = self.event_repo.get_raw(ref.id)
            if doc is not None and doc.get("conversation_id"):
                conversation_id = doc["conversation_id"]
                break
        if conversation_id is None:
            logger.debug(
                "Conflict %s/%s has no conversation, no alert",
                conflict.event1.id,
                conflict.event2.id,
            )
            return None
        return self._send_nudge(
            f"{conflict.event1.id}_{conflict.event2.id}",
            NudgeType.SCHEDULE_CONFLICT_ALERT,
            conversation_id,
            format_schedule_conflict_alert(
                conflict.event1.title, conflict.event2.title, conflict.overlap_minutes
            ),
            event_id=conflict.event1.id,
        )

    # ------------------------------------------------------------------
    # Daily job
    # ------------------------------------------------------------------

    def process_daily(self, now: datetime | None = None) -> DailySweepReport:
        """Daily job: alert on overlapping upcoming sessions and on long gaps.

        Conflicts are alerted largest overlap first. Each user is handled
        on their own, so one failing user does not stop the sweep.
        """
        now = now or self._now()
        report = DailySweepReport()

        upcoming = self.event_repo.query(
            start_from=now, start_to=now + timedelta(days=self.lookahead_days)
        )
        participants = sorted(
            {uid for doc in upcoming for uid in (doc.get("participants") or [])}
        )
        creators = sorted(
            {doc["created_by"] for doc in self.event_repo.list_all() if doc.get("created_by")}
        )
        report.users_checked = len(set(participants) | set(creators))

        for user_id in participants:
            try:
                conflicts = self.monitor_schedule_conflicts(user_id, now)
                report.schedule_conflicts += len(conflicts)
                for conflict in sorted(conflicts, key=lambda c: -c.overlap_minutes):
                    if self.send_schedule_conflict_alert(conflict) is not None:
                        report.conflict_alerts_sent += 1
            except SchedulingError:
                logger.exception("Conflict sweep failed for %s", user_id)

        for user_id in creators:
            try:
                for gap in self.detect_long_gaps(user_id, now):
                    if self.send_long_gap_alert(gap) is not None:
                        report.long_gap_alerts_sent += 1
            except SchedulingError:
                logger.exception("Long-gap sweep failed for %s", user_id)

        logger.info(
            "Daily sweep: %d user(s), %d conflict(s), %d conflict alert(s), "
            "%d long-gap alert(s)",
            report.users_checked,
            report.schedule_conflicts,
            report.conflict_alerts_sent,
            report.long_gap_alerts_sent,
        )
        return report
