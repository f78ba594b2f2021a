"""Domain event handlers, wired up at application startup."""

from __future__ import annotations

from conflict_engine.domain.bus import EventBus
from conflict_engine.domain.events import (
    AlternativeApplied,
    ConflictDetected,
    EventCreated,
    EventDeleted,
    EventRescheduled,
    EventUpdated,
    NudgeSent,
    RSVPRecorded,
)
from conflict_engine.domain.models import TimelineEntry, TimelineEntryType
from conflict_engine.repos.memory import TimelineRepository


class HandlerRegistry:
    """Wires domain-event handlers to the bus; every handler feeds the audit timeline."""

    def __init__(self, bus: EventBus, timeline_repo: TimelineRepository) -> None:
        self.bus = bus
        self.timeline_repo = timeline_repo
        self._register()

    def _register(self) -> None:
        self.bus.subscribe(EventCreated, self.on_event_created)
        self.bus.subscribe(EventUpdated, self.on_event_updated)
        self.bus.subscribe(EventRescheduled, self.on_event_rescheduled)
        self.bus.subscribe(EventDeleted, self.on_event_deleted)
        self.bus.subscribe(RSVPRecorded, self.on_rsvp_recorded)
        self.bus.subscribe(ConflictDetected, self.on_conflict_detected)
        self.bus.subscribe(AlternativeApplied, self.on_alternative_applied)
        self.bus.subscribe(NudgeSent, self.on_nudge_sent)

    def _record(self, event_id: str, type_: TimelineEntryType, **payload) -> None:
        self.timeline_repo.add(
            TimelineEntry(event_id=event_id, type=type_, payload=payload)
        )

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def on_event_created(self, event: EventCreated) -> None:
        self._record(event.event_id, TimelineEntryType.CREATED)

    def on_event_updated(self, event: EventUpdated) -> None:
        self._record(event.event_id, TimelineEntryType.UPDATED, fields=event.fields)

    def on_event_rescheduled(self, event: EventRescheduled) -> None:
        self._record(
            event.event_id,
            TimelineEntryType.RESCHEDULED,
            previous_start=event.previous_start.isoformat(),
            previous_end=event.previous_end.isoformat(),
            new_start=event.new_start.isoformat(),
            new_end=event.new_end.isoformat(),
        )

    def on_event_deleted(self, event: EventDeleted) -> None:
        self._record(event.event_id, TimelineEntryType.DELETED)

    def on_rsvp_recorded(self, event: RSVPRecorded) -> None:
        self._record(
            event.event_id,
            TimelineEntryType.RSVP_RECORDED,
            user_id=event.user_id,
            response=event.response,
            status=event.status,
        )

    def on_conflict_detected(self, event: ConflictDetected) -> None:
        # Conflicts found before creation have no event of their own; the
        # timeline of every event they collided with gets the entry instead.
        for event_id in event.conflicting_event_ids:
            self._record(
                event_id,
                TimelineEntryType.CONFLICT_DETECTED,
                conflict_id=event.conflict_id,
                user_id=event.user_id,
                alternatives_count=event.alternatives_count,
            )

    def on_alternative_applied(self, event: AlternativeApplied) -> None:
        self._record(
            event.event_id,
            TimelineEntryType.ALTERNATIVE_APPLIED,
            conflict_id=event.conflict_id,
            alternative_index=event.alternative_index,
            user_id=event.user_id,
        )

    def on_nudge_sent(self, event: NudgeSent) -> None:
        self._record(
            event.event_id,
            TimelineEntryType.NUDGE_SENT,
            nudge_type=event.nudge_type,
            artifact_id=event.artifact_id,
        )
