"""Event store: session lifecycle with transactional conflict checking.

Every check-then-write runs inside one optimistic transaction on the events
collection. If another writer commits between our read and our commit, the
body is re-run against fresh data, so of two concurrent overlapping creates
exactly one succeeds and the other fails with ``CONFLICT_DETECTED``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable

from pydantic import ValidationError

from conflict_engine.domain.bus import EventBus
from conflict_engine.domain.errors import (
    ConflictDetectedError,
    EventNotFoundError,
    InvalidInputError,
    InvalidTimeRangeError,
)
from conflict_engine.domain.events import (
    EventCreated,
    EventDeleted,
    EventRescheduled,
    EventUpdated,
    RSVPRecorded,
)
from conflict_engine.domain.models import (
    INVALID_TIME_RANGE,
    RSVP,
    ConflictCheckResult,
    ConflictingEvent,
    Event,
    EventInput,
    EventStatus,
    EventUpdate,
    RSVPResponse,
)
from conflict_engine.repos.memory import EventRepository, Transaction
from conflict_engine.services.availability import resolve_timezone
from conflict_engine.services.conflicts import find_conflicts

logger = logging.getLogger(__name__)


def _build_event(data: dict) -> Event:
    try:
        return Event.model_validate(data)
    except ValidationError as exc:
        if any(err["type"] == INVALID_TIME_RANGE for err in exc.errors()):
            raise InvalidTimeRangeError() from exc
        raise InvalidInputError(str(exc)) from exc


class EventService:
    def __init__(
        self,
        event_repo: EventRepository,
        bus: EventBus,
        max_attempts: int = 5,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.event_repo = event_repo
        self.bus = bus
        self.max_attempts = max_attempts
        self._now = clock or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_event(self, event_id: str) -> Event:
        event = self.event_repo.get(event_id)
        if event is None:
            raise EventNotFoundError(event_id)
        return event

    def check_conflicts(
        self,
        user_id: str,
        start_time: datetime,
        end_time: datetime,
        timezone: str | None,
        exclude_event_id: str | None = None,
    ) -> ConflictCheckResult:
        """Check *user_id*'s whole calendar for events overlapping the range.

        The timezone is validated for the caller's benefit (display and
        working hours); the overlap test itself compares UTC instants.
        """
        resolve_timezone(timezone)
        if end_time <= start_time:
            raise InvalidTimeRangeError()
        documents = self.event_repo.query(participant=user_id)
        conflicts = find_conflicts(start_time, end_time, documents, exclude_event_id)
        return ConflictCheckResult(
            has_conflict=bool(conflicts), conflicting_events=conflicts
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_event(self, data: EventInput, timezone: str | None) -> str:
        resolve_timezone(timezone)
        now = self._now()
        event = _build_event(
            {
                **data.model_dump(),
                "status": EventStatus.PENDING,
                "rsvps": {},
                "created_at": now,
                "updated_at": now,
            }
        )

        def body(txn: Transaction) -> str:
            conflicts = self._conflicts_for_participants(
                txn, event.participants, event.start_time, event.end_time
            )
            if conflicts:
                raise ConflictDetectedError(conflicts)
            txn.set(event.id, event.model_dump())
            return event.id

        try:
            event_id = self.event_repo.run_transaction(body, self.max_attempts)
        except ConflictDetectedError as exc:
            logger.info(
                "Create of %r rejected, overlaps %s", event.title, exc.titles
            )
            raise

        logger.info("Event created: %s (%s)", event_id, event.title)
        self.bus.publish(EventCreated(event_id=event_id))
        return event_id

    def update_event(
        self,
        event_id: str,
        updates: EventUpdate,
        check_conflicts: bool = False,
        timezone: str | None = None,
    ) -> Event:
        """Apply *updates* and return the stored result.

        When *check_conflicts* is set and the time range or the participants
        change, the check runs in the same transaction as the write and
        *timezone* is required.
        Status is always recomputed from rsvps and participants.
        """
        checking = check_conflicts and updates.changes_availability()
        if checking:
            resolve_timezone(timezone)
        changes = updates.model_dump(exclude_none=True)

        def body(txn: Transaction) -> tuple[Event, Event]:
            doc = txn.get(event_id)
            if doc is None:
                raise EventNotFoundError(event_id)
            current = Event.model_validate(doc)

            merged = {**current.model_dump(), **changes, "updated_at": self._now()}
            updated = _build_event(merged)
            updated = updated.model_copy(update={"status": updated.derive_status()})

            if checking:
                conflicts = self._conflicts_for_participants(
                    txn,
                    updated.participants,
                    updated.start_time,
                    updated.end_time,
                    exclude_event_id=event_id,
                )
                if conflicts:
                    raise ConflictDetectedError(conflicts)

            txn.set(event_id, updated.model_dump())
            return current, updated

        current, updated = self.event_repo.run_transaction(body, self.max_attempts)
        logger.info("Event updated: %s (%s)", event_id, ", ".join(sorted(changes)))

        if (current.start_time, current.end_time) != (updated.start_time, updated.end_time):
            self.bus.publish(
                EventRescheduled(
                    event_id=event_id,
                    previous_start=current.start_time,
                    previous_end=current.end_time,
                    new_start=updated.start_time,
                    new_end=updated.end_time,
                )
            )
        other_fields = sorted(set(changes) - {"start_time", "end_time"})
        if other_fields:
            self.bus.publish(EventUpdated(event_id=event_id, fields=other_fields))
        return updated

    def delete_event(self, event_id: str) -> None:
        def body(txn: Transaction) -> None:
            if txn.get(event_id) is None:
                raise EventNotFoundError(event_id)
            txn.delete(event_id)

        self.event_repo.run_transaction(body, self.max_attempts)
        logger.info("Event deleted: %s", event_id)
        self.bus.publish(EventDeleted(event_id=event_id))

    def record_rsvp(
        self, event_id: str, user_id: str, response: RSVPResponse
    ) -> EventStatus:
        """Store *user_id*'s response and return the recomputed status."""

        def body(txn: Transaction) -> EventStatus:
            doc = txn.get(event_id)
            if doc is None:
                raise EventNotFoundError(event_id)
            event = Event.model_validate(doc)
            if user_id not in event.participants:
                raise InvalidInputError(f"{user_id} is not a participant of {event_id}")

            now = self._now()
            rsvps = {
                **event.rsvps,
                user_id: RSVP(response=response, responded_at=now),
            }
            event = event.model_copy(update={"rsvps": rsvps, "updated_at": now})
            status = event.derive_status()
            txn.set(event_id, event.model_copy(update={"status": status}).model_dump())
            return status

        status = self.event_repo.run_transaction(body, self.max_attempts)
        logger.info("RSVP recorded: %s %s -> %s", event_id, user_id, status)
        self.bus.publish(
            RSVPRecorded(
                event_id=event_id, user_id=user_id, response=response, status=status
            )
        )
        return status

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _conflicts_for_participants(
        self,
        txn: Transaction,
        participants: list[str],
        start_time: datetime,
        end_time: datetime,
        exclude_event_id: str | None = None,
    ) -> list[ConflictingEvent]:
        seen: dict[str, ConflictingEvent] = {}
        for user_id in participants:
            documents = txn.query(participant=user_id)
            for conflict in find_conflicts(
                start_time, end_time, documents, exclude_event_id
            ):
                seen.setdefault(conflict.id, conflict)
        return list(seen.values())
