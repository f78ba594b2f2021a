"""Domain models for the session scheduling core."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import StrEnum

from pydantic import (
    AwareDatetime,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic_core import PydanticCustomError

INVALID_TIME_RANGE = "invalid_time_range"


def _check_range(start: datetime, end: datetime) -> None:
    if end <= start:
        raise PydanticCustomError(INVALID_TIME_RANGE, "end_time must be after start_time")


class EventStatus(StrEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    DECLINED = "declined"


class RSVPResponse(StrEnum):
    ACCEPT = "accept"
    DECLINE = "decline"


class DayType(StrEnum):
    WEEKDAY = "weekday"
    WEEKEND = "weekend"


class TimeOfDay(StrEnum):
    MORNING = "morning"
    MIDDAY = "midday"
    AFTERNOON = "afternoon"
    EVENING = "evening"


class ArtifactKind(StrEnum):
    CONFLICT = "conflict"
    RESCHEDULE_CONFIRMATION = "reschedule_confirmation"
    NUDGE = "nudge"


class NudgeType(StrEnum):
    UNCONFIRMED_EVENT = "unconfirmed_event_24h"
    POST_SESSION_NOTE = "post_session_note"
    LONG_GAP_ALERT = "long_gap_alert"
    SCHEDULE_CONFLICT_ALERT = "schedule_conflict_alert"


class TimelineEntryType(StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    RESCHEDULED = "rescheduled"
    DELETED = "deleted"
    RSVP_RECORDED = "rsvp_recorded"
    CONFLICT_DETECTED = "conflict_detected"
    ALTERNATIVE_APPLIED = "alternative_applied"
    NUDGE_SENT = "nudge_sent"


WEEKDAY_KEYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def _to_utc(value: datetime) -> datetime:
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Core domain models
# ---------------------------------------------------------------------------


class RSVP(BaseModel):
    response: RSVPResponse
    responded_at: AwareDatetime = Field(default_factory=_utcnow)


class Event(BaseModel):
    id: str = Field(default_factory=_new_id)
    title: str
    start_time: AwareDatetime
    end_time: AwareDatetime
    participants: list[str] = Field(min_length=1)
    created_by: str
    status: EventStatus = EventStatus.PENDING
    rsvps: dict[str, RSVP] = Field(default_factory=dict)
    conversation_id: str | None = None
    has_conflict: bool = False
    created_at: AwareDatetime = Field(default_factory=_utcnow)
    updated_at: AwareDatetime = Field(default_factory=_utcnow)

    @field_validator("start_time", "end_time")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return _to_utc(value)

    @model_validator(mode="after")
    def _check_invariants(self) -> Event:
        _check_range(self.start_time, self.end_time)
        if self.created_by not in self.participants:
            raise ValueError("created_by must be one of the participants")
        if len(set(self.participants)) != len(self.participants):
            raise ValueError("participants must be unique")
        return self

    def derive_status(self) -> EventStatus:
        """Recompute status from rsvps and participants.

        Any decline wins. Otherwise the event is confirmed once every
        participant other than the creator has accepted.
        """
        responses = {
            uid: rsvp.response
            for uid, rsvp in self.rsvps.items()
            if uid in self.participants
        }
        if RSVPResponse.DECLINE in responses.values():
            return EventStatus.DECLINED
        invitees = [uid for uid in self.participants if uid != self.created_by]
        if invitees and all(
            responses.get(uid) == RSVPResponse.ACCEPT for uid in invitees
        ):
            return EventStatus.CONFIRMED
        return EventStatus.PENDING

    def all_responded(self) -> bool:
        return all(uid in self.rsvps for uid in self.participants)


class ScheduleBlock(BaseModel):
    """Read-only projection of an Event used for overlap checks."""

    model_config = ConfigDict(frozen=True)

    event_id: str | None = None
    start: datetime
    end: datetime
    title: str


class ConflictingEvent(BaseModel):
    id: str
    title: str
    start_time: datetime
    end_time: datetime

    def to_block(self) -> ScheduleBlock:
        return ScheduleBlock(
            event_id=self.id, start=self.start_time, end=self.end_time, title=self.title
        )


class ConflictCheckResult(BaseModel):
    has_conflict: bool
    conflicting_events: list[ConflictingEvent] = Field(default_factory=list)


class WorkingHoursRange(BaseModel):
    start: str = Field(pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    end: str = Field(pattern=r"^([01]\d|2[0-3]):[0-5]\d$")


WorkingHours = dict[str, list[WorkingHoursRange]]


def default_working_hours() -> WorkingHours:
    """Mon-Fri 09:00-17:00."""
    return {
        day: [WorkingHoursRange(start="09:00", end="17:00")]
        for day in WEEKDAY_KEYS[:5]
    }


class UserPreferences(BaseModel):
    timezone: str | None = None
    working_hours: WorkingHours | None = None

    @field_validator("working_hours")
    @classmethod
    def _known_days(cls, value: WorkingHours | None) -> WorkingHours | None:
        if value is not None:
            unknown = set(value) - set(WEEKDAY_KEYS)
            if unknown:
                raise ValueError(f"unknown weekday keys: {sorted(unknown)}")
        return value


class AlternativeSlot(BaseModel):
    start_time: datetime
    end_time: datetime
    reason: str
    score: float = Field(ge=0, le=100)
    day_type: DayType
    time_of_day: TimeOfDay


class ConflictContext(BaseModel):
    proposed_start_time: datetime
    proposed_end_time: datetime
    conflicting_events: list[ConflictingEvent]
    user_id: str
    timezone: str
    session_duration: int  # minutes
    working_hours: WorkingHours = Field(default_factory=default_working_hours)
    exclude_event_id: str | None = None


class ConflictMeta(BaseModel):
    conflict_id: str
    message: str
    suggested_alternatives: list[AlternativeSlot] = Field(default_factory=list)
    created_for: str | None = None


class Artifact(BaseModel):
    """A message-like record posted into a conversation."""

    id: str = Field(default_factory=_new_id)
    conversation_id: str
    kind: ArtifactKind
    text: str
    created_at: datetime = Field(default_factory=_utcnow)
    conflict: ConflictMeta | None = None
    meta: dict = Field(default_factory=dict)


class UnconfirmedEvent(BaseModel):
    event_id: str
    title: str
    start_time: datetime
    participants: list[str]
    created_by: str
    conversation_id: str | None = None
    hours_till_start: int


class EndedSession(BaseModel):
    event_id: str
    title: str
    end_time: datetime
    created_by: str
    conversation_id: str | None = None


class LongGap(BaseModel):
    """A conversation whose most recent session ended a while ago."""

    conversation_id: str
    user_id: str
    last_event_id: str
    last_session_end: datetime
    days_since_last_session: int


class HourlySweepReport(BaseModel):
    nudges_sent: int = 0
    note_prompts_sent: int = 0


class DailySweepReport(BaseModel):
    users_checked: int = 0
    schedule_conflicts: int = 0
    conflict_alerts_sent: int = 0
    long_gap_alerts_sent: int = 0


class EventRef(BaseModel):
    id: str
    title: str


class ScheduleConflict(BaseModel):
    event1: EventRef
    event2: EventRef
    overlap_minutes: int


class TimelineEntry(BaseModel):
    id: str = Field(default_factory=_new_id)
    event_id: str
    timestamp: datetime = Field(default_factory=_utcnow)
    type: TimelineEntryType
    payload: dict = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Request / Response DTOs
# ---------------------------------------------------------------------------


class EventInput(BaseModel):
    title: str
    start_time: AwareDatetime
    end_time: AwareDatetime
    participants: list[str] = Field(min_length=1)
    created_by: str
    conversation_id: str | None = None

    @field_validator("start_time", "end_time")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return _to_utc(value)

    @model_validator(mode="after")
    def _end_after_start(self) -> EventInput:
        _check_range(self.start_time, self.end_time)
        return self


class ProposedSession(EventInput):
    """An event as proposed, possibly a move of an already persisted one."""

    event_id: str | None = None


class EventUpdate(BaseModel):
    title: str | None = None
    start_time: AwareDatetime | None = None
    end_time: AwareDatetime | None = None
    participants: list[str] | None = Field(default=None, min_length=1)
    conversation_id: str | None = None
    has_conflict: bool | None = None

    @field_validator("start_time", "end_time")
    @classmethod
    def _utc(cls, value: datetime | None) -> datetime | None:
        return _to_utc(value) if value is not None else None

    def changes_time(self) -> bool:
        return self.start_time is not None or self.end_time is not None

    def changes_availability(self) -> bool:
        """True if the update can create a new overlap for some participant."""
        return self.changes_time() or self.participants is not None


class ConflictDetectionResult(BaseModel):
    has_conflict: bool
    conflict_message: str | None = None
    alternatives: list[AlternativeSlot] = Field(default_factory=list)
    conflict_id: str | None = None
    conflicting_events: list[ConflictingEvent] = Field(default_factory=list)


class CreateEventRequest(EventInput):
    timezone: str | None = None


class UpdateEventRequest(EventUpdate):
    timezone: str | None = None
    check_conflicts: bool = True


class RSVPRequest(BaseModel):
    user_id: str
    response: RSVPResponse


class ConflictCheckRequest(BaseModel):
    proposed: ProposedSession
    conversation_id: str | None = None
    timezone: str
    correlation_id: str | None = None


class SelectAlternativeRequest(BaseModel):
    alternative_index: int
    conversation_id: str
    user_id: str
