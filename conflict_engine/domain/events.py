"""Domain events emitted during the session lifecycle."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class EventCreated(BaseModel):
    """Fired when a new Event is persisted."""

    event_id: str


class EventUpdated(BaseModel):
    """Fired after fields other than the time range change."""

    event_id: str
    fields: list[str]


class EventRescheduled(BaseModel):
    """Fired when an event's start/end move."""

    event_id: str
    previous_start: datetime
    previous_end: datetime
    new_start: datetime
    new_end: datetime


class EventDeleted(BaseModel):
    event_id: str


class RSVPRecorded(BaseModel):
    event_id: str
    user_id: str
    response: str
    status: str


class ConflictDetected(BaseModel):
    """Fired once per logged conflict, after the warning has been posted."""

    conflict_id: str
    user_id: str
    conflicting_event_ids: list[str]
    alternatives_count: int


class AlternativeApplied(BaseModel):
    """Fired when a selected alternative has been written to the event."""

    event_id: str
    conflict_id: str
    alternative_index: int
    user_id: str


class NudgeSent(BaseModel):
    event_id: str
    nudge_type: str
    artifact_id: str
