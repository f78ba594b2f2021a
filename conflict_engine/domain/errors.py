"""Error taxonomy for the scheduling core.

Every error carries a stable ``code`` so callers (and the HTTP layer) can tell
input problems, contention and detected conflicts apart without string
matching on messages.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from conflict_engine.domain.models import ConflictingEvent


class SchedulingError(Exception):
    """Base class for all scheduling-core errors."""

    code = "SCHEDULING_ERROR"
    # Retrying the same request may succeed.
    retryable = False

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.code
        super().__init__(f"{self.code}: {self.detail}")


class InvalidInputError(SchedulingError):
    code = "INVALID_INPUT"


class TimezoneRequiredError(InvalidInputError):
    code = "TIMEZONE_REQUIRED"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or "timezone is required for conflict checking")


class InvalidTimeRangeError(InvalidInputError):
    code = "INVALID_TIME_RANGE"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or "end_time must be after start_time")


class EventNotFoundError(SchedulingError):
    code = "EVENT_NOT_FOUND"

    def __init__(self, event_id: str) -> None:
        self.event_id = event_id
        super().__init__(f"event {event_id} does not exist")


class ConflictDetectedError(SchedulingError):
    """A business outcome, not a bug: the proposed range collides."""

    code = "CONFLICT_DETECTED"

    def __init__(self, conflicting_events: list[ConflictingEvent]) -> None:
        self.conflicting_events = conflicting_events
        titles = ", ".join(e.title for e in conflicting_events)
        super().__init__(f"Overlaps with existing events: {titles}")

    @property
    def titles(self) -> list[str]:
        return [e.title for e in self.conflicting_events]


class ContentionError(SchedulingError):
    """A concurrent writer committed first; the transaction body may be re-run."""

    code = "CONTENTION"
    retryable = True


class AlreadyExistsError(SchedulingError):
    """A create-only write hit an existing key."""

    code = "ALREADY_EXISTS"

    def __init__(self, collection: str, key: str) -> None:
        self.collection = collection
        self.key = key
        super().__init__(f"{collection}/{key} already exists")
