"""Service for detecting scheduling conflicts between events."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable

from dateutil import parser as date_parser

from conflict_engine.domain.models import ConflictingEvent
from conflict_engine.repos.memory import EventRepository
from conflict_engine.services.time_ranges import overlaps

logger = logging.getLogger(__name__)

UNNAMED_EVENT = "Unnamed event"


def _as_instant(value: object) -> datetime | None:
    if isinstance(value, datetime):
        instant = value
    elif isinstance(value, str):
        try:
            instant = date_parser.isoparse(value)
        except (ValueError, OverflowError):
            return None
    else:
        return None
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


def parse_event_document(doc: dict) -> ConflictingEvent | None:
    """Project a stored event document, or return None if its timestamps are unusable."""
    event_id = doc.get("id", "?")
    raw_start, raw_end = doc.get("start_time"), doc.get("end_time")
    if raw_start is None or raw_end is None:
        logger.warning("Event %s is missing timestamps, skipping", event_id)
        return None

    start, end = _as_instant(raw_start), _as_instant(raw_end)
    if start is None or end is None:
        logger.error("Event %s has invalid timestamps, skipping", event_id)
        return None

    return ConflictingEvent(
        id=event_id,
        title=doc.get("title") or UNNAMED_EVENT,
        start_time=start,
        end_time=end,
    )


def find_conflicts(
    new_start: datetime,
    new_end: datetime,
    documents: Iterable[dict],
    exclude_event_id: str | None = None,
) -> list[ConflictingEvent]:
    """Return stored events that overlap with the given time range.

    Overlap rule: conflict if new_start < existing.end AND existing.start < new_end.
    Exact boundary touches and zero-duration ranges are NOT conflicts.
    Documents with corrupt timestamps are skipped.
    """
    conflicts: list[ConflictingEvent] = []
    for doc in documents:
        if exclude_event_id is not None and doc.get("id") == exclude_event_id:
            continue
        existing = parse_event_document(doc)
        if existing is None:
            continue
        if overlaps(new_start, new_end, existing.start_time, existing.end_time):
            conflicts.append(existing)
    return conflicts


class ConflictFinder:
    """Looks for conflicts in a bounded window around the proposed range."""

    def __init__(
        self,
        event_repo: EventRepository,
        window_hours: int = 24,
        limit: int = 100,
    ) -> None:
        self.event_repo = event_repo
        self.window = timedelta(hours=window_hours)
        self.limit = limit

    def find_conflicting_events(
        self,
        user_id: str,
        start_time: datetime,
        end_time: datetime,
        exclude_event_id: str | None = None,
    ) -> list[ConflictingEvent]:
        documents = self.event_repo.query(
            participant=user_id,
            start_from=start_time - self.window,
            start_to=end_time + self.window,
            limit=self.limit,
        )
        conflicts = find_conflicts(start_time, end_time, documents, exclude_event_id)
        logger.info(
            "Conflict search for %s: %d events queried, %d conflicts",
            user_id,
            len(documents),
            len(conflicts),
        )
        return conflicts
