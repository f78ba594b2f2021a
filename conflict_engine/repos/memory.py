"""In-memory repositories standing in for the document store.

Events are kept as raw documents (plain dicts) so that readers have to parse
them defensively, the same way they would with a schemaless store. Writes to
the events collection go through optimistic transactions; idempotency guards
use create-only writes that fail distinctly when the key already exists.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable, TypeVar

from conflict_engine.domain.errors import AlreadyExistsError, ContentionError
from conflict_engine.domain.models import (
    Artifact,
    ArtifactKind,
    Event,
    TimelineEntry,
    UserPreferences,
    WorkingHours,
    default_working_hours,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _in_window(
    doc: dict, start_from: datetime | None, start_to: datetime | None
) -> bool:
    if start_from is None and start_to is None:
        return True
    start = doc.get("start_time")
    # Range filters only ever match documents whose field has the right type.
    if not isinstance(start, datetime):
        return False
    if start_from is not None and start < start_from:
        return False
    if start_to is not None and start > start_to:
        return False
    return True


def _start_sort_key(doc: dict) -> Any:
    start = doc.get("start_time")
    return (0, start) if isinstance(start, datetime) else (1, None)


class EventRepository:
    """Dict-backed events collection, keyed by id, with optimistic transactions."""

    def __init__(self) -> None:
        self._store: dict[str, dict] = {}
        self._lock = threading.Lock()
        self._version = 0

    # -- plain reads/writes ------------------------------------------------

    def add(self, event: Event) -> None:
        self.put_raw(event.id, event.model_dump())

    def put_raw(self, event_id: str, doc: dict) -> None:
        with self._lock:
            self._store[event_id] = dict(doc)
            self._version += 1

    def get_raw(self, event_id: str) -> dict | None:
        with self._lock:
            doc = self._store.get(event_id)
            return dict(doc) if doc is not None else None

    def get(self, event_id: str) -> Event | None:
        doc = self.get_raw(event_id)
        if doc is None:
            return None
        return Event.model_validate({**doc, "id": event_id})

    def exists(self, event_id: str) -> bool:
        with self._lock:
            return event_id in self._store

    def delete(self, event_id: str) -> None:
        with self._lock:
            if self._store.pop(event_id, None) is not None:
                self._version += 1

    def list_all(self) -> list[dict]:
        with self._lock:
            return [{**doc, "id": eid} for eid, doc in self._store.items()]

    def query(
        self,
        participant: str | None = None,
        created_by: str | None = None,
        start_from: datetime | None = None,
        start_to: datetime | None = None,
        status: str | None = None,
        order_by_start: bool = False,
        limit: int | None = None,
    ) -> list[dict]:
        """Return raw documents matching every given filter.

        ``participant`` is an array-contains filter; ``start_from``/``start_to``
        bound ``start_time`` inclusively.
        """
        with self._lock:
            docs = [{**doc, "id": eid} for eid, doc in self._store.items()]
        matched = [
            doc
            for doc in docs
            if (participant is None or participant in (doc.get("participants") or []))
            and (created_by is None or doc.get("created_by") == created_by)
            and (status is None or doc.get("status") == status)
            and _in_window(doc, start_from, start_to)
        ]
        if order_by_start:
            matched.sort(key=_start_sort_key)
        if limit is not None:
            matched = matched[:limit]
        return matched

    # -- transactions ------------------------------------------------------

    def begin(self) -> Transaction:
        with self._lock:
            return Transaction(self, self._version)

    def _commit(self, txn: Transaction) -> None:
        with self._lock:
            if self._version != txn.read_version:
                raise ContentionError(
                    f"events changed during transaction (read v{txn.read_version}, "
                    f"now v{self._version})"
                )
            for event_id, doc in txn.writes.items():
                if doc is None:
                    self._store.pop(event_id, None)
                else:
                    self._store[event_id] = doc
            if txn.writes:
                self._version += 1

    def run_transaction(
        self, body: Callable[[Transaction], T], max_attempts: int = 5
    ) -> T:
        """Run *body* in a transaction, re-running it on contention.

        Any other exception raised by the body aborts the transaction and
        propagates without a retry.
        """
        for attempt in range(1, max_attempts + 1):
            txn = self.begin()
            result = body(txn)
            try:
                txn.commit()
            except ContentionError:
                if attempt == max_attempts:
                    raise
                logger.info(
                    "Transaction contention, retrying (attempt %d/%d)",
                    attempt,
                    max_attempts,
                )
                continue
            return result
        raise ContentionError("transaction attempts exhausted")


class Transaction:
    """Buffered writes over a snapshot version of the events collection."""

    def __init__(self, repo: EventRepository, read_version: int) -> None:
        self._repo = repo
        self.read_version = read_version
        self.writes: dict[str, dict | None] = {}

    def get(self, event_id: str) -> dict | None:
        if event_id in self.writes:
            doc = self.writes[event_id]
            return {**doc, "id": event_id} if doc is not None else None
        doc = self._repo.get_raw(event_id)
        return {**doc, "id": event_id} if doc is not None else None

    def query(self, **filters: Any) -> list[dict]:
        return self._repo.query(**filters)

    def set(self, event_id: str, doc: dict) -> None:
        self.writes[event_id] = dict(doc)

    def delete(self, event_id: str) -> None:
        self.writes[event_id] = None

    def commit(self) -> None:
        self._repo._commit(self)


class IdempotencyRepository:
    """A keyed collection whose ``create`` fails if the key already exists."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._store: dict[str, dict] = {}
        self._lock = threading.Lock()

    def create(self, key: str, payload: dict | None = None) -> None:
        with self._lock:
            if key in self._store:
                raise AlreadyExistsError(self.name, key)
            self._store[key] = dict(payload or {})

    def exists(self, key: str) -> bool:
        with self._lock:
            return key in self._store


class ArtifactRepository:
    """Per-conversation message store; the posting side of the messaging layer."""

    def __init__(self) -> None:
        self._by_conversation: dict[str, list[Artifact]] = defaultdict(list)
        self._lock = threading.Lock()

    def post(self, conversation_id: str, artifact: Artifact) -> str:
        if artifact.conversation_id != conversation_id:
            artifact = artifact.model_copy(update={"conversation_id": conversation_id})
        with self._lock:
            self._by_conversation[conversation_id].append(artifact)
        return artifact.id

    def list_for_conversation(self, conversation_id: str) -> list[Artifact]:
        with self._lock:
            return list(self._by_conversation.get(conversation_id, []))

    def latest_conflict(self, conversation_id: str, conflict_id: str) -> Artifact | None:
        """Most recently posted conflict artifact for *conflict_id*."""
        for artifact in reversed(self.list_for_conversation(conversation_id)):
            if (
                artifact.kind == ArtifactKind.CONFLICT
                and artifact.conflict is not None
                and artifact.conflict.conflict_id == conflict_id
            ):
                return artifact
        return None

    def clear(self) -> None:
        with self._lock:
            self._by_conversation.clear()


class UserPreferenceRepository:
    """Timezone and working-hours provider backed by a dict of preferences."""

    def __init__(self, default_timezone: str = "America/Toronto") -> None:
        self.default_timezone = default_timezone
        self._prefs: dict[str, UserPreferences] = {}

    def set(self, user_id: str, prefs: UserPreferences) -> None:
        self._prefs[user_id] = prefs

    def get_user_timezone(self, user_id: str) -> str:
        prefs = self._prefs.get(user_id)
        return (prefs.timezone if prefs and prefs.timezone else None) or self.default_timezone

    def get_user_working_hours(self, user_id: str) -> WorkingHours:
        prefs = self._prefs.get(user_id)
        if prefs is None or prefs.working_hours is None:
            return default_working_hours()
        return prefs.working_hours


class TimelineRepository:
    """List-backed store for TimelineEntry instances."""

    def __init__(self) -> None:
        self._entries: list[TimelineEntry] = []

    def add(self, entry: TimelineEntry) -> None:
        self._entries.append(entry)

    def list_for_event(self, event_id: str) -> list[TimelineEntry]:
        return sorted(
            [e for e in self._entries if e.event_id == event_id],
            key=lambda e: e.timestamp,
        )
