"""Conflict orchestration: warn about a conflict once, apply a chosen alternative once."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from conflict_engine.domain.bus import EventBus
from conflict_engine.domain.errors import (
    AlreadyExistsError,
    ConflictDetectedError,
    EventNotFoundError,
)
from conflict_engine.domain.events import AlternativeApplied, ConflictDetected
from conflict_engine.domain.models import (
    Artifact,
    ArtifactKind,
    ConflictContext,
    ConflictDetectionResult,
    ConflictMeta,
    EventUpdate,
    ProposedSession,
)
from conflict_engine.repos.memory import (
    ArtifactRepository,
    EventRepository,
    IdempotencyRepository,
    UserPreferenceRepository,
)
from conflict_engine.services.alternatives import AlternativeGenerator
from conflict_engine.services.availability import resolve_timezone
from conflict_engine.services.conflicts import ConflictFinder
from conflict_engine.services.events import EventService
from conflict_engine.services.messages import (
    format_conflict_message,
    format_reschedule_confirmation,
)

logger = logging.getLogger(__name__)

BUCKET_MINUTES = 15


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def conflict_key(conversation_id: str | None, start_time: datetime) -> str:
    """Deterministic id for a conflict that has no persisted event yet.

    Proposals in the same conversation whose starts fall in the same
    15-minute UTC bucket share an id.
    """
    start = start_time.astimezone(timezone.utc)
    bucket = start.replace(
        minute=start.minute - start.minute % BUCKET_MINUTES, second=0, microsecond=0
    )
    return f"conflict_{conversation_id or 'direct'}_{bucket:%Y%m%dT%H%M}"


def default_correlation_id(
    conflict_id: str, start_time: datetime, end_time: datetime
) -> str:
    """Correlation id used when the caller supplies none: conflict id plus proposed range."""
    start = start_time.astimezone(timezone.utc)
    end = end_time.astimezone(timezone.utc)
    return f"{conflict_id}_{start:%Y%m%dT%H%M}_{end:%Y%m%dT%H%M}"


class ConflictOrchestrator:
    def __init__(
        self,
        event_repo: EventRepository,
        event_service: EventService,
        finder: ConflictFinder,
        generator: AlternativeGenerator,
        preferences: UserPreferenceRepository,
        artifacts: ArtifactRepository,
        conflict_log: IdempotencyRepository,
        reschedule_log: IdempotencyRepository,
        bus: EventBus,
    ) -> None:
        self.event_repo = event_repo
        self.event_service = event_service
        self.finder = finder
        self.generator = generator
        self.preferences = preferences
        self.artifacts = artifacts
        self.conflict_log = conflict_log
        self.reschedule_log = reschedule_log
        self.bus = bus

    def conflict_id_for(self, proposed: ProposedSession, conversation_id: str | None) -> str:
        if proposed.event_id and self.event_repo.exists(proposed.event_id):
            return proposed.event_id
        return conflict_key(conversation_id, proposed.start_time)

    def handle_event_conflict(
        self,
        proposed: ProposedSession,
        conversation_id: str | None,
        timezone: str,
        correlation_id: str | None = None,
    ) -> ConflictDetectionResult:
        """Detect conflicts for *proposed* and post one warning per correlation id.

        A repeated call with the same correlation id recomputes and returns
        the result but posts nothing. Without one, the conflict id and the
        proposed range stand in, so a different proposal posts a fresh warning.
        """
        resolve_timezone(timezone)
        user_id = proposed.created_by
        conflicting = self.finder.find_conflicting_events(
            user_id,
            proposed.start_time,
            proposed.end_time,
            exclude_event_id=proposed.event_id,
        )
        if not conflicting:
            return ConflictDetectionResult(has_conflict=False)

        conflict_id = self.conflict_id_for(proposed, conversation_id)
        duration = int((proposed.end_time - proposed.start_time).total_seconds() // 60)
        context = ConflictContext(
            proposed_start_time=proposed.start_time,
            proposed_end_time=proposed.end_time,
            conflicting_events=conflicting,
            user_id=user_id,
            timezone=timezone,
            session_duration=duration,
            working_hours=self.preferences.get_user_working_hours(user_id),
            exclude_event_id=proposed.event_id,
        )
        alternatives = self.generator.generate(context)
        message = format_conflict_message(proposed.title, conflicting, alternatives, timezone)
        result = ConflictDetectionResult(
            has_conflict=True,
            conflict_message=message,
            alternatives=alternatives,
            conflict_id=conflict_id,
            conflicting_events=conflicting,
        )

        if correlation_id is None:
            correlation_id = default_correlation_id(
                conflict_id, proposed.start_time, proposed.end_time
            )
        log_key = f"{correlation_id}__{user_id}"
        try:
            self.conflict_log.create(
                log_key,
                {
                    "conflict_id": conflict_id,
                    "user_id": user_id,
                    "conversation_id": conversation_id,
                    "conflicting_event_ids": [c.id for c in conflicting],
                    "logged_at": _utcnow(),
                },
            )
        except AlreadyExistsError:
            logger.warning("Conflict %s already logged, not posting again", log_key)
            return result

        logger.info(
            "Conflict %s for %s: %d conflicting event(s), %d alternative(s)",
            conflict_id,
            user_id,
            len(conflicting),
            len(alternatives),
        )

        if conflict_id == proposed.event_id:
            self.event_service.update_event(conflict_id, EventUpdate(has_conflict=True))

        if conversation_id:
            self.artifacts.post(
                conversation_id,
                Artifact(
                    conversation_id=conversation_id,
                    kind=ArtifactKind.CONFLICT,
                    text=message,
                    conflict=ConflictMeta(
                        conflict_id=conflict_id,
                        message=message,
                        suggested_alternatives=alternatives,
                        created_for=user_id,
                    ),
                ),
            )

        self.bus.publish(
            ConflictDetected(
                conflict_id=conflict_id,
                user_id=user_id,
                conflicting_event_ids=[c.id for c in conflicting],
                alternatives_count=len(alternatives),
            )
        )
        return result

    def handle_alternative_selection(
        self,
        conflict_id: str,
        alternative_index: int,
        conversation_id: str,
        user_id: str,
    ) -> bool:
        """Apply the chosen alternative at most once per (warning, index).

        Alternatives are read from the latest conflict warning posted for
        *conflict_id*. Returns False when the selection cannot be honoured; a
        repeated selection against the same warning returns True without
        doing anything.
        """
        artifact = self.artifacts.latest_conflict(conversation_id, conflict_id)
        if artifact is None or artifact.conflict is None:
            logger.error(
                "No conflict message for %s in conversation %s", conflict_id, conversation_id
            )
            return False

        operation_key = f"{conflict_id}_{alternative_index}_{artifact.id}"
        try:
            self.reschedule_log.create(
                operation_key,
                {
                    "conflict_id": conflict_id,
                    "artifact_id": artifact.id,
                    "alternative_index": alternative_index,
                    "user_id": user_id,
                    "conversation_id": conversation_id,
                },
            )
        except AlreadyExistsError:
            logger.warning("Alternative %s already processed", operation_key)
            return True

        alternatives = artifact.conflict.suggested_alternatives
        if not 0 <= alternative_index < len(alternatives):
            logger.error(
                "Alternative index %d out of range for %s (%d offered)",
                alternative_index,
                conflict_id,
                len(alternatives),
            )
            return False
        chosen = alternatives[alternative_index]

        if not self.event_repo.exists(conflict_id):
            logger.info(
                "Conflict %s has no persisted event, nothing to reschedule", conflict_id
            )
            return True

        tz_name = self.preferences.get_user_timezone(user_id)
        try:
            updated = self.event_service.update_event(
                conflict_id,
                EventUpdate(
                    start_time=chosen.start_time,
                    end_time=chosen.end_time,
                    has_conflict=False,
                ),
                check_conflicts=True,
                timezone=tz_name,
            )
        except ConflictDetectedError as exc:
            logger.error(
                "Alternative %s for %s now conflicts with %s",
                alternative_index,
                conflict_id,
                exc.titles,
            )
            return False
        except EventNotFoundError:
            logger.error("Event %s disappeared before rescheduling", conflict_id)
            return False

        self.artifacts.post(
            conversation_id,
            Artifact(
                conversation_id=conversation_id,
                kind=ArtifactKind.RESCHEDULE_CONFIRMATION,
                text=format_reschedule_confirmation(updated.title, updated.start_time, tz_name),
                meta={"event_id": conflict_id, "alternative_index": alternative_index},
            ),
        )
        logger.info(
            "Rescheduled %s to %s (alternative %d)",
            conflict_id,
            updated.start_time.isoformat(),
            alternative_index,
        )
        self.bus.publish(
            AlternativeApplied(
                event_id=conflict_id,
                conflict_id=conflict_id,
                alternative_index=alternative_index,
                user_id=user_id,
            )
        )
        return True
