"""FastAPI application: entry point for the session conflict engine."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Response
from fastapi.responses import JSONResponse

from conflict_engine.api_errors import build_error_response, register_exception_handlers
from conflict_engine.config import settings
from conflict_engine.domain.bus import EventBus
from conflict_engine.domain.errors import ConflictDetectedError
from conflict_engine.domain.handlers import HandlerRegistry
from conflict_engine.domain.models import (
    Artifact,
    ConflictCheckRequest,
    ConflictDetectionResult,
    CreateEventRequest,
    DailySweepReport,
    Event,
    EventInput,
    EventUpdate,
    HourlySweepReport,
    ProposedSession,
    RSVPRequest,
    ScheduleConflict,
    SelectAlternativeRequest,
    TimelineEntry,
    UpdateEventRequest,
    UserPreferences,
)
from conflict_engine.logging_config import setup_logging
from conflict_engine.repos.memory import (
    ArtifactRepository,
    EventRepository,
    IdempotencyRepository,
    TimelineRepository,
    UserPreferenceRepository,
)
from conflict_engine.services.alternatives import (
    AlternativeGenerator,
    LLMAlternativeSource,
    RuleBasedAlternativeSource,
)
from conflict_engine.services.availability import resolve_timezone
from conflict_engine.services.conflicts import ConflictFinder
from conflict_engine.services.events import EventService
from conflict_engine.services.monitor import ScheduleMonitor
from conflict_engine.services.orchestrator import ConflictOrchestrator

setup_logging(settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Session Conflict Engine")
register_exception_handlers(app)

# ── Singletons (created at import time for simplicity) ────────────────
event_bus = EventBus()
event_repo = EventRepository()
timeline_repo = TimelineRepository()
artifact_repo = ArtifactRepository()
preference_repo = UserPreferenceRepository(default_timezone=settings.default_timezone)
conflict_log = IdempotencyRepository("conflict_logs")
reschedule_log = IdempotencyRepository("reschedule_operations")
nudge_log = IdempotencyRepository("nudge_logs")

handler_registry = HandlerRegistry(bus=event_bus, timeline_repo=timeline_repo)

event_service = EventService(
    event_repo, event_bus, max_attempts=settings.transaction_max_attempts
)
conflict_finder = ConflictFinder(
    event_repo,
    window_hours=settings.conflict_window_hours,
    limit=settings.conflict_query_limit,
)

llm_source = None
if settings.openai_api_key:
    llm_source = LLMAlternativeSource(
        model=settings.generator_model,
        timeout=settings.generator_timeout_seconds,
        temperature=settings.generator_temperature,
        api_key=settings.openai_api_key,
        buffer_minutes=settings.alternative_buffer_minutes,
    )
else:
    logger.info("No OpenAI API key configured, alternatives will be rule-based")
alternative_generator = AlternativeGenerator(
    event_repo,
    primary=llm_source,
    fallback=RuleBasedAlternativeSource(),
    buffer_minutes=settings.alternative_buffer_minutes,
    max_alternatives=settings.max_alternatives,
    schedule_days=settings.schedule_context_days,
)

orchestrator = ConflictOrchestrator(
    event_repo=event_repo,
    event_service=event_service,
    finder=conflict_finder,
    generator=alternative_generator,
    preferences=preference_repo,
    artifacts=artifact_repo,
    conflict_log=conflict_log,
    reschedule_log=reschedule_log,
    bus=event_bus,
)
schedule_monitor = ScheduleMonitor(
    event_repo=event_repo,
    preferences=preference_repo,
    artifacts=artifact_repo,
    nudge_log=nudge_log,
    bus=event_bus,
    window_start_hours=settings.unconfirmed_window_start_hours,
    window_end_hours=settings.unconfirmed_window_end_hours,
    lookahead_days=settings.monitor_lookahead_days,
    query_limit=settings.monitor_query_limit,
    post_session_window_hours=settings.post_session_window_hours,
    long_gap_days=settings.long_gap_days,
)


def _conflict_response(
    exc: ConflictDetectedError,
    proposed: ProposedSession,
    conversation_id: str | None,
    timezone: str,
) -> JSONResponse:
    """409 carrying the orchestrated result (message, alternatives, conflict id)."""
    result = orchestrator.handle_event_conflict(proposed, conversation_id, timezone)
    body = build_error_response(exc)
    if result.has_conflict:
        body.update(result.model_dump(mode="json"))
    return JSONResponse(status_code=409, content=body)


# ── Routes ────────────────────────────────────────────────────────────


@app.post("/events", response_model=Event, status_code=201)
def create_event(payload: CreateEventRequest):
    """Create an event; an overlap answers 409 with suggested alternatives."""
    data = EventInput.model_validate(payload.model_dump(exclude={"timezone"}))
    try:
        event_id = event_service.create_event(data, payload.timezone)
    except ConflictDetectedError as exc:
        proposed = ProposedSession.model_validate(data.model_dump())
        return _conflict_response(exc, proposed, data.conversation_id, payload.timezone)
    return event_service.get_event(event_id)


@app.get("/events/{event_id}", response_model=Event)
def get_event(event_id: str) -> Event:
    return event_service.get_event(event_id)


@app.patch("/events/{event_id}", response_model=Event)
def update_event(event_id: str, payload: UpdateEventRequest):
    updates = EventUpdate.model_validate(
        payload.model_dump(exclude={"timezone", "check_conflicts"})
    )
    try:
        return event_service.update_event(
            event_id,
            updates,
            check_conflicts=payload.check_conflicts,
            timezone=payload.timezone,
        )
    except ConflictDetectedError as exc:
        current = event_service.get_event(event_id)
        proposed = ProposedSession(
            event_id=event_id,
            title=updates.title or current.title,
            start_time=updates.start_time or current.start_time,
            end_time=updates.end_time or current.end_time,
            participants=updates.participants or current.participants,
            created_by=current.created_by,
            conversation_id=updates.conversation_id or current.conversation_id,
        )
        return _conflict_response(
            exc, proposed, proposed.conversation_id, payload.timezone
        )


@app.delete("/events/{event_id}", status_code=204)
def delete_event(event_id: str) -> Response:
    event_service.delete_event(event_id)
    return Response(status_code=204)


@app.post("/events/{event_id}/rsvp")
def record_rsvp(event_id: str, payload: RSVPRequest) -> dict:
    status = event_service.record_rsvp(event_id, payload.user_id, payload.response)
    return {"event_id": event_id, "status": status}


@app.get("/events/{event_id}/timeline", response_model=list[TimelineEntry])
def get_timeline(event_id: str) -> list[TimelineEntry]:
    """Audit trail for an event; kept after deletion."""
    return timeline_repo.list_for_event(event_id)


@app.post("/conflicts/check", response_model=ConflictDetectionResult)
def check_conflict(payload: ConflictCheckRequest) -> ConflictDetectionResult:
    return orchestrator.handle_event_conflict(
        payload.proposed,
        payload.conversation_id,
        payload.timezone,
        correlation_id=payload.correlation_id,
    )


@app.post("/conflicts/{conflict_id}/select")
def select_alternative(conflict_id: str, payload: SelectAlternativeRequest) -> dict:
    applied = orchestrator.handle_alternative_selection(
        conflict_id,
        payload.alternative_index,
        payload.conversation_id,
        payload.user_id,
    )
    return {"conflict_id": conflict_id, "applied": applied}


@app.get("/conversations/{conversation_id}/artifacts", response_model=list[Artifact])
def list_artifacts(conversation_id: str) -> list[Artifact]:
    return artifact_repo.list_for_conversation(conversation_id)


@app.put("/users/{user_id}/preferences", response_model=UserPreferences)
def set_preferences(user_id: str, payload: UserPreferences) -> UserPreferences:
    if payload.timezone is not None:
        resolve_timezone(payload.timezone)
    preference_repo.set(user_id, payload)
    return payload


@app.get("/users/{user_id}/schedule-conflicts", response_model=list[ScheduleConflict])
def get_schedule_conflicts(user_id: str) -> list[ScheduleConflict]:
    return schedule_monitor.monitor_schedule_conflicts(user_id)


@app.post("/tick", response_model=HourlySweepReport)
def tick() -> HourlySweepReport:
    """Run the hourly sweep once: unconfirmed-session reminders and note prompts."""
    return schedule_monitor.process_hourly()


@app.post("/tick/daily", response_model=DailySweepReport)
def tick_daily() -> DailySweepReport:
    """Run the daily sweep once: schedule-conflict and long-gap alerts."""
    return schedule_monitor.process_daily()
