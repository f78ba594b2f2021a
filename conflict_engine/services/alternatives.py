"""Alternative time slots for a conflicting session.

Two sources implement the same ``AlternativeSource`` capability: an
LLM-backed one that is advisory only, and a deterministic rule-based one.
``AlternativeGenerator`` asks the LLM source first, re-validates every
candidate it returns against the user's schedule and working hours, and falls
back to the rule-based source whenever the LLM path fails or leaves nothing.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Protocol

import openai
from dateutil import tz
from dateutil.relativedelta import relativedelta
from pydantic import AwareDatetime, BaseModel, Field, ValidationError, model_validator

from conflict_engine.domain.models import (
    AlternativeSlot,
    ConflictContext,
    DayType,
    ScheduleBlock,
    TimeOfDay,
)
from conflict_engine.repos.memory import EventRepository
from conflict_engine.services.availability import (
    day_type_for,
    describe_working_hours,
    is_within_working_hours,
    time_of_day_for,
    to_local,
)
from conflict_engine.services.conflicts import parse_event_document
from conflict_engine.services.messages import format_long
from conflict_engine.services.time_ranges import classify_proximity, overlaps_with_buffer

logger = logging.getLogger(__name__)

MAX_SCHEDULE_BLOCKS = 20

_SYSTEM_PROMPT = """\
You are a scheduling assistant for a tutoring service. You propose alternative \
times for a session that conflicts with existing appointments. Respond with ONLY \
a JSON object, no other text.\
"""


class AlternativeSource(Protocol):
    name: str

    def propose(
        self, context: ConflictContext, schedule: list[ScheduleBlock]
    ) -> list[AlternativeSlot]: ...


# ---------------------------------------------------------------------------
# Response schema for the LLM source
# ---------------------------------------------------------------------------


class GeneratedSlot(BaseModel):
    start_time: AwareDatetime
    end_time: AwareDatetime
    reason: str = Field(min_length=1)
    score: float = Field(ge=0, le=100)
    day_type: DayType
    time_of_day: TimeOfDay

    @model_validator(mode="after")
    def _end_after_start(self) -> GeneratedSlot:
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class GeneratedAlternatives(BaseModel):
    alternatives: list[GeneratedSlot] = Field(min_length=2, max_length=5)


def parse_generator_response(text: str) -> list[AlternativeSlot]:
    """Parse a raw generator reply; any schema violation rejects the whole reply."""
    parsed = GeneratedAlternatives.model_validate_json(text)
    return [
        AlternativeSlot(
            start_time=slot.start_time.astimezone(timezone.utc),
            end_time=slot.end_time.astimezone(timezone.utc),
            reason=slot.reason,
            score=slot.score,
            day_type=slot.day_type,
            time_of_day=slot.time_of_day,
        )
        for slot in parsed.alternatives
    ]


# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------


def describe_schedule(schedule: list[ScheduleBlock], timezone: str) -> str:
    if not schedule:
        return "No scheduled events in the next 7 days (very flexible)"
    return "\n".join(
        f"- {block.title}: {format_long(block.start, timezone)} - "
        f"{format_long(block.end, timezone)}"
        for block in schedule[:MAX_SCHEDULE_BLOCKS]
    )


def build_conflict_resolution_prompt(
    context: ConflictContext, schedule: list[ScheduleBlock], buffer_minutes: int
) -> str:
    tz_name = context.timezone
    conflict_list = "\n".join(
        f"- {e.title}: {format_long(e.start_time, tz_name)} - "
        f"{format_long(e.end_time, tz_name)}"
        for e in context.conflicting_events
    )
    return f"""\
You are helping reschedule a tutoring session that conflicts with existing appointments.

Proposed session:
- Start: {format_long(context.proposed_start_time, tz_name)} ({tz_name})
- End: {format_long(context.proposed_end_time, tz_name)} ({tz_name})
- Duration: {context.session_duration} minutes

Conflicting events:
{conflict_list}

User's schedule (next 7 days):
{describe_schedule(schedule, tz_name)}

User's working hours:
{describe_working_hours(context.working_hours, tz_name)}

Requirements:
1. Suggest 2-5 alternative times that do NOT conflict with the schedule above.
2. Only suggest times that start and end within the working hours shown above.
3. Keep a {buffer_minutes}-minute buffer from other sessions and from the proposed time.
4. Time of day: morning (before 11 AM), midday (11 AM - 2 PM), afternoon (2-5 PM),
   evening (after 5 PM). Prefer weekdays over weekends.
5. Keep the same duration ({context.session_duration} minutes).

Return JSON:
{{
  "alternatives": [
    {{
      "start_time": "ISO 8601 with UTC offset",
      "end_time": "ISO 8601 with UTC offset",
      "reason": "Brief explanation (1-2 sentences)",
      "score": 0-100 (higher = better fit),
      "day_type": "weekday" | "weekend",
      "time_of_day": "morning" | "midday" | "afternoon" | "evening"
    }}
  ]
}}"""


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------


def _complete_with_llm(
    prompt: str,
    *,
    model: str,
    timeout: float,
    temperature: float,
    api_key: str | None,
) -> str:
    """Call OpenAI once, bounded by *timeout* seconds, and return the raw reply."""
    client = openai.OpenAI(api_key=api_key, timeout=timeout, max_retries=0)
    response = client.chat.completions.create(
        model=model,
        messages=[
            {"role": "system", "content": _SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ],
        temperature=temperature,
        max_tokens=800,
        response_format={"type": "json_object"},
    )
    if not response.choices:
        raise ValueError("no choices in response from alternative generator")
    content = response.choices[0].message.content
    if not content:
        raise ValueError("empty response from alternative generator")
    return content


class LLMAlternativeSource:
    name = "llm"

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        timeout: float = 8.0,
        temperature: float = 0.7,
        api_key: str | None = None,
        buffer_minutes: int = 15,
    ) -> None:
        self.model = model
        self.timeout = timeout
        self.temperature = temperature
        self.api_key = api_key
        self.buffer_minutes = buffer_minutes

    def propose(
        self, context: ConflictContext, schedule: list[ScheduleBlock]
    ) -> list[AlternativeSlot]:
        prompt = build_conflict_resolution_prompt(context, schedule, self.buffer_minutes)
        text = _complete_with_llm(
            prompt,
            model=self.model,
            timeout=self.timeout,
            temperature=self.temperature,
            api_key=self.api_key,
        )
        return parse_generator_response(text)


def _local_slot(
    local_start: datetime, duration: timedelta, reason: str, score: float
) -> AlternativeSlot:
    local_start = tz.resolve_imaginary(local_start)
    start = local_start.astimezone(timezone.utc)
    return AlternativeSlot(
        start_time=start,
        end_time=start + duration,
        reason=reason,
        score=score,
        day_type=day_type_for(local_start),
        time_of_day=time_of_day_for(local_start.hour),
    )


class RuleBasedAlternativeSource:
    """Three fixed offsets from the proposed start, computed on the local calendar."""

    name = "rule_based"

    def propose(
        self, context: ConflictContext, schedule: list[ScheduleBlock]
    ) -> list[AlternativeSlot]:
        local = to_local(context.proposed_start_time, context.timezone)
        duration = timedelta(minutes=context.session_duration)
        at = dict(minute=0, second=0, microsecond=0)
        return [
            _local_slot(
                local + relativedelta(days=+1),
                duration,
                "Same time tomorrow - easiest to remember",
                80,
            ),
            _local_slot(
                local + relativedelta(days=+2, hour=10, **at),
                duration,
                "Morning slot for better focus",
                85,
            ),
            _local_slot(
                local + relativedelta(days=+3, hour=14, **at),
                duration,
                "Afternoon session with more notice",
                75,
            ),
        ]


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------


class AlternativeGenerator:
    def __init__(
        self,
        event_repo: EventRepository,
        primary: AlternativeSource | None = None,
        fallback: AlternativeSource | None = None,
        buffer_minutes: int = 15,
        max_alternatives: int = 3,
        schedule_days: int = 7,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.event_repo = event_repo
        self.primary = primary
        self.fallback = fallback or RuleBasedAlternativeSource()
        self.buffer_minutes = buffer_minutes
        self.max_alternatives = max_alternatives
        self.schedule_days = schedule_days
        self._now = clock or (lambda: datetime.now(timezone.utc))

    def load_schedule(self, context: ConflictContext) -> list[ScheduleBlock]:
        """The user's blocks from now until a week past the proposed start.

        Conflicting events are always included, even if they start before now.
        """
        now = self._now()
        horizon = max(now, context.proposed_start_time) + timedelta(days=self.schedule_days)
        documents = self.event_repo.query(
            participant=context.user_id,
            start_from=now,
            start_to=horizon,
            order_by_start=True,
        )
        blocks: dict[str, ScheduleBlock] = {}
        for doc in documents:
            if doc.get("id") == context.exclude_event_id:
                continue
            parsed = parse_event_document(doc)
            if parsed is not None:
                blocks[parsed.id] = parsed.to_block()
        for conflicting in context.conflicting_events:
            blocks.setdefault(conflicting.id, conflicting.to_block())
        return sorted(blocks.values(), key=lambda b: b.start)

    def generate(self, context: ConflictContext) -> list[AlternativeSlot]:
        schedule = self.load_schedule(context)

        if self.primary is None:
            logger.info("No alternative generator configured, using rule-based alternatives")
            return self.fallback_alternatives(context, schedule)

        try:
            candidates = self.primary.propose(context, schedule)
        except (openai.OpenAIError, ValidationError, ValueError, TimeoutError) as exc:
            logger.warning(
                "Alternative generator %s failed (%s: %s), using rule-based alternatives",
                self.primary.name,
                type(exc).__name__,
                exc,
            )
            return self.fallback_alternatives(context, schedule)
        except Exception:
            logger.exception(
                "Alternative generator %s crashed, using rule-based alternatives",
                self.primary.name,
            )
            return self.fallback_alternatives(context, schedule)

        valid = self.validate(candidates, context, schedule)
        if not valid:
            logger.warning(
                "All %d generated alternatives failed validation, using rule-based alternatives",
                len(candidates),
            )
            return self.fallback_alternatives(context, schedule)

        logger.info(
            "Generated %d alternatives (scores %s)",
            len(valid),
            [slot.score for slot in valid],
        )
        return valid

    def validate(
        self,
        candidates: list[AlternativeSlot],
        context: ConflictContext,
        schedule: list[ScheduleBlock],
    ) -> list[AlternativeSlot]:
        """Drop invalid candidates, dedupe by exact range, rank by score, cap."""
        now = self._now()
        seen: set[tuple[datetime, datetime]] = set()
        kept: list[AlternativeSlot] = []
        for slot in candidates:
            problem = self.rejection_reason(slot, context, schedule, now)
            if problem is not None:
                logger.info("Discarding alternative %s: %s", slot.start_time.isoformat(), problem)
                continue
            key = (slot.start_time, slot.end_time)
            if key in seen:
                continue
            seen.add(key)
            kept.append(slot)
        kept.sort(key=lambda s: s.score, reverse=True)
        return kept[: self.max_alternatives]

    def rejection_reason(
        self,
        slot: AlternativeSlot,
        context: ConflictContext,
        schedule: list[ScheduleBlock],
        now: datetime,
    ) -> str | None:
        if slot.start_time < now:
            return "starts in the past"
        if overlaps_with_buffer(
            slot.start_time,
            slot.end_time,
            context.proposed_start_time,
            context.proposed_end_time,
            self.buffer_minutes,
        ):
            return "too close to the proposed time"
        for block in schedule:
            if overlaps_with_buffer(
                slot.start_time, slot.end_time, block.start, block.end, self.buffer_minutes
            ):
                proximity = classify_proximity(
                    slot.start_time,
                    slot.end_time,
                    block.start,
                    block.end,
                    minimum_buffer=2 * self.buffer_minutes,
                )
                kind = proximity.type if proximity else "buffer"
                return f"{kind} with {block.title!r}"
        for endpoint in (slot.start_time, slot.end_time):
            if not is_within_working_hours(endpoint, context.working_hours, context.timezone):
                return "outside working hours"
        return None

    def fallback_alternatives(
        self, context: ConflictContext, schedule: list[ScheduleBlock]
    ) -> list[AlternativeSlot]:
        slots = self.fallback.propose(context, schedule)
        now = self._now()
        for slot in slots:
            problem = self.rejection_reason(slot, context, schedule, now)
            if problem is not None:
                # Kept anyway; applying a selection re-checks conflicts transactionally.
                logger.warning(
                    "Rule-based alternative %s is not clean: %s",
                    slot.start_time.isoformat(),
                    problem,
                )
        logger.info("Generated %d rule-based alternatives", len(slots))
        return slots
