"""Interval algebra used by every conflict check.

Boundary policy: ranges that only touch (one ends exactly when the other
starts) do not conflict, and a zero-duration range never conflicts with
anything. Primary conflict detection uses no buffer; the buffered variant is
only for vetting alternative slots.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum

DEFAULT_MINIMUM_BUFFER = 15  # minutes


def overlaps(
    a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime
) -> bool:
    """Return True iff the two ranges share a positive amount of time."""
    if a_start == a_end or b_start == b_end:
        return False
    return a_start < b_end and b_start < a_end


def overlaps_with_buffer(
    a_start: datetime,
    a_end: datetime,
    b_start: datetime,
    b_end: datetime,
    buffer_minutes: int,
) -> bool:
    """Like :func:`overlaps` after widening both ranges by *buffer_minutes* on each side."""
    if a_start == a_end or b_start == b_end:
        return False
    pad = timedelta(minutes=buffer_minutes)
    return overlaps(a_start - pad, a_end + pad, b_start - pad, b_end + pad)


def overlap_minutes(
    a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime
) -> int:
    if not overlaps(a_start, a_end, b_start, b_end):
        return 0
    shared = min(a_end, b_end) - max(a_start, b_start)
    return round(shared.total_seconds() / 60)


class ProximityType(StrEnum):
    OVERLAP = "overlap"
    BACK_TO_BACK = "back_to_back"
    INSUFFICIENT_BUFFER = "insufficient_buffer"


class Severity(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True)
class Proximity:
    type: ProximityType
    severity: Severity
    gap_minutes: int = 0


def classify_proximity(
    proposed_start: datetime,
    proposed_end: datetime,
    existing_start: datetime,
    existing_end: datetime,
    minimum_buffer: int = DEFAULT_MINIMUM_BUFFER,
) -> Proximity | None:
    """Describe how close a proposed range sits to an existing one.

    Returns ``None`` when the ranges are at least *minimum_buffer* minutes
    apart (or either is zero-duration).
    """
    if proposed_start == proposed_end or existing_start == existing_end:
        return None
    if overlaps(proposed_start, proposed_end, existing_start, existing_end):
        return Proximity(ProximityType.OVERLAP, Severity.HIGH)
    if proposed_start == existing_end or proposed_end == existing_start:
        return Proximity(ProximityType.BACK_TO_BACK, Severity.MEDIUM)

    if proposed_start > existing_end:
        gap = proposed_start - existing_end
    else:
        gap = existing_start - proposed_end
    gap_minutes = gap.total_seconds() / 60
    if gap_minutes < minimum_buffer:
        return Proximity(
            ProximityType.INSUFFICIENT_BUFFER, Severity.LOW, round(gap_minutes)
        )
    return None
