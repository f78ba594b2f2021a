"""FastAPI exception handlers for scheduling errors.

Every ``SchedulingError`` is answered with::

    {"error": "ErrorClassName", "code": "ERROR_CODE", "detail": "..."}

and, for detected conflicts, a ``conflicting_events`` list.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from conflict_engine.domain.errors import (
    AlreadyExistsError,
    ConflictDetectedError,
    ContentionError,
    EventNotFoundError,
    InvalidInputError,
    SchedulingError,
)

logger = logging.getLogger(__name__)

RETRY_AFTER_SECONDS = "1"

# Checked in order, most specific first.
ERROR_STATUS_CODES: dict[type[SchedulingError], int] = {
    EventNotFoundError: 404,
    ConflictDetectedError: 409,
    AlreadyExistsError: 409,
    ContentionError: 503,
    InvalidInputError: 400,
    SchedulingError: 500,
}


def get_status_code_for_error(error: SchedulingError) -> int:
    for error_class, status_code in ERROR_STATUS_CODES.items():
        if isinstance(error, error_class):
            return status_code
    return 500


def build_error_response(error: SchedulingError) -> dict[str, Any]:
    detail = error.detail
    if error.retryable:
        detail = "The schedule changed while saving, please try again"
    body: dict[str, Any] = {
        "error": error.__class__.__name__,
        "code": error.code,
        "detail": detail,
    }
    if isinstance(error, ConflictDetectedError):
        body["conflicting_events"] = [
            e.model_dump(mode="json") for e in error.conflicting_events
        ]
    return body


async def scheduling_error_handler(request: Request, exc: SchedulingError) -> JSONResponse:
    status_code = get_status_code_for_error(exc)
    if status_code >= 500:
        logger.error(
            "Server error: %s (code=%s, status=%d)", exc.detail, exc.code, status_code
        )
    else:
        logger.warning(
            "Client error: %s (code=%s, status=%d)", exc.detail, exc.code, status_code
        )
    headers = {"Retry-After": RETRY_AFTER_SECONDS} if exc.retryable else None
    return JSONResponse(
        status_code=status_code, content=build_error_response(exc), headers=headers
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(SchedulingError, scheduling_error_handler)
