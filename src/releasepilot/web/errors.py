"""Translation of domain errors into JSON responses.

Routes never catch domain errors themselves; the handlers registered here
map each ``ReleasePilotError`` to its ``status_code`` with a body of the
form ``{"error": <class name>, "detail": <message>, "context": {...}}``.
Optimistic locking conflicts that escape a service surface as
LockContention.
"""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm.exc import StaleDataError

from releasepilot.errors import LockContention, ReleasePilotError
from releasepilot.logging import get_logger

logger = get_logger(__name__)


def _context(details: dict[str, Any]) -> dict[str, Any]:
    return {key: getattr(value, "value", value) for key, value in details.items()}


async def handle_domain_error(request: Request, exc: ReleasePilotError) -> JSONResponse:
    logger.info(
        "request_rejected",
        path=request.url.path,
        error=exc.code,
        status_code=exc.status_code,
        message=exc.message,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code, "detail": exc.message, "context": _context(exc.details)},
    )


async def handle_stale_data(request: Request, exc: StaleDataError) -> JSONResponse:
    logger.warning("request_write_conflict", path=request.url.path, error=str(exc))
    conflict = LockContention("unknown")
    return JSONResponse(
        status_code=conflict.status_code,
        content={
            "error": conflict.code,
            "detail": "The record was modified concurrently; retry the request",
            "context": {},
        },
    )


def register_error_handlers(app: FastAPI) -> None:
    """Install the domain error handlers on an application."""
    app.add_exception_handler(ReleasePilotError, handle_domain_error)  # type: ignore[arg-type]
    app.add_exception_handler(StaleDataError, handle_stale_data)  # type: ignore[arg-type]
