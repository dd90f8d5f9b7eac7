"""Request logging middleware for ReleasePilot.

Every request gets a correlation id (taken from ``X-Correlation-ID`` or
generated) that is attached to all log lines emitted while the request is
handled and echoed back in the response headers. The calling actor from
``X-Actor-Id`` is bound alongside it so audit questions ("who paused this
release?") can be answered from the logs too.

Health probes are logged at debug level to keep them out of INFO streams.
"""

from __future__ import annotations

import time
import uuid
from typing import TYPE_CHECKING

import structlog
from starlette.middleware.base import BaseHTTPMiddleware

from releasepilot.logging import get_logger, set_correlation_id

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from starlette.requests import Request
    from starlette.responses import Response

logger = get_logger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"
ACTOR_HEADER = "X-Actor-Id"
QUIET_PREFIXES = ("/health",)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs each request with its duration, correlation id and actor."""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        set_correlation_id(correlation_id)
        actor_id = request.headers.get(ACTOR_HEADER)
        if actor_id:
            structlog.contextvars.bind_contextvars(actor_id=actor_id)

        path = request.url.path
        log = logger.debug if path.startswith(QUIET_PREFIXES) else logger.info
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "request_failed",
                method=request.method,
                path=path,
                duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
                error=str(exc),
                exc_info=True,
            )
            raise
        finally:
            set_correlation_id(None)
            structlog.contextvars.unbind_contextvars("actor_id")

        log(
            "request_completed",
            method=request.method,
            path=path,
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
        )
        response.headers[CORRELATION_HEADER] = correlation_id
        return response
