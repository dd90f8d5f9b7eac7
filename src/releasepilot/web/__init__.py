"""REST API for ReleasePilot.

FastAPI application factory, request logging middleware and domain error
translation.
"""

from __future__ import annotations

from releasepilot.web.app import create_app
from releasepilot.web.middleware import RequestLoggingMiddleware

__all__ = [
    "create_app",
    "RequestLoggingMiddleware",
]
