"""FastAPI route definitions for the ReleasePilot API."""

from __future__ import annotations

from releasepilot.web.routes.builds import BuildResponse, create_builds_router
from releasepilot.web.routes.health import HealthResponse, ReadinessResponse, create_health_router
from releasepilot.web.routes.releases import (
    ActivityResponse,
    CycleResponse,
    ReleaseCreate,
    create_releases_router,
)
from releasepilot.web.routes.submissions import SubmissionResponse, create_submissions_router
from releasepilot.web.routes.tasks import TaskResponse, create_tasks_router

__all__ = [
    # Builds
    "BuildResponse",
    "create_builds_router",
    # Health
    "HealthResponse",
    "ReadinessResponse",
    "create_health_router",
    # Releases
    "ActivityResponse",
    "CycleResponse",
    "ReleaseCreate",
    "create_releases_router",
    # Submissions
    "SubmissionResponse",
    "create_submissions_router",
    # Tasks
    "TaskResponse",
    "create_tasks_router",
]
