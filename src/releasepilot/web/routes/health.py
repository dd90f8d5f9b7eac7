"""Liveness and readiness endpoints.

``/health/ready`` runs ``SELECT 1`` and also reports whether the global
scheduler loop is running in this process.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from pydantic import BaseModel
from sqlalchemy import text

from releasepilot.logging import get_logger

logger = get_logger(__name__)


class HealthResponse(BaseModel):
    status: str


class ReadinessResponse(BaseModel):
    """Readiness of the process.

    Attributes:
        status: "ok" or "unhealthy"
        database: "connected" or "disconnected"
        scheduler: "running" or "stopped"
    """

    status: str
    database: str
    scheduler: str


def create_health_router() -> APIRouter:
    """Create the health router.

    Routes:
        GET /health/ - Liveness check
        GET /health/ready - Database and scheduler readiness
    """
    router = APIRouter(prefix="/health", tags=["health"])

    @router.get("/", response_model=HealthResponse)
    async def health() -> dict[str, Any]:
        return {"status": "ok"}

    @router.get("/ready", response_model=ReadinessResponse)
    async def readiness(request: Request) -> dict[str, Any]:
        services = request.app.state.services
        scheduler = "running" if services is not None and services.scheduler.is_running else "stopped"
        if services is None:
            return {"status": "unhealthy", "database": "disconnected", "scheduler": scheduler}

        try:
            async with services.session_factory() as session:
                await session.execute(text("SELECT 1"))
        except Exception as exc:
            logger.warning("readiness_check_failed", database="disconnected", error=str(exc))
            return {"status": "unhealthy", "database": "disconnected", "scheduler": scheduler}

        logger.debug("readiness_check_passed", database="connected")
        return {"status": "ok", "database": "connected", "scheduler": scheduler}

    return router
