"""Release task REST API endpoints.

Tasks are created by the orchestrator when a stage starts; the API only
reads them and retries failed ones.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel

from releasepilot.actors import Actor
from releasepilot.database.models.release import ReleaseStage
from releasepilot.database.models.task import TaskStatus, TaskType
from releasepilot.orchestrator.cron import CronOrchestrator
from releasepilot.web.dependencies import get_actor, get_orchestrator

logger = structlog.get_logger(__name__)


# --- Pydantic Schemas ---


class TaskResponse(BaseModel):
    """Response schema for a release task."""

    id: UUID
    release_id: UUID
    task_type: TaskType
    stage: ReleaseStage
    sequence: int
    status: TaskStatus
    conclusion: str | None
    external_id: str | None
    output: dict[str, Any] | None
    regression_cycle_id: UUID | None
    retry_count: int
    started_at: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


# --- Router ---


def create_tasks_router() -> APIRouter:
    """Create the task router.

    Routes:
        GET /releases/{id}/tasks - Tasks of a release, filterable by stage and status
        GET /tasks/{id} - One task
        POST /tasks/{id}/retry - Reset a FAILED task to PENDING
    """
    router = APIRouter(tags=["tasks"])

    @router.get("/releases/{release_id}/tasks", response_model=list[TaskResponse])
    async def list_tasks(
        release_id: UUID,
        stage: ReleaseStage | None = None,
        status: TaskStatus | None = None,
        orchestrator: CronOrchestrator = Depends(get_orchestrator),
    ) -> list[TaskResponse]:
        tasks = await orchestrator.list_tasks(release_id, stage=stage, status=status)
        logger.info(
            "tasks_listed",
            release_id=str(release_id),
            count=len(tasks),
            stage=stage.value if stage else None,
        )
        return [TaskResponse.model_validate(task) for task in tasks]

    @router.get("/tasks/{task_id}", response_model=TaskResponse)
    async def get_task(
        task_id: UUID,
        orchestrator: CronOrchestrator = Depends(get_orchestrator),
    ) -> TaskResponse:
        return TaskResponse.model_validate(await orchestrator.get_task(task_id))

    @router.post("/tasks/{task_id}/retry", response_model=TaskResponse)
    async def retry_task(
        task_id: UUID,
        orchestrator: CronOrchestrator = Depends(get_orchestrator),
        actor: Actor = Depends(get_actor),
    ) -> TaskResponse:
        task = await orchestrator.retry_task(task_id, actor)
        return TaskResponse.model_validate(task)

    return router
