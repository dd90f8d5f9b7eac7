"""Build intake endpoints: CI/CD callbacks and manual uploads."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from releasepilot.actors import Actor
from releasepilot.database.models.build import BuildSource, BuildStage, WorkflowStatus
from releasepilot.database.models.release import Platform
from releasepilot.integrations.callbacks import BuildReport, CallbackService, CiCallback, ManualUpload
from releasepilot.web.dependencies import get_actor, get_callback_service


class BuildResponse(BaseModel):
    id: UUID
    release_id: UUID
    platform: Platform
    build_stage: BuildStage
    source: BuildSource
    artifact_path: str | None
    testflight_number: str | None
    internal_track_link: str | None
    version_code: str | None
    workflow_status: WorkflowStatus | None
    job_url: str | None
    task_id: UUID | None
    regression_cycle_id: UUID | None
    consumed_at: datetime | None
    created_at: datetime

    model_config = {"from_attributes": True}


def create_builds_router() -> APIRouter:
    """Create the build router.

    Routes:
        POST /callbacks/ci - CI/CD workflow status report
        POST /releases/{id}/builds - Manual build upload
        GET /releases/{id}/builds - Builds of a release
    """
    router = APIRouter(tags=["builds"])

    @router.post("/callbacks/ci", response_model=BuildReport)
    async def ci_callback(
        body: CiCallback,
        callbacks: CallbackService = Depends(get_callback_service),
        actor: Actor = Depends(get_actor),
    ) -> BuildReport:
        return await callbacks.handle_ci_callback(body, actor)

    @router.post("/releases/{release_id}/builds", response_model=BuildReport, status_code=201)
    async def manual_upload(
        release_id: UUID,
        body: ManualUpload,
        callbacks: CallbackService = Depends(get_callback_service),
        actor: Actor = Depends(get_actor),
    ) -> BuildReport:
        return await callbacks.handle_manual_upload(release_id, body, actor)

    @router.get("/releases/{release_id}/builds", response_model=list[BuildResponse])
    async def list_builds(
        release_id: UUID,
        build_stage: BuildStage | None = None,
        platform: Platform | None = None,
        callbacks: CallbackService = Depends(get_callback_service),
    ) -> list[BuildResponse]:
        builds = await callbacks.list_builds(release_id, build_stage=build_stage, platform=platform)
        return [BuildResponse.model_validate(build) for build in builds]

    return router
