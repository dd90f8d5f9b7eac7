"""Store submission and staged rollout endpoints.

Rollout control is addressed by release and platform: each platform has at
most one active submission per release.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from releasepilot.actors import Actor
from releasepilot.database.models.release import Platform
from releasepilot.database.models.submission import SubmissionStatus
from releasepilot.distribution.submissions import SubmissionService
from releasepilot.web.dependencies import get_actor, get_submission_service

logger = structlog.get_logger(__name__)


# --- Pydantic Schemas ---


class SubmissionCreate(BaseModel):
    platform: Platform
    phased_release: bool = False
    build_id: UUID | None = None


class SubmitRequest(BaseModel):
    """Android may choose the percentage it starts at once live."""

    rollout_percentage: float | None = None


class StoreStatusRequest(BaseModel):
    status: SubmissionStatus
    reason: str | None = None


class ReasonRequest(BaseModel):
    reason: str | None = None


class RolloutUpdate(BaseModel):
    platform: Platform
    rollout_percentage: float
    reason: str | None = None


class RolloutControl(BaseModel):
    platform: Platform
    reason: str | None = None


class SubmissionResponse(BaseModel):
    id: UUID
    release_id: UUID
    platform: Platform
    status: SubmissionStatus
    rollout_percentage: float
    phased_release: bool
    version_code: str | None
    build_id: UUID | None
    is_active: bool
    action_history: list[dict[str, Any]] = Field(default_factory=list)
    submitted_at: datetime | None
    released_at: datetime | None
    created_at: datetime

    model_config = {"from_attributes": True}


# --- Router ---


def create_submissions_router() -> APIRouter:
    """Create the submission router.

    Routes:
        POST /releases/{id}/submissions - Open (or resubmit) a platform submission
        GET /releases/{id}/submissions - Submissions of a release
        POST /submissions/{id}/submit - Send to store review
        POST /submissions/{id}/store-status - Apply a store-reported status
        POST /submissions/{id}/cancel - Withdraw a submission
        PATCH /releases/{id}/rollout - Change the rollout percentage
        PATCH /releases/{id}/rollout/pause|resume|halt - Rollout control
    """
    router = APIRouter(tags=["submissions"])

    @router.post(
        "/releases/{release_id}/submissions", response_model=SubmissionResponse, status_code=201
    )
    async def create_submission(
        release_id: UUID,
        body: SubmissionCreate,
        submissions: SubmissionService = Depends(get_submission_service),
        actor: Actor = Depends(get_actor),
    ) -> SubmissionResponse:
        submission = await submissions.create(
            release_id, body.platform, actor.id,
            phased_release=body.phased_release, build_id=body.build_id,
        )
        return SubmissionResponse.model_validate(submission)

    @router.get("/releases/{release_id}/submissions", response_model=list[SubmissionResponse])
    async def list_submissions(
        release_id: UUID,
        active_only: bool = False,
        submissions: SubmissionService = Depends(get_submission_service),
    ) -> list[SubmissionResponse]:
        rows = await submissions.list_for_release(release_id, active_only=active_only)
        return [SubmissionResponse.model_validate(row) for row in rows]

    @router.post("/submissions/{submission_id}/submit", response_model=SubmissionResponse)
    async def submit(
        submission_id: UUID,
        body: SubmitRequest | None = None,
        submissions: SubmissionService = Depends(get_submission_service),
        actor: Actor = Depends(get_actor),
    ) -> SubmissionResponse:
        percentage = body.rollout_percentage if body else None
        submission = await submissions.submit_for_review(submission_id, actor.id, percentage)
        return SubmissionResponse.model_validate(submission)

    @router.post("/submissions/{submission_id}/store-status", response_model=SubmissionResponse)
    async def store_status(
        submission_id: UUID,
        body: StoreStatusRequest,
        submissions: SubmissionService = Depends(get_submission_service),
        actor: Actor = Depends(get_actor),
    ) -> SubmissionResponse:
        submission = await submissions.apply_store_status(
            submission_id, body.status, actor=actor.id, reason=body.reason
        )
        logger.info(
            "store_status_applied",
            submission_id=str(submission_id),
            status=submission.status.value,
        )
        return SubmissionResponse.model_validate(submission)

    @router.post("/submissions/{submission_id}/cancel", response_model=SubmissionResponse)
    async def cancel(
        submission_id: UUID,
        body: ReasonRequest | None = None,
        submissions: SubmissionService = Depends(get_submission_service),
        actor: Actor = Depends(get_actor),
    ) -> SubmissionResponse:
        submission = await submissions.cancel(submission_id, actor.id, body.reason if body else None)
        return SubmissionResponse.model_validate(submission)

    # Rollout control

    @router.patch("/releases/{release_id}/rollout", response_model=SubmissionResponse)
    async def update_rollout(
        release_id: UUID,
        body: RolloutUpdate,
        submissions: SubmissionService = Depends(get_submission_service),
        actor: Actor = Depends(get_actor),
    ) -> SubmissionResponse:
        submission = await submissions.update_rollout(
            release_id, body.platform, body.rollout_percentage, actor.id, body.reason
        )
        return SubmissionResponse.model_validate(submission)

    @router.patch("/releases/{release_id}/rollout/pause", response_model=SubmissionResponse)
    async def pause_rollout(
        release_id: UUID,
        body: RolloutControl,
        submissions: SubmissionService = Depends(get_submission_service),
        actor: Actor = Depends(get_actor),
    ) -> SubmissionResponse:
        submission = await submissions.pause_rollout(release_id, body.platform, body.reason, actor.id)
        return SubmissionResponse.model_validate(submission)

    @router.patch("/releases/{release_id}/rollout/resume", response_model=SubmissionResponse)
    async def resume_rollout(
        release_id: UUID,
        body: RolloutControl,
        submissions: SubmissionService = Depends(get_submission_service),
        actor: Actor = Depends(get_actor),
    ) -> SubmissionResponse:
        submission = await submissions.resume_rollout(release_id, body.platform, actor.id, body.reason)
        return SubmissionResponse.model_validate(submission)

    @router.patch("/releases/{release_id}/rollout/halt", response_model=SubmissionResponse)
    async def halt_rollout(
        release_id: UUID,
        body: RolloutControl,
        submissions: SubmissionService = Depends(get_submission_service),
        actor: Actor = Depends(get_actor),
    ) -> SubmissionResponse:
        submission = await submissions.halt_rollout(release_id, body.platform, body.reason, actor.id)
        return SubmissionResponse.model_validate(submission)

    return router
