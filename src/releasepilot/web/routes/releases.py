"""Release REST API endpoints.

Kickoff, lifecycle control (pause, resume, archive, complete, stage
triggers), manual ticks, read models, regression cycles and slots. All
writes go through ``CronOrchestrator``; domain errors are translated by the
handlers in ``releasepilot.web.errors``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from releasepilot.actors import Actor
from releasepilot.database.models.regression_cycle import CycleStatus
from releasepilot.database.models.release import ReleaseStatus, ReleaseType
from releasepilot.orchestrator.approval import ApprovalResult, PromotionReadiness
from releasepilot.orchestrator.cron import CronOrchestrator, ReleaseView, TickResult
from releasepilot.web.dependencies import get_actor, get_orchestrator

logger = structlog.get_logger(__name__)


# --- Pydantic Schemas ---


class PlatformTarget(BaseModel):
    platform: str
    target: str | None = None
    version: str = Field(..., min_length=1)


class RegressionSlot(BaseModel):
    date: datetime
    config: dict[str, Any] = Field(default_factory=dict)


class ReleaseCreate(BaseModel):
    """Kickoff request for a new release."""

    tenant_id: str = Field(..., min_length=1)
    release_key: str = Field(..., min_length=1, max_length=255)
    platform_targets: list[PlatformTarget] = Field(..., min_length=1)
    release_type: ReleaseType = ReleaseType.MINOR
    base_branch: str = "main"
    branch: str | None = None
    kickoff_date: datetime | None = None
    target_release_date: datetime | None = None
    release_pilot_id: str | None = None
    has_manual_build_upload: bool = False
    cron_config: dict[str, Any] | None = None
    integrations: list[str] | None = None
    upcoming_regressions: list[RegressionSlot] = Field(default_factory=list)
    auto_transition_to_stage2: bool = True
    auto_transition_to_stage3: bool = False
    stage_data: dict[str, Any] | None = None


class ReasonRequest(BaseModel):
    reason: str | None = None


class TriggerRequest(BaseModel):
    force_approve: bool = False


class AbandonRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class SlotsRequest(BaseModel):
    slots: list[RegressionSlot] = Field(..., min_length=1)


class StageDataUpdate(BaseModel):
    """Integration signals merged into the release's stage data, per section."""

    data: dict[str, dict[str, Any]]


class CycleResponse(BaseModel):
    id: UUID
    release_id: UUID
    cycle_number: int
    cycle_tag: str | None
    status: CycleStatus
    is_latest: bool
    scheduled_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    abandoned_reason: str | None

    model_config = {"from_attributes": True}


class ActivityResponse(BaseModel):
    id: UUID
    entity_type: str
    entity_id: str
    action: str
    previous_value: dict[str, Any] | None
    new_value: dict[str, Any] | None
    actor: str
    details: dict[str, Any] | None
    created_at: datetime

    model_config = {"from_attributes": True}


# --- Router ---


def create_releases_router() -> APIRouter:
    """Create the release router.

    Routes:
        POST /releases - Kick off a release
        GET /releases - List releases
        GET /releases/{id} - Release with derived phase
        POST /releases/{id}/pause|resume|archive|complete - Lifecycle control
        POST /releases/{id}/trigger-next-stage - Start the next stage
        POST /releases/{id}/tick - Run one orchestrator pass
        GET /releases/{id}/approval - Regression approval requirements
        GET /releases/{id}/promotion-readiness - Distribution readiness
        GET /releases/{id}/activity - Audit trail
        PATCH /releases/{id}/stage-data - Merge integration signals
        GET|POST /releases/{id}/cycles - Regression cycles
        POST /releases/{id}/cycles/{cycle_id}/complete|abandon
        POST /releases/{id}/regression-slots - Schedule more slots
    """
    router = APIRouter(prefix="/releases", tags=["releases"])

    @router.post("", response_model=ReleaseView, status_code=201)
    async def kickoff(
        body: ReleaseCreate,
        orchestrator: CronOrchestrator = Depends(get_orchestrator),
        actor: Actor = Depends(get_actor),
    ) -> ReleaseView:
        release = await orchestrator.create_release(
            tenant_id=body.tenant_id,
            release_key=body.release_key,
            platform_targets=[target.model_dump() for target in body.platform_targets],
            actor=actor,
            release_type=body.release_type,
            base_branch=body.base_branch,
            branch=body.branch,
            kickoff_date=body.kickoff_date,
            target_release_date=body.target_release_date,
            release_pilot_id=body.release_pilot_id,
            has_manual_build_upload=body.has_manual_build_upload,
            cron_config=body.cron_config,
            integrations=body.integrations,
            upcoming_regressions=[slot.model_dump() for slot in body.upcoming_regressions],
            auto_transition_to_stage2=body.auto_transition_to_stage2,
            auto_transition_to_stage3=body.auto_transition_to_stage3,
            stage_data=body.stage_data,
        )
        return await orchestrator.get_release(release.id)

    @router.get("", response_model=list[ReleaseView])
    async def list_releases(
        tenant_id: str | None = None,
        status: ReleaseStatus | None = None,
        include_archived: bool = True,
        orchestrator: CronOrchestrator = Depends(get_orchestrator),
    ) -> list[ReleaseView]:
        views = await orchestrator.list_releases(tenant_id, status, include_archived)
        logger.info("releases_listed", count=len(views), tenant_id=tenant_id)
        return views

    @router.get("/{release_id}", response_model=ReleaseView)
    async def get_release(
        release_id: UUID,
        orchestrator: CronOrchestrator = Depends(get_orchestrator),
    ) -> ReleaseView:
        return await orchestrator.get_release(release_id)

    @router.post("/{release_id}/pause", response_model=ReleaseView)
    async def pause(
        release_id: UUID,
        body: ReasonRequest | None = None,
        orchestrator: CronOrchestrator = Depends(get_orchestrator),
        actor: Actor = Depends(get_actor),
    ) -> ReleaseView:
        return await orchestrator.pause(release_id, actor, body.reason if body else None)

    @router.post("/{release_id}/resume", response_model=ReleaseView)
    async def resume(
        release_id: UUID,
        orchestrator: CronOrchestrator = Depends(get_orchestrator),
        actor: Actor = Depends(get_actor),
    ) -> ReleaseView:
        return await orchestrator.resume(release_id, actor)

    @router.post("/{release_id}/archive", response_model=ReleaseView)
    async def archive(
        release_id: UUID,
        body: ReasonRequest | None = None,
        orchestrator: CronOrchestrator = Depends(get_orchestrator),
        actor: Actor = Depends(get_actor),
    ) -> ReleaseView:
        return await orchestrator.archive(release_id, actor, body.reason if body else None)

    @router.post("/{release_id}/complete", response_model=ReleaseView)
    async def complete(
        release_id: UUID,
        orchestrator: CronOrchestrator = Depends(get_orchestrator),
        actor: Actor = Depends(get_actor),
    ) -> ReleaseView:
        return await orchestrator.complete_release(release_id, actor)

    @router.post("/{release_id}/trigger-next-stage", response_model=ReleaseView)
    async def trigger_next_stage(
        release_id: UUID,
        body: TriggerRequest | None = None,
        orchestrator: CronOrchestrator = Depends(get_orchestrator),
        actor: Actor = Depends(get_actor),
    ) -> ReleaseView:
        force = body.force_approve if body else False
        return await orchestrator.trigger_next_stage(release_id, actor, force_approve=force)

    @router.post("/{release_id}/tick", response_model=TickResult)
    async def tick(
        release_id: UUID,
        orchestrator: CronOrchestrator = Depends(get_orchestrator),
        actor: Actor = Depends(get_actor),
    ) -> TickResult:
        logger.info("manual_tick_requested", release_id=str(release_id), actor=actor.id)
        return await orchestrator.tick(release_id)

    @router.get("/{release_id}/approval", response_model=ApprovalResult)
    async def approval(
        release_id: UUID,
        orchestrator: CronOrchestrator = Depends(get_orchestrator),
    ) -> ApprovalResult:
        return await orchestrator.evaluate_approval(release_id)

    @router.get("/{release_id}/promotion-readiness", response_model=PromotionReadiness)
    async def promotion_readiness(
        release_id: UUID,
        orchestrator: CronOrchestrator = Depends(get_orchestrator),
    ) -> PromotionReadiness:
        return await orchestrator.promotion_readiness(release_id)

    @router.get("/{release_id}/activity", response_model=list[ActivityResponse])
    async def activity(
        release_id: UUID,
        entity_type: str | None = None,
        action: str | None = None,
        limit: int | None = None,
        orchestrator: CronOrchestrator = Depends(get_orchestrator),
    ) -> list[ActivityResponse]:
        entries = await orchestrator.list_activity(release_id, entity_type, action, limit)
        return [ActivityResponse.model_validate(entry) for entry in entries]

    @router.patch("/{release_id}/stage-data")
    async def update_stage_data(
        release_id: UUID,
        body: StageDataUpdate,
        orchestrator: CronOrchestrator = Depends(get_orchestrator),
        actor: Actor = Depends(get_actor),
    ) -> dict[str, Any]:
        return await orchestrator.update_stage_data(release_id, body.data, actor)

    # Regression cycles

    @router.get("/{release_id}/cycles", response_model=list[CycleResponse])
    async def list_cycles(
        release_id: UUID,
        orchestrator: CronOrchestrator = Depends(get_orchestrator),
    ) -> list[CycleResponse]:
        cycles = await orchestrator.list_cycles(release_id)
        return [CycleResponse.model_validate(cycle) for cycle in cycles]

    @router.post("/{release_id}/cycles", response_model=CycleResponse, status_code=201)
    async def start_cycle(
        release_id: UUID,
        orchestrator: CronOrchestrator = Depends(get_orchestrator),
        actor: Actor = Depends(get_actor),
    ) -> CycleResponse:
        cycle = await orchestrator.start_cycle(release_id, actor)
        return CycleResponse.model_validate(cycle)

    @router.post("/{release_id}/cycles/{cycle_id}/complete", response_model=CycleResponse)
    async def complete_cycle(
        release_id: UUID,
        cycle_id: UUID,
        orchestrator: CronOrchestrator = Depends(get_orchestrator),
        actor: Actor = Depends(get_actor),
    ) -> CycleResponse:
        cycle = await orchestrator.complete_cycle(release_id, cycle_id, actor)
        return CycleResponse.model_validate(cycle)

    @router.post("/{release_id}/cycles/{cycle_id}/abandon", response_model=CycleResponse)
    async def abandon_cycle(
        release_id: UUID,
        cycle_id: UUID,
        body: AbandonRequest,
        orchestrator: CronOrchestrator = Depends(get_orchestrator),
        actor: Actor = Depends(get_actor),
    ) -> CycleResponse:
        cycle = await orchestrator.abandon_cycle(release_id, cycle_id, body.reason, actor)
        return CycleResponse.model_validate(cycle)

    @router.post("/{release_id}/regression-slots")
    async def add_regression_slots(
        release_id: UUID,
        body: SlotsRequest,
        orchestrator: CronOrchestrator = Depends(get_orchestrator),
        actor: Actor = Depends(get_actor),
    ) -> list[dict[str, Any]]:
        slots = [{"date": slot.date.isoformat(), "config": slot.config} for slot in body.slots]
        return await orchestrator.add_regression_slots(release_id, slots, actor)

    return router
