"""Cron orchestrator for ReleasePilot.

The orchestrator drives one release at a time through its four stages::

    KICKOFF -> REGRESSION -> POST_REGRESSION -> DISTRIBUTION

A tick runs one pass under the release's lease:

1. Archived releases complete their cron job and stop.
2. A PENDING cron job starts KICKOFF once the kickoff date is due.
3. Paused jobs do nothing. A job resumed after a task failure is paused
   again while the failed task has not been retried.
4. The stage IN_PROGRESS advances: tasks run strictly in declared order,
   one at a time, and the pass stops at the first task that cannot finish
   in this tick.
5. A completed stage either starts the next one (auto transition, gated
   by the regression approval for POST_REGRESSION) or waits for a trigger.

User operations (trigger, pause, resume, retry, archive, complete, cycle
and slot management) take the same lease so they never interleave with a
pass. Every service method owns its transaction; webhook events collected
during a transaction are published only after it commits.
"""

from __future__ import annotations

import os
import socket
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, TypeVar
from uuid import UUID

import structlog
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from releasepilot.actors import SYSTEM_ACTOR, Actor
from releasepilot.database.models.activity_log import ActivityLog
from releasepilot.database.models.base import as_utc, utcnow
from releasepilot.database.models.cron_job import CronJob, CronStatus, PauseType, StageStatus
from releasepilot.database.models.regression_cycle import CycleStatus, RegressionCycle
from releasepilot.database.models.release import (
    DistributionTarget,
    Platform,
    Release,
    ReleaseStage,
    ReleaseStatus,
    ReleaseType,
)
from releasepilot.database.models.task import ReleaseTask, TaskStatus
from releasepilot.database.queries.activity_log import list_activity, record_activity
from releasepilot.database.queries.cron_job import create_cron_job, get_cron_job_for_release
from releasepilot.database.queries.regression_cycle import get_cycle, get_latest_cycle, list_cycles
from releasepilot.database.queries.release import (
    create_release,
    get_release,
    get_release_by_key,
    list_releases,
)
from releasepilot.database.queries.task import get_task, list_tasks
from releasepilot.distribution.rollout import RolloutController
from releasepilot.errors import InvalidTransition, LockContention, NotFound, ValidationError
from releasepilot.integrations.webhooks import (
    PendingEvent,
    WebhookDispatcher,
    release_completed_event,
    release_paused_event,
    stage_completed_event,
    task_failed_event,
)
from releasepilot.logging import bind_release_context, clear_release_context
from releasepilot.orchestrator.approval import ApprovalGate, ApprovalResult, PromotionReadiness
from releasepilot.orchestrator.audit import audited_operation
from releasepilot.orchestrator.builds import collect_builds
from releasepilot.orchestrator.executor import ExecutionContext, OutcomeKind, TaskExecutor
from releasepilot.orchestrator.lease import LeaseManager, ensure_lease
from releasepilot.orchestrator.regression import RegressionCycleManager, parse_slot_date, sorted_slots
from releasepilot.orchestrator.release_state import ReleasePhase, phase_for, transition_release
from releasepilot.orchestrator.task_catalog import create_stage_tasks, is_build_task
from releasepilot.orchestrator.task_lifecycle import TaskLifecycle

logger = structlog.get_logger(__name__)

T = TypeVar("T")

PLATFORM_TARGETS: dict[Platform, DistributionTarget] = {
    Platform.ANDROID: DistributionTarget.PLAY_STORE,
    Platform.IOS: DistributionTarget.APP_STORE,
    Platform.WEB: DistributionTarget.WEB,
}

CLOSED_STATUSES = (ReleaseStatus.ARCHIVED, ReleaseStatus.COMPLETED)


def default_holder_id() -> str:
    """Lease holder identity of this process."""
    return f"scheduler:{socket.gethostname()}:{os.getpid()}"


def validate_platform_targets(platform_targets: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Normalize {platform, target, version} mappings.

    Raises:
        ValidationError: If the list is empty, a platform or target is
            unknown, or a target does not serve its platform.
    """
    if not platform_targets:
        raise ValidationError("A release needs at least one platform target")

    normalized: list[dict[str, Any]] = []
    for mapping in platform_targets:
        try:
            platform = Platform(mapping.get("platform"))
            target = DistributionTarget(mapping.get("target") or PLATFORM_TARGETS[platform].value)
        except (KeyError, ValueError) as exc:
            raise ValidationError(f"Invalid platform target: {mapping!r}") from exc
        if PLATFORM_TARGETS[platform] != target:
            raise ValidationError(
                f"{platform.value} cannot be distributed to {target.value}",
                platform=platform.value,
                target=target.value,
            )
        normalized.append({"platform": platform.value, "target": target.value, "version": mapping.get("version")})
    return normalized


async def pause_for_failure(
    session: AsyncSession,
    release: Release,
    cron_job: CronJob,
    task: ReleaseTask,
    actor: str = "system",
) -> list[PendingEvent]:
    """Pause a release because one of its tasks failed.

    Returns:
        The events to publish once the transaction commits.
    """
    reason = task.conclusion or "task failed"
    cron_job.cron_status = CronStatus.PAUSED
    cron_job.pause_type = PauseType.TASK_FAILURE
    previous = release.status
    if release.status == ReleaseStatus.IN_PROGRESS:
        transition_release(release, ReleaseStatus.PAUSED)

    await record_activity(
        session,
        release_id=release.id,
        entity_type="release",
        entity_id=release.id,
        action="release_paused",
        previous_value={"status": previous.value},
        new_value={"status": release.status.value, "pause_type": PauseType.TASK_FAILURE.value},
        actor=actor,
        details={"task_id": str(task.id), "task_type": task.task_type.value, "reason": reason},
    )
    await session.flush()
    logger.warning(
        "release_paused_on_failure",
        release_id=str(release.id),
        task_id=str(task.id),
        task_type=task.task_type.value,
        reason=reason,
    )
    return [
        task_failed_event(release.id, task.id, task.task_type.value, reason),
        release_paused_event(release.id, PauseType.TASK_FAILURE.value, reason),
    ]


class TickResult(BaseModel):
    """State of a release after one orchestrator pass."""

    release_id: str
    cron_status: CronStatus
    pause_type: PauseType
    phase: ReleasePhase
    current_stage: ReleaseStage


class ReleaseView(BaseModel):
    """Read model of a release with its derived phase."""

    release_id: str
    release_key: str
    tenant_id: str
    release_type: ReleaseType
    status: ReleaseStatus
    phase: ReleasePhase
    current_stage: ReleaseStage
    branch: str | None
    platform_targets: list[dict[str, Any]]
    has_manual_build_upload: bool
    cron_status: CronStatus | None
    pause_type: PauseType | None
    stage_statuses: dict[str, str]
    upcoming_regressions: list[dict[str, Any]]
    latest_cycle_id: str | None
    latest_cycle_tag: str | None


def release_view(release: Release, cron_job: CronJob | None, latest: RegressionCycle | None) -> ReleaseView:
    return ReleaseView(
        release_id=str(release.id),
        release_key=release.release_key,
        tenant_id=release.tenant_id,
        release_type=release.release_type,
        status=release.status,
        phase=phase_for(release, cron_job, latest),
        current_stage=release.current_stage,
        branch=release.branch,
        platform_targets=list(release.platform_targets or []),
        has_manual_build_upload=release.has_manual_build_upload,
        cron_status=cron_job.cron_status if cron_job is not None else None,
        pause_type=cron_job.pause_type if cron_job is not None else None,
        stage_statuses=(
            {stage.value: status.value for stage, status in cron_job.stage_statuses().items()}
            if cron_job is not None
            else {}
        ),
        upcoming_regressions=list(cron_job.upcoming_regressions or []) if cron_job is not None else [],
        latest_cycle_id=str(latest.id) if latest is not None else None,
        latest_cycle_tag=latest.cycle_tag if latest is not None else None,
    )


class CronOrchestrator:
    """Advances releases and applies user operations under the release lease.

    Attributes:
        session_factory: Factory for transactional sessions.
        leases: Lease manager serializing passes per release.
        holder_id: Lease holder identity used by ticks.
        logger: Structured logger bound to this component.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        leases: LeaseManager | None = None,
        executor: TaskExecutor | None = None,
        gate: ApprovalGate | None = None,
        notifier: WebhookDispatcher | None = None,
        clock: Callable[[], datetime] = utcnow,
        holder_id: str | None = None,
        slot_window_seconds: int = 60,
        controller: RolloutController | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.clock = clock
        self.leases = leases or LeaseManager(session_factory, clock=clock)
        self.lifecycle = TaskLifecycle(clock=clock)
        self.cycles = RegressionCycleManager(self.lifecycle, clock, slot_window_seconds)
        self.executor = executor or TaskExecutor(controller or RolloutController(clock=clock))
        self.gate = gate or ApprovalGate()
        self.notifier = notifier
        self.holder_id = holder_id or default_holder_id()
        self.logger = logger.bind(component="CronOrchestrator")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _publish(self, events: list[PendingEvent]) -> None:
        if self.notifier is not None and events:
            await self.notifier.publish(events)

    async def _cron_job_id(self, release_id: UUID) -> UUID:
        async with self.session_factory() as session:
            cron_job = await get_cron_job_for_release(session, release_id)
            if cron_job is None:
                raise NotFound("release", release_id)
            return cron_job.id

    async def _load(self, session: AsyncSession, release_id: UUID) -> tuple[Release, CronJob]:
        release = await get_release(session, release_id)
        cron_job = await get_cron_job_for_release(session, release_id)
        if release is None or cron_job is None:
            raise NotFound("release", release_id)
        return release, cron_job

    async def _mutate(
        self,
        release_id: UUID,
        action: str,
        actor: Actor,
        operation: Callable[[AsyncSession, Release, CronJob, list[PendingEvent]], Awaitable[T]],
        entity_type: str = "release",
        entity_id: Any = None,
    ) -> T:
        """Run a user operation under the lease in one audited transaction."""
        cron_job_id = await self._cron_job_id(release_id)
        holder = f"api:{actor.id}:{uuid.uuid4().hex[:8]}"
        events: list[PendingEvent] = []

        async with audited_operation(
            self.session_factory, release_id, entity_type, entity_id or release_id, action, actor.id
        ):
            async with self.leases.hold(cron_job_id, holder) as lease:
                try:
                    async with self.session_factory() as session, session.begin():
                        release, cron_job = await self._load(session, release_id)
                        result = await operation(session, release, cron_job, events)
                        ensure_lease(lease, cron_job, self.clock())
                except StaleDataError as exc:
                    raise LockContention(str(cron_job_id)) from exc

        await self._publish(events)
        return result

    def _require_open(self, release: Release, target: str) -> None:
        if release.status in CLOSED_STATUSES:
            raise InvalidTransition(
                "release", release.status, target, str(release.id), reason="release is closed"
            )

    def _stage_in_progress(self, cron_job: CronJob) -> ReleaseStage | None:
        for stage in ReleaseStage:
            if cron_job.stage_status(stage) == StageStatus.IN_PROGRESS:
                return stage
        return None

    def _next_pending_stage(self, cron_job: CronJob) -> ReleaseStage | None:
        for stage in ReleaseStage:
            if cron_job.stage_status(stage) == StageStatus.PENDING:
                return stage
        return None

    # ------------------------------------------------------------------
    # Kickoff
    # ------------------------------------------------------------------

    async def create_release(
        self,
        tenant_id: str,
        release_key: str,
        platform_targets: list[dict[str, Any]],
        actor: Actor = SYSTEM_ACTOR,
        release_type: ReleaseType = ReleaseType.MINOR,
        base_branch: str = "main",
        branch: str | None = None,
        kickoff_date: datetime | None = None,
        target_release_date: datetime | None = None,
        release_pilot_id: str | None = None,
        has_manual_build_upload: bool = False,
        cron_config: dict[str, Any] | None = None,
        integrations: list[str] | None = None,
        upcoming_regressions: list[dict[str, Any]] | None = None,
        auto_transition_to_stage2: bool = True,
        auto_transition_to_stage3: bool = False,
        stage_data: dict[str, Any] | None = None,
    ) -> Release:
        """Create a release and its cron job from a kickoff request.

        KICKOFF starts on the first tick at or after ``kickoff_date``.

        Raises:
            ValidationError: If the key is taken or the targets or slots
                are malformed.
        """
        targets = validate_platform_targets(platform_targets)
        slots = sorted_slots(upcoming_regressions)
        if not release_key or not release_key.strip():
            raise ValidationError("A release key is required")
        if kickoff_date is not None and target_release_date is not None:
            if as_utc(target_release_date) < as_utc(kickoff_date):
                raise ValidationError("Target release date precedes the kickoff date")

        async with self.session_factory() as session, session.begin():
            if await get_release_by_key(session, tenant_id, release_key) is not None:
                raise ValidationError(
                    f"Release {release_key} already exists", tenant_id=tenant_id, release_key=release_key
                )
            release = await create_release(
                session,
                tenant_id=tenant_id,
                release_key=release_key.strip(),
                release_type=release_type,
                platform_targets=targets,
                base_branch=base_branch,
                branch=branch,
                kickoff_date=kickoff_date,
                target_release_date=target_release_date,
                release_pilot_id=release_pilot_id,
                created_by=actor.id,
                has_manual_build_upload=has_manual_build_upload,
            )
            cron_job = await create_cron_job(
                session,
                release_id=release.id,
                cron_config=cron_config,
                integrations=integrations,
                upcoming_regressions=[
                    {"date": parse_slot_date(slot).isoformat(), "config": slot.get("config") or {}}
                    for slot in slots
                ],
                auto_transition_to_stage2=auto_transition_to_stage2,
                auto_transition_to_stage3=auto_transition_to_stage3,
                stage_data=stage_data,
            )
            await record_activity(
                session,
                release_id=release.id,
                entity_type="release",
                entity_id=release.id,
                action="release_created",
                new_value={"status": release.status.value, "release_key": release.release_key},
                actor=actor.id,
                details={"cron_job_id": str(cron_job.id), "platform_targets": targets},
            )

        self.logger.info("release_kicked_off", release_id=str(release.id), release_key=release.release_key)
        return release

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_release(self, release_id: UUID) -> ReleaseView:
        async with self.session_factory() as session:
            release, cron_job = await self._load(session, release_id)
            latest = await get_latest_cycle(session, release.id)
            return release_view(release, cron_job, latest)

    async def list_releases(
        self,
        tenant_id: str | None = None,
        status: ReleaseStatus | None = None,
        include_archived: bool = True,
    ) -> list[ReleaseView]:
        async with self.session_factory() as session:
            views: list[ReleaseView] = []
            for release in await list_releases(session, tenant_id, status, include_archived):
                cron_job = await get_cron_job_for_release(session, release.id)
                latest = await get_latest_cycle(session, release.id)
                views.append(release_view(release, cron_job, latest))
            return views

    async def evaluate_approval(self, release_id: UUID) -> ApprovalResult:
        """Current state of the regression approval requirements."""
        async with self.session_factory() as session:
            release, cron_job = await self._load(session, release_id)
            return await self.gate.evaluate_approval(session, release, cron_job)

    async def promotion_readiness(self, release_id: UUID) -> PromotionReadiness:
        """Issues standing between the release and distribution."""
        async with self.session_factory() as session:
            release, cron_job = await self._load(session, release_id)
            return await self.gate.check_promotion_readiness(session, release, cron_job)

    async def list_tasks(
        self,
        release_id: UUID,
        stage: ReleaseStage | None = None,
        status: TaskStatus | None = None,
    ) -> list[ReleaseTask]:
        async with self.session_factory() as session:
            await self._load(session, release_id)
            return await list_tasks(
                session, release_id, stage=stage, statuses=[status] if status is not None else None
            )

    async def get_task(self, task_id: UUID) -> ReleaseTask:
        async with self.session_factory() as session:
            task = await get_task(session, task_id)
            if task is None:
                raise NotFound("task", task_id)
            return task

    async def list_cycles(self, release_id: UUID) -> list[RegressionCycle]:
        async with self.session_factory() as session:
            await self._load(session, release_id)
            return await list_cycles(session, release_id)

    async def list_activity(
        self,
        release_id: UUID,
        entity_type: str | None = None,
        action: str | None = None,
        limit: int | None = None,
    ) -> list[ActivityLog]:
        async with self.session_factory() as session:
            await self._load(session, release_id)
            return await list_activity(session, release_id, entity_type, action, limit)

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def tick(self, release_id: UUID, holder_id: str | None = None) -> TickResult:
        """Run one orchestrator pass for a release.

        Raises:
            LockContention: If another holder owns the lease, or the lease
                was lost before the pass could commit.
            NotFound: If the release does not exist.
        """
        cron_job_id = await self._cron_job_id(release_id)
        events: list[PendingEvent] = []

        lease = await self.leases.acquire(cron_job_id, holder_id or self.holder_id)
        bind_release_context(str(release_id), str(cron_job_id))
        try:
            async with self.session_factory() as session, session.begin():
                release, cron_job = await self._load(session, release_id)
                await self._run_pass(session, release, cron_job, events)
                ensure_lease(lease, cron_job, self.clock())
                latest = await get_latest_cycle(session, release.id)
                result = TickResult(
                    release_id=str(release.id),
                    cron_status=cron_job.cron_status,
                    pause_type=cron_job.pause_type,
                    phase=phase_for(release, cron_job, latest),
                    current_stage=release.current_stage,
                )
        except StaleDataError as exc:
            raise LockContention(str(cron_job_id)) from exc
        finally:
            await self.leases.release(lease)
            clear_release_context()

        await self._publish(events)
        self.logger.debug(
            "tick_finished",
            release_id=result.release_id,
            phase=result.phase.value,
            cron_status=result.cron_status.value,
        )
        return result

    async def _run_pass(
        self,
        session: AsyncSession,
        release: Release,
        cron_job: CronJob,
        events: list[PendingEvent],
    ) -> None:
        if release.status == ReleaseStatus.ARCHIVED:
            if cron_job.cron_status != CronStatus.COMPLETED:
                cron_job.cron_status = CronStatus.COMPLETED
                cron_job.pause_type = PauseType.NONE
            return

        if cron_job.cron_status == CronStatus.COMPLETED:
            return

        if cron_job.cron_status == CronStatus.PENDING:
            if release.kickoff_date is not None and as_utc(release.kickoff_date) > self.clock():
                return
            await self._start_stage(session, release, cron_job, ReleaseStage.KICKOFF)

        if cron_job.cron_status == CronStatus.PAUSED:
            return

        if cron_job.pause_type == PauseType.TASK_FAILURE:
            failed = await self._blocking_failures(session, release, cron_job)
            if failed:
                events.extend(await pause_for_failure(session, release, cron_job, failed[0]))
                return
            cron_job.pause_type = PauseType.NONE
            if release.status == ReleaseStatus.PAUSED:
                transition_release(release, ReleaseStatus.IN_PROGRESS)
            await record_activity(
                session,
                release_id=release.id,
                entity_type="release",
                entity_id=release.id,
                action="task_failure_cleared",
                previous_value={"pause_type": PauseType.TASK_FAILURE.value},
                new_value={"pause_type": PauseType.NONE.value},
            )

        await self._advance(session, release, cron_job, events)

    async def _blocking_failures(
        self,
        session: AsyncSession,
        release: Release,
        cron_job: CronJob,
    ) -> list[ReleaseTask]:
        """FAILED tasks that still stop the current stage."""
        stage = self._stage_in_progress(cron_job)
        if stage is None:
            return []
        if stage == ReleaseStage.REGRESSION:
            latest = await get_latest_cycle(session, release.id)
            if latest is None or latest.status.is_finished:
                return []
            return await list_tasks(
                session, release.id, regression_cycle_id=latest.id, statuses=[TaskStatus.FAILED]
            )
        return await list_tasks(session, release.id, stage=stage, statuses=[TaskStatus.FAILED])

    async def _advance(
        self,
        session: AsyncSession,
        release: Release,
        cron_job: CronJob,
        events: list[PendingEvent],
    ) -> None:
        # Several stages may finish in one pass when their tasks need no input
        for _ in ReleaseStage:
            stage = self._stage_in_progress(cron_job)
            if stage is None:
                following = self._next_pending_stage(cron_job)
                if following is None or not await self._auto_start(session, release, cron_job, following):
                    return
                continue

            if not await self._advance_stage(session, release, cron_job, stage, events):
                return

            await self._complete_stage(session, release, cron_job, stage, events)
            following = stage.next
            if following is None or not await self._auto_start(session, release, cron_job, following):
                return

    async def _advance_stage(
        self,
        session: AsyncSession,
        release: Release,
        cron_job: CronJob,
        stage: ReleaseStage,
        events: list[PendingEvent],
    ) -> bool:
        """Run the stage's tasks in order.

        Returns:
            True if every task settled and the stage may complete.
        """
        cycle: RegressionCycle | None = None
        if stage == ReleaseStage.REGRESSION:
            cycle = await self.cycles.activate_due_cycle(session, release, cron_job)
            if cycle is None or cycle.status != CycleStatus.IN_PROGRESS:
                return self.cycles.stage_complete(cycle, cron_job)
            tasks = await list_tasks(session, release.id, regression_cycle_id=cycle.id)
        else:
            tasks = await list_tasks(session, release.id, stage=stage)

        for task in tasks:
            if task.status.is_settled:
                continue
            if task.status == TaskStatus.FAILED:
                events.extend(await pause_for_failure(session, release, cron_job, task))
                return False
            if task.status.is_awaiting:
                if is_build_task(task.task_type) and await collect_builds(session, self.lifecycle, release, task):
                    continue
                return False

            if not await self._run_task(session, release, cron_job, task, cycle, events):
                return False

        if cycle is not None:
            next_cycle = await self.cycles.complete_cycle(session, release, cron_job, cycle)
            return next_cycle is None

        if stage == ReleaseStage.DISTRIBUTION:
            # Stage 4 stays IN_PROGRESS until the release is marked complete
            cron_job.cron_status = CronStatus.COMPLETED
            await record_activity(
                session,
                release_id=release.id,
                entity_type="cron_job",
                entity_id=cron_job.id,
                action="distribution_tasks_completed",
                new_value={"cron_status": CronStatus.COMPLETED.value},
            )
            return False
        return True

    async def _run_task(
        self,
        session: AsyncSession,
        release: Release,
        cron_job: CronJob,
        task: ReleaseTask,
        cycle: RegressionCycle | None,
        events: list[PendingEvent],
    ) -> bool:
        """Execute one PENDING or IN_PROGRESS task. Returns True once it settled."""
        if task.status == TaskStatus.PENDING:
            await self.lifecycle.start(task, session)

        outcome = await self.executor.execute(ExecutionContext(session, release, cron_job, task, cycle))
        events.extend(outcome.events)

        if outcome.kind == OutcomeKind.COMPLETED:
            await self.lifecycle.complete(task, outcome.output or {}, session)
            return True

        if outcome.kind == OutcomeKind.AWAITING_EXTERNAL:
            await self.lifecycle.await_external(
                task, release.has_manual_build_upload, session, external_id=outcome.external_id
            )
            if is_build_task(task.task_type):
                return await collect_builds(session, self.lifecycle, release, task)
            return False

        if outcome.kind == OutcomeKind.RUNNING:
            if outcome.external_id is not None:
                task.external_id = outcome.external_id
                await session.flush()
            return False

        await self.lifecycle.fail(task, outcome.reason or "task failed", session)
        events.extend(await pause_for_failure(session, release, cron_job, task))
        return False

    async def _start_stage(
        self,
        session: AsyncSession,
        release: Release,
        cron_job: CronJob,
        stage: ReleaseStage,
        actor: str = "system",
    ) -> None:
        cron_job.set_stage_status(stage, StageStatus.IN_PROGRESS)
        cron_job.cron_status = CronStatus.RUNNING
        cron_job.pause_type = PauseType.NONE
        previous_stage = release.current_stage
        release.current_stage = stage
        if release.status == ReleaseStatus.PENDING:
            transition_release(release, ReleaseStatus.IN_PROGRESS)

        # Regression tasks are created per cycle when the cycle starts
        if stage != ReleaseStage.REGRESSION:
            await create_stage_tasks(session, self.lifecycle, release, cron_job, stage)

        await record_activity(
            session,
            release_id=release.id,
            entity_type="release",
            entity_id=release.id,
            action="stage_started",
            previous_value={"current_stage": previous_stage.value},
            new_value={"current_stage": stage.value},
            actor=actor,
        )
        await session.flush()
        self.logger.info("stage_started", release_id=str(release.id), stage=stage.value)

    async def _complete_stage(
        self,
        session: AsyncSession,
        release: Release,
        cron_job: CronJob,
        stage: ReleaseStage,
        events: list[PendingEvent],
    ) -> None:
        cron_job.set_stage_status(stage, StageStatus.COMPLETED)
        await record_activity(
            session,
            release_id=release.id,
            entity_type="release",
            entity_id=release.id,
            action="stage_completed",
            previous_value={"stage": stage.value, "status": StageStatus.IN_PROGRESS.value},
            new_value={"stage": stage.value, "status": StageStatus.COMPLETED.value},
        )
        await session.flush()
        events.append(stage_completed_event(release.id, stage.value))
        self.logger.info("stage_completed", release_id=str(release.id), stage=stage.value)

    async def _auto_start(
        self,
        session: AsyncSession,
        release: Release,
        cron_job: CronJob,
        stage: ReleaseStage,
    ) -> bool:
        """Start ``stage`` if it transitions automatically, else wait for a trigger."""
        if stage == ReleaseStage.KICKOFF:
            # A cron job resumed before kickoff goes back to waiting for it
            cron_job.cron_status = CronStatus.PENDING
            return False

        if not cron_job.auto_transition_to(stage):
            await self._await_trigger(session, release, cron_job, stage)
            return False

        if stage == ReleaseStage.POST_REGRESSION:
            approval = await self.gate.evaluate_approval(session, release, cron_job)
            if not approval.can_approve:
                await self._await_trigger(
                    session, release, cron_job, stage, approval.requirements.model_dump()
                )
                return False
            await record_activity(
                session,
                release_id=release.id,
                entity_type="release",
                entity_id=release.id,
                action="regression_stage_approval",
                new_value={"approved": True, "forced": False, "automatic": True},
                details=approval.requirements.model_dump(),
            )

        await self._start_stage(session, release, cron_job, stage)
        return True

    async def _await_trigger(
        self,
        session: AsyncSession,
        release: Release,
        cron_job: CronJob,
        stage: ReleaseStage,
        details: dict[str, Any] | None = None,
    ) -> None:
        if cron_job.pause_type == PauseType.AWAITING_STAGE_TRIGGER:
            return
        cron_job.cron_status = CronStatus.PAUSED
        cron_job.pause_type = PauseType.AWAITING_STAGE_TRIGGER
        await record_activity(
            session,
            release_id=release.id,
            entity_type="cron_job",
            entity_id=cron_job.id,
            action="awaiting_stage_trigger",
            new_value={"next_stage": stage.value},
            details=details,
        )
        await session.flush()
        self.logger.info("awaiting_stage_trigger", release_id=str(release.id), next_stage=stage.value)

    # ------------------------------------------------------------------
    # Stage control
    # ------------------------------------------------------------------

    async def _trigger(
        self,
        session: AsyncSession,
        release: Release,
        cron_job: CronJob,
        actor: Actor,
        force_approve: bool,
    ) -> ReleaseStage:
        self._require_open(release, "next stage")
        if cron_job.pause_type == PauseType.USER_REQUESTED:
            raise InvalidTransition(
                "cron_job", cron_job.cron_status, CronStatus.RUNNING, str(cron_job.id),
                reason="release is paused; resume it first",
            )

        current = self._stage_in_progress(cron_job)
        target = self._next_pending_stage(cron_job)
        if current is not None:
            raise InvalidTransition(
                "stage", current, target or "next stage", str(release.id),
                reason=f"{current.value} has not completed",
            )
        if target is None:
            raise InvalidTransition(
                "stage", release.current_stage, "next stage", str(release.id), reason="no stage left to start"
            )

        if target == ReleaseStage.POST_REGRESSION:
            approval = await self.gate.evaluate_approval(session, release, cron_job)
            requirements = approval.requirements.model_dump()
            if force_approve:
                self.gate.authorize_force(actor)
                await record_activity(
                    session,
                    release_id=release.id,
                    entity_type="release",
                    entity_id=release.id,
                    action="regression_approval_forced",
                    new_value={"forced": True},
                    actor=actor.id,
                    details={"role": actor.role.value, "requirements": requirements},
                )
            elif not approval.can_approve:
                unmet = [name for name, met in requirements.items() if not met]
                raise InvalidTransition(
                    "stage", ReleaseStage.REGRESSION, ReleaseStage.POST_REGRESSION, str(release.id),
                    reason=f"regression approval requirements not met: {', '.join(unmet)}",
                )
            await record_activity(
                session,
                release_id=release.id,
                entity_type="release",
                entity_id=release.id,
                action="regression_stage_approval",
                new_value={"approved": True, "forced": force_approve},
                actor=actor.id,
                details=requirements,
            )

        if target == ReleaseStage.DISTRIBUTION:
            readiness = await self.gate.check_promotion_readiness(session, release, cron_job)
            if not readiness.can_promote:
                raise InvalidTransition(
                    "stage", ReleaseStage.POST_REGRESSION, ReleaseStage.DISTRIBUTION, str(release.id),
                    reason="; ".join(issue.message for issue in readiness.blocking_issues),
                )

        await self._start_stage(session, release, cron_job, target, actor=actor.id)
        return target

    async def trigger_next_stage(
        self,
        release_id: UUID,
        actor: Actor = SYSTEM_ACTOR,
        force_approve: bool = False,
    ) -> ReleaseView:
        """Start the next stage after the previous one completed.

        REGRESSION to POST_REGRESSION passes through the approval gate
        unless a privileged actor forces it. POST_REGRESSION to
        DISTRIBUTION requires promotion readiness.

        Raises:
            InvalidTransition: If the current stage has not completed or a
                gate is not satisfied.
            Forbidden: If a non-privileged actor forces the approval.
        """

        async def operation(session, release, cron_job, events):
            await self._trigger(session, release, cron_job, actor, force_approve)
            return release_view(release, cron_job, await get_latest_cycle(session, release.id))

        return await self._mutate(release_id, "trigger_next_stage", actor, operation)

    async def pause(self, release_id: UUID, actor: Actor = SYSTEM_ACTOR, reason: str | None = None) -> ReleaseView:
        """Pause a release at the user's request."""

        async def operation(session, release, cron_job, events):
            self._require_open(release, ReleaseStatus.PAUSED)
            if release.status == ReleaseStatus.SUBMITTED or cron_job.cron_status == CronStatus.COMPLETED:
                raise InvalidTransition(
                    "release", release.status, ReleaseStatus.PAUSED, str(release.id),
                    reason="release has no remaining orchestration to pause",
                )
            if cron_job.pause_type != PauseType.USER_REQUESTED:
                previous = {"status": release.status.value, "pause_type": cron_job.pause_type.value}
                cron_job.cron_status = CronStatus.PAUSED
                cron_job.pause_type = PauseType.USER_REQUESTED
                if release.status == ReleaseStatus.IN_PROGRESS:
                    transition_release(release, ReleaseStatus.PAUSED)
                await record_activity(
                    session,
                    release_id=release.id,
                    entity_type="release",
                    entity_id=release.id,
                    action="release_paused",
                    previous_value=previous,
                    new_value={"status": release.status.value, "pause_type": PauseType.USER_REQUESTED.value},
                    actor=actor.id,
                    details={"reason": reason},
                )
                events.append(release_paused_event(release.id, PauseType.USER_REQUESTED.value, reason))
            return release_view(release, cron_job, await get_latest_cycle(session, release.id))

        return await self._mutate(release_id, "pause", actor, operation)

    async def resume(self, release_id: UUID, actor: Actor = SYSTEM_ACTOR) -> ReleaseView:
        """Resume a user pause, or start the stage awaiting its trigger.

        Raises:
            InvalidTransition: If the release is not paused by a user or
                awaiting a stage trigger.
        """

        async def operation(session, release, cron_job, events):
            self._require_open(release, ReleaseStatus.IN_PROGRESS)
            if cron_job.pause_type == PauseType.AWAITING_STAGE_TRIGGER:
                await self._trigger(session, release, cron_job, actor, force_approve=False)
            elif cron_job.pause_type == PauseType.USER_REQUESTED:
                started = any(status != StageStatus.PENDING for status in cron_job.stage_statuses().values())
                cron_job.cron_status = CronStatus.RUNNING if started else CronStatus.PENDING
                cron_job.pause_type = PauseType.NONE
                if release.status == ReleaseStatus.PAUSED:
                    transition_release(release, ReleaseStatus.IN_PROGRESS)
                await record_activity(
                    session,
                    release_id=release.id,
                    entity_type="release",
                    entity_id=release.id,
                    action="release_resumed",
                    previous_value={"pause_type": PauseType.USER_REQUESTED.value},
                    new_value={"status": release.status.value, "cron_status": cron_job.cron_status.value},
                    actor=actor.id,
                )
            else:
                raise InvalidTransition(
                    "cron_job", cron_job.pause_type, CronStatus.RUNNING, str(cron_job.id),
                    reason="only user pauses and stage triggers can be resumed",
                )
            return release_view(release, cron_job, await get_latest_cycle(session, release.id))

        return await self._mutate(release_id, "resume", actor, operation)

    async def retry_task(self, task_id: UUID, actor: Actor = SYSTEM_ACTOR) -> ReleaseTask:
        """Reset a FAILED task to PENDING so the next tick runs it again.

        The release stays paused for the failure until that tick finds no
        failed task left.

        Raises:
            InvalidTransition: If the task is not FAILED or its regression
                cycle is finished or superseded.
        """
        async with self.session_factory() as session:
            task = await get_task(session, task_id)
            if task is None:
                raise NotFound("task", task_id)
            release_id = task.release_id

        async def operation(session, release, cron_job, events):
            self._require_open(release, "task retry")
            task = await get_task(session, task_id)
            if task is None:
                raise NotFound("task", task_id)
            await self.cycles.get_mutable_cycle(session, task)
            await self.lifecycle.retry(task, session, actor=actor.id)
            if cron_job.cron_status == CronStatus.PAUSED and cron_job.pause_type == PauseType.TASK_FAILURE:
                cron_job.cron_status = CronStatus.RUNNING
            return task

        return await self._mutate(release_id, "task_retry", actor, operation, "task", task_id)

    async def archive(self, release_id: UUID, actor: Actor = SYSTEM_ACTOR, reason: str | None = None) -> ReleaseView:
        """Archive a release. Archiving twice is a no-op."""

        async def operation(session, release, cron_job, events):
            if release.status != ReleaseStatus.ARCHIVED:
                previous = transition_release(release, ReleaseStatus.ARCHIVED)
                release.archived_at = self.clock()
                cron_job.cron_status = CronStatus.COMPLETED
                cron_job.pause_type = PauseType.NONE
                await record_activity(
                    session,
                    release_id=release.id,
                    entity_type="release",
                    entity_id=release.id,
                    action="release_archived",
                    previous_value={"status": previous.value},
                    new_value={"status": ReleaseStatus.ARCHIVED.value},
                    actor=actor.id,
                    details={"reason": reason},
                )
            return release_view(release, cron_job, await get_latest_cycle(session, release.id))

        return await self._mutate(release_id, "archive", actor, operation)

    async def complete_release(self, release_id: UUID, actor: Actor = SYSTEM_ACTOR) -> ReleaseView:
        """Mark distribution finished.

        Raises:
            InvalidTransition: If DISTRIBUTION is not in progress.
        """

        async def operation(session, release, cron_job, events):
            stage_status = cron_job.stage_status(ReleaseStage.DISTRIBUTION)
            if stage_status != StageStatus.IN_PROGRESS:
                raise InvalidTransition(
                    "stage", stage_status, StageStatus.COMPLETED, str(release.id),
                    reason="distribution is not in progress",
                )
            previous = transition_release(release, ReleaseStatus.COMPLETED)
            cron_job.set_stage_status(ReleaseStage.DISTRIBUTION, StageStatus.COMPLETED)
            cron_job.cron_status = CronStatus.COMPLETED
            cron_job.pause_type = PauseType.NONE
            await record_activity(
                session,
                release_id=release.id,
                entity_type="release",
                entity_id=release.id,
                action="release_completed",
                previous_value={"status": previous.value},
                new_value={"status": ReleaseStatus.COMPLETED.value},
                actor=actor.id,
            )
            events.append(stage_completed_event(release.id, ReleaseStage.DISTRIBUTION.value))
            events.append(release_completed_event(release.id))
            return release_view(release, cron_job, await get_latest_cycle(session, release.id))

        return await self._mutate(release_id, "complete", actor, operation)

    async def update_stage_data(
        self,
        release_id: UUID,
        data: dict[str, dict[str, Any]],
        actor: Actor = SYSTEM_ACTOR,
    ) -> dict[str, Any]:
        """Merge integration signals into ``CronJob.stage_data`` section by section."""

        async def operation(session, release, cron_job, events):
            self._require_open(release, "stage data update")
            merged = {section: dict(values) for section, values in (cron_job.stage_data or {}).items()}
            for section, values in data.items():
                if not isinstance(values, dict):
                    raise ValidationError(f"Stage data section {section!r} must be an object")
                merged.setdefault(section, {}).update(values)
            # Reassign so the JSON column change is tracked
            cron_job.stage_data = merged
            await record_activity(
                session,
                release_id=release.id,
                entity_type="cron_job",
                entity_id=cron_job.id,
                action="stage_data_updated",
                new_value=data,
                actor=actor.id,
            )
            return merged

        return await self._mutate(release_id, "stage_data_update", actor, operation, "cron_job")

    # ------------------------------------------------------------------
    # Regression cycles and slots
    # ------------------------------------------------------------------

    def _require_regression(self, release: Release, cron_job: CronJob) -> None:
        status = cron_job.stage_status(ReleaseStage.REGRESSION)
        if status != StageStatus.IN_PROGRESS:
            raise InvalidTransition(
                "stage", status, "regression cycle", str(release.id),
                reason="regression stage is not in progress",
            )

    async def start_cycle(self, release_id: UUID, actor: Actor = SYSTEM_ACTOR) -> RegressionCycle:
        """Start an ad hoc regression cycle.

        Raises:
            CycleAlreadyActive: If the latest cycle is still active.
        """

        async def operation(session, release, cron_job, events):
            self._require_open(release, "regression cycle")
            self._require_regression(release, cron_job)
            return await self.cycles.start_cycle(session, release, cron_job, actor=actor.id)

        return await self._mutate(release_id, "regression_cycle_start", actor, operation, "regression_cycle")

    async def complete_cycle(self, release_id: UUID, cycle_id: UUID, actor: Actor = SYSTEM_ACTOR) -> RegressionCycle:
        """Complete the latest cycle once all of its tasks settled."""

        async def operation(session, release, cron_job, events):
            cycle = await self._latest_cycle(session, release, cycle_id)
            pending = [
                task for task in await list_tasks(session, release.id, regression_cycle_id=cycle.id)
                if not task.status.is_settled
            ]
            if pending:
                raise InvalidTransition(
                    "regression_cycle", cycle.status, "DONE", str(cycle.id),
                    reason=f"{len(pending)} task(s) not yet completed",
                )
            await self.cycles.complete_cycle(session, release, cron_job, cycle, actor=actor.id)
            return cycle

        return await self._mutate(
            release_id, "regression_cycle_complete", actor, operation, "regression_cycle", cycle_id
        )

    async def abandon_cycle(
        self,
        release_id: UUID,
        cycle_id: UUID,
        reason: str,
        actor: Actor = SYSTEM_ACTOR,
    ) -> RegressionCycle:
        """Abandon the latest cycle; a failure inside it no longer blocks the release."""

        async def operation(session, release, cron_job, events):
            cycle = await self._latest_cycle(session, release, cycle_id)
            await self.cycles.abandon_cycle(session, release, cycle, reason, actor=actor.id)
            if cron_job.cron_status == CronStatus.PAUSED and cron_job.pause_type == PauseType.TASK_FAILURE:
                cron_job.cron_status = CronStatus.RUNNING
            return cycle

        return await self._mutate(
            release_id, "regression_cycle_abandon", actor, operation, "regression_cycle", cycle_id
        )

    async def _latest_cycle(self, session: AsyncSession, release: Release, cycle_id: UUID) -> RegressionCycle:
        cycle = await get_cycle(session, cycle_id)
        if cycle is None or cycle.release_id != release.id:
            raise NotFound("regression_cycle", cycle_id)
        if not cycle.is_latest:
            raise InvalidTransition(
                "regression_cycle", cycle.status, "updated", str(cycle.id),
                reason="cycle was superseded by a later cycle",
            )
        return cycle

    async def add_regression_slots(
        self,
        release_id: UUID,
        slots: list[dict[str, Any]],
        actor: Actor = SYSTEM_ACTOR,
    ) -> list[dict[str, Any]]:
        """Schedule more regression slots, kept ordered by date.

        Raises:
            ValidationError: If a slot date is malformed.
            InvalidTransition: If REGRESSION already completed.
        """
        new_slots = [
            {"date": parse_slot_date(slot).isoformat(), "config": slot.get("config") or {}}
            for slot in slots
        ]

        async def operation(session, release, cron_job, events):
            self._require_open(release, "regression slots")
            status = cron_job.stage_status(ReleaseStage.REGRESSION)
            if status == StageStatus.COMPLETED:
                raise InvalidTransition(
                    "stage", status, "regression slots", str(release.id),
                    reason="regression stage already completed",
                )
            # Reassign so the JSON column change is tracked
            cron_job.upcoming_regressions = sorted_slots([*(cron_job.upcoming_regressions or []), *new_slots])
            await record_activity(
                session,
                release_id=release.id,
                entity_type="cron_job",
                entity_id=cron_job.id,
                action="regression_slots_added",
                new_value={"slots": new_slots},
                actor=actor.id,
            )
            return list(cron_job.upcoming_regressions)

        return await self._mutate(release_id, "regression_slots_add", actor, operation, "cron_job")
