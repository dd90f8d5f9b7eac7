"""Inbound build reports: CI/CD workflow callbacks and manual uploads.

Progress and completion reports write optimistically and retry when a
concurrent orchestrator pass changed the same rows first; the version
columns make the losing writer start over on fresh state. A FAILED report
pauses the release, so it runs under the release lease like any other
cron job mutation and fails fast with LockContention when a pass holds it.

A CI/CD callback upserts the build reported by a job (keyed by job URL),
then, depending on the reported workflow status:

- FAILED fails the task and pauses the release.
- QUEUED / RUNNING only record progress.
- COMPLETED completes the task once every expected platform has a usable
  build, or leaves the build staged when the task is not parked yet.

A repeated completion callback for the same job is a no-op; a completion
for a task already completed with a different job is a conflict.
"""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import TypeVar
from uuid import UUID

import structlog
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from releasepilot.actors import SYSTEM_ACTOR, Actor
from releasepilot.database.models.base import utcnow
from releasepilot.database.models.build import Build, BuildSource, BuildStage, WorkflowStatus
from releasepilot.database.models.regression_cycle import RegressionCycle
from releasepilot.database.models.release import Platform, Release, ReleaseStatus
from releasepilot.database.models.task import ReleaseTask, TaskStatus
from releasepilot.database.queries.build import create_build, get_build_by_job_url, list_builds
from releasepilot.database.queries.cron_job import get_cron_job_for_release
from releasepilot.database.queries.regression_cycle import get_latest_cycle
from releasepilot.database.queries.release import get_release
from releasepilot.database.queries.task import get_task, list_tasks
from releasepilot.errors import (
    DuplicateCompletionConflict,
    InvalidTransition,
    LockContention,
    NotFound,
    ValidationError,
)
from releasepilot.integrations.webhooks import PendingEvent, WebhookDispatcher
from releasepilot.orchestrator.audit import audited_operation
from releasepilot.orchestrator.builds import build_task_types_for, collect_builds
from releasepilot.orchestrator.cron import pause_for_failure
from releasepilot.orchestrator.lease import Lease, LeaseManager, ensure_lease
from releasepilot.orchestrator.regression import RegressionCycleManager
from releasepilot.orchestrator.task_catalog import BUILD_TASK_STAGES, expected_build_platforms, is_build_task
from releasepilot.orchestrator.task_lifecycle import TaskLifecycle

logger = structlog.get_logger(__name__)

T = TypeVar("T")

ACCEPTING_STATUSES = (
    TaskStatus.PENDING,
    TaskStatus.IN_PROGRESS,
    TaskStatus.AWAITING_CALLBACK,
)


class CiCallback(BaseModel):
    """Payload a CI/CD workflow posts when its build job changes status."""

    task_id: UUID
    platform: Platform
    job_url: str = Field(..., min_length=1)
    status: WorkflowStatus
    artifact_path: str | None = None
    testflight_number: str | None = None
    internal_track_link: str | None = None
    version_code: str | None = None
    reason: str | None = None


class ManualUpload(BaseModel):
    """A build uploaded by a user for a release in manual build mode."""

    platform: Platform
    build_stage: BuildStage
    artifact_path: str | None = None
    testflight_number: str | None = None
    internal_track_link: str | None = None
    version_code: str | None = None


class BuildReport(BaseModel):
    """What happened to a reported build."""

    build_id: str
    task_id: str | None
    task_status: TaskStatus | None
    consumed: bool
    duplicate: bool = False


class CallbackService:
    """Applies CI/CD callbacks and manual uploads to builds and tasks.

    Attributes:
        session_factory: Factory for transactional sessions.
        leases: Lease manager shared with the orchestrator.
        max_attempts: Attempts before a write conflict becomes LockContention.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: WebhookDispatcher | None = None,
        clock: Callable[[], datetime] = utcnow,
        max_attempts: int = 3,
        leases: LeaseManager | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.notifier = notifier
        self.clock = clock
        self.leases = leases or LeaseManager(session_factory, clock=clock)
        self.lifecycle = TaskLifecycle(clock=clock)
        self.cycles = RegressionCycleManager(self.lifecycle, clock)
        self.max_attempts = max_attempts
        self.logger = logger.bind(component="CallbackService")

    async def _publish(self, events: list[PendingEvent]) -> None:
        if self.notifier is not None and events:
            await self.notifier.publish(events)

    async def _with_retries(self, key: str, attempt_once: Callable[[], Awaitable[T]]) -> T:
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await attempt_once()
            except StaleDataError:
                self.logger.warning("callback_write_conflict", key=key, attempt=attempt)
        raise LockContention(key)

    async def _load_release(self, session: AsyncSession, release_id: UUID) -> Release:
        release = await get_release(session, release_id)
        if release is None:
            raise NotFound("release", release_id)
        if release.status == ReleaseStatus.ARCHIVED:
            raise InvalidTransition(
                "release", release.status, "build", str(release.id), reason="release is archived"
            )
        return release

    async def list_builds(
        self,
        release_id: UUID,
        build_stage: BuildStage | None = None,
        platform: Platform | None = None,
    ) -> list[Build]:
        async with self.session_factory() as session:
            if await get_release(session, release_id) is None:
                raise NotFound("release", release_id)
            return await list_builds(session, release_id, build_stage=build_stage, platform=platform)

    # ------------------------------------------------------------------
    # CI/CD callbacks
    # ------------------------------------------------------------------

    async def handle_ci_callback(self, callback: CiCallback, actor: Actor = SYSTEM_ACTOR) -> BuildReport:
        """Record a CI/CD build report and advance its task.

        Raises:
            NotFound: If the task does not exist.
            ValidationError: If the task is not a build task or does not
                expect the platform.
            InvalidTransition: If the release uses manual uploads, is
                archived, or the task or its cycle can no longer change.
            DuplicateCompletionConflict: If the task already completed
                with another job's build.
            LockContention: If concurrent writers kept winning, or a FAILED
                report found the release lease held.
        """
        async with self.session_factory() as session:
            task = await get_task(session, callback.task_id)
            if task is None:
                raise NotFound("task", callback.task_id)
            release_id = task.release_id
            cron_job = await get_cron_job_for_release(session, release_id)
            cron_job_id = cron_job.id if cron_job is not None else None

        events: list[PendingEvent] = []

        async def attempt_once(lease: Lease | None = None) -> BuildReport:
            events.clear()
            async with self.session_factory() as session, session.begin():
                report = await self._apply_callback(session, callback, actor, events)
                if lease is not None:
                    locked = await get_cron_job_for_release(session, release_id)
                    if locked is None:
                        raise NotFound("release", release_id)
                    ensure_lease(lease, locked, self.clock())
                return report

        async with audited_operation(
            self.session_factory, release_id, "task", callback.task_id, "ci_callback", actor.id
        ):
            if callback.status == WorkflowStatus.FAILED and cron_job_id is not None:
                holder = f"callback:{actor.id}:{uuid.uuid4().hex[:8]}"
                async with self.leases.hold(cron_job_id, holder) as lease:
                    report = await self._with_retries(str(callback.task_id), lambda: attempt_once(lease))
            else:
                report = await self._with_retries(str(callback.task_id), attempt_once)

        await self._publish(events)
        return report

    async def _apply_callback(
        self,
        session: AsyncSession,
        callback: CiCallback,
        actor: Actor,
        events: list[PendingEvent],
    ) -> BuildReport:
        task = await get_task(session, callback.task_id)
        if task is None:
            raise NotFound("task", callback.task_id)
        if not is_build_task(task.task_type):
            raise ValidationError(
                f"Task {task.id} ({task.task_type.value}) does not produce builds", task_id=str(task.id)
            )
        release = await self._load_release(session, task.release_id)
        if release.has_manual_build_upload:
            raise InvalidTransition(
                "task", task.status, "ci_callback", str(task.id),
                reason="release uses manual build uploads",
            )
        cycle = await self.cycles.get_mutable_cycle(session, task)
        if callback.platform not in expected_build_platforms(task.task_type, release):
            raise ValidationError(
                f"Task {task.task_type.value} does not expect a {callback.platform.value} build",
                platform=callback.platform.value,
            )

        if task.status == TaskStatus.COMPLETED:
            return await self._repeat_completion(session, task, callback)
        if task.status not in ACCEPTING_STATUSES:
            raise InvalidTransition(
                "task", task.status, "ci_callback", str(task.id),
                reason="task no longer accepts builds",
            )

        build = await self._upsert_build(session, release, task, cycle, callback)

        if callback.status == WorkflowStatus.FAILED:
            await self.lifecycle.fail(
                task, callback.reason or f"{callback.platform.value} build failed: {callback.job_url}",
                session, actor=actor.id,
            )
            cron_job = await get_cron_job_for_release(session, release.id)
            if cron_job is not None:
                events.extend(await pause_for_failure(session, release, cron_job, task, actor.id))
            return self._report(build, task)

        if callback.status == WorkflowStatus.COMPLETED and task.status == TaskStatus.AWAITING_CALLBACK:
            await collect_builds(session, self.lifecycle, release, task, actor=actor.id)

        self.logger.info(
            "ci_callback_applied",
            task_id=str(task.id),
            platform=callback.platform.value,
            workflow_status=callback.status.value,
            task_status=task.status.value,
        )
        return self._report(build, task)

    async def _repeat_completion(
        self,
        session: AsyncSession,
        task: ReleaseTask,
        callback: CiCallback,
    ) -> BuildReport:
        linked = [
            build for build in await list_builds(session, task.release_id, task_id=task.id)
            if build.platform == callback.platform
        ]
        if linked and linked[0].job_url == callback.job_url:
            self.logger.debug("ci_callback_repeated", task_id=str(task.id), job_url=callback.job_url)
            report = self._report(linked[0], task)
            report.duplicate = True
            return report
        raise DuplicateCompletionConflict(str(task.id))

    async def _upsert_build(
        self,
        session: AsyncSession,
        release: Release,
        task: ReleaseTask,
        cycle: RegressionCycle | None,
        callback: CiCallback,
    ) -> Build:
        build = await get_build_by_job_url(session, release.id, callback.job_url)
        if build is None:
            return await create_build(
                session,
                release_id=release.id,
                platform=callback.platform,
                build_stage=BUILD_TASK_STAGES[task.task_type],
                source=BuildSource.CI_CD,
                artifact_path=callback.artifact_path,
                testflight_number=callback.testflight_number,
                internal_track_link=callback.internal_track_link,
                version_code=callback.version_code,
                workflow_status=callback.status,
                job_url=callback.job_url,
                regression_cycle_id=cycle.id if cycle is not None else None,
            )

        build.workflow_status = callback.status
        build.artifact_path = callback.artifact_path or build.artifact_path
        build.testflight_number = callback.testflight_number or build.testflight_number
        build.internal_track_link = callback.internal_track_link or build.internal_track_link
        build.version_code = callback.version_code or build.version_code
        await session.flush()
        return build

    def _report(self, build: Build, task: ReleaseTask | None) -> BuildReport:
        return BuildReport(
            build_id=str(build.id),
            task_id=str(task.id) if task is not None else None,
            task_status=task.status if task is not None else None,
            consumed=build.task_id is not None,
        )

    # ------------------------------------------------------------------
    # Manual uploads
    # ------------------------------------------------------------------

    async def handle_manual_upload(
        self,
        release_id: UUID,
        upload: ManualUpload,
        actor: Actor = SYSTEM_ACTOR,
    ) -> BuildReport:
        """Record a user-uploaded build and complete the task waiting for it.

        Uploads that arrive before their task is parked stay staged until
        the orchestrator reaches the task.

        Raises:
            ValidationError: If the release uses CI/CD builds, does not ship
                to the platform, or the upload carries no artifact.
            InvalidTransition: If the release is archived or completed.
        """
        if not upload.artifact_path and not upload.testflight_number:
            raise ValidationError("A manual upload needs an artifact path or a TestFlight number")

        async def attempt_once() -> BuildReport:
            async with self.session_factory() as session, session.begin():
                return await self._apply_upload(session, release_id, upload, actor)

        async with audited_operation(
            self.session_factory, release_id, "build", upload.platform.value, "manual_upload", actor.id
        ):
            report = await self._with_retries(str(release_id), attempt_once)
        return report

    async def _apply_upload(
        self,
        session: AsyncSession,
        release_id: UUID,
        upload: ManualUpload,
        actor: Actor,
    ) -> BuildReport:
        release = await self._load_release(session, release_id)
        if release.status == ReleaseStatus.COMPLETED:
            raise InvalidTransition(
                "release", release.status, "build", str(release.id), reason="release is completed"
            )
        if not release.has_manual_build_upload:
            raise ValidationError(
                f"Release {release.release_key} receives builds from CI/CD", release_id=str(release.id)
            )
        if upload.platform not in release.platforms:
            raise ValidationError(
                f"Release {release.release_key} does not ship to {upload.platform.value}",
                platform=upload.platform.value,
            )

        cycle_id = None
        if upload.build_stage == BuildStage.REGRESSION:
            latest = await get_latest_cycle(session, release.id)
            if latest is not None and latest.status.is_active:
                cycle_id = latest.id

        build = await create_build(
            session,
            release_id=release.id,
            platform=upload.platform,
            build_stage=upload.build_stage,
            source=BuildSource.MANUAL,
            artifact_path=upload.artifact_path,
            testflight_number=upload.testflight_number,
            internal_track_link=upload.internal_track_link,
            version_code=upload.version_code,
            regression_cycle_id=cycle_id,
        )

        task = await self._waiting_task(session, release, upload, cycle_id)
        if task is not None:
            await collect_builds(session, self.lifecycle, release, task, actor=actor.id)

        self.logger.info(
            "manual_build_uploaded",
            release_id=str(release.id),
            platform=upload.platform.value,
            build_stage=upload.build_stage.value,
            task_id=str(task.id) if task is not None else None,
        )
        return self._report(build, task)

    async def _waiting_task(
        self,
        session: AsyncSession,
        release: Release,
        upload: ManualUpload,
        cycle_id: UUID | None = None,
    ) -> ReleaseTask | None:
        """The parked build task that expects this upload, if any.

        Tasks left parked in an abandoned or superseded cycle are ignored.
        """
        task_types = build_task_types_for(upload.build_stage)
        candidates = await list_tasks(session, release.id, statuses=[TaskStatus.AWAITING_MANUAL_BUILD])
        for task in candidates:
            if task.regression_cycle_id is not None and task.regression_cycle_id != cycle_id:
                continue
            if task.task_type in task_types and upload.platform in expected_build_platforms(task.task_type, release):
                return task
        return None
