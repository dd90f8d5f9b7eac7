"""Linking builds to the tasks that wait for them.

Builds arrive independently of task progress: a CI/CD callback can land
before its task is parked, and a human can upload a build before the
stage starts. Such builds are staged (``task_id`` is None). When a build
task waits for external input, ``collect_builds`` consumes the matching
staged builds and completes the task once every expected platform has a
usable build.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from releasepilot.database.models.base import utcnow
from releasepilot.database.models.build import Build, BuildStage, WorkflowStatus
from releasepilot.database.models.release import Release
from releasepilot.database.models.task import ReleaseTask, TaskType
from releasepilot.database.queries.activity_log import record_activity
from releasepilot.database.queries.build import list_builds
from releasepilot.orchestrator.task_catalog import BUILD_TASK_STAGES, expected_build_platforms
from releasepilot.orchestrator.task_lifecycle import TaskLifecycle
from releasepilot.orchestrator.task_outputs import BuildReference, BuildTaskOutput

logger = structlog.get_logger(__name__)


def build_is_usable(build: Build) -> bool:
    """Manual builds and completed CI/CD builds can complete a task."""
    return build.workflow_status in (None, WorkflowStatus.COMPLETED)


def build_task_types_for(build_stage: BuildStage) -> list[TaskType]:
    """Task types that collect builds of a build stage."""
    return [task_type for task_type, stage in BUILD_TASK_STAGES.items() if stage == build_stage]


async def link_build(
    session: AsyncSession,
    build: Build,
    task: ReleaseTask,
    clock: Callable[[], datetime] = utcnow,
    actor: str = "system",
) -> None:
    """Consume a staged build. ``task_id`` never changes once set."""
    if build.task_id is not None:
        if build.task_id != task.id:
            raise ValueError(f"Build {build.id} is already consumed by task {build.task_id}")
        return
    build.task_id = task.id
    build.consumed_at = clock()
    await record_activity(
        session,
        release_id=build.release_id,
        entity_type="build",
        entity_id=build.id,
        action="build_consumed",
        previous_value={"task_id": None},
        new_value={"task_id": str(task.id)},
        actor=actor,
        details={"platform": build.platform.value, "build_stage": build.build_stage.value},
    )


async def collect_builds(
    session: AsyncSession,
    lifecycle: TaskLifecycle,
    release: Release,
    task: ReleaseTask,
    actor: str = "system",
) -> bool:
    """Consume staged builds for an awaiting build task and complete it if ready.

    Builds from another regression cycle are left staged. At most one
    usable build per platform is consumed.

    Returns:
        True if the task was completed.
    """
    build_stage = BUILD_TASK_STAGES[task.task_type]
    expected = expected_build_platforms(task.task_type, release)

    linked = await list_builds(session, release.id, task_id=task.id)
    ready = {build.platform: build for build in linked if build_is_usable(build)}

    staged = await list_builds(session, release.id, build_stage=build_stage, staged_only=True)
    for build in staged:
        if build.platform not in expected or build.platform in ready:
            continue
        if not build_is_usable(build):
            continue
        if build.regression_cycle_id is not None and build.regression_cycle_id != task.regression_cycle_id:
            continue
        await link_build(session, build, task, lifecycle.clock, actor)
        ready[build.platform] = build

    missing = [platform for platform in expected if platform not in ready]
    if missing:
        logger.debug(
            "build_task_waiting",
            task_id=str(task.id),
            missing_platforms=[p.value for p in missing],
        )
        await session.flush()
        return False

    output = BuildTaskOutput(
        builds=[
            BuildReference(
                platform=platform,
                build_id=str(ready[platform].id),
                artifact_path=ready[platform].artifact_path,
                job_url=ready[platform].job_url,
                testflight_number=ready[platform].testflight_number,
                internal_track_link=ready[platform].internal_track_link,
            )
            for platform in expected
        ]
    )
    await lifecycle.complete(task, output, session, actor=actor)
    return True
