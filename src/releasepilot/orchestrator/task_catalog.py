"""Declared task order per stage and task applicability rules.

Tasks inside a stage advance in the order listed in ``STAGE_TASKS``.
Regression tasks are created per cycle; their sequence numbers are offset
by the cycle number so tasks of later cycles always sort after earlier
ones. Tasks that do not apply to a release are still created, then
skipped with a reason, so the stage history shows every step.
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from releasepilot.database.models.build import BuildStage
from releasepilot.database.models.cron_job import CronJob, IntegrationKind
from releasepilot.database.models.regression_cycle import RegressionCycle
from releasepilot.database.models.release import Platform, Release, ReleaseStage
from releasepilot.database.models.task import ReleaseTask, TaskType
from releasepilot.database.queries.task import create_task
from releasepilot.orchestrator.task_lifecycle import TaskLifecycle

CYCLE_SEQUENCE_STRIDE = 100

STAGE_TASKS: dict[ReleaseStage, list[TaskType]] = {
    ReleaseStage.KICKOFF: [
        TaskType.PRE_KICK_OFF_REMINDER,
        TaskType.FORK_BRANCH,
        TaskType.CREATE_PROJECT_MANAGEMENT_TICKET,
        TaskType.CREATE_TEST_SUITE,
        TaskType.TRIGGER_PRE_REGRESSION_BUILDS,
    ],
    ReleaseStage.REGRESSION: [
        TaskType.RESET_TEST_SUITE,
        TaskType.CREATE_RC_TAG,
        TaskType.CREATE_RELEASE_NOTES,
        TaskType.TRIGGER_REGRESSION_BUILDS,
        TaskType.TRIGGER_AUTOMATION_RUNS,
        TaskType.AUTOMATION_RUNS,
        TaskType.SEND_REGRESSION_BUILD_MESSAGE,
    ],
    ReleaseStage.POST_REGRESSION: [
        TaskType.PRE_RELEASE_CHERRY_PICKS_REMINDER,
        TaskType.CREATE_RELEASE_TAG,
        TaskType.CREATE_FINAL_RELEASE_NOTES,
        TaskType.TRIGGER_TEST_FLIGHT_BUILD,
        TaskType.CREATE_AAB_BUILD,
        TaskType.SEND_POST_REGRESSION_MESSAGE,
        TaskType.CHECK_PROJECT_RELEASE_APPROVAL,
    ],
    ReleaseStage.DISTRIBUTION: [
        TaskType.SUBMIT_TO_TARGET,
    ],
}

BUILD_TASK_STAGES: dict[TaskType, BuildStage] = {
    TaskType.TRIGGER_PRE_REGRESSION_BUILDS: BuildStage.PRE_REGRESSION,
    TaskType.TRIGGER_REGRESSION_BUILDS: BuildStage.REGRESSION,
    TaskType.TRIGGER_TEST_FLIGHT_BUILD: BuildStage.PRE_RELEASE,
    TaskType.CREATE_AAB_BUILD: BuildStage.PRE_RELEASE,
}


def is_build_task(task_type: TaskType) -> bool:
    """Whether the task type collects builds from CI/CD or manual uploads."""
    return task_type in BUILD_TASK_STAGES


def expected_build_platforms(task_type: TaskType, release: Release) -> list[Platform]:
    """Platforms a build task needs a build for before it can complete."""
    if task_type == TaskType.TRIGGER_TEST_FLIGHT_BUILD:
        return [Platform.IOS]
    if task_type == TaskType.CREATE_AAB_BUILD:
        return [Platform.ANDROID]
    return list(release.platforms)


def skip_reason(
    task_type: TaskType,
    release: Release,
    cron_job: CronJob,
    cycle_number: int = 1,
) -> str | None:
    """Return why a task does not apply to this release, or None if it does.

    Args:
        task_type: Task type to check.
        release: Release the task would belong to.
        cron_job: Cron job holding the configuration flags.
        cycle_number: Regression cycle number, for per-cycle rules.

    Returns:
        A human-readable skip reason, or None when the task is required.
    """
    platforms = release.platforms

    if task_type == TaskType.PRE_KICK_OFF_REMINDER:
        if not cron_job.config_flag("kickoff_reminder"):
            return "kickoff reminder disabled"
    elif task_type in (
        TaskType.CREATE_PROJECT_MANAGEMENT_TICKET,
        TaskType.CHECK_PROJECT_RELEASE_APPROVAL,
    ):
        if not cron_job.has_integration(IntegrationKind.PROJECT_MANAGEMENT):
            return "no project management integration"
    elif task_type == TaskType.CREATE_TEST_SUITE:
        if not cron_job.has_integration(IntegrationKind.TEST_MANAGEMENT):
            return "no test management integration"
    elif task_type == TaskType.RESET_TEST_SUITE:
        if cycle_number <= 1:
            return "first regression cycle"
        if not cron_job.has_integration(IntegrationKind.TEST_MANAGEMENT):
            return "no test management integration"
    elif task_type == TaskType.TRIGGER_PRE_REGRESSION_BUILDS:
        if not cron_job.config_flag("pre_regression_builds"):
            return "pre-regression builds disabled"
    elif task_type == TaskType.TRIGGER_AUTOMATION_RUNS:
        if not cron_job.config_flag("automation_builds"):
            return "automation builds disabled"
    elif task_type == TaskType.AUTOMATION_RUNS:
        if not cron_job.config_flag("automation_runs"):
            return "automation runs disabled"
    elif task_type == TaskType.TRIGGER_TEST_FLIGHT_BUILD:
        if Platform.IOS not in platforms:
            return "release has no iOS platform"
        if not cron_job.config_flag("test_flight_builds", default=True):
            return "TestFlight builds disabled"
    elif task_type == TaskType.CREATE_AAB_BUILD:
        if Platform.ANDROID not in platforms:
            return "release has no Android platform"
    elif task_type == TaskType.TRIGGER_REGRESSION_BUILDS:
        if not platforms:
            return "release has no platforms"
    return None


async def create_stage_tasks(
    session: AsyncSession,
    lifecycle: TaskLifecycle,
    release: Release,
    cron_job: CronJob,
    stage: ReleaseStage,
    cycle: RegressionCycle | None = None,
) -> list[ReleaseTask]:
    """Create every task of a stage, or of one regression cycle.

    Non-applicable tasks are skipped immediately with their reason.

    Args:
        session: Active async database session.
        lifecycle: Task lifecycle used to skip non-applicable tasks.
        release: Owning release.
        cron_job: Cron job holding the configuration flags.
        stage: Stage whose tasks to create.
        cycle: Regression cycle, required for the REGRESSION stage.

    Returns:
        The created tasks in declared order.
    """
    if stage == ReleaseStage.REGRESSION and cycle is None:
        raise ValueError("Regression tasks must belong to a cycle")

    cycle_number = cycle.cycle_number if cycle is not None else 1
    offset = cycle_number * CYCLE_SEQUENCE_STRIDE if cycle is not None else 0

    tasks: list[ReleaseTask] = []
    for index, task_type in enumerate(STAGE_TASKS[stage]):
        task = await create_task(
            session,
            release_id=release.id,
            task_type=task_type,
            stage=stage,
            sequence=offset + index,
            regression_cycle_id=cycle.id if cycle is not None else None,
        )
        reason = skip_reason(task_type, release, cron_job, cycle_number)
        if reason is not None:
            await lifecycle.skip(task, reason, session)
        tasks.append(task)
    return tasks
