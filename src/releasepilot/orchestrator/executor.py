"""Task execution for the cron orchestrator.

Each task type has one handler registered in ``TaskExecutor.handlers``.
A handler receives an ``ExecutionContext`` and returns a ``TaskOutcome``:

- COMPLETED: the work is done; the outcome carries the task output.
- AWAITING_EXTERNAL: the task waits for a CI/CD callback or a manual
  build upload, depending on the release build mode.
- RUNNING: the work was dispatched or is being polled; the task stays
  IN_PROGRESS and the handler runs again on the next tick.
- FAILED: the task failed; the orchestrator pauses the release.

Handlers never change task status themselves. The default handlers
derive outputs from release data and ``CronJob.stage_data``; a host
replaces them with live integrations through ``register``.
"""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from releasepilot.database.models.cron_job import CronJob
from releasepilot.database.models.regression_cycle import RegressionCycle
from releasepilot.database.models.release import Platform, Release
from releasepilot.database.models.task import ReleaseTask, TaskType
from releasepilot.database.queries.submission import get_active_submission
from releasepilot.distribution.rollout import ROLLOUT_RULES, RolloutController
from releasepilot.distribution.submissions import open_submission
from releasepilot.integrations.webhooks import PendingEvent, build_requested_event
from releasepilot.orchestrator.task_catalog import expected_build_platforms, is_build_task
from releasepilot.orchestrator.task_outputs import (
    ApprovalCheckOutput,
    AutomationRunOutput,
    ForkBranchOutput,
    NotificationOutput,
    ReleaseNotesOutput,
    SubmissionReference,
    SubmitToTargetOutput,
    TagOutput,
    TestSuiteOutput,
    TicketOutput,
)

logger = structlog.get_logger(__name__)


class OutcomeKind(str, Enum):
    COMPLETED = "COMPLETED"
    AWAITING_EXTERNAL = "AWAITING_EXTERNAL"
    RUNNING = "RUNNING"
    FAILED = "FAILED"


@dataclass
class TaskOutcome:
    """Result of one handler invocation.

    Attributes:
        kind: What the orchestrator should do with the task.
        output: Task output for COMPLETED outcomes.
        reason: Failure reason for FAILED outcomes.
        external_id: Correlation id of a dispatched external job.
        events: Notifications to publish once the pass commits.
    """

    kind: OutcomeKind
    output: dict[str, Any] | None = None
    reason: str | None = None
    external_id: str | None = None
    events: list[PendingEvent] = field(default_factory=list)

    @classmethod
    def completed(cls, output: Any) -> TaskOutcome:
        if hasattr(output, "model_dump"):
            output = output.model_dump(mode="json")
        return cls(kind=OutcomeKind.COMPLETED, output=output)

    @classmethod
    def awaiting(cls, external_id: str | None = None) -> TaskOutcome:
        return cls(kind=OutcomeKind.AWAITING_EXTERNAL, external_id=external_id)

    @classmethod
    def running(cls, external_id: str | None = None, events: list[PendingEvent] | None = None) -> TaskOutcome:
        return cls(kind=OutcomeKind.RUNNING, external_id=external_id, events=events or [])

    @classmethod
    def failed(cls, reason: str) -> TaskOutcome:
        return cls(kind=OutcomeKind.FAILED, reason=reason)


@dataclass
class ExecutionContext:
    """What a handler may read and modify.

    The release, cron job and cycle are attached to ``session``; handlers
    may update them (for example the release branch) but must not commit.
    """

    session: AsyncSession
    release: Release
    cron_job: CronJob
    task: ReleaseTask
    cycle: RegressionCycle | None = None
    actor: str = "system"

    def stage_value(self, section: str, key: str, default: Any = None) -> Any:
        return ((self.cron_job.stage_data or {}).get(section) or {}).get(key, default)


TaskHandler = Callable[[ExecutionContext], Awaitable[TaskOutcome]]


# ---------------------------------------------------------------------------
# Default handlers
# ---------------------------------------------------------------------------


async def notify(ctx: ExecutionContext) -> TaskOutcome:
    return TaskOutcome.completed(
        NotificationOutput(
            channel=(ctx.cron_job.cron_config or {}).get("channel"),
            message_id=f"{ctx.task.task_type.value.lower()}-{ctx.task.id.hex[:8]}",
        )
    )


async def fork_branch(ctx: ExecutionContext) -> TaskOutcome:
    release = ctx.release
    if not release.branch:
        release.branch = f"release/{release.release_key}"
    return TaskOutcome.completed(
        ForkBranchOutput(branch_name=release.branch, base_branch=release.base_branch)
    )


async def create_ticket(ctx: ExecutionContext) -> TaskOutcome:
    ticket_id = ctx.stage_value("project_management", "ticket_id") or f"REL-{ctx.release.release_key}"
    return TaskOutcome.completed(
        TicketOutput(
            ticket_id=ticket_id,
            ticket_url=ctx.stage_value("project_management", "ticket_url"),
        )
    )


async def prepare_test_suite(ctx: ExecutionContext) -> TaskOutcome:
    suite_id = ctx.stage_value("test_management", "test_suite_id") or f"suite-{ctx.release.release_key}"
    return TaskOutcome.completed(
        TestSuiteOutput(
            test_suite_id=suite_id,
            test_suite_url=ctx.stage_value("test_management", "test_suite_url"),
        )
    )


def rc_tag_name(release: Release, cycle: RegressionCycle | None) -> str:
    suffix = cycle.cycle_tag if cycle is not None and cycle.cycle_tag else "RC"
    return f"{release.release_key}-{suffix}"


async def create_rc_tag(ctx: ExecutionContext) -> TaskOutcome:
    return TaskOutcome.completed(TagOutput(tag_name=rc_tag_name(ctx.release, ctx.cycle)))


async def create_release_notes(ctx: ExecutionContext) -> TaskOutcome:
    return TaskOutcome.completed(ReleaseNotesOutput(tag_name=rc_tag_name(ctx.release, ctx.cycle)))


async def create_release_tag(ctx: ExecutionContext) -> TaskOutcome:
    return TaskOutcome.completed(TagOutput(tag_name=ctx.release.release_key))


async def create_final_release_notes(ctx: ExecutionContext) -> TaskOutcome:
    return TaskOutcome.completed(ReleaseNotesOutput(tag_name=ctx.release.release_key))


async def trigger_automation(ctx: ExecutionContext) -> TaskOutcome:
    return TaskOutcome.completed(AutomationRunOutput(run_ids=[f"auto-{ctx.task.id.hex[:8]}"]))


async def automation_results(ctx: ExecutionContext) -> TaskOutcome:
    passed = ctx.stage_value("automation", "passed")
    if passed is False:
        return TaskOutcome.failed("automation runs reported failures")
    return TaskOutcome.completed(AutomationRunOutput(passed=passed))


async def check_release_approval(ctx: ExecutionContext) -> TaskOutcome:
    """Poll project management until the release is approved."""
    if not ctx.stage_value("project_management", "approved", False):
        return TaskOutcome.running()
    return TaskOutcome.completed(
        ApprovalCheckOutput(
            approved=True,
            ticket_id=ctx.stage_value("project_management", "ticket_id"),
        )
    )


async def request_builds(ctx: ExecutionContext) -> TaskOutcome:
    """Dispatch a CI/CD workflow, or wait for a manual upload.

    In CI/CD mode the first run emits a build request and keeps the task
    IN_PROGRESS; the next run parks it until the callback arrives.
    """
    task = ctx.task
    if ctx.release.has_manual_build_upload:
        return TaskOutcome.awaiting()
    if task.external_id:
        return TaskOutcome.awaiting(task.external_id)

    external_id = f"ci-{uuid.uuid4().hex[:12]}"
    platforms = [p.value for p in expected_build_platforms(task.task_type, ctx.release)]
    return TaskOutcome.running(
        external_id=external_id,
        events=[
            build_requested_event(
                ctx.release.id, task.id, task.task_type.value, platforms, external_id, ctx.release.branch
            )
        ],
    )


class SubmitToTargets:
    """Opens one store submission per store platform of the release.

    Re-running is safe: platforms that already have an active submission
    are reported, not resubmitted.
    """

    def __init__(self, controller: RolloutController) -> None:
        self.controller = controller

    async def __call__(self, ctx: ExecutionContext) -> TaskOutcome:
        release = ctx.release
        references: list[SubmissionReference] = []
        ios_phased = bool((ctx.cron_job.cron_config or {}).get("ios_phased_release", True))

        for mapping in release.platform_targets or []:
            platform = Platform(mapping["platform"])
            target = mapping.get("target", "")
            if platform not in ROLLOUT_RULES:
                references.append(SubmissionReference(platform=platform, target=target))
                continue

            submission = await get_active_submission(ctx.session, release.id, platform)
            if submission is None or submission.status.allows_resubmission:
                submission = await open_submission(
                    ctx.session,
                    release,
                    platform,
                    self.controller,
                    actor=ctx.actor,
                    phased_release=ios_phased if platform == Platform.IOS else False,
                )
            references.append(
                SubmissionReference(platform=platform, target=target, submission_id=str(submission.id))
            )

        return TaskOutcome.completed(SubmitToTargetOutput(submissions=references))


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


class TaskExecutor:
    """Runs the handler registered for a task's type.

    A handler that raises produces a FAILED outcome; the exception is
    logged with its traceback.
    """

    def __init__(
        self,
        controller: RolloutController | None = None,
        handlers: dict[TaskType, TaskHandler] | None = None,
    ) -> None:
        self.controller = controller or RolloutController()
        self.handlers: dict[TaskType, TaskHandler] = {
            TaskType.PRE_KICK_OFF_REMINDER: notify,
            TaskType.FORK_BRANCH: fork_branch,
            TaskType.CREATE_PROJECT_MANAGEMENT_TICKET: create_ticket,
            TaskType.CREATE_TEST_SUITE: prepare_test_suite,
            TaskType.RESET_TEST_SUITE: prepare_test_suite,
            TaskType.CREATE_RC_TAG: create_rc_tag,
            TaskType.CREATE_RELEASE_NOTES: create_release_notes,
            TaskType.TRIGGER_AUTOMATION_RUNS: trigger_automation,
            TaskType.AUTOMATION_RUNS: automation_results,
            TaskType.SEND_REGRESSION_BUILD_MESSAGE: notify,
            TaskType.PRE_RELEASE_CHERRY_PICKS_REMINDER: notify,
            TaskType.CREATE_RELEASE_TAG: create_release_tag,
            TaskType.CREATE_FINAL_RELEASE_NOTES: create_final_release_notes,
            TaskType.SEND_POST_REGRESSION_MESSAGE: notify,
            TaskType.CHECK_PROJECT_RELEASE_APPROVAL: check_release_approval,
            TaskType.SUBMIT_TO_TARGET: SubmitToTargets(self.controller),
        }
        for task_type in TaskType:
            if is_build_task(task_type):
                self.handlers[task_type] = request_builds
        self.handlers.update(handlers or {})
        self.logger = logger.bind(component="TaskExecutor")

    def register(self, task_type: TaskType, handler: TaskHandler) -> None:
        """Replace the handler of a task type."""
        self.handlers[task_type] = handler

    async def execute(self, ctx: ExecutionContext) -> TaskOutcome:
        """Run the task's handler and return its outcome."""
        task = ctx.task
        handler = self.handlers.get(task.task_type)
        if handler is None:
            return TaskOutcome.failed(f"No handler registered for {task.task_type.value}")

        try:
            outcome = await handler(ctx)
        except Exception as e:
            self.logger.exception(
                "task_handler_error",
                task_id=str(task.id),
                task_type=task.task_type.value,
            )
            return TaskOutcome.failed(f"{type(e).__name__}: {e}")

        self.logger.debug(
            "task_handler_finished",
            task_id=str(task.id),
            task_type=task.task_type.value,
            outcome=outcome.kind.value,
        )
        return outcome
