"""Unit tests for the task executor and its default handlers."""

from __future__ import annotations

import uuid
from unittest.mock import MagicMock

import pytest

from releasepilot.database.models.cron_job import CronJob
from releasepilot.database.models.regression_cycle import CycleStatus, RegressionCycle
from releasepilot.database.models.release import Release, ReleaseStage
from releasepilot.database.models.task import ReleaseTask, TaskStatus, TaskType
from releasepilot.integrations.webhooks import ReleaseEvent
from releasepilot.orchestrator.executor import (
    ExecutionContext,
    OutcomeKind,
    TaskExecutor,
    TaskOutcome,
)
from releasepilot.orchestrator.task_outputs import TagOutput


def make_context(
    task_type: TaskType,
    manual: bool = False,
    stage_data: dict | None = None,
    cycle: RegressionCycle | None = None,
    external_id: str | None = None,
) -> ExecutionContext:
    release = Release(
        id=uuid.uuid4(),
        tenant_id="acme",
        release_key="1.2.0",
        base_branch="main",
        has_manual_build_upload=manual,
        platform_targets=[
            {"platform": "ANDROID", "target": "PLAY_STORE", "version": "1.2.0"},
            {"platform": "IOS", "target": "APP_STORE", "version": "1.2.0"},
        ],
    )
    cron_job = CronJob(id=uuid.uuid4(), release_id=release.id, stage_data=stage_data or {}, cron_config={})
    task = ReleaseTask(
        id=uuid.uuid4(),
        release_id=release.id,
        task_type=task_type,
        stage=ReleaseStage.KICKOFF,
        sequence=0,
        status=TaskStatus.IN_PROGRESS,
        retry_count=0,
        external_id=external_id,
    )
    return ExecutionContext(session=MagicMock(), release=release, cron_job=cron_job, task=task, cycle=cycle)


@pytest.fixture
def executor() -> TaskExecutor:
    return TaskExecutor()


class TestTaskOutcome:
    def test_completed_dumps_models(self) -> None:
        outcome = TaskOutcome.completed(TagOutput(tag_name="v1"))
        assert outcome.kind == OutcomeKind.COMPLETED
        assert outcome.output == {"tag_name": "v1", "tag_url": None}

    def test_failed_carries_reason(self) -> None:
        outcome = TaskOutcome.failed("boom")
        assert outcome.kind == OutcomeKind.FAILED
        assert outcome.reason == "boom"


class TestExecutor:
    def test_every_task_type_has_a_handler(self, executor: TaskExecutor) -> None:
        assert set(executor.handlers) == set(TaskType)

    async def test_fork_branch_sets_release_branch(self, executor: TaskExecutor) -> None:
        ctx = make_context(TaskType.FORK_BRANCH)

        outcome = await executor.execute(ctx)

        assert outcome.kind == OutcomeKind.COMPLETED
        assert ctx.release.branch == "release/1.2.0"
        assert outcome.output["branch_name"] == "release/1.2.0"
        assert outcome.output["base_branch"] == "main"

    async def test_rc_tag_uses_cycle_tag(self, executor: TaskExecutor) -> None:
        cycle = RegressionCycle(cycle_number=2, cycle_tag="RC2", status=CycleStatus.IN_PROGRESS)
        outcome = await executor.execute(make_context(TaskType.CREATE_RC_TAG, cycle=cycle))
        assert outcome.output["tag_name"] == "1.2.0-RC2"

    async def test_approval_check_polls(self, executor: TaskExecutor) -> None:
        waiting = await executor.execute(make_context(TaskType.CHECK_PROJECT_RELEASE_APPROVAL))
        assert waiting.kind == OutcomeKind.RUNNING

        approved = await executor.execute(
            make_context(
                TaskType.CHECK_PROJECT_RELEASE_APPROVAL,
                stage_data={"project_management": {"approved": True, "ticket_id": "REL-9"}},
            )
        )
        assert approved.kind == OutcomeKind.COMPLETED
        assert approved.output == {"approved": True, "ticket_id": "REL-9"}

    async def test_automation_failure(self, executor: TaskExecutor) -> None:
        outcome = await executor.execute(
            make_context(TaskType.AUTOMATION_RUNS, stage_data={"automation": {"passed": False}})
        )
        assert outcome.kind == OutcomeKind.FAILED

    async def test_manual_build_mode_awaits_upload(self, executor: TaskExecutor) -> None:
        outcome = await executor.execute(make_context(TaskType.TRIGGER_REGRESSION_BUILDS, manual=True))
        assert outcome.kind == OutcomeKind.AWAITING_EXTERNAL
        assert outcome.events == []

    async def test_ci_build_mode_requests_then_awaits(self, executor: TaskExecutor) -> None:
        ctx = make_context(TaskType.TRIGGER_REGRESSION_BUILDS)

        first = await executor.execute(ctx)

        assert first.kind == OutcomeKind.RUNNING
        assert first.external_id.startswith("ci-")
        event, data = first.events[0]
        assert event == ReleaseEvent.BUILD_REQUESTED
        assert data["platforms"] == ["ANDROID", "IOS"]
        assert data["external_id"] == first.external_id

        ctx.task.external_id = first.external_id
        second = await executor.execute(ctx)
        assert second.kind == OutcomeKind.AWAITING_EXTERNAL
        assert second.external_id == first.external_id

    async def test_handler_exception_becomes_failure(self, executor: TaskExecutor) -> None:
        async def broken(ctx: ExecutionContext) -> TaskOutcome:
            raise RuntimeError("integration down")

        executor.register(TaskType.CREATE_RELEASE_TAG, broken)
        outcome = await executor.execute(make_context(TaskType.CREATE_RELEASE_TAG))

        assert outcome.kind == OutcomeKind.FAILED
        assert outcome.reason == "RuntimeError: integration down"

    async def test_custom_handlers_override_defaults(self) -> None:
        async def tagged(ctx: ExecutionContext) -> TaskOutcome:
            return TaskOutcome.completed(TagOutput(tag_name="custom"))

        executor = TaskExecutor(handlers={TaskType.CREATE_RELEASE_TAG: tagged})
        outcome = await executor.execute(make_context(TaskType.CREATE_RELEASE_TAG))
        assert outcome.output["tag_name"] == "custom"

    async def test_missing_handler(self, executor: TaskExecutor) -> None:
        del executor.handlers[TaskType.FORK_BRANCH]
        outcome = await executor.execute(make_context(TaskType.FORK_BRANCH))
        assert outcome.kind == OutcomeKind.FAILED
        assert "FORK_BRANCH" in outcome.reason
