"""End-to-end release scenarios.

Drives releases through the service graph the way the scheduler, CI/CD
callbacks and release pilots would, and checks the guarantees that must
hold across the whole lifecycle:

- Regression slots start new cycles instead of advancing the stage
- Halted Android rollouts are final
- Failed build tasks recover through an explicit retry
- Non-phased iOS releases cannot change their rollout
- Stage ordering, completion idempotence and a single active submission
"""

from __future__ import annotations

from datetime import timedelta
from uuid import UUID

import pytest

from releasepilot.actors import Actor, ActorRole
from releasepilot.database.models.base import utcnow
from releasepilot.database.models.build import WorkflowStatus
from releasepilot.database.models.cron_job import PauseType
from releasepilot.database.models.regression_cycle import CycleStatus
from releasepilot.database.models.release import Platform, ReleaseStage, ReleaseStatus
from releasepilot.database.models.submission import SubmissionStatus
from releasepilot.database.models.task import ReleaseTask, TaskStatus, TaskType
from releasepilot.database.queries.task import get_task
from releasepilot.errors import InvalidPlatformOperation, InvalidTransition
from releasepilot.integrations.callbacks import CiCallback
from releasepilot.orchestrator.release_state import ReleasePhase
from releasepilot.services import Services

PILOT = Actor("pilot-7", ActorRole.RELEASE_PILOT)

SETTLED = (TaskStatus.COMPLETED, TaskStatus.SKIPPED)


async def latest_task(services: Services, release_id: UUID, task_type: TaskType) -> ReleaseTask:
    tasks = [t for t in await services.orchestrator.list_tasks(release_id) if t.task_type == task_type]
    return tasks[-1]


async def ci_report(
    services: Services,
    task: ReleaseTask,
    job: str,
    status: WorkflowStatus = WorkflowStatus.COMPLETED,
    reason: str | None = None,
):
    return await services.callbacks.handle_ci_callback(
        CiCallback(
            task_id=task.id,
            platform=Platform.ANDROID,
            job_url=f"https://ci.example.com/jobs/{job}",
            status=status,
            artifact_path=f"s3://builds/{job}.aab" if status == WorkflowStatus.COMPLETED else None,
            reason=reason,
        )
    )


async def finish_cycle_build(services: Services, release_id: UUID, job: str) -> None:
    """Report and collect the regression build the first pass triggered."""
    orchestrator = services.orchestrator
    await orchestrator.tick(release_id)
    await ci_report(services, await latest_task(services, release_id, TaskType.TRIGGER_REGRESSION_BUILDS), job)
    await orchestrator.tick(release_id)


def assert_stage_order(tasks: list[ReleaseTask]) -> None:
    """No task may leave PENDING while an earlier stage has unsettled tasks."""
    started = {task.stage.number for task in tasks if task.status != TaskStatus.PENDING}
    for task in tasks:
        if any(number > task.stage.number for number in started):
            assert task.status in SETTLED, (
                f"{task.task_type.value} in {task.stage.value} is {task.status.value} "
                "while a later stage has started"
            )


@pytest.mark.e2e
class TestRegressionSlotsScenario:
    async def test_completed_cycle_with_pending_slots_starts_next_cycle(
        self, e2e_services: Services, new_release
    ) -> None:
        orchestrator = e2e_services.orchestrator
        release = await new_release()
        await orchestrator.tick(release.id)

        await orchestrator.add_regression_slots(
            release.id,
            [
                {"date": (utcnow() + timedelta(days=2)).isoformat(), "config": {"suite": "smoke"}},
                {"date": (utcnow() + timedelta(days=4)).isoformat(), "config": {"suite": "full"}},
            ],
            PILOT,
        )

        await finish_cycle_build(e2e_services, release.id, "rc1")

        cycles = await orchestrator.list_cycles(release.id)
        assert [(c.cycle_tag, c.status, c.is_latest) for c in cycles] == [
            ("RC1", CycleStatus.DONE, False),
            ("RC2", CycleStatus.NOT_STARTED, True),
        ]
        assert cycles[1].slot_config == {"suite": "smoke"}

        view = await orchestrator.get_release(release.id)
        assert view.current_stage == ReleaseStage.REGRESSION
        assert view.stage_statuses["REGRESSION"] == "IN_PROGRESS"
        assert view.stage_statuses["POST_REGRESSION"] == "PENDING"
        assert view.phase == ReleasePhase.REGRESSION_AWAITING_NEXT_CYCLE
        assert [slot["config"] for slot in view.upcoming_regressions] == [{"suite": "full"}]

        # The stage cannot be pushed forward while a cycle is still scheduled
        with pytest.raises(InvalidTransition):
            await orchestrator.trigger_next_stage(release.id, PILOT, force_approve=True)

        assert await orchestrator.list_tasks(release.id, stage=ReleaseStage.POST_REGRESSION) == []


@pytest.mark.e2e
class TestHaltedRolloutScenario:
    async def test_halt_is_final(self, e2e_services: Services, new_release) -> None:
        submissions = e2e_services.submissions
        release = await new_release()
        submission = await submissions.create(release.id, Platform.ANDROID, "pilot-7")
        await submissions.submit_for_review(submission.id, "pilot-7", rollout_percentage=25)
        await submissions.apply_store_status(submission.id, SubmissionStatus.APPROVED)
        live = await submissions.apply_store_status(submission.id, SubmissionStatus.LIVE)
        assert live.rollout_percentage == 25.0

        halted = await submissions.halt_rollout(release.id, Platform.ANDROID, "critical crash", "pilot-7")

        assert halted.status == SubmissionStatus.HALTED
        assert halted.rollout_percentage == 25.0
        assert halted.action_history[-1]["action"] == "HALT"
        assert halted.action_history[-1]["reason"] == "critical crash"

        for percentage in (50, 100):
            with pytest.raises(InvalidTransition):
                await submissions.update_rollout(release.id, Platform.ANDROID, percentage, "pilot-7")

        stored = await submissions.get(submission.id)
        assert stored.status == SubmissionStatus.HALTED
        assert stored.rollout_percentage == 25.0


@pytest.mark.e2e
class TestFailedBuildRetryScenario:
    async def test_retry_recovers_failed_regression_build(self, e2e_services: Services, new_release) -> None:
        orchestrator = e2e_services.orchestrator
        release = await new_release()
        await orchestrator.tick(release.id)
        build_task = await latest_task(e2e_services, release.id, TaskType.TRIGGER_REGRESSION_BUILDS)
        assert build_task.status == TaskStatus.IN_PROGRESS

        await ci_report(e2e_services, build_task, "rc1-broken", WorkflowStatus.FAILED, "gradle exited with 1")

        failed = await orchestrator.get_task(build_task.id)
        assert failed.status == TaskStatus.FAILED
        assert failed.conclusion == "gradle exited with 1"
        view = await orchestrator.get_release(release.id)
        assert view.pause_type == PauseType.TASK_FAILURE
        assert view.phase == ReleasePhase.PAUSED_BY_FAILURE

        retried = await orchestrator.retry_task(build_task.id, PILOT)

        assert retried.status == TaskStatus.PENDING
        assert retried.conclusion is None
        assert retried.external_id is None

        result = await orchestrator.tick(release.id)

        assert result.pause_type == PauseType.NONE
        assert result.phase == ReleasePhase.REGRESSION
        restarted = await orchestrator.get_task(build_task.id)
        assert restarted.status == TaskStatus.IN_PROGRESS
        assert restarted.retry_count == 1

        # The rerun completes the cycle like a first attempt would
        await orchestrator.tick(release.id)
        await ci_report(e2e_services, restarted, "rc1-retry")
        result = await orchestrator.tick(release.id)
        assert result.phase == ReleasePhase.AWAITING_POST_REGRESSION


@pytest.mark.e2e
class TestNonPhasedIosScenario:
    @pytest.mark.parametrize("percentage", [1, 50, 100])
    async def test_rollout_cannot_change(self, e2e_services: Services, new_release, percentage: int) -> None:
        submissions = e2e_services.submissions
        release = await new_release(
            platform_targets=[
                {"platform": "ANDROID", "version": "2.0.0"},
                {"platform": "IOS", "version": "2.0.0"},
            ]
        )
        submission = await submissions.create(release.id, Platform.IOS, "pilot-7", phased_release=False)
        await submissions.submit_for_review(submission.id, "pilot-7")
        await submissions.apply_store_status(submission.id, SubmissionStatus.APPROVED)
        live = await submissions.apply_store_status(submission.id, SubmissionStatus.LIVE)
        assert live.rollout_percentage == 100.0

        with pytest.raises(InvalidPlatformOperation):
            await submissions.update_rollout(release.id, Platform.IOS, percentage, "pilot-7")

        actions = [entry.action for entry in await e2e_services.orchestrator.list_activity(release.id)]
        assert "rollout_update_rollout_rejected" in actions


@pytest.mark.e2e
class TestLifecycleGuarantees:
    async def test_stages_run_in_order(self, e2e_services: Services, new_release) -> None:
        orchestrator = e2e_services.orchestrator
        release = await new_release()

        async def check() -> None:
            assert_stage_order(await orchestrator.list_tasks(release.id))

        await orchestrator.tick(release.id)
        await check()
        await orchestrator.tick(release.id)
        await ci_report(
            e2e_services, await latest_task(e2e_services, release.id, TaskType.TRIGGER_REGRESSION_BUILDS), "rc1"
        )
        await orchestrator.tick(release.id)
        await check()

        await orchestrator.trigger_next_stage(release.id, PILOT)
        await orchestrator.tick(release.id)
        await check()
        await orchestrator.tick(release.id)
        await ci_report(e2e_services, await latest_task(e2e_services, release.id, TaskType.CREATE_AAB_BUILD), "aab")
        await orchestrator.tick(release.id)
        await check()

        await orchestrator.trigger_next_stage(release.id, PILOT)
        await orchestrator.tick(release.id)
        await check()

        view = await orchestrator.complete_release(release.id, PILOT)
        assert view.status == ReleaseStatus.COMPLETED
        assert all(status == "COMPLETED" for status in view.stage_statuses.values())

    async def test_repeated_completion_is_a_noop(
        self, e2e_services: Services, e2e_session_factory, new_release
    ) -> None:
        orchestrator = e2e_services.orchestrator
        release = await new_release()
        await orchestrator.tick(release.id)
        fork = await latest_task(e2e_services, release.id, TaskType.FORK_BRANCH)
        assert fork.status == TaskStatus.COMPLETED

        async def completions() -> int:
            entries = await orchestrator.list_activity(release.id, entity_type="task", action="task_completed")
            return sum(1 for entry in entries if entry.entity_id == str(fork.id))

        before = await completions()
        async with e2e_session_factory() as session, session.begin():
            task = await get_task(session, fork.id)
            changed = await orchestrator.lifecycle.complete(task, dict(task.output), session)

        assert changed is False
        assert await completions() == before == 1
        unchanged = await orchestrator.get_task(fork.id)
        assert unchanged.status == TaskStatus.COMPLETED
        assert unchanged.output == fork.output
        assert unchanged.completed_at == fork.completed_at

    async def test_repeated_callback_is_reported_as_duplicate(self, e2e_services: Services, new_release) -> None:
        orchestrator = e2e_services.orchestrator
        release = await new_release()
        await orchestrator.tick(release.id)
        await orchestrator.tick(release.id)
        build_task = await latest_task(e2e_services, release.id, TaskType.TRIGGER_REGRESSION_BUILDS)

        first = await ci_report(e2e_services, build_task, "rc1")
        second = await ci_report(e2e_services, build_task, "rc1")

        assert first.task_status == TaskStatus.COMPLETED
        assert second.duplicate is True
        assert second.build_id == first.build_id
        builds = await e2e_services.callbacks.list_builds(release.id)
        assert len(builds) == 1

    async def test_single_active_submission_per_platform(self, e2e_services: Services, new_release) -> None:
        submissions = e2e_services.submissions
        release = await new_release()
        first = await submissions.create(release.id, Platform.ANDROID, "pilot-7")
        await submissions.submit_for_review(first.id, "pilot-7")
        await submissions.apply_store_status(first.id, SubmissionStatus.REJECTED, reason="metadata")

        second = await submissions.create(release.id, Platform.ANDROID, "pilot-7")
        await submissions.cancel(second.id, "pilot-7", "wrong build")
        third = await submissions.create(release.id, Platform.ANDROID, "pilot-7")

        records = await submissions.list_for_release(release.id)
        assert len(records) == 3
        assert [s.id for s in records if s.is_active] == [third.id]
        assert [s.id for s in await submissions.list_for_release(release.id, active_only=True)] == [third.id]
        assert third.action_history[0]["reason"] == "resubmission"
