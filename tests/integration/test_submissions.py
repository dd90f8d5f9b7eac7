"""Integration tests for store submissions and rollout control.

Tests cover:
- Opening, resubmitting and cancelling submissions
- Review and store status updates
- Android staged rollout and iOS phased release controls
- Audit entries for rejected rollout actions
"""

from __future__ import annotations

from uuid import UUID

import pytest

from releasepilot.actors import Actor, ActorRole
from releasepilot.database.models.release import Platform, ReleaseStatus
from releasepilot.database.models.submission import Submission, SubmissionStatus
from releasepilot.distribution.submissions import SubmissionService
from releasepilot.errors import InvalidPlatformOperation, InvalidTransition, NotFound, ValidationError
from releasepilot.orchestrator.release_state import ReleasePhase
from releasepilot.services import Services

PILOT = Actor("pilot-1", ActorRole.RELEASE_PILOT)

BOTH_PLATFORMS = [
    {"platform": "ANDROID", "version": "1.2.0"},
    {"platform": "IOS", "version": "1.2.1"},
]


@pytest.fixture
def submissions(services: Services) -> SubmissionService:
    return services.submissions


async def go_live(
    submissions: SubmissionService,
    release_id: UUID,
    platform: Platform,
    phased_release: bool = False,
    rollout_percentage: float | None = None,
) -> Submission:
    submission = await submissions.create(release_id, platform, "pilot-1", phased_release=phased_release)
    await submissions.submit_for_review(submission.id, "pilot-1", rollout_percentage)
    await submissions.apply_store_status(submission.id, SubmissionStatus.APPROVED)
    return await submissions.apply_store_status(submission.id, SubmissionStatus.LIVE)


async def activity_actions(services: Services, release_id: UUID) -> list[str]:
    return [entry.action for entry in await services.orchestrator.list_activity(release_id)]


class TestSubmissionLifecycle:
    async def test_create(self, submissions: SubmissionService, kickoff) -> None:
        release = await kickoff(platform_targets=BOTH_PLATFORMS)

        submission = await submissions.create(release.id, Platform.IOS, "pilot-1", phased_release=True)

        assert submission.status == SubmissionStatus.PENDING
        assert submission.is_active is True
        assert submission.phased_release is True
        assert submission.version_code == "1.2.1"
        assert submission.build_id is None
        assert [entry["action"] for entry in submission.action_history] == ["CREATE"]

    async def test_android_is_never_phased(self, submissions: SubmissionService, kickoff) -> None:
        release = await kickoff()
        submission = await submissions.create(release.id, Platform.ANDROID, "pilot-1", phased_release=True)
        assert submission.phased_release is False

    async def test_platform_without_store(self, submissions: SubmissionService, kickoff) -> None:
        release = await kickoff(platform_targets=[{"platform": "WEB", "version": "1.2.0"}])
        with pytest.raises(InvalidPlatformOperation):
            await submissions.create(release.id, Platform.WEB, "pilot-1")

    async def test_platform_not_shipped(self, submissions: SubmissionService, kickoff) -> None:
        release = await kickoff()
        with pytest.raises(ValidationError):
            await submissions.create(release.id, Platform.IOS, "pilot-1")

    async def test_unknown_build(self, submissions: SubmissionService, kickoff) -> None:
        release = await kickoff()
        with pytest.raises(ValidationError):
            await submissions.create(release.id, Platform.ANDROID, "pilot-1", build_id=UUID(int=5))

    async def test_one_active_submission_per_platform(self, services: Services, kickoff) -> None:
        release = await kickoff()
        await services.submissions.create(release.id, Platform.ANDROID, "pilot-1")

        with pytest.raises(InvalidTransition):
            await services.submissions.create(release.id, Platform.ANDROID, "pilot-1")

        assert "submission_create_rejected" in await activity_actions(services, release.id)

    async def test_submit_moves_release_to_submitted(self, services: Services, kickoff) -> None:
        release = await kickoff()
        await services.orchestrator.tick(release.id)
        submission = await services.submissions.create(release.id, Platform.ANDROID, "pilot-1")

        reviewed = await services.submissions.submit_for_review(submission.id, "pilot-1")

        assert reviewed.status == SubmissionStatus.IN_REVIEW
        assert reviewed.submitted_at is not None
        view = await services.orchestrator.get_release(release.id)
        assert view.status == ReleaseStatus.SUBMITTED
        assert view.phase == ReleasePhase.SUBMITTED_PENDING_APPROVAL
        assert "release_submitted" in await activity_actions(services, release.id)

        with pytest.raises(InvalidTransition):
            await services.orchestrator.pause(release.id, PILOT)

    async def test_only_android_chooses_initial_percentage(self, submissions: SubmissionService, kickoff) -> None:
        release = await kickoff(platform_targets=BOTH_PLATFORMS)
        submission = await submissions.create(release.id, Platform.IOS, "pilot-1", phased_release=True)

        with pytest.raises(InvalidPlatformOperation):
            await submissions.submit_for_review(submission.id, "pilot-1", rollout_percentage=20)

    async def test_initial_percentage_out_of_range(self, submissions: SubmissionService, kickoff) -> None:
        release = await kickoff()
        submission = await submissions.create(release.id, Platform.ANDROID, "pilot-1")

        with pytest.raises(ValidationError):
            await submissions.submit_for_review(submission.id, "pilot-1", rollout_percentage=120)

    @pytest.mark.parametrize(
        ("platform", "phased", "chosen", "expected"),
        [
            (Platform.ANDROID, False, None, 10.0),
            (Platform.ANDROID, False, 25, 25.0),
            (Platform.IOS, True, None, 1.0),
            (Platform.IOS, False, None, 100.0),
        ],
    )
    async def test_live_starts_at_platform_percentage(
        self,
        submissions: SubmissionService,
        kickoff,
        platform: Platform,
        phased: bool,
        chosen: float | None,
        expected: float,
    ) -> None:
        release = await kickoff(platform_targets=BOTH_PLATFORMS)

        live = await go_live(submissions, release.id, platform, phased, chosen)

        assert live.status == SubmissionStatus.LIVE
        assert live.rollout_percentage == expected
        assert live.released_at is not None
        assert [entry["to_status"] for entry in live.action_history] == [
            "PENDING", "IN_REVIEW", "APPROVED", "LIVE",
        ]

    async def test_store_status_must_be_a_store_outcome(self, submissions: SubmissionService, kickoff) -> None:
        release = await kickoff()
        submission = await submissions.create(release.id, Platform.ANDROID, "pilot-1")

        with pytest.raises(ValidationError):
            await submissions.apply_store_status(submission.id, SubmissionStatus.PAUSED)
        with pytest.raises(InvalidTransition):
            await submissions.apply_store_status(submission.id, SubmissionStatus.APPROVED)

    async def test_resubmission_after_rejection(self, services: Services, kickoff) -> None:
        submissions = services.submissions
        release = await kickoff()
        first = await submissions.create(release.id, Platform.ANDROID, "pilot-1")
        await submissions.submit_for_review(first.id, "pilot-1")
        await submissions.apply_store_status(first.id, SubmissionStatus.REJECTED, reason="metadata")

        second = await submissions.create(release.id, Platform.ANDROID, "pilot-1")

        assert second.id != first.id
        assert second.action_history[0]["reason"] == "resubmission"
        old = await submissions.get(first.id)
        assert old.is_active is False
        assert old.status == SubmissionStatus.REJECTED
        active = await submissions.list_for_release(release.id, active_only=True)
        assert [s.id for s in active] == [second.id]
        assert len(await submissions.list_for_release(release.id)) == 2
        assert "submission_deactivated" in await activity_actions(services, release.id)

        with pytest.raises(InvalidTransition):
            await submissions.cancel(first.id, "pilot-1")

    async def test_cancel(self, submissions: SubmissionService, kickoff) -> None:
        release = await kickoff()
        submission = await submissions.create(release.id, Platform.ANDROID, "pilot-1")

        cancelled = await submissions.cancel(submission.id, "pilot-1", reason="wrong build")

        assert cancelled.status == SubmissionStatus.CANCELLED
        assert cancelled.action_history[-1]["reason"] == "wrong build"

    async def test_cancel_live_submission(self, submissions: SubmissionService, kickoff) -> None:
        release = await kickoff()
        live = await go_live(submissions, release.id, Platform.ANDROID)
        with pytest.raises(InvalidTransition):
            await submissions.cancel(live.id, "pilot-1")

    async def test_closed_release_rejects_submissions(self, services: Services, kickoff) -> None:
        release = await kickoff()
        await services.orchestrator.archive(release.id, PILOT)
        with pytest.raises(InvalidTransition):
            await services.submissions.create(release.id, Platform.ANDROID, "pilot-1")

    async def test_unknown_submission(self, submissions: SubmissionService) -> None:
        with pytest.raises(NotFound):
            await submissions.submit_for_review(UUID(int=9), "pilot-1")


class TestAndroidRollout:
    async def test_staged_rollout(self, submissions: SubmissionService, kickoff) -> None:
        release = await kickoff()
        await go_live(submissions, release.id, Platform.ANDROID)

        updated = await submissions.update_rollout(release.id, Platform.ANDROID, 50, "pilot-1", "healthy")
        assert updated.rollout_percentage == 50.0

        full = await submissions.update_rollout(release.id, Platform.ANDROID, 100, "pilot-1")
        assert full.rollout_percentage == 100.0

        with pytest.raises(InvalidTransition):
            await submissions.update_rollout(release.id, Platform.ANDROID, 60, "pilot-1")

    async def test_percentage_out_of_range(self, submissions: SubmissionService, kickoff) -> None:
        release = await kickoff()
        await go_live(submissions, release.id, Platform.ANDROID)
        with pytest.raises(ValidationError):
            await submissions.update_rollout(release.id, Platform.ANDROID, 150, "pilot-1")

    async def test_update_before_live(self, submissions: SubmissionService, kickoff) -> None:
        release = await kickoff()
        await submissions.create(release.id, Platform.ANDROID, "pilot-1")
        with pytest.raises(InvalidTransition):
            await submissions.update_rollout(release.id, Platform.ANDROID, 20, "pilot-1")

    async def test_pause_not_supported(self, services: Services, kickoff) -> None:
        release = await kickoff()
        await go_live(services.submissions, release.id, Platform.ANDROID)

        with pytest.raises(InvalidPlatformOperation):
            await services.submissions.pause_rollout(release.id, Platform.ANDROID, "crash spike", "pilot-1")

        assert "rollout_pause_rejected" in await activity_actions(services, release.id)

    async def test_halt(self, submissions: SubmissionService, kickoff) -> None:
        release = await kickoff()
        await go_live(submissions, release.id, Platform.ANDROID)

        with pytest.raises(ValidationError):
            await submissions.halt_rollout(release.id, Platform.ANDROID, "  ", "pilot-1")

        halted = await submissions.halt_rollout(release.id, Platform.ANDROID, "crash spike", "pilot-1")
        assert halted.status == SubmissionStatus.HALTED
        assert halted.action_history[-1]["reason"] == "crash spike"

        with pytest.raises(InvalidTransition):
            await submissions.update_rollout(release.id, Platform.ANDROID, 20, "pilot-1")

    async def test_no_active_submission(self, submissions: SubmissionService, kickoff) -> None:
        release = await kickoff()
        with pytest.raises(NotFound):
            await submissions.update_rollout(release.id, Platform.ANDROID, 20, "pilot-1")


class TestIosRollout:
    async def test_phased_release_controls(self, submissions: SubmissionService, kickoff) -> None:
        release = await kickoff(platform_targets=BOTH_PLATFORMS)
        await go_live(submissions, release.id, Platform.IOS, phased_release=True)

        paused = await submissions.pause_rollout(release.id, Platform.IOS, "crash spike", "pilot-1")
        assert paused.status == SubmissionStatus.PAUSED

        resumed = await submissions.resume_rollout(release.id, Platform.IOS, "pilot-1")
        assert resumed.status == SubmissionStatus.LIVE

        completed = await submissions.update_rollout(release.id, Platform.IOS, 100, "pilot-1")
        assert completed.rollout_percentage == 100.0

    async def test_phased_release_only_completes_at_full(self, submissions: SubmissionService, kickoff) -> None:
        release = await kickoff(platform_targets=BOTH_PLATFORMS)
        await go_live(submissions, release.id, Platform.IOS, phased_release=True)

        with pytest.raises(InvalidPlatformOperation):
            await submissions.update_rollout(release.id, Platform.IOS, 50, "pilot-1")
        with pytest.raises(InvalidPlatformOperation):
            await submissions.halt_rollout(release.id, Platform.IOS, "crash spike", "pilot-1")

    async def test_pause_requires_reason(self, submissions: SubmissionService, kickoff) -> None:
        release = await kickoff(platform_targets=BOTH_PLATFORMS)
        await go_live(submissions, release.id, Platform.IOS, phased_release=True)
        with pytest.raises(ValidationError):
            await submissions.pause_rollout(release.id, Platform.IOS, None, "pilot-1")

    async def test_resume_requires_pause(self, submissions: SubmissionService, kickoff) -> None:
        release = await kickoff(platform_targets=BOTH_PLATFORMS)
        await go_live(submissions, release.id, Platform.IOS, phased_release=True)
        with pytest.raises(InvalidTransition):
            await submissions.resume_rollout(release.id, Platform.IOS, "pilot-1")

    async def test_non_phased_release_is_immutable(self, submissions: SubmissionService, kickoff) -> None:
        release = await kickoff(platform_targets=BOTH_PLATFORMS)
        await go_live(submissions, release.id, Platform.IOS)

        with pytest.raises(InvalidPlatformOperation):
            await submissions.pause_rollout(release.id, Platform.IOS, "crash spike", "pilot-1")
        with pytest.raises(InvalidPlatformOperation):
            await submissions.update_rollout(release.id, Platform.IOS, 100, "pilot-1")
