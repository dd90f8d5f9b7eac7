"""Unit tests for per-platform rollout rules and the rollout controller.

Tests cover:
- Android staged rollout: update, halt, no pause or resume
- iOS phased release: complete early, pause, resume, no halt
- Check ordering: platform capability, then status, then value
- Action history and activity entries
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from releasepilot.database.models.activity_log import ActivityLog
from releasepilot.database.models.release import Platform
from releasepilot.database.models.submission import Submission, SubmissionStatus
from releasepilot.distribution.rollout import (
    SUBMISSION_TRANSITIONS,
    RolloutAction,
    RolloutController,
    check_submission_transition,
    require_percentage,
    rules_for,
)
from releasepilot.errors import InvalidPlatformOperation, InvalidTransition, ValidationError

FIXED_NOW = datetime(2026, 3, 20, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def session() -> MagicMock:
    session = MagicMock()
    session.flush = AsyncMock()
    return session


@pytest.fixture
def controller() -> RolloutController:
    return RolloutController(clock=lambda: FIXED_NOW)


def make_submission(
    platform: Platform,
    status: SubmissionStatus = SubmissionStatus.LIVE,
    rollout_percentage: float = 10.0,
    phased_release: bool = False,
) -> Submission:
    return Submission(
        id=uuid.uuid4(),
        release_id=uuid.uuid4(),
        platform=platform,
        status=status,
        rollout_percentage=rollout_percentage,
        phased_release=phased_release,
        is_active=True,
        action_history=[],
    )


class TestPercentage:
    @pytest.mark.parametrize("value", [0, 0.5, 50, 100])
    def test_accepts_range(self, value: float) -> None:
        assert require_percentage(value) == float(value)

    @pytest.mark.parametrize("value", [-0.1, 100.1, "50", True, None])
    def test_rejects_out_of_range_and_non_numbers(self, value) -> None:
        with pytest.raises(ValidationError):
            require_percentage(value)


class TestSubmissionTransitions:
    def test_terminal_statuses(self) -> None:
        for status in (SubmissionStatus.HALTED, SubmissionStatus.REJECTED, SubmissionStatus.CANCELLED):
            assert SUBMISSION_TRANSITIONS[status] == set()

    def test_live_cannot_be_cancelled(self) -> None:
        with pytest.raises(InvalidTransition):
            check_submission_transition(
                make_submission(Platform.ANDROID), SubmissionStatus.CANCELLED
            )

    def test_web_has_no_rules(self) -> None:
        with pytest.raises(InvalidPlatformOperation):
            rules_for(Platform.WEB)


class TestAndroidRollout:
    async def test_update_percentage(self, controller: RolloutController, session: MagicMock) -> None:
        submission = make_submission(Platform.ANDROID)

        await controller.update_rollout(session, submission, 50, "pilot", "healthy metrics")

        assert submission.rollout_percentage == 50.0
        entry = submission.action_history[-1]
        assert entry["action"] == "UPDATE_ROLLOUT"
        assert entry["reason"] == "healthy metrics"
        assert entry["at"] == FIXED_NOW.isoformat()
        logged = session.add.call_args.args[0]
        assert isinstance(logged, ActivityLog)
        assert logged.action == "submission_update_rollout"
        assert logged.previous_value["rollout_percentage"] == 10.0

    async def test_update_outside_range(self, controller: RolloutController, session: MagicMock) -> None:
        submission = make_submission(Platform.ANDROID)
        with pytest.raises(ValidationError):
            await controller.update_rollout(session, submission, 150, "pilot")
        assert submission.rollout_percentage == 10.0
        assert submission.action_history == []

    async def test_update_requires_live(self, controller: RolloutController, session: MagicMock) -> None:
        submission = make_submission(Platform.ANDROID, status=SubmissionStatus.IN_REVIEW)
        with pytest.raises(InvalidTransition):
            await controller.update_rollout(session, submission, 20, "pilot")

    async def test_update_after_full_rollout(self, controller: RolloutController, session: MagicMock) -> None:
        submission = make_submission(Platform.ANDROID, rollout_percentage=100.0)
        with pytest.raises(InvalidTransition):
            await controller.update_rollout(session, submission, 50, "pilot")

    async def test_status_checked_before_value(
        self, controller: RolloutController, session: MagicMock
    ) -> None:
        submission = make_submission(Platform.ANDROID, status=SubmissionStatus.HALTED)
        with pytest.raises(InvalidTransition):
            await controller.update_rollout(session, submission, 500, "pilot")

    async def test_pause_not_supported(self, controller: RolloutController, session: MagicMock) -> None:
        submission = make_submission(Platform.ANDROID)
        with pytest.raises(InvalidPlatformOperation):
            await controller.pause(session, submission, "crash spike", "pilot")
        assert submission.status == SubmissionStatus.LIVE

    async def test_halt_is_terminal(self, controller: RolloutController, session: MagicMock) -> None:
        submission = make_submission(Platform.ANDROID)

        await controller.halt(session, submission, "crash spike", "pilot")

        assert submission.status == SubmissionStatus.HALTED
        with pytest.raises(InvalidTransition):
            await controller.update_rollout(session, submission, 20, "pilot")

    @pytest.mark.parametrize("reason", [None, "", "   "])
    async def test_halt_requires_reason(
        self, controller: RolloutController, session: MagicMock, reason: str | None
    ) -> None:
        submission = make_submission(Platform.ANDROID)
        with pytest.raises(ValidationError):
            await controller.halt(session, submission, reason, "pilot")
        assert submission.status == SubmissionStatus.LIVE

    def test_initial_percentage(self, controller: RolloutController) -> None:
        assert controller.initial_percentage(make_submission(Platform.ANDROID, rollout_percentage=0)) == 10.0
        assert controller.initial_percentage(make_submission(Platform.ANDROID, rollout_percentage=25)) == 25.0


class TestIosRollout:
    async def test_non_phased_is_immutable(self, controller: RolloutController, session: MagicMock) -> None:
        submission = make_submission(Platform.IOS, rollout_percentage=100.0)
        with pytest.raises(InvalidPlatformOperation):
            await controller.update_rollout(session, submission, 100, "pilot")
        with pytest.raises(InvalidPlatformOperation):
            await controller.pause(session, submission, "bug", "pilot")

    async def test_platform_checked_before_status(
        self, controller: RolloutController, session: MagicMock
    ) -> None:
        submission = make_submission(Platform.IOS, status=SubmissionStatus.PENDING)
        with pytest.raises(InvalidPlatformOperation):
            await controller.update_rollout(session, submission, 100, "pilot")

    async def test_phased_only_completes_at_100(
        self, controller: RolloutController, session: MagicMock
    ) -> None:
        submission = make_submission(Platform.IOS, rollout_percentage=2.0, phased_release=True)
        with pytest.raises(InvalidPlatformOperation):
            await controller.update_rollout(session, submission, 50, "pilot")

        await controller.update_rollout(session, submission, 100, "pilot")
        assert submission.rollout_percentage == 100.0

    async def test_pause_and_resume(self, controller: RolloutController, session: MagicMock) -> None:
        submission = make_submission(Platform.IOS, rollout_percentage=2.0, phased_release=True)

        await controller.pause(session, submission, "crash spike", "pilot")
        assert submission.status == SubmissionStatus.PAUSED

        await controller.resume(session, submission, "pilot")
        assert submission.status == SubmissionStatus.LIVE
        assert [entry["action"] for entry in submission.action_history] == [
            RolloutAction.PAUSE.value,
            RolloutAction.RESUME.value,
        ]

    async def test_resume_requires_paused(self, controller: RolloutController, session: MagicMock) -> None:
        submission = make_submission(Platform.IOS, phased_release=True)
        with pytest.raises(InvalidTransition):
            await controller.resume(session, submission, "pilot")

    async def test_halt_not_supported(self, controller: RolloutController, session: MagicMock) -> None:
        submission = make_submission(Platform.IOS, phased_release=True)
        with pytest.raises(InvalidPlatformOperation):
            await controller.halt(session, submission, "bug", "pilot")

    def test_initial_percentage(self, controller: RolloutController) -> None:
        assert controller.initial_percentage(make_submission(Platform.IOS, phased_release=True)) == 1.0
        assert controller.initial_percentage(make_submission(Platform.IOS)) == 100.0
