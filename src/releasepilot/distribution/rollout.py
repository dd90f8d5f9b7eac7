"""Submission rollout controller.

Store submissions follow one lifecycle::

    PENDING -> IN_REVIEW -> APPROVED -> LIVE -> {PAUSED <-> LIVE, HALTED}
    IN_REVIEW -> {REJECTED, CANCELLED}
    PENDING -> CANCELLED

What a user may do to a LIVE submission depends on its platform. Each
platform registers a ``PlatformRolloutRules`` in ``ROLLOUT_RULES``:

- Android (Play staged rollout): any percentage in [0, 100] while LIVE
  and below 100; halt while LIVE (terminal); no pause or resume.
- iOS (App Store phased release): controllable only when
  ``phased_release`` is set; the percentage may only jump to 100; pause
  and resume are allowed; no halt. Non-phased iOS submissions release at
  100% and are immutable.

Every rollout action is checked in the same order: platform capability
(InvalidPlatformOperation), then status (InvalidTransition), then value
(ValidationError). pause and halt also require a reason.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from enum import Enum
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from releasepilot.database.models.base import utcnow
from releasepilot.database.models.release import Platform
from releasepilot.database.models.submission import Submission, SubmissionStatus
from releasepilot.database.queries.activity_log import record_activity
from releasepilot.errors import InvalidPlatformOperation, InvalidTransition, ValidationError

logger = structlog.get_logger(__name__)


class RolloutAction(str, Enum):
    """Operations recorded in a submission's action history."""

    CREATE = "CREATE"
    SUBMIT = "SUBMIT"
    STORE_STATUS = "STORE_STATUS"
    CANCEL = "CANCEL"
    UPDATE_ROLLOUT = "UPDATE_ROLLOUT"
    PAUSE = "PAUSE"
    RESUME = "RESUME"
    HALT = "HALT"


SUBMISSION_TRANSITIONS: dict[SubmissionStatus, set[SubmissionStatus]] = {
    SubmissionStatus.PENDING: {SubmissionStatus.IN_REVIEW, SubmissionStatus.CANCELLED},
    SubmissionStatus.IN_REVIEW: {
        SubmissionStatus.APPROVED,
        SubmissionStatus.REJECTED,
        SubmissionStatus.CANCELLED,
    },
    SubmissionStatus.APPROVED: {SubmissionStatus.LIVE},
    SubmissionStatus.LIVE: {SubmissionStatus.PAUSED, SubmissionStatus.HALTED},
    SubmissionStatus.PAUSED: {SubmissionStatus.LIVE},
    SubmissionStatus.HALTED: set(),
    SubmissionStatus.REJECTED: set(),
    SubmissionStatus.CANCELLED: set(),
}


def check_submission_transition(submission: Submission, target: SubmissionStatus) -> None:
    """Raise InvalidTransition unless ``target`` is reachable from the current status."""
    if target not in SUBMISSION_TRANSITIONS.get(submission.status, set()):
        raise InvalidTransition("submission", submission.status, target, str(submission.id))


def _require_reason(action: RolloutAction, reason: str | None) -> str:
    if reason is None or not reason.strip():
        raise ValidationError(
            f"A reason is required to {action.value.lower()} a rollout",
            action=action.value,
        )
    return reason.strip()


def require_percentage(percentage: Any) -> float:
    if isinstance(percentage, bool) or not isinstance(percentage, (int, float)):
        raise ValidationError("Rollout percentage must be a number", percentage=str(percentage))
    value = float(percentage)
    if not 0.0 <= value <= 100.0:
        raise ValidationError(
            f"Rollout percentage must be within [0, 100], got {value:g}",
            percentage=value,
        )
    return value


# ---------------------------------------------------------------------------
# Platform rules
# ---------------------------------------------------------------------------


class PlatformRolloutRules:
    """Rollout capabilities of one platform.

    Subclasses override the ``check_*`` hooks. The base class rejects every
    rollout action.
    """

    platform: Platform

    def check_update(self, submission: Submission, percentage: float) -> float:
        raise InvalidPlatformOperation(self.platform, "update_rollout", "rollout is not controllable")

    def check_pause(self, submission: Submission) -> None:
        raise InvalidPlatformOperation(self.platform, "pause", "rollout cannot be paused")

    def check_resume(self, submission: Submission) -> None:
        raise InvalidPlatformOperation(self.platform, "resume", "rollout cannot be resumed")

    def check_halt(self, submission: Submission) -> None:
        raise InvalidPlatformOperation(self.platform, "halt", "rollout cannot be halted")

    def initial_percentage(self, submission: Submission, default: float) -> float:
        return 100.0


class AndroidRolloutRules(PlatformRolloutRules):
    """Play Store staged rollout."""

    platform = Platform.ANDROID

    def check_update(self, submission: Submission, percentage: float) -> float:
        if submission.status != SubmissionStatus.LIVE or submission.rollout_percentage >= 100.0:
            raise InvalidTransition(
                "submission", submission.status, RolloutAction.UPDATE_ROLLOUT, str(submission.id),
                reason="rollout can only change while LIVE and below 100%",
            )
        return require_percentage(percentage)

    def check_halt(self, submission: Submission) -> None:
        check_submission_transition(submission, SubmissionStatus.HALTED)

    def initial_percentage(self, submission: Submission, default: float) -> float:
        # A percentage chosen at submit time wins over the configured default
        if submission.rollout_percentage > 0:
            return submission.rollout_percentage
        return default


class IosRolloutRules(PlatformRolloutRules):
    """App Store phased release."""

    platform = Platform.IOS

    def _require_phased(self, submission: Submission, action: str) -> None:
        if not submission.phased_release:
            raise InvalidPlatformOperation(
                self.platform, action,
                "non-phased releases go live at 100% and cannot be changed",
            )

    def check_update(self, submission: Submission, percentage: float) -> float:
        self._require_phased(submission, "update_rollout")
        if submission.status != SubmissionStatus.LIVE or submission.rollout_percentage >= 100.0:
            raise InvalidTransition(
                "submission", submission.status, RolloutAction.UPDATE_ROLLOUT, str(submission.id),
                reason="phased release can only be completed while LIVE and below 100%",
            )
        value = require_percentage(percentage)
        if value != 100.0:
            raise InvalidPlatformOperation(
                self.platform, "update_rollout",
                "phased releases can only be completed early at 100%",
            )
        return value

    def check_pause(self, submission: Submission) -> None:
        self._require_phased(submission, "pause")
        check_submission_transition(submission, SubmissionStatus.PAUSED)

    def check_resume(self, submission: Submission) -> None:
        self._require_phased(submission, "resume")
        check_submission_transition(submission, SubmissionStatus.LIVE)

    def initial_percentage(self, submission: Submission, default: float) -> float:
        return default if submission.phased_release else 100.0


ROLLOUT_RULES: dict[Platform, PlatformRolloutRules] = {
    Platform.ANDROID: AndroidRolloutRules(),
    Platform.IOS: IosRolloutRules(),
}


def rules_for(platform: Platform) -> PlatformRolloutRules:
    """Look up the rollout rules of a platform.

    Raises:
        InvalidPlatformOperation: If the platform has no store rollout.
    """
    rules = ROLLOUT_RULES.get(platform)
    if rules is None:
        raise InvalidPlatformOperation(platform, "rollout", "platform has no store submission")
    return rules


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------


class RolloutController:
    """Applies checked rollout actions to Submission records.

    Methods flush but never commit; the caller owns the transaction. Every
    mutation appends to ``action_history`` and writes an activity entry.
    """

    def __init__(
        self,
        android_initial_percentage: float = 10.0,
        ios_phased_initial_percentage: float = 1.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.android_initial_percentage = android_initial_percentage
        self.ios_phased_initial_percentage = ios_phased_initial_percentage
        self.clock = clock
        self.logger = logger.bind(component="RolloutController")

    async def record(
        self,
        session: AsyncSession,
        submission: Submission,
        action: RolloutAction,
        previous_status: SubmissionStatus | None,
        previous_percentage: float | None,
        actor: str,
        reason: str | None = None,
    ) -> None:
        """Append an action history entry and the matching activity entry."""
        entry = {
            "action": action.value,
            "from_status": previous_status.value if previous_status is not None else None,
            "to_status": submission.status.value,
            "rollout_percentage": submission.rollout_percentage,
            "reason": reason,
            "actor": actor,
            "at": self.clock().isoformat(),
        }
        # Reassign so the JSON column change is tracked
        submission.action_history = [*(submission.action_history or []), entry]

        await record_activity(
            session,
            release_id=submission.release_id,
            entity_type="submission",
            entity_id=submission.id,
            action=f"submission_{action.value.lower()}",
            previous_value={
                "status": previous_status.value if previous_status is not None else None,
                "rollout_percentage": previous_percentage,
            },
            new_value={
                "status": submission.status.value,
                "rollout_percentage": submission.rollout_percentage,
            },
            actor=actor,
            details={"platform": submission.platform.value, "reason": reason},
        )
        await session.flush()

        self.logger.info(
            "rollout_action_applied",
            submission_id=str(submission.id),
            platform=submission.platform.value,
            action=action.value,
            status=submission.status.value,
            rollout_percentage=submission.rollout_percentage,
        )

    def initial_percentage(self, submission: Submission) -> float:
        """Rollout percentage a submission starts at when it goes LIVE."""
        rules = rules_for(submission.platform)
        if submission.platform == Platform.ANDROID:
            return rules.initial_percentage(submission, self.android_initial_percentage)
        return rules.initial_percentage(submission, self.ios_phased_initial_percentage)

    async def update_rollout(
        self,
        session: AsyncSession,
        submission: Submission,
        percentage: float,
        actor: str,
        reason: str | None = None,
    ) -> Submission:
        """Change the rollout percentage of a LIVE submission."""
        value = rules_for(submission.platform).check_update(submission, percentage)
        previous_percentage = submission.rollout_percentage
        submission.rollout_percentage = value
        await self.record(
            session, submission, RolloutAction.UPDATE_ROLLOUT,
            submission.status, previous_percentage, actor, reason,
        )
        return submission

    async def pause(
        self,
        session: AsyncSession,
        submission: Submission,
        reason: str | None,
        actor: str,
    ) -> Submission:
        """Pause a LIVE phased rollout."""
        rules_for(submission.platform).check_pause(submission)
        reason = _require_reason(RolloutAction.PAUSE, reason)
        previous = submission.status
        submission.status = SubmissionStatus.PAUSED
        await self.record(
            session, submission, RolloutAction.PAUSE,
            previous, submission.rollout_percentage, actor, reason,
        )
        return submission

    async def resume(
        self,
        session: AsyncSession,
        submission: Submission,
        actor: str,
        reason: str | None = None,
    ) -> Submission:
        """Resume a PAUSED phased rollout."""
        rules_for(submission.platform).check_resume(submission)
        previous = submission.status
        submission.status = SubmissionStatus.LIVE
        await self.record(
            session, submission, RolloutAction.RESUME,
            previous, submission.rollout_percentage, actor, reason,
        )
        return submission

    async def halt(
        self,
        session: AsyncSession,
        submission: Submission,
        reason: str | None,
        actor: str,
    ) -> Submission:
        """Stop a LIVE staged rollout for good."""
        rules_for(submission.platform).check_halt(submission)
        reason = _require_reason(RolloutAction.HALT, reason)
        previous = submission.status
        submission.status = SubmissionStatus.HALTED
        await self.record(
            session, submission, RolloutAction.HALT,
            previous, submission.rollout_percentage, actor, reason,
        )
        return submission
