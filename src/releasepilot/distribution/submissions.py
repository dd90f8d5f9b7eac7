"""Store submission service.

Owns the transactions around submissions: opening and resubmitting,
sending for review, applying store status updates, cancelling, and the
user-facing rollout controls (update, pause, resume, halt). The checked
state changes themselves live in ``RolloutController``.

Only one submission per (release, platform) is active. Resubmitting after
REJECTED or CANCELLED deactivates the previous record in the same
transaction, before the new record is inserted.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from releasepilot.database.models.build import BuildStage
from releasepilot.database.models.release import Platform, Release, ReleaseStatus
from releasepilot.database.models.submission import Submission, SubmissionStatus
from releasepilot.database.queries.activity_log import record_activity
from releasepilot.database.queries.build import get_build, list_builds
from releasepilot.database.queries.release import get_release
from releasepilot.database.queries.submission import (
    create_submission,
    get_active_submission,
    get_submission,
    list_submissions,
)
from releasepilot.distribution.rollout import (
    RolloutAction,
    RolloutController,
    check_submission_transition,
    require_percentage,
    rules_for,
)
from releasepilot.errors import InvalidPlatformOperation, InvalidTransition, NotFound, ValidationError
from releasepilot.integrations.webhooks import PendingEvent, WebhookDispatcher, submission_event
from releasepilot.orchestrator.audit import audited_operation
from releasepilot.orchestrator.release_state import transition_release

logger = structlog.get_logger(__name__)

STORE_STATUSES = (SubmissionStatus.APPROVED, SubmissionStatus.REJECTED, SubmissionStatus.LIVE)


async def open_submission(
    session: AsyncSession,
    release: Release,
    platform: Platform,
    controller: RolloutController,
    actor: str = "system",
    phased_release: bool = False,
    build_id: UUID | None = None,
) -> Submission:
    """Create the active submission of a (release, platform) pair.

    An existing active submission must be REJECTED or CANCELLED; it is
    deactivated before the replacement is inserted. When no build is given
    the latest consumed pre-release build of the platform is linked.

    Raises:
        InvalidPlatformOperation: If the platform has no store submission.
        ValidationError: If the release does not ship to the platform, or
            the build belongs to another release or platform.
        InvalidTransition: If an active submission still blocks a new one.
    """
    rules_for(platform)
    if platform not in release.platforms:
        raise ValidationError(
            f"Release {release.release_key} does not ship to {platform.value}",
            platform=platform.value,
        )

    build = None
    if build_id is not None:
        build = await get_build(session, build_id)
        if build is None or build.release_id != release.id or build.platform != platform:
            raise ValidationError(f"Build {build_id} is not a {platform.value} build of this release")
    else:
        candidates = [
            b for b in await list_builds(
                session, release.id, build_stage=BuildStage.PRE_RELEASE, platform=platform
            )
            if b.task_id is not None
        ]
        build = candidates[-1] if candidates else None

    existing = await get_active_submission(session, release.id, platform)
    if existing is not None:
        if not existing.status.allows_resubmission:
            raise InvalidTransition(
                "submission", existing.status, "RESUBMITTED", str(existing.id),
                reason=f"an active {platform.value} submission already exists",
            )
        existing.is_active = False
        await record_activity(
            session,
            release_id=release.id,
            entity_type="submission",
            entity_id=existing.id,
            action="submission_deactivated",
            previous_value={"is_active": True},
            new_value={"is_active": False},
            actor=actor,
            details={"status": existing.status.value},
        )
        # The partial unique index needs the old row deactivated first
        await session.flush()

    submission = await create_submission(
        session,
        release_id=release.id,
        platform=platform,
        phased_release=phased_release if platform == Platform.IOS else False,
        version_code=(build.version_code if build is not None else None) or release.version_for(platform),
        build_id=build.id if build is not None else None,
    )
    await controller.record(
        session, submission, RolloutAction.CREATE, None, None, actor,
        reason="resubmission" if existing is not None else None,
    )
    return submission


class SubmissionService:
    """Transactional entry point for store submissions and rollout control."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        controller: RolloutController | None = None,
        notifier: WebhookDispatcher | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.controller = controller or RolloutController()
        self.notifier = notifier
        self.logger = logger.bind(component="SubmissionService")

    async def _publish(self, events: list[PendingEvent]) -> None:
        if self.notifier is not None and events:
            await self.notifier.publish(events)

    def _event(self, submission: Submission, action: RolloutAction) -> PendingEvent:
        return submission_event(
            submission.release_id,
            submission.id,
            submission.platform.value,
            submission.status.value,
            submission.rollout_percentage,
            action.value,
        )

    async def _release_of(self, submission_id: UUID) -> UUID:
        async with self.session_factory() as session:
            submission = await get_submission(session, submission_id)
            if submission is None:
                raise NotFound("submission", submission_id)
            return submission.release_id

    async def _load(self, session: AsyncSession, submission_id: UUID) -> Submission:
        submission = await get_submission(session, submission_id)
        if submission is None:
            raise NotFound("submission", submission_id)
        if not submission.is_active:
            raise InvalidTransition(
                "submission", submission.status, "updated", str(submission.id),
                reason="submission was superseded by a resubmission",
            )
        return submission

    async def _load_active(self, session: AsyncSession, release_id: UUID, platform: Platform) -> Submission:
        submission = await get_active_submission(session, release_id, platform)
        if submission is None:
            raise NotFound("submission", f"{release_id}/{platform.value}")
        return submission

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, submission_id: UUID) -> Submission:
        async with self.session_factory() as session:
            submission = await get_submission(session, submission_id)
            if submission is None:
                raise NotFound("submission", submission_id)
            return submission

    async def list_for_release(self, release_id: UUID, active_only: bool = False) -> list[Submission]:
        async with self.session_factory() as session:
            return await list_submissions(session, release_id, active_only=active_only)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create(
        self,
        release_id: UUID,
        platform: Platform,
        actor: str,
        phased_release: bool = False,
        build_id: UUID | None = None,
    ) -> Submission:
        """Open or resubmit the submission of a platform."""
        async with audited_operation(
            self.session_factory, release_id, "submission", platform.value, "submission_create", actor
        ):
            async with self.session_factory() as session, session.begin():
                release = await get_release(session, release_id)
                if release is None:
                    raise NotFound("release", release_id)
                if release.status in (ReleaseStatus.ARCHIVED, ReleaseStatus.COMPLETED):
                    raise InvalidTransition(
                        "release", release.status, "submission", str(release.id),
                        reason="release is closed",
                    )
                submission = await open_submission(
                    session, release, platform, self.controller, actor,
                    phased_release=phased_release, build_id=build_id,
                )
                events = [self._event(submission, RolloutAction.CREATE)]

        await self._publish(events)
        return submission

    async def submit_for_review(
        self,
        submission_id: UUID,
        actor: str,
        rollout_percentage: float | None = None,
    ) -> Submission:
        """Send a PENDING submission to store review.

        Android submissions may choose the percentage they start at once
        live. The first submission of a release moves it to SUBMITTED.
        """
        release_id = await self._release_of(submission_id)
        async with audited_operation(
            self.session_factory, release_id, "submission", submission_id, "submission_submit", actor
        ):
            async with self.session_factory() as session, session.begin():
                submission = await self._load(session, submission_id)
                if rollout_percentage is not None and submission.platform != Platform.ANDROID:
                    raise InvalidPlatformOperation(
                        submission.platform, "submit",
                        "the initial rollout percentage is managed by the store",
                    )
                check_submission_transition(submission, SubmissionStatus.IN_REVIEW)
                if rollout_percentage is not None:
                    submission.rollout_percentage = require_percentage(rollout_percentage)

                previous = submission.status
                submission.status = SubmissionStatus.IN_REVIEW
                submission.submitted_at = self.controller.clock()
                await self.controller.record(
                    session, submission, RolloutAction.SUBMIT, previous, 0.0, actor
                )

                release = await get_release(session, submission.release_id)
                if release is not None and release.status == ReleaseStatus.IN_PROGRESS:
                    transition_release(release, ReleaseStatus.SUBMITTED)
                    await record_activity(
                        session,
                        release_id=release.id,
                        entity_type="release",
                        entity_id=release.id,
                        action="release_submitted",
                        previous_value={"status": ReleaseStatus.IN_PROGRESS.value},
                        new_value={"status": ReleaseStatus.SUBMITTED.value},
                        actor=actor,
                    )
                events = [self._event(submission, RolloutAction.SUBMIT)]

        await self._publish(events)
        return submission

    async def apply_store_status(
        self,
        submission_id: UUID,
        status: SubmissionStatus,
        actor: str = "store",
        reason: str | None = None,
    ) -> Submission:
        """Apply a status reported by the store.

        IN_REVIEW moves to APPROVED or REJECTED; APPROVED moves to LIVE at
        the platform's initial rollout percentage.
        """
        if status not in STORE_STATUSES:
            raise ValidationError(
                f"Store status must be one of {', '.join(s.value for s in STORE_STATUSES)}",
                status=status.value,
            )
        release_id = await self._release_of(submission_id)
        async with audited_operation(
            self.session_factory, release_id, "submission", submission_id, "submission_store_status", actor
        ):
            async with self.session_factory() as session, session.begin():
                submission = await self._load(session, submission_id)
                check_submission_transition(submission, status)

                previous = submission.status
                previous_percentage = submission.rollout_percentage
                submission.status = status
                if status == SubmissionStatus.LIVE:
                    submission.rollout_percentage = self.controller.initial_percentage(submission)
                    submission.released_at = self.controller.clock()
                await self.controller.record(
                    session, submission, RolloutAction.STORE_STATUS,
                    previous, previous_percentage, actor, reason,
                )
                events = [self._event(submission, RolloutAction.STORE_STATUS)]

        await self._publish(events)
        return submission

    async def cancel(self, submission_id: UUID, actor: str, reason: str | None = None) -> Submission:
        """Withdraw a submission that is PENDING or IN_REVIEW."""
        release_id = await self._release_of(submission_id)
        async with audited_operation(
            self.session_factory, release_id, "submission", submission_id, "submission_cancel", actor
        ):
            async with self.session_factory() as session, session.begin():
                submission = await self._load(session, submission_id)
                check_submission_transition(submission, SubmissionStatus.CANCELLED)
                previous = submission.status
                submission.status = SubmissionStatus.CANCELLED
                await self.controller.record(
                    session, submission, RolloutAction.CANCEL,
                    previous, submission.rollout_percentage, actor, reason,
                )
                events = [self._event(submission, RolloutAction.CANCEL)]

        await self._publish(events)
        return submission

    # ------------------------------------------------------------------
    # Rollout control
    # ------------------------------------------------------------------

    async def _rollout(
        self,
        release_id: UUID,
        platform: Platform,
        action: RolloutAction,
        actor: str,
        **kwargs: Any,
    ) -> Submission:
        async with audited_operation(
            self.session_factory, release_id, "submission", platform.value,
            f"rollout_{action.value.lower()}", actor,
        ):
            async with self.session_factory() as session, session.begin():
                submission = await self._load_active(session, release_id, platform)
                if action == RolloutAction.UPDATE_ROLLOUT:
                    await self.controller.update_rollout(
                        session, submission, kwargs["percentage"], actor, kwargs.get("reason")
                    )
                elif action == RolloutAction.PAUSE:
                    await self.controller.pause(session, submission, kwargs.get("reason"), actor)
                elif action == RolloutAction.RESUME:
                    await self.controller.resume(session, submission, actor, kwargs.get("reason"))
                else:
                    await self.controller.halt(session, submission, kwargs.get("reason"), actor)
                events = [self._event(submission, action)]

        await self._publish(events)
        return submission

    async def update_rollout(
        self,
        release_id: UUID,
        platform: Platform,
        percentage: float,
        actor: str,
        reason: str | None = None,
    ) -> Submission:
        return await self._rollout(
            release_id, platform, RolloutAction.UPDATE_ROLLOUT, actor,
            percentage=percentage, reason=reason,
        )

    async def pause_rollout(self, release_id: UUID, platform: Platform, reason: str | None, actor: str) -> Submission:
        return await self._rollout(release_id, platform, RolloutAction.PAUSE, actor, reason=reason)

    async def resume_rollout(
        self,
        release_id: UUID,
        platform: Platform,
        actor: str,
        reason: str | None = None,
    ) -> Submission:
        return await self._rollout(release_id, platform, RolloutAction.RESUME, actor, reason=reason)

    async def halt_rollout(self, release_id: UUID, platform: Platform, reason: str | None, actor: str) -> Submission:
        return await self._rollout(release_id, platform, RolloutAction.HALT, actor, reason=reason)
