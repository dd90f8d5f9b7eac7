"""Release status transitions and the derived display phase.

The stored ``Release.status`` is deliberately coarse. What a user sees is
a phase derived from the release status, the cron job's stage statuses
and pause reason, and the latest regression cycle. ``derive_phase`` is a
pure function of those inputs so it can be computed anywhere and tested
without a database.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field

from releasepilot.database.models.cron_job import CronJob, CronStatus, PauseType, StageStatus
from releasepilot.database.models.regression_cycle import CycleStatus, RegressionCycle
from releasepilot.database.models.release import Release, ReleaseStage, ReleaseStatus
from releasepilot.errors import InvalidTransition

RELEASE_TRANSITIONS: dict[ReleaseStatus, set[ReleaseStatus]] = {
    ReleaseStatus.PENDING: {ReleaseStatus.IN_PROGRESS, ReleaseStatus.ARCHIVED},
    ReleaseStatus.IN_PROGRESS: {
        ReleaseStatus.PAUSED,
        ReleaseStatus.SUBMITTED,
        ReleaseStatus.COMPLETED,
        ReleaseStatus.ARCHIVED,
    },
    ReleaseStatus.PAUSED: {ReleaseStatus.IN_PROGRESS, ReleaseStatus.ARCHIVED},
    ReleaseStatus.SUBMITTED: {ReleaseStatus.COMPLETED, ReleaseStatus.ARCHIVED},
    ReleaseStatus.COMPLETED: set(),
    ReleaseStatus.ARCHIVED: set(),
}


def can_transition_release(current: ReleaseStatus, target: ReleaseStatus) -> bool:
    return target in RELEASE_TRANSITIONS.get(current, set())


def transition_release(release: Release, target: ReleaseStatus) -> ReleaseStatus:
    """Move a release to ``target`` and return the previous status.

    Setting the current status again is a no-op.

    Raises:
        InvalidTransition: If the transition is not allowed.
    """
    current = release.status
    if current == target:
        return current
    if not can_transition_release(current, target):
        raise InvalidTransition("release", current, target, str(release.id))
    release.status = target
    return current


class ReleasePhase(str, enum.Enum):
    """User-facing phase of a release."""

    NOT_STARTED = "NOT_STARTED"
    KICKOFF = "KICKOFF"
    AWAITING_REGRESSION = "AWAITING_REGRESSION"
    REGRESSION = "REGRESSION"
    REGRESSION_AWAITING_NEXT_CYCLE = "REGRESSION_AWAITING_NEXT_CYCLE"
    AWAITING_POST_REGRESSION = "AWAITING_POST_REGRESSION"
    POST_REGRESSION = "POST_REGRESSION"
    AWAITING_SUBMISSION = "AWAITING_SUBMISSION"
    SUBMISSION = "SUBMISSION"
    SUBMITTED_PENDING_APPROVAL = "SUBMITTED_PENDING_APPROVAL"
    PAUSED_BY_USER = "PAUSED_BY_USER"
    PAUSED_BY_FAILURE = "PAUSED_BY_FAILURE"
    COMPLETED = "COMPLETED"
    ARCHIVED = "ARCHIVED"


@dataclass(frozen=True)
class PhaseInputs:
    """Everything the phase derivation looks at."""

    release_status: ReleaseStatus
    stage_statuses: dict[ReleaseStage, StageStatus] = field(default_factory=dict)
    cron_status: CronStatus = CronStatus.PENDING
    pause_type: PauseType = PauseType.NONE
    latest_cycle_status: CycleStatus | None = None
    has_next_cycle: bool = False


def derive_phase(inputs: PhaseInputs) -> ReleasePhase:
    """Derive the display phase from stored state.

    Terminal statuses win, then pause reasons, then submission, then the
    furthest stage that has started.
    """
    status = inputs.release_status
    if status == ReleaseStatus.ARCHIVED:
        return ReleasePhase.ARCHIVED
    if status == ReleaseStatus.COMPLETED:
        return ReleasePhase.COMPLETED

    paused = status == ReleaseStatus.PAUSED or (
        inputs.cron_status == CronStatus.PAUSED
        and inputs.pause_type in (PauseType.USER_REQUESTED, PauseType.TASK_FAILURE)
    )
    if paused:
        if inputs.pause_type == PauseType.TASK_FAILURE:
            return ReleasePhase.PAUSED_BY_FAILURE
        return ReleasePhase.PAUSED_BY_USER

    if status == ReleaseStatus.SUBMITTED:
        return ReleasePhase.SUBMITTED_PENDING_APPROVAL
    if status == ReleaseStatus.PENDING:
        return ReleasePhase.NOT_STARTED

    stages = inputs.stage_statuses

    def stage(s: ReleaseStage) -> StageStatus:
        return stages.get(s, StageStatus.PENDING)

    if stage(ReleaseStage.DISTRIBUTION) != StageStatus.PENDING:
        return ReleasePhase.SUBMISSION
    if stage(ReleaseStage.POST_REGRESSION) == StageStatus.COMPLETED:
        return ReleasePhase.AWAITING_SUBMISSION
    if stage(ReleaseStage.POST_REGRESSION) == StageStatus.IN_PROGRESS:
        return ReleasePhase.POST_REGRESSION
    if stage(ReleaseStage.REGRESSION) == StageStatus.COMPLETED:
        return ReleasePhase.AWAITING_POST_REGRESSION
    if stage(ReleaseStage.REGRESSION) == StageStatus.IN_PROGRESS:
        cycle = inputs.latest_cycle_status
        if cycle == CycleStatus.NOT_STARTED or (cycle == CycleStatus.DONE and inputs.has_next_cycle):
            return ReleasePhase.REGRESSION_AWAITING_NEXT_CYCLE
        return ReleasePhase.REGRESSION
    if stage(ReleaseStage.KICKOFF) == StageStatus.COMPLETED:
        return ReleasePhase.AWAITING_REGRESSION
    if stage(ReleaseStage.KICKOFF) == StageStatus.IN_PROGRESS:
        return ReleasePhase.KICKOFF
    return ReleasePhase.NOT_STARTED


def phase_for(
    release: Release,
    cron_job: CronJob | None,
    latest_cycle: RegressionCycle | None = None,
) -> ReleasePhase:
    """Derive the phase of a loaded release."""
    if cron_job is None:
        return derive_phase(PhaseInputs(release_status=release.status))
    return derive_phase(
        PhaseInputs(
            release_status=release.status,
            stage_statuses=cron_job.stage_statuses(),
            cron_status=cron_job.cron_status,
            pause_type=cron_job.pause_type,
            latest_cycle_status=latest_cycle.status if latest_cycle is not None else None,
            has_next_cycle=bool(cron_job.upcoming_regressions),
        )
    )
