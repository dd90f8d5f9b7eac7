"""Cron job model for ReleasePilot.

Each release owns exactly one CronJob: the scheduler's persistent state
for that release. It records the per-stage statuses, the overall cron
status and pause reason, the lease that serializes orchestrator passes,
free-form stage data, and the scheduled regression slots.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from releasepilot.database.models.base import Base, JSONType, TimestampMixin
from releasepilot.database.models.release import ReleaseStage


class StageStatus(str, enum.Enum):
    """Status of a single pipeline stage."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


class CronStatus(str, enum.Enum):
    """Overall scheduler status for a release."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"


class PauseType(str, enum.Enum):
    """Why a cron job is not advancing.

    States:
        NONE: Not paused.
        AWAITING_STAGE_TRIGGER: A stage finished and the next one needs an
            explicit trigger.
        USER_REQUESTED: Paused by a user.
        TASK_FAILURE: A task failed and must be retried by a human.
    """

    NONE = "NONE"
    AWAITING_STAGE_TRIGGER = "AWAITING_STAGE_TRIGGER"
    USER_REQUESTED = "USER_REQUESTED"
    TASK_FAILURE = "TASK_FAILURE"


class IntegrationKind(str, enum.Enum):
    """External integrations a release may have configured."""

    PROJECT_MANAGEMENT = "PROJECT_MANAGEMENT"
    TEST_MANAGEMENT = "TEST_MANAGEMENT"
    CI_CD = "CI_CD"
    COMMUNICATION = "COMMUNICATION"


class CronJob(TimestampMixin, Base):
    """Scheduler state for one release.

    Attributes:
        id: UUID primary key (from TimestampMixin).
        release_id: The release this job drives (unique).
        stage1_status: KICKOFF stage status.
        stage2_status: REGRESSION stage status.
        stage3_status: POST_REGRESSION stage status.
        stage4_status: DISTRIBUTION stage status.
        cron_status: Overall scheduler status.
        pause_type: Reason the job is paused, NONE when running.
        lock_holder: Holder id of the current lease, None when unlocked.
        lock_acquired_at: When the current lease was acquired.
        lock_expires_at: When the current lease becomes reclaimable.
        stage_data: Free-form per-stage data, including approval signals.
        auto_transition_to_stage2: Start REGRESSION when KICKOFF completes.
        auto_transition_to_stage3: Start POST_REGRESSION when REGRESSION
            completes and the approval gate passes.
        upcoming_regressions: Ordered regression slots, each {date, config}.
        cron_config: Optional-task flags (kickoff_reminder,
            pre_regression_builds, automation_builds, automation_runs,
            test_flight_builds).
        integrations: Configured IntegrationKind values.
        version: Optimistic concurrency counter.
    """

    __tablename__ = "cron_jobs"

    release_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("releases.id"),
        nullable=False,
        unique=True,
    )
    stage1_status: Mapped[StageStatus] = mapped_column(default=StageStatus.PENDING, nullable=False)
    stage2_status: Mapped[StageStatus] = mapped_column(default=StageStatus.PENDING, nullable=False)
    stage3_status: Mapped[StageStatus] = mapped_column(default=StageStatus.PENDING, nullable=False)
    stage4_status: Mapped[StageStatus] = mapped_column(default=StageStatus.PENDING, nullable=False)
    cron_status: Mapped[CronStatus] = mapped_column(default=CronStatus.PENDING, nullable=False)
    pause_type: Mapped[PauseType] = mapped_column(default=PauseType.NONE, nullable=False)
    lock_holder: Mapped[str | None] = mapped_column(Text, nullable=True)
    lock_acquired_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    lock_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    stage_data: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)
    auto_transition_to_stage2: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    auto_transition_to_stage3: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    upcoming_regressions: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONType,
        default=list,
        nullable=False,
    )
    cron_config: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)
    integrations: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("idx_cron_jobs_cron_status", "cron_status"),
    )

    def stage_status(self, stage: ReleaseStage) -> StageStatus:
        """Return the status column for a stage."""
        return getattr(self, f"stage{stage.number}_status")

    def set_stage_status(self, stage: ReleaseStage, status: StageStatus) -> None:
        """Set the status column for a stage."""
        setattr(self, f"stage{stage.number}_status", status)

    def stage_statuses(self) -> dict[ReleaseStage, StageStatus]:
        """Return every stage mapped to its status."""
        return {stage: self.stage_status(stage) for stage in ReleaseStage}

    def auto_transition_to(self, stage: ReleaseStage) -> bool:
        """Whether finishing the previous stage starts ``stage`` automatically.

        DISTRIBUTION always requires an explicit trigger.
        """
        if stage is ReleaseStage.REGRESSION:
            return self.auto_transition_to_stage2
        if stage is ReleaseStage.POST_REGRESSION:
            return self.auto_transition_to_stage3
        return False

    def has_integration(self, kind: IntegrationKind) -> bool:
        """Whether an integration of the given kind is configured."""
        return kind.value in (self.integrations or [])

    def config_flag(self, name: str, default: bool = False) -> bool:
        """Read a boolean flag from cron_config."""
        return bool((self.cron_config or {}).get(name, default))
