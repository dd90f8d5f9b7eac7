"""Release task model for ReleasePilot.

Defines the ReleaseTask table with the TaskType and TaskStatus enums. A
task is one unit of work inside a stage. Its output payload shape is
determined by its task type (see releasepilot.orchestrator.task_outputs).
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, ForeignKey, Index, Integer, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from releasepilot.database.models.base import Base, JSONType, TimestampMixin
from releasepilot.database.models.release import ReleaseStage


class TaskType(str, enum.Enum):
    """Closed set of release task types."""

    # Stage 1: kickoff
    PRE_KICK_OFF_REMINDER = "PRE_KICK_OFF_REMINDER"
    FORK_BRANCH = "FORK_BRANCH"
    CREATE_PROJECT_MANAGEMENT_TICKET = "CREATE_PROJECT_MANAGEMENT_TICKET"
    CREATE_TEST_SUITE = "CREATE_TEST_SUITE"
    TRIGGER_PRE_REGRESSION_BUILDS = "TRIGGER_PRE_REGRESSION_BUILDS"

    # Stage 2: regression (per cycle)
    RESET_TEST_SUITE = "RESET_TEST_SUITE"
    CREATE_RC_TAG = "CREATE_RC_TAG"
    CREATE_RELEASE_NOTES = "CREATE_RELEASE_NOTES"
    TRIGGER_REGRESSION_BUILDS = "TRIGGER_REGRESSION_BUILDS"
    TRIGGER_AUTOMATION_RUNS = "TRIGGER_AUTOMATION_RUNS"
    AUTOMATION_RUNS = "AUTOMATION_RUNS"
    SEND_REGRESSION_BUILD_MESSAGE = "SEND_REGRESSION_BUILD_MESSAGE"

    # Stage 3: post-regression
    PRE_RELEASE_CHERRY_PICKS_REMINDER = "PRE_RELEASE_CHERRY_PICKS_REMINDER"
    CREATE_RELEASE_TAG = "CREATE_RELEASE_TAG"
    CREATE_FINAL_RELEASE_NOTES = "CREATE_FINAL_RELEASE_NOTES"
    TRIGGER_TEST_FLIGHT_BUILD = "TRIGGER_TEST_FLIGHT_BUILD"
    CREATE_AAB_BUILD = "CREATE_AAB_BUILD"
    SEND_POST_REGRESSION_MESSAGE = "SEND_POST_REGRESSION_MESSAGE"
    CHECK_PROJECT_RELEASE_APPROVAL = "CHECK_PROJECT_RELEASE_APPROVAL"

    # Stage 4: distribution
    SUBMIT_TO_TARGET = "SUBMIT_TO_TARGET"


class TaskStatus(str, enum.Enum):
    """State machine for release task lifecycle.

    States:
        PENDING: Created, waiting for its predecessors.
        IN_PROGRESS: Started by the orchestrator.
        AWAITING_CALLBACK: Waiting on an external CI/CD callback.
        AWAITING_MANUAL_BUILD: Waiting on a human build upload.
        COMPLETED: Finished with a type-specific output.
        FAILED: Failed; only a human retry moves it back to PENDING.
        SKIPPED: Not applicable for this release; carries no output.
    """

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    AWAITING_CALLBACK = "AWAITING_CALLBACK"
    AWAITING_MANUAL_BUILD = "AWAITING_MANUAL_BUILD"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"

    @property
    def is_settled(self) -> bool:
        """COMPLETED or SKIPPED: successors may start."""
        return self in (TaskStatus.COMPLETED, TaskStatus.SKIPPED)

    @property
    def is_awaiting(self) -> bool:
        """Waiting on external input, from either source."""
        return self in (TaskStatus.AWAITING_CALLBACK, TaskStatus.AWAITING_MANUAL_BUILD)


class ReleaseTask(TimestampMixin, Base):
    """A unit of work inside a release stage.

    Attributes:
        id: UUID primary key (from TimestampMixin).
        release_id: Owning release.
        task_type: What the task does; determines the output shape.
        stage: Stage the task belongs to.
        sequence: Declared position within the stage (or cycle).
        status: Current state in the task lifecycle.
        conclusion: Free-text outcome, failure reason or skip reason.
        external_id: Correlation id of the external job, if any.
        output: Task-type-specific output, None until completed.
        regression_cycle_id: Cycle a regression task belongs to.
        retry_count: Number of human retries applied.
        started_at: When the task left PENDING.
        completed_at: When the task reached COMPLETED or SKIPPED.
        version: Optimistic concurrency counter.
    """

    __tablename__ = "release_tasks"

    release_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("releases.id"),
        nullable=False,
    )
    task_type: Mapped[TaskType] = mapped_column(nullable=False)
    stage: Mapped[ReleaseStage] = mapped_column(nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[TaskStatus] = mapped_column(default=TaskStatus.PENDING, nullable=False)
    conclusion: Mapped[str | None] = mapped_column(Text, nullable=True)
    external_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    output: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    regression_cycle_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("regression_cycles.id"),
        nullable=True,
    )
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("idx_release_tasks_release_stage", "release_id", "stage"),
        Index("idx_release_tasks_cycle", "regression_cycle_id"),
    )
