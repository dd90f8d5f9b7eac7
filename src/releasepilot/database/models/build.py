"""Build model for ReleasePilot.

A Build is artifact metadata produced by CI/CD or uploaded by a human.
It is either consumed (linked to exactly one task through ``task_id``)
or staged, waiting for the task that will consume it. ``task_id`` never
changes once set.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from releasepilot.database.models.base import Base, TimestampMixin
from releasepilot.database.models.release import Platform


class BuildStage(str, enum.Enum):
    """Pipeline point a build belongs to."""

    KICKOFF = "KICKOFF"
    PRE_REGRESSION = "PRE_REGRESSION"
    REGRESSION = "REGRESSION"
    PRE_RELEASE = "PRE_RELEASE"


class BuildSource(str, enum.Enum):
    """Where the build came from."""

    CI_CD = "CI_CD"
    MANUAL = "MANUAL"


class WorkflowStatus(str, enum.Enum):
    """CI/CD workflow status for pipeline-origin builds."""

    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class Build(TimestampMixin, Base):
    """Artifact metadata for one platform build.

    Attributes:
        id: UUID primary key (from TimestampMixin).
        release_id: Owning release.
        platform: Platform the artifact targets.
        build_stage: Pipeline point the build belongs to.
        source: CI_CD or MANUAL.
        artifact_path: Location of the artifact in external storage.
        testflight_number: TestFlight build number (iOS).
        internal_track_link: Play Console internal-track link (Android).
        version_code: Android versionCode.
        workflow_status: Status of the CI/CD workflow, None for manual.
        job_url: CI/CD job URL.
        task_id: Consuming task, None while staged. Immutable once set.
        regression_cycle_id: Cycle the build was produced for.
        consumed_at: When the build was linked to its task.
        version: Optimistic concurrency counter.
    """

    __tablename__ = "builds"

    release_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("releases.id"),
        nullable=False,
    )
    platform: Mapped[Platform] = mapped_column(nullable=False)
    build_stage: Mapped[BuildStage] = mapped_column(nullable=False)
    source: Mapped[BuildSource] = mapped_column(default=BuildSource.CI_CD, nullable=False)
    artifact_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    testflight_number: Mapped[str | None] = mapped_column(Text, nullable=True)
    internal_track_link: Mapped[str | None] = mapped_column(Text, nullable=True)
    version_code: Mapped[str | None] = mapped_column(Text, nullable=True)
    workflow_status: Mapped[WorkflowStatus | None] = mapped_column(nullable=True)
    job_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    task_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("release_tasks.id"),
        nullable=True,
    )
    regression_cycle_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("regression_cycles.id"),
        nullable=True,
    )
    consumed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("idx_builds_release_stage", "release_id", "build_stage"),
        Index("idx_builds_task", "task_id"),
    )

    @property
    def is_staged(self) -> bool:
        """True while no task has consumed the build."""
        return self.task_id is None
