"""Release model for ReleasePilot.

Defines the Release table plus the release-wide enumerations (type,
status, stage, platform, store target). A Release is created by a kickoff
request and is never deleted; abandoning it archives it instead.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, Index, Integer, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from releasepilot.database.models.base import Base, JSONType, TimestampMixin


class ReleaseType(str, enum.Enum):
    """Kind of release being shipped."""

    HOTFIX = "HOTFIX"
    MINOR = "MINOR"
    MAJOR = "MAJOR"


class ReleaseStatus(str, enum.Enum):
    """Base status of a release.

    States:
        PENDING: Created, kickoff not yet started.
        IN_PROGRESS: The cron orchestrator is driving the release.
        PAUSED: Halted by a user or by a failed task.
        SUBMITTED: Submitted to at least one store for review.
        COMPLETED: Distribution finished.
        ARCHIVED: Abandoned; terminal.
    """

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    PAUSED = "PAUSED"
    SUBMITTED = "SUBMITTED"
    COMPLETED = "COMPLETED"
    ARCHIVED = "ARCHIVED"


class ReleaseStage(str, enum.Enum):
    """Ordered pipeline stages of a release."""

    KICKOFF = "KICKOFF"
    REGRESSION = "REGRESSION"
    POST_REGRESSION = "POST_REGRESSION"
    DISTRIBUTION = "DISTRIBUTION"

    @property
    def number(self) -> int:
        """One-based position of the stage in the pipeline."""
        return _STAGE_ORDER.index(self) + 1

    @property
    def next(self) -> ReleaseStage | None:
        """The stage that follows this one, or None for the last stage."""
        index = _STAGE_ORDER.index(self)
        if index + 1 < len(_STAGE_ORDER):
            return _STAGE_ORDER[index + 1]
        return None

    @classmethod
    def from_number(cls, number: int) -> ReleaseStage:
        """Look up a stage by its one-based position."""
        if not 1 <= number <= len(_STAGE_ORDER):
            raise ValueError(f"Invalid stage number: {number}")
        return _STAGE_ORDER[number - 1]


_STAGE_ORDER: list[ReleaseStage] = [
    ReleaseStage.KICKOFF,
    ReleaseStage.REGRESSION,
    ReleaseStage.POST_REGRESSION,
    ReleaseStage.DISTRIBUTION,
]


class Platform(str, enum.Enum):
    """Application platform."""

    ANDROID = "ANDROID"
    IOS = "IOS"
    WEB = "WEB"


class DistributionTarget(str, enum.Enum):
    """Store or channel a platform is distributed to."""

    PLAY_STORE = "PLAY_STORE"
    APP_STORE = "APP_STORE"
    WEB = "WEB"


class Release(TimestampMixin, Base):
    """A single release attempt.

    Attributes:
        id: UUID primary key (from TimestampMixin).
        tenant_id: Owning tenant.
        release_key: User-facing identifier, unique per tenant.
        release_type: HOTFIX, MINOR or MAJOR.
        status: Base release status; the display phase is derived.
        current_stage: Stage the release is in.
        branch: Release branch name, set once the branch is forked.
        base_branch: Branch the release is forked from.
        kickoff_date: When stage 1 is scheduled to start.
        target_release_date: Planned store release date.
        platform_targets: List of {platform, target, version} mappings.
        release_pilot_id: User steering the release.
        created_by: User who requested the kickoff.
        has_manual_build_upload: Build mode, fixed at configuration time.
            True routes build tasks to AWAITING_MANUAL_BUILD, False to
            AWAITING_CALLBACK.
        archived_at: Timestamp when the release was archived.
        version: Optimistic concurrency counter.
    """

    __tablename__ = "releases"

    tenant_id: Mapped[str] = mapped_column(Text, nullable=False)
    release_key: Mapped[str] = mapped_column(Text, nullable=False)
    release_type: Mapped[ReleaseType] = mapped_column(
        default=ReleaseType.MINOR,
        nullable=False,
    )
    status: Mapped[ReleaseStatus] = mapped_column(
        default=ReleaseStatus.PENDING,
        nullable=False,
    )
    current_stage: Mapped[ReleaseStage] = mapped_column(
        default=ReleaseStage.KICKOFF,
        nullable=False,
    )
    branch: Mapped[str | None] = mapped_column(Text, nullable=True)
    base_branch: Mapped[str] = mapped_column(Text, default="main", nullable=False)
    kickoff_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    target_release_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    platform_targets: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONType,
        default=list,
        nullable=False,
    )
    release_pilot_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(Text, nullable=True)
    has_manual_build_upload: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    archived_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint("tenant_id", "release_key", name="uq_releases_tenant_key"),
        Index("idx_releases_status", "status"),
    )

    @property
    def platforms(self) -> list[Platform]:
        """Distinct platforms this release ships to, in declaration order."""
        seen: list[Platform] = []
        for mapping in self.platform_targets or []:
            platform = Platform(mapping["platform"])
            if platform not in seen:
                seen.append(platform)
        return seen

    def version_for(self, platform: Platform) -> str | None:
        """Return the marketing version configured for a platform."""
        for mapping in self.platform_targets or []:
            if mapping.get("platform") == platform.value:
                return mapping.get("version")
        return None
