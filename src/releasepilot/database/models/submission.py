"""Store submission model for ReleasePilot.

A Submission governs the store rollout of one platform of a release.
Only one submission per (release, platform) is active at a time; a
rejected or cancelled submission is replaced by a new record rather than
reused, which a partial unique index enforces.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, Integer, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from releasepilot.database.models.base import Base, JSONType, TimestampMixin
from releasepilot.database.models.release import Platform


class SubmissionStatus(str, enum.Enum):
    """Store submission lifecycle.

    States:
        PENDING: Created, not yet sent for review.
        IN_REVIEW: Awaiting store review.
        APPROVED: Approved by the store, not yet released.
        LIVE: Released to users, possibly partially.
        PAUSED: Phased rollout paused (iOS only).
        HALTED: Rollout stopped for good (Android only); terminal.
        REJECTED: Rejected by the store; terminal.
        CANCELLED: Withdrawn before approval; terminal.
    """

    PENDING = "PENDING"
    IN_REVIEW = "IN_REVIEW"
    APPROVED = "APPROVED"
    LIVE = "LIVE"
    PAUSED = "PAUSED"
    HALTED = "HALTED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"

    @property
    def allows_resubmission(self) -> bool:
        return self in (SubmissionStatus.REJECTED, SubmissionStatus.CANCELLED)


class Submission(TimestampMixin, Base):
    """Rollout state of one platform submission.

    Attributes:
        id: UUID primary key (from TimestampMixin).
        release_id: Owning release.
        platform: ANDROID or IOS.
        status: Lifecycle status.
        rollout_percentage: Share of users exposed, always within [0, 100].
        phased_release: iOS phased release flag; gates pause, resume and
            partial percentages.
        version_code: Android versionCode submitted.
        build_id: Build that was submitted.
        is_active: Whether this is the live record for (release, platform).
        action_history: Append-only list of rollout actions.
        submitted_at: When the submission went to review.
        released_at: When the submission went live.
        version: Optimistic concurrency counter.
    """

    __tablename__ = "submissions"

    release_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("releases.id"),
        nullable=False,
    )
    platform: Mapped[Platform] = mapped_column(nullable=False)
    status: Mapped[SubmissionStatus] = mapped_column(
        default=SubmissionStatus.PENDING,
        nullable=False,
    )
    rollout_percentage: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    phased_release: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    version_code: Mapped[str | None] = mapped_column(Text, nullable=True)
    build_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("builds.id"),
        nullable=True,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    action_history: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONType,
        default=list,
        nullable=False,
    )
    submitted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    released_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index(
            "uq_submissions_active_platform",
            "release_id",
            "platform",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )
