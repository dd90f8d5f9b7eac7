"""Regression cycle model for ReleasePilot.

A regression cycle is one run of the test-and-stabilize loop inside the
REGRESSION stage. Exactly one cycle per release is flagged latest while
the release is in that stage; only the latest cycle accepts new task
activity.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from releasepilot.database.models.base import Base, JSONType, TimestampMixin


class CycleStatus(str, enum.Enum):
    """Regression cycle lifecycle."""

    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"
    ABANDONED = "ABANDONED"

    @property
    def is_active(self) -> bool:
        return self in (CycleStatus.NOT_STARTED, CycleStatus.IN_PROGRESS)

    @property
    def is_finished(self) -> bool:
        return self in (CycleStatus.DONE, CycleStatus.ABANDONED)


class RegressionCycle(TimestampMixin, Base):
    """One regression cycle of a release.

    Attributes:
        id: UUID primary key (from TimestampMixin).
        release_id: Owning release.
        cycle_number: One-based position among the release's cycles.
        cycle_tag: Human-readable tag (RC1, RC2, ...).
        status: Lifecycle status.
        is_latest: Whether this is the cycle receiving task activity.
        scheduled_at: When a slot-created cycle becomes due.
        slot_config: Configuration carried over from the consumed slot.
        started_at: When the cycle entered IN_PROGRESS.
        completed_at: When the cycle reached DONE or ABANDONED.
        abandoned_reason: Why a user discarded the cycle.
        version: Optimistic concurrency counter.
    """

    __tablename__ = "regression_cycles"

    release_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("releases.id"),
        nullable=False,
    )
    cycle_number: Mapped[int] = mapped_column(Integer, nullable=False)
    cycle_tag: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[CycleStatus] = mapped_column(default=CycleStatus.NOT_STARTED, nullable=False)
    is_latest: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    scheduled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    slot_config: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    abandoned_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("idx_regression_cycles_release_latest", "release_id", "is_latest"),
    )
