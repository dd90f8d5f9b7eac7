"""Activity log model for ReleasePilot.

The activity log is the append-only audit trail of every material state
transition made by the orchestrator or the rollout controller. Rows are
never updated or deleted.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, ForeignKey, Index, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from releasepilot.database.models.base import Base, JSONType, utcnow


class ActivityLog(Base):
    """One audit entry.

    Attributes:
        id: UUID primary key.
        release_id: Release the entry belongs to.
        entity_type: Kind of record that changed (release, cron_job, task,
            regression_cycle, build, submission).
        entity_id: Identifier of the record that changed.
        action: Snake-case name of the transition or operation.
        previous_value: State before the change.
        new_value: State after the change.
        actor: User or system component that made the change.
        details: Additional structured context.
        created_at: When the entry was written.
    """

    __tablename__ = "activity_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    release_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("releases.id"),
        nullable=False,
    )
    entity_type: Mapped[str] = mapped_column(Text, nullable=False)
    entity_id: Mapped[str] = mapped_column(Text, nullable=False)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    previous_value: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    new_value: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    actor: Mapped[str] = mapped_column(Text, nullable=False, default="system")
    details: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )

    __table_args__ = (
        Index("idx_activity_logs_release_created", "release_id", "created_at"),
    )
