"""SQLAlchemy declarative base and common column mixins for ReleasePilot.

This module defines the DeclarativeBase class, a TimestampMixin that
provides id, created_at, and updated_at columns shared across all models,
and the portable JSON column type used for payloads and stage data.

Defaults are generated in Python so the same models run on PostgreSQL
(asyncpg) in production and SQLite (aiosqlite) in tests.

Example:
    >>> class MyModel(TimestampMixin, Base):
    ...     __tablename__ = "my_table"
    ...     name: Mapped[str] = mapped_column(Text, nullable=False)
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Normalize a datetime read back from the database to aware UTC.

    SQLite drops tzinfo on round trip; every stored value is UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """SQLAlchemy 2.0 declarative base for all ReleasePilot models."""

    pass


class TimestampMixin:
    """Mixin providing id (UUID), created_at, and updated_at columns.

    This mixin should be listed before Base in the class hierarchy
    to ensure the columns are included in the model's table definition.

    Attributes:
        id: UUID primary key generated on insert.
        created_at: Timestamp set on row creation.
        updated_at: Timestamp refreshed on each ORM update.
    """

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
    )
