"""Activity logging of rejected state-changing operations.

A state change that ends in a terminal domain error leaves no trace in
the failed transaction, which is rolled back. ``audited_operation``
records the rejection in a separate transaction so the audit trail shows
what was attempted, by whom and why it was refused. Errors whose class
sets ``audited = False`` (lock contention, missing records) are re-raised
without an entry.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from releasepilot.database.queries.activity_log import record_activity
from releasepilot.errors import ReleasePilotError

logger = structlog.get_logger(__name__)


async def record_rejection(
    session_factory: async_sessionmaker[AsyncSession],
    release_id: UUID,
    entity_type: str,
    entity_id: Any,
    action: str,
    actor: str,
    error: ReleasePilotError,
) -> None:
    """Write a ``<action>_rejected`` activity entry in its own transaction."""
    async with session_factory() as session, session.begin():
        await record_activity(
            session,
            release_id=release_id,
            entity_type=entity_type,
            entity_id=entity_id,
            action=f"{action}_rejected",
            new_value={"error": error.code, "message": error.message},
            actor=actor,
            details={key: _jsonable(value) for key, value in error.details.items()},
        )


def _jsonable(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    if isinstance(value, dict):
        return {str(key): _jsonable(item) for key, item in value.items()}
    return str(getattr(value, "value", value))


@asynccontextmanager
async def audited_operation(
    session_factory: async_sessionmaker[AsyncSession],
    release_id: UUID | None,
    entity_type: str,
    entity_id: Any,
    action: str,
    actor: str = "system",
) -> AsyncIterator[None]:
    """Run a state-changing block and audit it if it is rejected.

    The block must open and close its own transaction inside this context
    so the rejection is recorded after the rollback.
    """
    try:
        yield
    except ReleasePilotError as exc:
        if exc.audited and release_id is not None:
            logger.info(
                "operation_rejected",
                release_id=str(release_id),
                action=action,
                error=exc.code,
                message=exc.message,
            )
            await record_rejection(
                session_factory, release_id, entity_type, entity_id, action, actor, exc
            )
        raise
