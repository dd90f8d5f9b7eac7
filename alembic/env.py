"""Alembic environment for the ReleasePilot schema.

Connection settings and logging come from the same ReleasePilotConfig the
web app, scheduler and CLI load, so a migration always targets the
database the services will use:

    alembic upgrade head                          # releasepilot.toml lookup
    alembic -x config=/etc/releasepilot.toml upgrade head
    RELEASEPILOT_DATABASE__URL=... alembic upgrade head

``sqlalchemy.url`` is never read from alembic.ini.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import create_async_engine

from releasepilot.config import ReleasePilotConfig, load_config
from releasepilot.database.models import Base
from releasepilot.logging import get_logger, setup_logging


def resolve_config() -> ReleasePilotConfig:
    """Configuration named by ``-x config=<path>``, else the default lookup."""
    config_path = context.get_x_argument(as_dictionary=True).get("config")
    return load_config(Path(config_path) if config_path else None)


settings = resolve_config()
setup_logging(settings.logging)
logger = get_logger(__name__)

# Importing releasepilot.database.models registers every table
target_metadata = Base.metadata


def configure_context(**kwargs) -> None:
    context.configure(target_metadata=target_metadata, compare_type=True, **kwargs)


def run_migrations_offline() -> None:
    """Emit the migration SQL for review instead of applying it."""
    configure_context(
        url=settings.database.url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    configure_context(connection=connection)
    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    """Apply pending migrations over a dedicated, unpooled async engine."""
    engine = create_async_engine(settings.database.url, poolclass=pool.NullPool)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(do_run_migrations)
    finally:
        await engine.dispose()


logger.info(
    "migrations_starting",
    mode="offline" if context.is_offline_mode() else "online",
    dialect=settings.database.url.split(":", 1)[0],
)

if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_async_migrations())
