"""Database connection management for ReleasePilot.

This module provides factory functions for creating SQLAlchemy async engines
and session factories, configured from the application's DatabaseConfig.

Example usage:
    >>> from releasepilot.config import DatabaseConfig
    >>> from releasepilot.database.connection import get_engine, get_session_factory
    >>>
    >>> engine = get_engine(DatabaseConfig(url="postgresql+asyncpg://localhost/releasepilot"))
    >>> session_factory = get_session_factory(engine)
    >>>
    >>> async with session_factory() as session, session.begin():
    ...     release = await get_release(session, release_id)
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from releasepilot.config import DatabaseConfig

SessionFactory = async_sessionmaker[AsyncSession]


def get_engine(config: DatabaseConfig) -> AsyncEngine:
    """Create an async SQLAlchemy engine from database configuration.

    Pool sizing only applies to server databases; SQLite URLs (used for
    local runs and tests) get the dialect's default pool.

    Args:
        config: Database configuration containing URL, pool settings,
                and SQL echo preference.

    Returns:
        Configured AsyncEngine instance.
    """
    if config.url.startswith("sqlite"):
        return create_async_engine(config.url, echo=config.echo)
    return create_async_engine(
        config.url,
        pool_size=config.pool_size,
        max_overflow=config.max_overflow,
        echo=config.echo,
    )


def get_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create an async session factory bound to the given engine.

    Sessions use expire_on_commit=False so attributes stay readable after
    commit without triggering lazy loads in async code.

    Args:
        engine: AsyncEngine to bind sessions to.

    Returns:
        Configured async_sessionmaker that produces AsyncSession instances.
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
