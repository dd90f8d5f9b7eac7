"""Database layer for ReleasePilot.

Handles database connections and session management and exposes the
SQLAlchemy models that hold the orchestration state.

Public API:
    get_engine: Create an AsyncEngine from DatabaseConfig.
    get_session_factory: Create an async_sessionmaker from an engine.
    Base: SQLAlchemy declarative base for all models.
"""

from releasepilot.database.connection import SessionFactory, get_engine, get_session_factory
from releasepilot.database.models import Base

__all__ = [
    "SessionFactory",
    "get_engine",
    "get_session_factory",
    "Base",
]
