"""Pytest fixtures for integration tests.

Provides async database fixtures for exercising the services and query
functions against SQLite. While the production system uses PostgreSQL,
the models keep their defaults and column types portable so the same
schema is created here with ``create_all``.

The database lives in a per-test file rather than ``:memory:``: the
orchestrator opens several short sessions per operation (lease, pass,
audit) and each needs its own connection.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from releasepilot.config import ReleasePilotConfig
from releasepilot.database.models.base import Base
from releasepilot.database.models.release import Release
from releasepilot.orchestrator.cron import CronOrchestrator
from releasepilot.services import Services, build_services
from releasepilot.web.app import create_app

KickoffFactory = Callable[..., Awaitable[Release]]


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Use asyncio as the async backend for pytest-asyncio.

    Returns:
        The name of the async backend to use.
    """
    return "asyncio"


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """Create a file-backed SQLite async engine for testing.

    Args:
        tmp_path: Per-test temporary directory.

    Yields:
        Configured AsyncEngine instance with every table created.
    """
    test_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'releasepilot.db'}",
        echo=False,
    )

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    await test_engine.dispose()


@pytest_asyncio.fixture
async def session_factory(
    engine: AsyncEngine,
) -> async_sessionmaker[AsyncSession]:
    """Create an async session factory bound to the test engine.

    Args:
        engine: The test database engine.

    Returns:
        Configured async_sessionmaker for creating test sessions.
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Create a new async database session for each test.

    The session is rolled back after the test completes.

    Args:
        session_factory: The session factory fixture.

    Yields:
        AsyncSession instance for the test.
    """
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def config() -> ReleasePilotConfig:
    """Default configuration with no webhook endpoints."""
    return ReleasePilotConfig()


@pytest_asyncio.fixture
async def services(
    session_factory: async_sessionmaker[AsyncSession],
    config: ReleasePilotConfig,
) -> AsyncGenerator[Services, None]:
    """Wire the full service graph on the test database.

    Yields:
        Services sharing the test session factory.
    """
    wired = build_services(session_factory, config)
    yield wired
    await wired.close()


@pytest.fixture
def orchestrator(services: Services) -> CronOrchestrator:
    return services.orchestrator


@pytest.fixture
def kickoff(orchestrator: CronOrchestrator) -> KickoffFactory:
    """Factory creating an Android release that starts on the next tick.

    Keyword arguments override the create_release defaults.
    """

    async def factory(**overrides: Any) -> Release:
        params: dict[str, Any] = {
            "tenant_id": "acme",
            "release_key": "1.2.0",
            "platform_targets": [{"platform": "ANDROID", "version": "1.2.0"}],
        }
        params.update(overrides)
        return await orchestrator.create_release(**params)

    return factory


@pytest_asyncio.fixture
async def api_client(
    session_factory: async_sessionmaker[AsyncSession],
    config: ReleasePilotConfig,
) -> AsyncGenerator[AsyncClient, None]:
    """Create an async HTTP client for the API on the test database.

    Yields:
        AsyncClient configured to test the application.
    """
    app = create_app(config, session_factory=session_factory)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    await app.state.services.close()
