"""Pytest fixtures for E2E tests.

Provides a fully wired service graph on a throwaway SQLite database so the
release scenarios can be driven from kickoff through distribution exactly
as the scheduler and the API would drive them.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from releasepilot.config import ReleasePilotConfig
from releasepilot.database.models.base import Base
from releasepilot.database.models.release import Release
from releasepilot.services import Services, build_services

ReleaseFactory = Callable[..., Awaitable[Release]]


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Use asyncio as the async backend for pytest-asyncio.

    Returns:
        The name of the async backend to use.
    """
    return "asyncio"


@pytest_asyncio.fixture
async def e2e_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """Create a file-backed SQLite async engine for E2E testing.

    Yields:
        Configured AsyncEngine instance with every table created.
    """
    test_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'e2e.db'}",
        echo=False,
    )

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    await test_engine.dispose()


@pytest_asyncio.fixture
async def e2e_session_factory(e2e_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=e2e_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def e2e_services(
    e2e_session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[Services, None]:
    """Wire the service graph with the default configuration.

    Yields:
        Services sharing the E2E session factory.
    """
    wired = build_services(e2e_session_factory, ReleasePilotConfig())
    yield wired
    await wired.close()


@pytest.fixture
def new_release(e2e_services: Services) -> ReleaseFactory:
    """Factory for an Android release of tenant ``acme`` that starts on the next tick.

    Keyword arguments override the create_release defaults.
    """

    async def factory(**overrides: Any) -> Release:
        params: dict[str, Any] = {
            "tenant_id": "acme",
            "release_key": "2.0.0",
            "platform_targets": [{"platform": "ANDROID", "version": "2.0.0"}],
        }
        params.update(overrides)
        return await e2e_services.orchestrator.create_release(**params)

    return factory
