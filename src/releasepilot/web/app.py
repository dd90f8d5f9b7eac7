"""FastAPI application factory for ReleasePilot.

The application exposes the release orchestration API:
- Release kickoff, lifecycle control and read models
- Task inspection and retry
- CI/CD callbacks and manual build uploads
- Store submissions and staged rollout control

Services are built once per process (see ``releasepilot.services``) and
stored on ``app.state.services``. Passing a session factory to
``create_app`` installs services immediately, which is how tests run the
API against an in-memory database.

Example usage:
    >>> from releasepilot.config import ReleasePilotConfig
    >>> from releasepilot.web.app import create_app
    >>>
    >>> app = create_app(ReleasePilotConfig())
    >>>
    >>> import uvicorn
    >>> uvicorn.run(app, host="0.0.0.0", port=8000)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from releasepilot.config import ReleasePilotConfig
from releasepilot.database.connection import get_engine, get_session_factory
from releasepilot.logging import get_logger
from releasepilot.services import build_services
from releasepilot.web.errors import register_error_handlers
from releasepilot.web.middleware import RequestLoggingMiddleware
from releasepilot.web.routes.builds import create_builds_router
from releasepilot.web.routes.health import create_health_router
from releasepilot.web.routes.releases import create_releases_router
from releasepilot.web.routes.submissions import create_submissions_router
from releasepilot.web.routes.tasks import create_tasks_router

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = get_logger(__name__)

APP_VERSION = "0.1.0"


def install_services(app: FastAPI, session_factory: async_sessionmaker[AsyncSession]) -> None:
    """Build the service graph on a session factory and attach it to the app."""
    app.state.session_factory = session_factory
    app.state.services = build_services(session_factory, app.state.config)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the database pool and services, and tear them down on shutdown.

    When services were installed up front the lifespan only manages the
    scheduler; the engine belongs to whoever built the session factory.
    """
    config: ReleasePilotConfig = app.state.config
    logger.info("app_startup_begin", host=config.web.host, port=config.web.port)

    engine = None
    if getattr(app.state, "services", None) is None:
        engine = get_engine(config.database)
        app.state.engine = engine
        install_services(app, get_session_factory(engine))
        logger.info(
            "database_pool_initialized",
            pool_size=config.database.pool_size,
            max_overflow=config.database.max_overflow,
        )

    services = app.state.services
    if config.scheduler.run_in_web:
        await services.scheduler.start()

    yield

    logger.info("app_shutdown_begin")
    await services.close()
    if engine is not None:
        await engine.dispose()
        logger.info("database_pool_disposed")


def create_app(
    config: ReleasePilotConfig | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> FastAPI:
    """Create and configure the ReleasePilot API application.

    Args:
        config: Optional configuration. Defaults to ``ReleasePilotConfig()``.
        session_factory: Optional session factory; when given, services are
            built on it right away instead of during startup.

    Returns:
        Configured FastAPI application instance.
    """
    if config is None:
        config = ReleasePilotConfig()

    app = FastAPI(
        title="ReleasePilot",
        version=APP_VERSION,
        description="Release and rollout orchestration service",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.services = None
    if session_factory is not None:
        install_services(app, session_factory)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.web.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)
    register_error_handlers(app)

    app.include_router(create_health_router())
    app.include_router(create_releases_router())
    app.include_router(create_tasks_router())
    app.include_router(create_builds_router())
    app.include_router(create_submissions_router())

    logger.info("app_created", cors_origins=config.web.cors_origins, version=APP_VERSION)
    return app
