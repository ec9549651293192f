"""FastAPI application factory."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager

import structlog
from fastapi import FastAPI, Request

from featuregate.config.logging import setup_logging
from featuregate.config.settings import Settings, get_settings
from featuregate.web.dependencies import build_services
from featuregate.web.health import check_health
from featuregate.web.middleware import RequestContextMiddleware
from featuregate.web.routes.catalog import router as catalog_router
from featuregate.web.routes.entitlements import router as entitlements_router
from featuregate.web.routes.usage import router as usage_router

logger = structlog.get_logger(__name__)


def _lifespan(settings: Settings) -> Callable[[FastAPI], AbstractAsyncContextManager[None]]:
    @asynccontextmanager
    async def _run(app: FastAPI) -> AsyncIterator[None]:
        if settings.use_database:
            from featuregate.storage.database import init_db

            await init_db()
        try:
            # Prime the catalog cache
            await app.state.services.catalog.get()
        except Exception as e:
            logger.warning("catalog_warmup_failed", error=str(e))
        yield

    return _run


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()
    setup_logging(log_level=settings.log_level, json_output=not settings.debug)

    app = FastAPI(
        title="featuregate",
        description="Plan entitlement and usage metering service",
        version="0.1.0",
        lifespan=_lifespan(settings),
    )
    app.state.settings = settings
    app.state.services = build_services(settings)

    app.add_middleware(RequestContextMiddleware)

    # Health check (public)
    @app.get("/api/health")
    async def health_check(request: Request) -> dict[str, object]:
        return await check_health(request.app.state.services.catalog, request.app.state.settings)

    for router in (catalog_router, entitlements_router, usage_router):
        app.include_router(router)

    logger.info("app_created", catalog_source=settings.catalog_source, auth_mode=settings.auth_mode)
    return app
