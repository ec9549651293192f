"""Health check endpoint logic."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from featuregate.billing.loader import CatalogCache
    from featuregate.config.settings import Settings

logger = structlog.get_logger(__name__)


async def check_health(catalog: CatalogCache, settings: Settings) -> dict[str, object]:
    """Return service health with catalog and (optional) DB checks."""
    result: dict[str, object] = {
        "status": "healthy",
        "version": "0.1.0",
        "auth_mode": settings.auth_mode,
        "catalog": "loaded",
        "database": "disabled",
    }

    try:
        await catalog.get()
    except Exception as exc:
        logger.warning("health_check_catalog_failed", error=str(exc))
        result["catalog"] = "unavailable"
        result["status"] = "degraded"

    if settings.use_database:
        try:
            from sqlalchemy import text

            from featuregate.storage.database import get_engine

            async with get_engine().connect() as conn:
                await conn.execute(text("SELECT 1"))
            result["database"] = "connected"
        except Exception as exc:
            logger.warning("health_check_db_failed", error=str(exc))
            result["database"] = "unavailable"
            result["status"] = "degraded"

    return result
