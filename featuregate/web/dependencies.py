"""FastAPI dependency injection and shared state."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import structlog
from fastapi import Depends, HTTPException, Request

from featuregate.billing.guard import FeatureGuard, GuardResult
from featuregate.billing.loader import CatalogCache, source_from_setting
from featuregate.billing.subscription import SubscriptionProvider
from featuregate.billing.usage import UsageMeter
from featuregate.config.settings import Settings, get_settings
from featuregate.storage.repositories.subscriptions import InMemorySubscriptionRepository
from featuregate.storage.repositories.usage import InMemoryUsageStore
from featuregate.web.tenant_context import TenantContext, get_tenant

logger = structlog.get_logger(__name__)

# Only message ever shown to end users on a denied feature
UPGRADE_MESSAGE = "This feature is unavailable on your current plan. Upgrade to access it."


@dataclass(frozen=True, slots=True)
class Services:
    """Per-app service graph; the catalog cache is shared by everything below it."""

    catalog: CatalogCache
    subscriptions: SubscriptionProvider
    meter: UsageMeter
    guard: FeatureGuard


def _create_subscription_repo(settings: Settings) -> Any:
    """Create the appropriate subscription repository based on settings."""
    if settings.use_database:
        from featuregate.storage.database import get_engine
        from featuregate.storage.repositories.subscriptions import (
            DatabaseSubscriptionRepository,
        )

        return DatabaseSubscriptionRepository(get_engine())
    return InMemorySubscriptionRepository()


def _create_usage_store(settings: Settings) -> Any:
    """Create the appropriate usage store based on settings."""
    if settings.use_database:
        from featuregate.storage.database import get_engine
        from featuregate.storage.repositories.usage import DatabaseUsageStore

        return DatabaseUsageStore(get_engine())
    return InMemoryUsageStore()


def build_services(settings: Settings | None = None) -> Services:
    settings = settings or get_settings()
    catalog = CatalogCache(
        source_from_setting(settings.catalog_source, timeout=settings.catalog_timeout_seconds),
        ttl_seconds=settings.catalog_ttl_seconds,
        timeout_seconds=settings.catalog_timeout_seconds,
    )
    subscriptions = SubscriptionProvider(
        _create_subscription_repo(settings), grace_period_days=settings.grace_period_days
    )
    meter = UsageMeter(
        _create_usage_store(settings),
        catalog,
        subscriptions,
        token_window_seconds=settings.usage_token_window_seconds,
    )
    return Services(
        catalog=catalog,
        subscriptions=subscriptions,
        meter=meter,
        guard=FeatureGuard(catalog, subscriptions, meter),
    )


def get_services(request: Request) -> Services:
    services: Services = request.app.state.services
    return services


def denial_detail(feature: str, result: GuardResult) -> dict[str, object]:
    """Generic denial payload; never carries internal error text."""
    return {
        "message": UPGRADE_MESSAGE,
        "feature": feature,
        "reason": result.reason.value if result.reason else None,
        "upgrade_to": list(result.upgrade_to),
    }


def require_feature(feature: str) -> Callable[..., Awaitable[GuardResult]]:
    """Dependency factory that rejects requests for features the org lacks.

    Usage:
        @router.post("/exports/pdf", dependencies=[Depends(require_feature("exports.pdf"))])
    """

    async def _dependency(
        tenant: TenantContext = Depends(get_tenant),
        services: Services = Depends(get_services),
    ) -> GuardResult:
        result = await services.guard.require(tenant.org_id, feature)
        if not result.allowed:
            raise HTTPException(status_code=402, detail=denial_detail(feature, result))
        return result

    return _dependency
