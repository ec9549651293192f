"""Shared test fixtures."""

from __future__ import annotations

import copy
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlmodel import SQLModel

import featuregate.models.database  # noqa: F401  (registers tables)
from featuregate.billing.catalog import PlanCatalog, parse_catalog
from featuregate.billing.loader import CatalogCache
from featuregate.billing.subscription import SubscriptionProvider
from featuregate.billing.usage import UsageMeter
from featuregate.config.settings import get_settings
from featuregate.storage.repositories.subscriptions import InMemorySubscriptionRepository
from featuregate.storage.repositories.usage import InMemoryUsageStore

PRICING_DOCUMENT: dict[str, Any] = {
    "currency": "EUR",
    "features": {
        "collab.tasks": {"label": "Tasks"},
        "ai.analyst": {"label": "AI analyst"},
    },
    "plans": {
        "starter": {
            "name": "Starter",
            "grants": {
                "projects.core": True,
                "collab.tasks": False,
                "exports.pdf": {"enabled": True, "allowance": 3},
                "ai.analyst": False,
            },
        },
        "pro": {
            "name": "Pro",
            "grants": {
                "projects.core": True,
                "collab.tasks": True,
                "exports.pdf": {"enabled": True, "allowance": "unlimited"},
                "ai.analyst": {"enabled": True, "allowance": 100},
            },
        },
        "business": {
            "name": "Business",
            "addons_included": ["investor_room"],
            "grants": {
                "projects.core": True,
                "collab.tasks": True,
                "exports.pdf": True,
                "ai.analyst": {"enabled": True, "allowance": 1000},
            },
        },
        "enterprise": {
            "name": "Enterprise",
            "public": False,
            "grants": {
                "projects.core": True,
                "collab.tasks": True,
                "exports.pdf": True,
                "ai.analyst": {"enabled": True, "allowance": "unlimited"},
            },
        },
    },
    "addons": {
        "ai_boost": {
            "name": "AI Boost",
            "grants": {"ai.analyst": {"enabled": True, "allowance": 5000}},
        },
        "investor_room": {
            "name": "Investor Room",
            "grants": {"investor.room": True},
        },
    },
}


class StaticCatalogSource:
    """Catalog source returning a fixed catalog, or raising a queued error."""

    def __init__(self, catalog: PlanCatalog) -> None:
        self.catalog = catalog
        self.calls = 0
        self.error: Exception | None = None

    async def load(self) -> PlanCatalog:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.catalog


class EventRecorder:
    """Stands in for a module-level structlog logger and keeps emitted events."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def _record(self, event: str, **fields: Any) -> None:
        self.events.append((event, fields))

    debug = info = warning = error = _record

    def find(self, event: str) -> dict[str, Any]:
        return next(fields for name, fields in self.events if name == event)


class FakeClock:
    """Controllable clock usable as both a monotonic and a datetime source."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 15, 12, 0, tzinfo=UTC)
        self.ticks = 1000.0

    def __call__(self) -> datetime:
        return self.now

    def monotonic(self) -> float:
        return self.ticks

    def advance(self, seconds: float) -> None:
        self.ticks += seconds
        self.now += timedelta(seconds=seconds)


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def pricing_document() -> dict[str, Any]:
    return copy.deepcopy(PRICING_DOCUMENT)


@pytest.fixture()
def catalog(pricing_document: dict[str, Any]) -> PlanCatalog:
    return parse_catalog(pricing_document)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def events() -> EventRecorder:
    return EventRecorder()


@pytest.fixture()
async def async_engine():
    """In-memory SQLite engine with all tables created."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture()
def static_source(catalog: PlanCatalog) -> StaticCatalogSource:
    return StaticCatalogSource(catalog)


@pytest.fixture()
def catalog_cache(static_source: StaticCatalogSource, clock: FakeClock) -> CatalogCache:
    return CatalogCache(static_source, ttl_seconds=300.0, clock=clock.monotonic)


@pytest.fixture()
def subscriptions(clock: FakeClock) -> SubscriptionProvider:
    return SubscriptionProvider(InMemorySubscriptionRepository(), grace_period_days=7, clock=clock)


@pytest.fixture()
def usage_store() -> InMemoryUsageStore:
    return InMemoryUsageStore()


@pytest.fixture()
def meter(
    usage_store: InMemoryUsageStore,
    catalog_cache: CatalogCache,
    subscriptions: SubscriptionProvider,
    clock: FakeClock,
) -> UsageMeter:
    return UsageMeter(usage_store, catalog_cache, subscriptions, clock=clock)
