"""Unit tests for catalog sources and the TTL catalog cache."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import TYPE_CHECKING, Any

import httpx
import pytest
import yaml

from featuregate.billing.catalog import MeteredGrant
from featuregate.billing.loader import (
    CatalogCache,
    FileCatalogSource,
    HttpCatalogSource,
    source_from_setting,
)
from featuregate.config.settings import DEFAULT_CATALOG_PATH
from featuregate.exceptions import CatalogUnavailable

if TYPE_CHECKING:
    from featuregate.billing.catalog import PlanCatalog
    from tests.conftest import FakeClock, StaticCatalogSource


@pytest.mark.unit
class TestFileCatalogSource:
    async def test_loads_json(self, tmp_path: Path, pricing_document: dict[str, Any]) -> None:
        path = tmp_path / "pricing.json"
        path.write_text(json.dumps(pricing_document), encoding="utf-8")
        catalog = await FileCatalogSource(path).load()
        assert "pro" in catalog.plans

    async def test_loads_yaml(self, tmp_path: Path, pricing_document: dict[str, Any]) -> None:
        path = tmp_path / "pricing.yaml"
        path.write_text(yaml.safe_dump(pricing_document), encoding="utf-8")
        catalog = await FileCatalogSource(path).load()
        grant = catalog.plans["starter"].grants["exports.pdf"]
        assert grant == MeteredGrant(enabled=True, allowance=3)

    async def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(CatalogUnavailable):
            await FileCatalogSource(tmp_path / "nope.json").load()

    async def test_invalid_json(self, tmp_path: Path) -> None:
        path = tmp_path / "pricing.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(CatalogUnavailable):
            await FileCatalogSource(path).load()

    async def test_bundled_document_is_valid(self) -> None:
        catalog = await FileCatalogSource(DEFAULT_CATALOG_PATH).load()
        assert list(catalog.plans)[0] == "starter"
        assert "ai_boost" in catalog.addons


@pytest.mark.unit
class TestHttpCatalogSource:
    async def test_connection_error_is_unavailable(self, monkeypatch: pytest.MonkeyPatch) -> None:
        async def _boom(*args: object, **kwargs: object) -> httpx.Response:
            raise httpx.ConnectError("refused")

        monkeypatch.setattr(httpx.AsyncClient, "get", _boom)
        with pytest.raises(CatalogUnavailable):
            await HttpCatalogSource("https://pricing.example.com/plans.json").load()

    async def test_parses_response(
        self, monkeypatch: pytest.MonkeyPatch, pricing_document: dict[str, Any]
    ) -> None:
        async def _get(self: httpx.AsyncClient, url: str, **kwargs: object) -> httpx.Response:
            return httpx.Response(200, json=pricing_document, request=httpx.Request("GET", url))

        monkeypatch.setattr(httpx.AsyncClient, "get", _get)
        catalog = await HttpCatalogSource("https://pricing.example.com/plans.json").load()
        assert "business" in catalog.plans

    async def test_http_error_status(self, monkeypatch: pytest.MonkeyPatch) -> None:
        async def _get(self: httpx.AsyncClient, url: str, **kwargs: object) -> httpx.Response:
            return httpx.Response(500, request=httpx.Request("GET", url))

        monkeypatch.setattr(httpx.AsyncClient, "get", _get)
        with pytest.raises(CatalogUnavailable):
            await HttpCatalogSource("https://pricing.example.com/plans.json").load()

    def test_source_from_setting(self) -> None:
        assert isinstance(source_from_setting("https://x.test/p.json"), HttpCatalogSource)
        assert isinstance(source_from_setting("/etc/pricing.yaml"), FileCatalogSource)


@pytest.mark.unit
class TestCatalogCache:
    async def test_fresh_snapshot_served_without_fetch(
        self, catalog_cache: CatalogCache, static_source: StaticCatalogSource, clock: FakeClock
    ) -> None:
        await catalog_cache.get()
        clock.advance(299)
        await catalog_cache.get()
        assert static_source.calls == 1

    async def test_refetch_after_ttl(
        self, catalog_cache: CatalogCache, static_source: StaticCatalogSource, clock: FakeClock
    ) -> None:
        await catalog_cache.get()
        clock.advance(301)
        await catalog_cache.get()
        assert static_source.calls == 2

    async def test_stale_served_when_refresh_fails(
        self,
        catalog_cache: CatalogCache,
        static_source: StaticCatalogSource,
        catalog: PlanCatalog,
        clock: FakeClock,
    ) -> None:
        await catalog_cache.get()
        static_source.error = CatalogUnavailable("down")
        clock.advance(400)
        assert await catalog_cache.get() is catalog
        assert catalog_cache.snapshot is catalog

    async def test_failed_refresh_backs_off(
        self, catalog_cache: CatalogCache, static_source: StaticCatalogSource, clock: FakeClock
    ) -> None:
        await catalog_cache.get()
        static_source.error = CatalogUnavailable("down")
        clock.advance(400)
        await catalog_cache.get()
        await catalog_cache.get()
        assert static_source.calls == 2
        clock.advance(31)
        await catalog_cache.get()
        assert static_source.calls == 3

    async def test_recovers_after_outage(
        self, catalog_cache: CatalogCache, static_source: StaticCatalogSource, clock: FakeClock
    ) -> None:
        await catalog_cache.get()
        first_fetch = catalog_cache.fetched_at
        static_source.error = CatalogUnavailable("down")
        clock.advance(400)
        await catalog_cache.get()
        assert catalog_cache.fetched_at == first_fetch
        static_source.error = None
        clock.advance(31)
        await catalog_cache.get()
        assert catalog_cache.fetched_at == clock.monotonic()

    async def test_no_prior_snapshot_raises(
        self, catalog_cache: CatalogCache, static_source: StaticCatalogSource
    ) -> None:
        static_source.error = CatalogUnavailable("down")
        with pytest.raises(CatalogUnavailable):
            await catalog_cache.get()
        assert catalog_cache.snapshot is None

    async def test_timeout_without_snapshot_raises(self, catalog: PlanCatalog) -> None:
        class _SlowSource:
            async def load(self) -> PlanCatalog:
                await asyncio.sleep(1)
                return catalog

        cache = CatalogCache(_SlowSource(), timeout_seconds=0.01)
        with pytest.raises(CatalogUnavailable, match="Timed out"):
            await cache.get()

    async def test_invalidate_forces_refetch(
        self, catalog_cache: CatalogCache, static_source: StaticCatalogSource
    ) -> None:
        await catalog_cache.get()
        catalog_cache.invalidate()
        await catalog_cache.get()
        assert static_source.calls == 2

    async def test_concurrent_callers_share_one_fetch(
        self, catalog: PlanCatalog
    ) -> None:
        calls = 0

        class _CountingSource:
            async def load(self) -> PlanCatalog:
                nonlocal calls
                calls += 1
                await asyncio.sleep(0.01)
                return catalog

        cache = CatalogCache(_CountingSource())
        results = await asyncio.gather(*(cache.get() for _ in range(10)))
        assert calls == 1
        assert all(r is catalog for r in results)
