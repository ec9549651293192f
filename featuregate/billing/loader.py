"""Pricing catalog sources and the TTL cache that fronts them."""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import httpx
import structlog
import yaml

from featuregate.billing.catalog import PlanCatalog, parse_catalog
from featuregate.exceptions import CatalogUnavailable

logger = structlog.get_logger(__name__)

# Pause between refresh attempts while a stale snapshot is being served
_DEFAULT_RETRY_SECONDS = 30.0


class CatalogSource(Protocol):
    """Anything that can produce a parsed PlanCatalog."""

    async def load(self) -> PlanCatalog: ...


class FileCatalogSource:
    """Reads the pricing document from disk (JSON, or YAML for .yaml/.yml)."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path).expanduser()

    async def load(self) -> PlanCatalog:
        try:
            text = await asyncio.to_thread(self._path.read_text, encoding="utf-8")
        except OSError as e:
            msg = f"Cannot read pricing document at {self._path}"
            raise CatalogUnavailable(msg) from e
        try:
            if self._path.suffix in (".yaml", ".yml"):
                document = yaml.safe_load(text)
            else:
                document = json.loads(text)
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            msg = f"Cannot decode pricing document at {self._path}"
            raise CatalogUnavailable(msg) from e
        return parse_catalog(document)


class HttpCatalogSource:
    """Fetches the pricing document over HTTP(S)."""

    def __init__(self, url: str, timeout: float = 5.0) -> None:
        self._url = url
        self._timeout = timeout

    async def load(self) -> PlanCatalog:
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.get(self._url, headers={"Cache-Control": "no-store"})
                resp.raise_for_status()
                document: Any = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            msg = f"Cannot load pricing document from {self._url}"
            raise CatalogUnavailable(msg) from e
        return parse_catalog(document)


def source_from_setting(value: str, timeout: float = 5.0) -> CatalogSource:
    """Pick a source for a CATALOG_SOURCE value (URL or file path)."""
    if value.startswith(("http://", "https://")):
        return HttpCatalogSource(value, timeout=timeout)
    return FileCatalogSource(value)


@dataclass(frozen=True, slots=True)
class _Snapshot:
    catalog: PlanCatalog
    fetched_at: float
    expires_at: float


class CatalogCache:
    """Owns the current PlanCatalog and refreshes it on a TTL.

    Fresh snapshots are served without I/O. Once stale, the next caller
    refreshes under a lock; concurrent callers wait for that refresh rather
    than fetching again. A failed refresh serves the previous snapshot, or
    raises CatalogUnavailable if no load has ever succeeded. Snapshots are
    swapped whole and never mutated.
    """

    def __init__(
        self,
        source: CatalogSource,
        ttl_seconds: float = 300.0,
        timeout_seconds: float = 5.0,
        retry_seconds: float = _DEFAULT_RETRY_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._source = source
        self._ttl = ttl_seconds
        self._timeout = timeout_seconds
        self._retry = min(retry_seconds, ttl_seconds)
        self._clock = clock
        self._snapshot: _Snapshot | None = None
        self._lock = asyncio.Lock()

    @property
    def snapshot(self) -> PlanCatalog | None:
        """The last successfully loaded catalog, without triggering a fetch."""
        return self._snapshot.catalog if self._snapshot else None

    @property
    def fetched_at(self) -> float | None:
        return self._snapshot.fetched_at if self._snapshot else None

    def _fresh(self, snapshot: _Snapshot | None) -> bool:
        return snapshot is not None and self._clock() < snapshot.expires_at

    async def get(self) -> PlanCatalog:
        snapshot = self._snapshot
        if snapshot is not None and self._fresh(snapshot):
            return snapshot.catalog

        async with self._lock:
            snapshot = self._snapshot
            if snapshot is not None and self._fresh(snapshot):
                return snapshot.catalog
            return await self._refresh(snapshot)

    def invalidate(self) -> None:
        """Force the next get() to re-fetch; the old catalog stays as fallback."""
        snapshot = self._snapshot
        if snapshot is not None:
            self._snapshot = _Snapshot(
                catalog=snapshot.catalog,
                fetched_at=snapshot.fetched_at,
                expires_at=float("-inf"),
            )

    async def _refresh(self, previous: _Snapshot | None) -> PlanCatalog:
        try:
            catalog = await asyncio.wait_for(self._source.load(), timeout=self._timeout)
        except (CatalogUnavailable, TimeoutError) as e:
            if previous is None:
                logger.error("catalog_unavailable", error=str(e) or type(e).__name__)
                if isinstance(e, CatalogUnavailable):
                    raise
                msg = "Timed out loading pricing catalog"
                raise CatalogUnavailable(msg) from e
            logger.warning(
                "catalog_stale_served",
                error=str(e) or type(e).__name__,
                age_seconds=round(self._clock() - previous.fetched_at, 3),
            )
            self._snapshot = _Snapshot(
                catalog=previous.catalog,
                fetched_at=previous.fetched_at,
                expires_at=self._clock() + self._retry,
            )
            return previous.catalog

        now = self._clock()
        self._snapshot = _Snapshot(catalog=catalog, fetched_at=now, expires_at=now + self._ttl)
        logger.info("catalog_loaded", plans=list(catalog.plans), addons=list(catalog.addons))
        return catalog
