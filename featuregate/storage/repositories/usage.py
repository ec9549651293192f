"""Usage counter stores: in-memory and SQL-backed."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import structlog
from sqlalchemy import DateTime, Integer, String, bindparam, text
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from featuregate.billing.subscription import as_utc
from featuregate.billing.usage import CounterRecord, IncrementResult
from featuregate.exceptions import StorageError
from featuregate.models.database import UsageCounter

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = structlog.get_logger(__name__)

_DEFAULT_TOKEN_WINDOW = timedelta(minutes=10)


class InMemoryUsageStore:
    """In-memory store for dev/testing without a database.

    Increments for the same (org, feature) serialize on a lock. Token claims
    older than the window are swept at most once per window.
    """

    def __init__(self) -> None:
        self._counters: dict[tuple[str, str, str], CounterRecord] = {}
        self._tokens: dict[tuple[str, str, str], datetime] = {}
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._last_sweep: datetime | None = None

    def _lock(self, org_id: str, feature: str) -> asyncio.Lock:
        key = (org_id, feature)
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    def _evict_tokens(self, now: datetime, token_window: timedelta) -> None:
        if self._last_sweep is not None and now - self._last_sweep < token_window:
            return
        expired = [k for k, seen_at in self._tokens.items() if now - seen_at >= token_window]
        for token_key in expired:
            del self._tokens[token_key]
        self._last_sweep = now
        if expired:
            logger.debug("usage_tokens_evicted", count=len(expired))

    async def get(self, org_id: str, feature: str, period_start: str) -> CounterRecord | None:
        return self._counters.get((org_id, feature, period_start))

    async def increment(
        self,
        org_id: str,
        feature: str,
        period_start: str,
        amount: int,
        *,
        now: datetime,
        allowance: int | None = None,
        limit: int | None = None,
        token: str | None = None,
        token_window: timedelta = _DEFAULT_TOKEN_WINDOW,
    ) -> IncrementResult:
        key = (org_id, feature, period_start)
        async with self._lock(org_id, feature):
            self._evict_tokens(now, token_window)
            current = self._counters.get(key)
            count = current.count if current is not None else 0

            token_key = (org_id, feature, token) if token else None
            if token_key is not None:
                seen_at = self._tokens.get(token_key)
                if seen_at is not None and now - seen_at < token_window:
                    return IncrementResult(count=count, applied=False, duplicate=True)

            if limit is not None and count + amount > limit:
                return IncrementResult(count=count, applied=False)

            if token_key is not None:
                self._tokens[token_key] = now
            record = CounterRecord(
                org_id=org_id,
                feature=feature,
                period_start=period_start,
                count=count + amount,
                allowance=current.allowance if current is not None else allowance,
            )
            self._counters[key] = record
            return IncrementResult(count=record.count, applied=True)

    async def history(self, org_id: str, feature: str) -> list[CounterRecord]:
        return sorted(
            (r for (o, f, _), r in self._counters.items() if o == org_id and f == feature),
            key=lambda r: r.period_start,
        )


# Claim a token; an existing claim is only taken over once it has expired
_CLAIM_TOKEN = text(
    "INSERT INTO usage_actions (org_id, feature, token, created_at) "
    "VALUES (:org_id, :feature, :token, :now) "
    "ON CONFLICT (org_id, feature, token) "
    "DO UPDATE SET created_at = excluded.created_at "
    "WHERE usage_actions.created_at < :cutoff "
    "RETURNING id"
).bindparams(
    bindparam("now", type_=DateTime(timezone=True)),
    bindparam("cutoff", type_=DateTime(timezone=True)),
)

_UPSERT_COUNTER = (
    "INSERT INTO usage_counters "
    "(org_id, feature, period_start, count, allowance, created_at, updated_at) "
    "VALUES (:org_id, :feature, :period_start, :amount, :allowance, :now, :now) "
    "ON CONFLICT (org_id, feature, period_start) "
    "DO UPDATE SET count = usage_counters.count + excluded.count, "
    "updated_at = excluded.updated_at "
    "{guard}"
    "RETURNING count"
)

_INCREMENT = text(_UPSERT_COUNTER.format(guard="")).bindparams(
    bindparam("allowance", type_=Integer()),
    bindparam("now", type_=DateTime(timezone=True)),
)

_INCREMENT_CAPPED = text(
    _UPSERT_COUNTER.format(guard="WHERE usage_counters.count + excluded.count <= :limit ")
).bindparams(
    bindparam("allowance", type_=Integer()),
    bindparam("limit", type_=Integer()),
    bindparam("now", type_=DateTime(timezone=True)),
)

_SELECT_COUNT = text(
    "SELECT count FROM usage_counters "
    "WHERE org_id = :org_id AND feature = :feature AND period_start = :period_start"
).bindparams(bindparam("period_start", type_=String()))


class _Rejected(Exception):
    """Rolls back a token claim when the capped increment does not apply."""


class DatabaseUsageStore:
    """Stores usage counters in PostgreSQL (or SQLite in tests).

    Uses atomic INSERT ... ON CONFLICT DO UPDATE so concurrent increments for
    the same key cannot lose updates. Token claims and the counter update
    commit in one transaction.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def get(self, org_id: str, feature: str, period_start: str) -> CounterRecord | None:
        async with AsyncSession(self._engine) as session:
            statement = select(UsageCounter).where(
                col(UsageCounter.org_id) == org_id,
                col(UsageCounter.feature) == feature,
                col(UsageCounter.period_start) == period_start,
            )
            results = await session.execute(statement)
            row = results.scalars().first()
        return _to_record(row) if row is not None else None

    async def increment(
        self,
        org_id: str,
        feature: str,
        period_start: str,
        amount: int,
        *,
        now: datetime,
        allowance: int | None = None,
        limit: int | None = None,
        token: str | None = None,
        token_window: timedelta = _DEFAULT_TOKEN_WINDOW,
    ) -> IncrementResult:
        key = {"org_id": org_id, "feature": feature, "period_start": period_start}
        stamp = as_utc(now)

        if limit is not None and amount > limit:
            return IncrementResult(count=await self._count(key), applied=False)

        try:
            async with self._engine.begin() as conn:
                if token:
                    claimed = await conn.execute(
                        _CLAIM_TOKEN,
                        {
                            "org_id": org_id,
                            "feature": feature,
                            "token": token,
                            "now": stamp,
                            "cutoff": stamp - token_window,
                        },
                    )
                    if claimed.fetchone() is None:
                        raise _Rejected("duplicate")

                params = {**key, "amount": amount, "allowance": allowance, "now": stamp}
                if limit is None:
                    result = await conn.execute(_INCREMENT, params)
                else:
                    result = await conn.execute(_INCREMENT_CAPPED, {**params, "limit": limit})
                row = result.fetchone()
                if row is None:
                    raise _Rejected("limit")
                new_count = int(row[0])
        except _Rejected as rejected:
            count = await self._count(key)
            return IncrementResult(
                count=count, applied=False, duplicate=str(rejected) == "duplicate"
            )
        except Exception as e:
            logger.error("usage_increment_failed", org_id=org_id, feature=feature, error=str(e))
            msg = f"Usage increment failed for {org_id}/{feature}"
            raise StorageError(msg) from e

        return IncrementResult(count=new_count, applied=True)

    async def history(self, org_id: str, feature: str) -> list[CounterRecord]:
        async with AsyncSession(self._engine) as session:
            statement = (
                select(UsageCounter)
                .where(col(UsageCounter.org_id) == org_id, col(UsageCounter.feature) == feature)
                .order_by(col(UsageCounter.period_start))
            )
            results = await session.execute(statement)
            return [_to_record(row) for row in results.scalars().all()]

    async def _count(self, key: dict[str, str]) -> int:
        async with self._engine.connect() as conn:
            result = await conn.execute(_SELECT_COUNT, key)
            row = result.fetchone()
            return int(row[0]) if row else 0


def _to_record(row: UsageCounter) -> CounterRecord:
    return CounterRecord(
        org_id=row.org_id,
        feature=row.feature,
        period_start=row.period_start,
        count=row.count,
        allowance=row.allowance,
    )
