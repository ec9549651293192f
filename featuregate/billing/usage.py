"""Usage metering for features with per-period allowances."""

from __future__ import annotations

import calendar
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Protocol

import structlog

from featuregate.billing.evaluator import GateDecision, apply_allowance, can_use
from featuregate.billing.subscription import as_utc, utc_now

if TYPE_CHECKING:
    from featuregate.billing.loader import CatalogCache
    from featuregate.billing.subscription import SubscriptionProvider, WorkspaceSubscription

logger = structlog.get_logger(__name__)


def period_start(now: datetime, anchor: datetime | None = None) -> str:
    """Start of the monthly period containing ``now`` as a YYYY-MM-DD string.

    Periods roll over on the anchor's day of month (clamped to short months);
    without an anchor they follow calendar months in UTC.
    """
    today = as_utc(now).date()
    day = as_utc(anchor).day if anchor is not None else 1

    def _clamped(year: int, month: int) -> date:
        return date(year, month, min(day, calendar.monthrange(year, month)[1]))

    start = _clamped(today.year, today.month)
    if start > today:
        year, month = (today.year, today.month - 1) if today.month > 1 else (today.year - 1, 12)
        start = _clamped(year, month)
    return start.isoformat()


@dataclass(frozen=True, slots=True)
class CounterRecord:
    org_id: str
    feature: str
    period_start: str
    count: int
    allowance: int | None = None


@dataclass(frozen=True, slots=True)
class IncrementResult:
    count: int
    applied: bool
    duplicate: bool = False


@dataclass(frozen=True, slots=True)
class UsageSnapshot:
    feature: str
    period_start: str
    count: int
    allowance: int | None
    remaining: int | None


class UsageStore(Protocol):
    """Persistence for usage counters with atomic, idempotent increments."""

    async def get(self, org_id: str, feature: str, period_start: str) -> CounterRecord | None: ...

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
        token_window: timedelta = timedelta(minutes=10),
    ) -> IncrementResult: ...

    async def history(self, org_id: str, feature: str) -> list[CounterRecord]: ...


def remaining_allowance(allowance: int | None, count: int) -> int | None:
    if allowance is None:
        return None
    return max(allowance - count, 0)


class UsageMeter:
    """Tracks metered usage against the allowance of the current grant.

    The allowance is taken from the live decision, so a mid-period upgrade
    raises the cap immediately. Counters never decrease inside a period; a
    new period starts from zero.
    """

    def __init__(
        self,
        store: UsageStore,
        catalog_cache: CatalogCache,
        subscriptions: SubscriptionProvider,
        token_window_seconds: float = 600.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._catalog = catalog_cache
        self._subscriptions = subscriptions
        self._token_window = timedelta(seconds=token_window_seconds)
        self._clock = clock

    async def _decide(self, org_id: str, feature: str, now: datetime) -> tuple[GateDecision, str]:
        catalog = await self._catalog.get()
        subscription = await self._subscriptions.get(org_id)
        decision = can_use(catalog, subscription, feature, now)
        return decision, period_start(now, subscription.period_anchor)

    async def snapshot(self, org_id: str, feature: str) -> UsageSnapshot:
        now = self._clock()
        decision, period = await self._decide(org_id, feature, now)
        record = await self._store.get(org_id, feature, period)
        count = record.count if record is not None else 0
        if not decision.allowed:
            remaining: int | None = 0
        else:
            remaining = remaining_allowance(decision.allowance, count)
        return UsageSnapshot(
            feature=feature,
            period_start=period,
            count=count,
            allowance=decision.allowance,
            remaining=remaining,
        )

    async def count_for(
        self, subscription: WorkspaceSubscription, feature: str, now: datetime | None = None
    ) -> int:
        """Current-period count for an already resolved subscription."""
        period = period_start(now or self._clock(), subscription.period_anchor)
        record = await self._store.get(subscription.org_id, feature, period)
        return record.count if record is not None else 0

    async def remaining(self, org_id: str, feature: str) -> int | None:
        """Units left this period; None when the feature is unmetered, 0 when denied."""
        return (await self.snapshot(org_id, feature)).remaining

    async def bump(
        self, org_id: str, feature: str, amount: int = 1, token: str | None = None
    ) -> int:
        """Record usage and return the new count for the current period.

        A token already seen inside the dedupe window is not counted again.
        """
        _check_amount(amount)
        now = self._clock()
        decision, period = await self._decide(org_id, feature, now)
        result = await self._store.increment(
            org_id,
            feature,
            period,
            amount,
            now=now,
            allowance=decision.allowance,
            token=token,
            token_window=self._token_window,
        )
        self._log(org_id, feature, result)
        return result.count

    async def consume(
        self, org_id: str, feature: str, amount: int = 1, token: str | None = None
    ) -> GateDecision:
        """Gate a metered action and record it only if it fits the allowance."""
        _check_amount(amount)
        now = self._clock()
        catalog = await self._catalog.get()
        subscription = await self._subscriptions.get(org_id)
        decision = can_use(catalog, subscription, feature, now)
        if not decision.allowed:
            return decision

        result = await self._store.increment(
            org_id,
            feature,
            period_start(now, subscription.period_anchor),
            amount,
            now=now,
            allowance=decision.allowance,
            limit=decision.allowance,
            token=token,
            token_window=self._token_window,
        )
        self._log(org_id, feature, result)
        if result.applied or result.duplicate:
            return decision
        logger.info(
            "allowance_exceeded",
            org_id=org_id,
            feature=feature,
            count=result.count,
            allowance=decision.allowance,
        )
        return apply_allowance(decision, 0, catalog, feature)

    async def history(self, org_id: str, feature: str) -> list[CounterRecord]:
        return await self._store.history(org_id, feature)

    @staticmethod
    def _log(org_id: str, feature: str, result: IncrementResult) -> None:
        if result.duplicate:
            logger.info("usage_duplicate_token", org_id=org_id, feature=feature, count=result.count)
        elif result.applied:
            logger.debug("usage_bumped", org_id=org_id, feature=feature, count=result.count)


def _check_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        msg = f"Usage amount must be a positive integer, got {amount!r}"
        raise ValueError(msg)
