"""Workspace subscription read model and lifecycle transitions."""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from typing import Protocol

import structlog

from featuregate.config.settings import FALLBACK_PLAN_ID
from featuregate.types import SubscriptionStatus

logger = structlog.get_logger(__name__)


def utc_now() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes (as stored by the database) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _coerce_status(value: SubscriptionStatus | str) -> SubscriptionStatus:
    try:
        return SubscriptionStatus(value)
    except ValueError:
        # Unrecognised billing states get starter grants only
        logger.warning("subscription_status_unknown", status=str(value))
        return SubscriptionStatus.CANCELED


@dataclass(frozen=True, slots=True)
class WorkspaceSubscription:
    """One organization's current commercial state."""

    org_id: str
    plan_id: str | None = FALLBACK_PLAN_ID
    addons: frozenset[str] = field(default_factory=frozenset)
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    grace_period_end: datetime | None = None
    period_anchor: datetime | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.addons, frozenset):
            object.__setattr__(self, "addons", frozenset(self.addons))
        if not isinstance(self.status, SubscriptionStatus):
            object.__setattr__(self, "status", _coerce_status(self.status))

    def in_grace(self, now: datetime | None = None) -> bool:
        """Past due but still inside the grace window."""
        if self.status != SubscriptionStatus.PAST_DUE or self.grace_period_end is None:
            return False
        return (now or utc_now()) < as_utc(self.grace_period_end)

    def is_lapsed(self, now: datetime | None = None) -> bool:
        """Canceled, or past due with the grace window over."""
        if self.status == SubscriptionStatus.CANCELED:
            return True
        if self.status == SubscriptionStatus.PAST_DUE:
            return not self.in_grace(now)
        return False

    def effective_plan_id(self, now: datetime | None = None) -> str | None:
        if self.is_lapsed(now):
            return FALLBACK_PLAN_ID
        return self.plan_id

    def effective_addons(self, now: datetime | None = None) -> frozenset[str]:
        if self.is_lapsed(now):
            return frozenset()
        return self.addons


def default_subscription(org_id: str) -> WorkspaceSubscription:
    """The implicit subscription of a freshly provisioned organization."""
    return WorkspaceSubscription(org_id=org_id)


class SubscriptionRepository(Protocol):
    async def get(self, org_id: str) -> WorkspaceSubscription | None: ...

    async def save(self, subscription: WorkspaceSubscription) -> None: ...


SubscriptionListener = Callable[[WorkspaceSubscription], Awaitable[None] | None]


class SubscriptionProvider:
    """Reads subscriptions and applies billing-driven transitions.

    Lifecycle: trialing -> active -> past_due (grace) -> canceled, plus
    active -> canceled. Every committed change is pushed to registered
    listeners; a listener failure is logged and never undoes the change.
    """

    def __init__(
        self,
        repository: SubscriptionRepository,
        grace_period_days: int = 7,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._repository = repository
        self._grace = timedelta(days=grace_period_days)
        self._clock = clock
        self._listeners: list[tuple[str | None, SubscriptionListener]] = []

    async def get(self, org_id: str) -> WorkspaceSubscription:
        subscription = await self._repository.get(org_id)
        if subscription is None:
            return default_subscription(org_id)
        return subscription

    def subscribe(
        self, listener: SubscriptionListener, org_id: str | None = None
    ) -> Callable[[], None]:
        """Register a change listener, optionally for one org. Returns an unsubscribe handle."""
        entry = (org_id, listener)
        self._listeners.append(entry)

        def _unsubscribe() -> None:
            if entry in self._listeners:
                self._listeners.remove(entry)

        return _unsubscribe

    async def start_trial(
        self, org_id: str, plan_id: str, period_anchor: datetime | None = None
    ) -> WorkspaceSubscription:
        current = await self.get(org_id)
        return await self._commit(
            replace(
                current,
                plan_id=plan_id,
                status=SubscriptionStatus.TRIALING,
                grace_period_end=None,
                period_anchor=period_anchor or current.period_anchor or self._clock(),
            ),
            event="trial_started",
        )

    async def upgrade(
        self, org_id: str, plan_id: str, period_anchor: datetime | None = None
    ) -> WorkspaceSubscription:
        """Apply a completed checkout or plan change."""
        current = await self.get(org_id)
        return await self._commit(
            replace(
                current,
                plan_id=plan_id,
                status=SubscriptionStatus.ACTIVE,
                grace_period_end=None,
                period_anchor=period_anchor or current.period_anchor or self._clock(),
            ),
            event="plan_changed",
        )

    async def cancel(self, org_id: str) -> WorkspaceSubscription:
        """Downgrade to the fallback plan."""
        current = await self.get(org_id)
        return await self._commit(
            replace(
                current,
                plan_id=FALLBACK_PLAN_ID,
                addons=frozenset(),
                status=SubscriptionStatus.CANCELED,
                grace_period_end=None,
            ),
            event="canceled",
        )

    async def mark_past_due(self, org_id: str) -> WorkspaceSubscription:
        """Record a failed payment; grants survive until the grace deadline."""
        current = await self.get(org_id)
        if current.status == SubscriptionStatus.PAST_DUE and current.grace_period_end:
            # Repeated failure notices do not extend the grace window
            return current
        return await self._commit(
            replace(
                current,
                status=SubscriptionStatus.PAST_DUE,
                grace_period_end=self._clock() + self._grace,
            ),
            event="past_due",
        )

    async def reactivate(self, org_id: str) -> WorkspaceSubscription:
        """Payment recovered."""
        current = await self.get(org_id)
        return await self._commit(
            replace(current, status=SubscriptionStatus.ACTIVE, grace_period_end=None),
            event="reactivated",
        )

    async def set_addons(self, org_id: str, addons: Iterable[str]) -> WorkspaceSubscription:
        current = await self.get(org_id)
        return await self._commit(replace(current, addons=frozenset(addons)), event="addons_set")

    async def _commit(
        self, subscription: WorkspaceSubscription, event: str
    ) -> WorkspaceSubscription:
        await self._repository.save(subscription)
        logger.info(
            "subscription_updated",
            transition=event,
            org_id=subscription.org_id,
            plan_id=subscription.plan_id,
            status=subscription.status.value,
        )
        await self._notify(subscription)
        return subscription

    async def _notify(self, subscription: WorkspaceSubscription) -> None:
        for org_id, listener in list(self._listeners):
            if org_id is not None and org_id != subscription.org_id:
                continue
            try:
                result = listener(subscription)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(
                    "subscription_listener_failed",
                    org_id=subscription.org_id,
                    error=str(e),
                )
