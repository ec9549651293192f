"""Observer-driven gate state for long-lived consumers (UI sessions, workers)."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

import structlog

from featuregate.billing.evaluator import apply_allowance, can_use
from featuregate.billing.subscription import WorkspaceSubscription, utc_now
from featuregate.billing.usage import remaining_allowance
from featuregate.types import DenialReason, GateWarning

if TYPE_CHECKING:
    from featuregate.billing.loader import CatalogCache
    from featuregate.billing.subscription import SubscriptionProvider
    from featuregate.billing.usage import UsageMeter

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class GateState:
    """Render state for one feature.

    While ``loading`` is true neither the allowed nor the denied UI may be
    shown.
    """

    loading: bool = True
    allowed: bool = False
    upgrade_to: tuple[str, ...] = ()
    allowance_remaining: int | None = None
    reason: DenialReason | None = None
    warning: GateWarning | None = None


GateListener = Callable[[GateState], None]


class GateWatcher:
    """Keeps a GateState current for one (org, feature) pair.

    ``start()`` registers with the subscription provider so every committed
    subscription change re-runs the evaluation. Overlapping refreshes are
    resolved in favour of the most recently started one.
    """

    def __init__(
        self,
        feature: str,
        org_id: str,
        catalog_cache: CatalogCache,
        subscriptions: SubscriptionProvider,
        meter: UsageMeter | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.feature = feature
        self.org_id = org_id
        self._catalog = catalog_cache
        self._subscriptions = subscriptions
        self._meter = meter
        self._clock = clock
        self._state = GateState()
        self._listeners: list[GateListener] = []
        self._unsubscribe: Callable[[], None] | None = None
        self._generation = 0

    @property
    def state(self) -> GateState:
        return self._state

    def add_listener(self, listener: GateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    async def start(self) -> GateState:
        if self._unsubscribe is None:
            self._unsubscribe = self._subscriptions.subscribe(self._on_change, org_id=self.org_id)
        return await self.refresh()

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._listeners.clear()

    async def __aenter__(self) -> GateWatcher:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()

    async def _on_change(self, subscription: WorkspaceSubscription) -> None:
        await self.refresh(subscription)

    async def refresh(self, subscription: WorkspaceSubscription | None = None) -> GateState:
        self._generation += 1
        generation = self._generation
        try:
            state = await self._evaluate(subscription)
        except Exception as e:
            logger.warning(
                "gate_refresh_failed", org_id=self.org_id, feature=self.feature, error=str(e)
            )
            state = GateState(loading=False, allowed=False, reason=DenialReason.SYSTEM_ERROR)

        if generation != self._generation:
            # A newer refresh started meanwhile; its result wins
            return self._state
        self._set(state)
        return state

    async def _evaluate(self, subscription: WorkspaceSubscription | None) -> GateState:
        catalog = await self._catalog.get()
        if subscription is None:
            subscription = await self._subscriptions.get(self.org_id)
        now = self._clock()
        decision = can_use(catalog, subscription, self.feature, now)
        remaining: int | None = None
        if decision.metered and self._meter is not None:
            count = await self._meter.count_for(subscription, self.feature, now)
            remaining = remaining_allowance(decision.allowance, count)
            decision = apply_allowance(decision, remaining, catalog, self.feature)
        return GateState(
            loading=False,
            allowed=decision.allowed,
            upgrade_to=decision.upgrade_to,
            allowance_remaining=remaining,
            reason=decision.reason,
            warning=decision.warning,
        )

    def _set(self, state: GateState) -> None:
        if state == self._state:
            return
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception as e:
                logger.warning("gate_listener_failed", feature=self.feature, error=str(e))
