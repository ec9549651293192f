"""Server-side feature guard. Fails closed on any internal error."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from functools import partial, partialmethod
from typing import TYPE_CHECKING

import structlog

from featuregate.billing.evaluator import apply_allowance, can_use
from featuregate.billing.subscription import WorkspaceSubscription, utc_now
from featuregate.billing.usage import remaining_allowance
from featuregate.exceptions import GateSystemError
from featuregate.types import DenialReason, GateWarning

if TYPE_CHECKING:
    from featuregate.billing.loader import CatalogCache
    from featuregate.billing.subscription import SubscriptionProvider
    from featuregate.billing.usage import UsageMeter

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class GuardResult:
    allowed: bool
    reason: DenialReason | None = None
    upgrade_to: tuple[str, ...] = ()
    allowance_remaining: int | None = None
    warning: GateWarning | None = None
    plan_id: str | None = None
    subscription: WorkspaceSubscription | None = None


_SYSTEM_ERROR = GuardResult(allowed=False, reason=DenialReason.SYSTEM_ERROR)

FeatureCheck = Callable[..., Awaitable[GuardResult]]


class FeatureGuard:
    """Evaluates feature access for request handlers.

    Loads the cached catalog and the organization's subscription, evaluates
    the grant and, for metered features, the remaining allowance. Any
    failure along the way yields a denial with reason ``system-error``.
    """

    def __init__(
        self,
        catalog_cache: CatalogCache,
        subscriptions: SubscriptionProvider,
        meter: UsageMeter | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._catalog = catalog_cache
        self._subscriptions = subscriptions
        self._meter = meter
        self._clock = clock

    async def check(
        self,
        org_id: str,
        feature: str,
        subscription: WorkspaceSubscription | None = None,
    ) -> GuardResult:
        """Evaluate like ``require`` but raise GateSystemError on internal failure."""
        try:
            return await self._evaluate(org_id, feature, subscription)
        except Exception as e:
            msg = f"Feature check failed for {org_id}/{feature}"
            raise GateSystemError(msg) from e

    async def require(
        self,
        org_id: str,
        feature: str,
        subscription: WorkspaceSubscription | None = None,
    ) -> GuardResult:
        try:
            return await self.check(org_id, feature, subscription)
        except GateSystemError as e:
            _log_system_error(e, org_id=org_id, feature=feature)
            return _SYSTEM_ERROR

    async def require_many(
        self, org_id: str, features: list[str], subscription: WorkspaceSubscription | None = None
    ) -> dict[str, GuardResult]:
        if subscription is None:
            try:
                subscription = await self._load_subscription(org_id)
            except GateSystemError as e:
                _log_system_error(e, org_id=org_id)
                return {feature: _SYSTEM_ERROR for feature in features}
        return {
            feature: await self.require(org_id, feature, subscription)
            for feature in dict.fromkeys(features)
        }

    def for_feature(self, feature: str) -> FeatureCheck:
        """A reusable check bound to one feature key."""
        return partial(self.require, feature=feature)

    require_tasks = partialmethod(require, feature="collab.tasks")
    require_comments = partialmethod(require, feature="collab.comments")
    require_mentions = partialmethod(require, feature="collab.mentions")
    require_investor_room = partialmethod(require, feature="investor.room")
    require_pdf_export = partialmethod(require, feature="exports.pdf")
    require_ppt_export = partialmethod(require, feature="exports.ppt")
    require_ai_analyst = partialmethod(require, feature="ai.analyst")

    async def _evaluate(
        self, org_id: str, feature: str, subscription: WorkspaceSubscription | None
    ) -> GuardResult:
        catalog = await self._catalog.get()
        if subscription is None:
            subscription = await self._subscriptions.get(org_id)
        now = self._clock()
        decision = can_use(catalog, subscription, feature, now)

        remaining: int | None = None
        if decision.metered and self._meter is not None:
            count = await self._meter.count_for(subscription, feature, now)
            remaining = remaining_allowance(decision.allowance, count)
            decision = apply_allowance(decision, remaining, catalog, feature)

        if not decision.allowed:
            logger.info(
                "gate_denied",
                org_id=org_id,
                feature=feature,
                plan_id=decision.plan_id,
                reason=decision.reason.value if decision.reason else None,
            )
        elif decision.warning is not None:
            logger.info(
                "gate_allowed_with_warning",
                org_id=org_id,
                feature=feature,
                warning=decision.warning.value,
            )

        return GuardResult(
            allowed=decision.allowed,
            reason=decision.reason,
            upgrade_to=decision.upgrade_to,
            allowance_remaining=remaining,
            warning=decision.warning,
            plan_id=decision.plan_id,
            subscription=subscription,
        )

    async def _load_subscription(self, org_id: str) -> WorkspaceSubscription | None:
        try:
            return await self._subscriptions.get(org_id)
        except Exception as e:
            msg = f"Subscription lookup failed for {org_id}"
            raise GateSystemError(msg) from e


def _log_system_error(error: GateSystemError, **fields: str) -> None:
    cause = error.__cause__ or error
    logger.error(
        "guard_system_error",
        **fields,
        error=str(cause),
        error_type=type(cause).__name__,
    )
