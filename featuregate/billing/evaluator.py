"""Entitlement evaluation: pure decisions over a catalog and a subscription."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, replace
from datetime import datetime

import structlog

from featuregate.billing.catalog import (
    BooleanGrant,
    Grant,
    MeteredGrant,
    PlanCatalog,
    PlanDefinition,
)
from featuregate.billing.subscription import WorkspaceSubscription
from featuregate.config.settings import FALLBACK_PLAN_ID
from featuregate.exceptions import FeatureUndefined, UnknownPlan
from featuregate.types import DenialReason, GateWarning, GrantSource

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class GateDecision:
    """Outcome of one feature check. Computed fresh, never persisted."""

    allowed: bool
    reason: DenialReason | None = None
    upgrade_to: tuple[str, ...] = ()
    allowance: int | None = None  # None when allowed and unmetered
    source: GrantSource | None = None
    plan_id: str | None = None
    warning: GateWarning | None = None

    @property
    def metered(self) -> bool:
        return self.allowed and self.allowance is not None

    @property
    def recommended_upgrade(self) -> str | None:
        return self.upgrade_to[0] if self.upgrade_to else None


def evaluate_grant(grant: Grant | None) -> tuple[bool, int | None]:
    """Return (enabled, allowance) for a grant; a missing grant is a denial."""
    match grant:
        case BooleanGrant(enabled=enabled):
            return enabled is True, None
        case MeteredGrant(enabled=enabled, allowance=allowance):
            if enabled is not True:
                return False, None
            return True, allowance
        case _:
            return False, None


def resolve_plan(
    catalog: PlanCatalog, subscription: WorkspaceSubscription, now: datetime | None = None
) -> PlanDefinition | None:
    """The plan whose grants apply, substituting the fallback for unknown ids."""
    plan_id = subscription.effective_plan_id(now)
    try:
        return catalog.require_plan(plan_id)
    except UnknownPlan as e:
        logger.info(
            "unknown_plan_fallback",
            org_id=subscription.org_id,
            plan_id=str(plan_id),
            fallback=FALLBACK_PLAN_ID,
            error_type=type(e).__name__,
        )
    return catalog.get_plan(FALLBACK_PLAN_ID)


def upgrade_targets(
    catalog: PlanCatalog, feature: str, current_plan_id: str | None
) -> tuple[str, ...]:
    """Public plans granting the feature, in ascending tier order."""
    return tuple(
        plan_id
        for plan_id, plan in catalog.plans.items()
        if plan_id not in (current_plan_id, FALLBACK_PLAN_ID)
        and plan.public
        and evaluate_grant(plan.grants.get(feature))[0]
    )


def _addon_ids(
    subscription: WorkspaceSubscription, plan: PlanDefinition | None, now: datetime | None
) -> list[str]:
    ids = sorted(subscription.effective_addons(now))
    if plan is not None:
        ids.extend(a for a in plan.addons_included if a not in ids)
    return ids


def can_use(
    catalog: PlanCatalog,
    subscription: WorkspaceSubscription,
    feature: str,
    now: datetime | None = None,
) -> GateDecision:
    """Decide whether the subscription may use a feature.

    The base plan and every add-on are evaluated independently and combined
    with union semantics. ``enabled`` is authoritative; allowances only cap
    usage and are enforced by the usage meter.
    """
    plan = resolve_plan(catalog, subscription, now)
    plan_id = plan.plan_id if plan is not None else None
    warning = GateWarning.GRACE_PERIOD if subscription.in_grace(now) else None

    granted: list[tuple[GrantSource, int | None]] = []
    plan_grant = plan.grants.get(feature) if plan is not None else None
    allowed, allowance = evaluate_grant(plan_grant)
    if allowed:
        granted.append((GrantSource.PLAN, allowance))

    for addon_id in _addon_ids(subscription, plan, now):
        addon = catalog.addons.get(addon_id)
        if addon is None:
            logger.debug("addon_unknown", org_id=subscription.org_id, addon_id=addon_id)
            continue
        allowed, allowance = evaluate_grant(addon.grants.get(feature))
        if allowed:
            granted.append((GrantSource.ADDON, allowance))

    if granted:
        allowances = [a for _, a in granted]
        return GateDecision(
            allowed=True,
            allowance=None if None in allowances else max(a for a in allowances if a is not None),
            source=granted[0][0],
            plan_id=plan_id,
            warning=warning,
        )

    if plan_grant is None:
        reason = DenialReason.FEATURE_UNDEFINED
        if not catalog.defines(feature):
            logger.warning(
                "feature_undefined",
                feature=feature,
                plan_id=plan_id,
                error_type=FeatureUndefined.__name__,
            )
    else:
        reason = DenialReason.NOT_GRANTED

    return GateDecision(
        allowed=False,
        reason=reason,
        upgrade_to=upgrade_targets(catalog, feature, plan_id),
        plan_id=plan_id,
        warning=warning,
    )


def can_use_many(
    catalog: PlanCatalog,
    subscription: WorkspaceSubscription,
    features: Iterable[str],
    now: datetime | None = None,
) -> dict[str, GateDecision]:
    return {feature: can_use(catalog, subscription, feature, now) for feature in features}


def apply_allowance(
    decision: GateDecision,
    remaining: int | None,
    catalog: PlanCatalog | None = None,
    feature: str | None = None,
) -> GateDecision:
    """Deny a metered feature whose allowance is used up for the period.

    Exhaustion overrides ``enabled``. When a catalog and feature are given,
    upgrade suggestions are filled in so the UI can offer "upgrade" as well
    as "wait for next period".
    """
    if not decision.allowed or remaining is None or remaining > 0:
        return decision
    upgrade_to: tuple[str, ...] = ()
    if catalog is not None and feature is not None:
        upgrade_to = tuple(
            plan_id
            for plan_id in upgrade_targets(catalog, feature, decision.plan_id)
            if _raises_cap(catalog, plan_id, feature, decision.allowance)
        )
    return replace(
        decision,
        allowed=False,
        reason=DenialReason.ALLOWANCE_EXCEEDED,
        upgrade_to=upgrade_to,
    )


def _raises_cap(catalog: PlanCatalog, plan_id: str, feature: str, current: int | None) -> bool:
    _, allowance = evaluate_grant(catalog.plans[plan_id].grants.get(feature))
    return allowance is None or (current is not None and allowance > current)
