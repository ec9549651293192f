"""Unit tests for entitlement evaluation."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import pytest

from featuregate.billing import evaluator
from featuregate.billing.catalog import (
    BooleanGrant,
    MeteredGrant,
    PlanCatalog,
    parse_catalog,
)
from featuregate.billing.evaluator import (
    GateDecision,
    apply_allowance,
    can_use,
    can_use_many,
    evaluate_grant,
    upgrade_targets,
)
from featuregate.billing.subscription import WorkspaceSubscription
from featuregate.types import DenialReason, GateWarning, GrantSource, SubscriptionStatus

if TYPE_CHECKING:
    from tests.conftest import EventRecorder

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)


def _sub(plan_id: str | None = "starter", **kwargs: object) -> WorkspaceSubscription:
    return WorkspaceSubscription(
        org_id="org-1", plan_id=plan_id, **kwargs  # type: ignore[arg-type]
    )


@pytest.fixture()
def minimal_catalog() -> PlanCatalog:
    return parse_catalog(
        {
            "plans": {
                "starter": {"grants": {"exports.pdf": True}},
                "pro": {"grants": {"collab.tasks": True}},
            }
        }
    )


@pytest.mark.unit
class TestEvaluateGrant:
    def test_boolean(self) -> None:
        assert evaluate_grant(BooleanGrant(enabled=True)) == (True, None)
        assert evaluate_grant(BooleanGrant(enabled=False)) == (False, None)

    def test_metered(self) -> None:
        assert evaluate_grant(MeteredGrant(enabled=True, allowance=5)) == (True, 5)
        assert evaluate_grant(MeteredGrant(enabled=True)) == (True, None)

    def test_disabled_metered_ignores_allowance(self) -> None:
        assert evaluate_grant(MeteredGrant(enabled=False, allowance=100)) == (False, None)

    def test_missing_or_garbage(self) -> None:
        assert evaluate_grant(None) == (False, None)
        assert evaluate_grant("yes") == (False, None)  # type: ignore[arg-type]


@pytest.mark.unit
class TestCanUse:
    def test_denied_feature_lists_upgrade(self, minimal_catalog: PlanCatalog) -> None:
        decision = can_use(minimal_catalog, _sub("starter"), "collab.tasks", NOW)
        assert decision.allowed is False
        assert decision.upgrade_to == ("pro",)
        assert decision.recommended_upgrade == "pro"

    def test_unknown_plan_falls_back_to_starter(self, minimal_catalog: PlanCatalog) -> None:
        decision = can_use(minimal_catalog, _sub("unknown-plan-id"), "exports.pdf", NOW)
        assert decision.allowed is True
        assert decision.plan_id == "starter"

    def test_missing_plan_id_falls_back(self, catalog: PlanCatalog) -> None:
        decision = can_use(catalog, _sub(None), "projects.core", NOW)
        assert decision.allowed is True
        assert decision.plan_id == "starter"

    def test_missing_entry_is_feature_undefined(self, catalog: PlanCatalog) -> None:
        decision = can_use(catalog, _sub("starter"), "investor.room", NOW)
        assert decision.allowed is False
        assert decision.reason == DenialReason.FEATURE_UNDEFINED

    def test_explicit_false_is_not_granted(self, catalog: PlanCatalog) -> None:
        decision = can_use(catalog, _sub("starter"), "collab.tasks", NOW)
        assert decision.reason == DenialReason.NOT_GRANTED
        assert decision.upgrade_to == ("pro", "business")

    def test_unknown_feature_never_raises(self, catalog: PlanCatalog) -> None:
        decision = can_use(catalog, _sub("pro"), "does.not.exist", NOW)
        assert decision.allowed is False
        assert decision.reason == DenialReason.FEATURE_UNDEFINED
        assert decision.upgrade_to == ()

    def test_unknown_plan_logged_with_error_type(
        self,
        minimal_catalog: PlanCatalog,
        events: EventRecorder,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setattr(evaluator, "logger", events)
        can_use(minimal_catalog, _sub("legacy-gold"), "exports.pdf", NOW)
        fields = events.find("unknown_plan_fallback")
        assert fields["error_type"] == "UnknownPlan"
        assert fields["fallback"] == "starter"

    def test_undefined_feature_logged_with_error_type(
        self, catalog: PlanCatalog, events: EventRecorder, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(evaluator, "logger", events)
        can_use(catalog, _sub("pro"), "does.not.exist", NOW)
        assert events.find("feature_undefined")["error_type"] == "FeatureUndefined"

    def test_metered_grant_reports_allowance(self, catalog: PlanCatalog) -> None:
        decision = can_use(catalog, _sub("starter"), "exports.pdf", NOW)
        assert decision.allowed is True
        assert decision.allowance == 3
        assert decision.metered is True
        assert decision.source == GrantSource.PLAN

    def test_unlimited_is_unmetered(self, catalog: PlanCatalog) -> None:
        decision = can_use(catalog, _sub("pro"), "exports.pdf", NOW)
        assert decision.allowed is True
        assert decision.allowance is None
        assert decision.metered is False

    def test_addon_grants_feature_plan_lacks(self, catalog: PlanCatalog) -> None:
        decision = can_use(
            catalog, _sub("starter", addons=frozenset({"ai_boost"})), "ai.analyst", NOW
        )
        assert decision.allowed is True
        assert decision.source == GrantSource.ADDON
        assert decision.allowance == 5000

    def test_union_takes_largest_allowance(self, catalog: PlanCatalog) -> None:
        decision = can_use(catalog, _sub("pro", addons=frozenset({"ai_boost"})), "ai.analyst", NOW)
        assert decision.source == GrantSource.PLAN
        assert decision.allowance == 5000

    def test_union_unlimited_wins(self, catalog: PlanCatalog) -> None:
        decision = can_use(
            catalog, _sub("enterprise", addons=frozenset({"ai_boost"})), "ai.analyst", NOW
        )
        assert decision.allowance is None

    def test_plan_included_addon(self, catalog: PlanCatalog) -> None:
        decision = can_use(catalog, _sub("business"), "investor.room", NOW)
        assert decision.allowed is True
        assert decision.source == GrantSource.ADDON

    def test_unknown_addon_skipped(self, catalog: PlanCatalog) -> None:
        decision = can_use(catalog, _sub("pro", addons=frozenset({"ghost"})), "collab.tasks", NOW)
        assert decision.allowed is True

    def test_upgrade_excludes_private_plans(self, catalog: PlanCatalog) -> None:
        targets = upgrade_targets(catalog, "ai.analyst", "starter")
        assert "enterprise" not in targets
        assert targets == ("pro", "business")

    def test_upgrade_excludes_current_plan(self, catalog: PlanCatalog) -> None:
        assert upgrade_targets(catalog, "collab.tasks", "pro") == ("business",)

    def test_can_use_many(self, catalog: PlanCatalog) -> None:
        decisions = can_use_many(catalog, _sub("pro"), ["collab.tasks", "investor.room"], NOW)
        assert decisions["collab.tasks"].allowed is True
        assert decisions["investor.room"].allowed is False


@pytest.mark.unit
class TestSubscriptionStatusEffects:
    def test_trialing_keeps_plan(self, catalog: PlanCatalog) -> None:
        sub = _sub("pro", status=SubscriptionStatus.TRIALING)
        assert can_use(catalog, sub, "collab.tasks", NOW).allowed is True

    def test_grace_period_keeps_grants_with_warning(self, catalog: PlanCatalog) -> None:
        sub = _sub(
            "pro",
            status=SubscriptionStatus.PAST_DUE,
            grace_period_end=NOW + timedelta(days=3),
        )
        decision = can_use(catalog, sub, "collab.tasks", NOW)
        assert decision.allowed is True
        assert decision.warning == GateWarning.GRACE_PERIOD

    def test_grace_expired_drops_to_starter(self, catalog: PlanCatalog) -> None:
        sub = _sub(
            "pro",
            addons=frozenset({"ai_boost"}),
            status=SubscriptionStatus.PAST_DUE,
            grace_period_end=NOW - timedelta(seconds=1),
        )
        decision = can_use(catalog, sub, "collab.tasks", NOW)
        assert decision.allowed is False
        assert decision.plan_id == "starter"
        assert decision.warning is None
        assert can_use(catalog, sub, "ai.analyst", NOW).allowed is False

    def test_canceled_is_starter(self, catalog: PlanCatalog) -> None:
        sub = _sub("business", status=SubscriptionStatus.CANCELED)
        assert can_use(catalog, sub, "collab.tasks", NOW).allowed is False
        assert can_use(catalog, sub, "exports.pdf", NOW).allowance == 3

    def test_unknown_status_treated_as_canceled(self, catalog: PlanCatalog) -> None:
        sub = _sub("pro", status="incomplete_expired")
        assert sub.status == SubscriptionStatus.CANCELED
        assert can_use(catalog, sub, "collab.tasks", NOW).allowed is False


@pytest.mark.unit
class TestApplyAllowance:
    def test_exhausted_denies(self, catalog: PlanCatalog) -> None:
        decision = can_use(catalog, _sub("starter"), "exports.pdf", NOW)
        denied = apply_allowance(decision, 0, catalog, "exports.pdf")
        assert denied.allowed is False
        assert denied.reason == DenialReason.ALLOWANCE_EXCEEDED
        assert denied.upgrade_to == ("pro", "business")

    def test_remaining_left_is_unchanged(self, catalog: PlanCatalog) -> None:
        decision = can_use(catalog, _sub("starter"), "exports.pdf", NOW)
        assert apply_allowance(decision, 2) is decision

    def test_unmetered_is_unchanged(self) -> None:
        decision = GateDecision(allowed=True)
        assert apply_allowance(decision, None) is decision

    def test_upgrade_only_to_higher_caps(self, catalog: PlanCatalog) -> None:
        decision = can_use(catalog, _sub("pro"), "ai.analyst", NOW)
        denied = apply_allowance(decision, 0, catalog, "ai.analyst")
        assert denied.upgrade_to == ("business",)
