"""Plan catalog definitions: plans, add-ons and their feature grants."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt, ValidationError

from featuregate.config.settings import FALLBACK_PLAN_ID
from featuregate.exceptions import CatalogUnavailable, UnknownPlan

UNLIMITED = "unlimited"


@dataclass(frozen=True, slots=True)
class BooleanGrant:
    """Feature fully on or off."""

    enabled: bool


@dataclass(frozen=True, slots=True)
class MeteredGrant:
    """Feature toggle with an optional per-period usage cap.

    ``enabled`` is authoritative; ``allowance`` only caps usage. ``None``
    means the feature is unmetered.
    """

    enabled: bool
    allowance: int | None = None


Grant = BooleanGrant | MeteredGrant


@dataclass(frozen=True, slots=True)
class PlanDefinition:
    plan_id: str
    name: str
    grants: Mapping[str, Grant]
    public: bool = True
    addons_included: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class AddonDefinition:
    addon_id: str
    name: str
    grants: Mapping[str, Grant]


@dataclass(frozen=True, slots=True)
class PlanCatalog:
    """Immutable snapshot of the pricing document.

    ``plans`` preserves document order, which is the ascending tier order.
    """

    plans: Mapping[str, PlanDefinition]
    addons: Mapping[str, AddonDefinition] = field(default_factory=lambda: MappingProxyType({}))
    features: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    currency: str | None = None

    def get_plan(self, plan_id: str | None) -> PlanDefinition | None:
        if not isinstance(plan_id, str):
            return None
        return self.plans.get(plan_id)

    def require_plan(self, plan_id: str | None) -> PlanDefinition:
        plan = self.get_plan(plan_id)
        if plan is None:
            msg = f"Plan {plan_id!r} is not in the catalog"
            raise UnknownPlan(msg)
        return plan

    def tier_of(self, plan_id: str) -> int:
        """Position of a plan in tier order, -1 when unknown."""
        for index, candidate in enumerate(self.plans):
            if candidate == plan_id:
                return index
        return -1

    def defines(self, feature: str) -> bool:
        """True if any plan or add-on carries a grant entry for the feature."""
        return any(feature in p.grants for p in self.plans.values()) or any(
            feature in a.grants for a in self.addons.values()
        )


# ---------------------------------------------------------------------------
# Document schema (validation only; converted to the frozen types above)
# ---------------------------------------------------------------------------


class _RawMeteredGrant(BaseModel):
    model_config = ConfigDict(extra="ignore")

    enabled: StrictBool
    allowance: StrictInt | Literal["unlimited"] | None = Field(default=None)


_RawGrant = StrictBool | _RawMeteredGrant


class _RawPlan(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str | None = None
    grants: dict[str, _RawGrant]
    public: StrictBool = True
    addons_included: list[str] = Field(default_factory=list)


class _RawAddon(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str | None = None
    grants: dict[str, _RawGrant]


class _RawFeature(BaseModel):
    model_config = ConfigDict(extra="ignore")

    label: str
    description: str | None = None


class _RawCatalog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    currency: str | None = None
    plans: dict[str, _RawPlan]
    addons: dict[str, _RawAddon] = Field(default_factory=dict)
    features: dict[str, _RawFeature] = Field(default_factory=dict)


def _to_grant(raw: bool | _RawMeteredGrant, where: str) -> Grant:
    if isinstance(raw, bool):
        return BooleanGrant(enabled=raw)
    allowance = raw.allowance
    if allowance == UNLIMITED:
        allowance = None
    if isinstance(allowance, int) and allowance < 0:
        msg = f"Negative allowance for {where}"
        raise CatalogUnavailable(msg)
    return MeteredGrant(enabled=raw.enabled, allowance=allowance)


def _to_grants(raw: dict[str, bool | _RawMeteredGrant], owner: str) -> Mapping[str, Grant]:
    return MappingProxyType(
        {key: _to_grant(value, f"{owner}/{key}") for key, value in raw.items()}
    )


def parse_catalog(document: Any) -> PlanCatalog:
    """Validate a pricing document and build an immutable PlanCatalog.

    Raises CatalogUnavailable for any structural problem. Unknown keys are
    ignored.
    """
    if not isinstance(document, Mapping):
        msg = "Pricing document must be an object"
        raise CatalogUnavailable(msg)
    try:
        raw = _RawCatalog.model_validate(dict(document))
    except ValidationError as e:
        msg = f"Malformed pricing document: {e.error_count()} validation error(s)"
        raise CatalogUnavailable(msg) from e

    if not raw.plans:
        msg = "Pricing document defines no plans"
        raise CatalogUnavailable(msg)
    if FALLBACK_PLAN_ID not in raw.plans:
        msg = f"Pricing document is missing the reserved {FALLBACK_PLAN_ID!r} plan"
        raise CatalogUnavailable(msg)

    plans = {
        plan_id: PlanDefinition(
            plan_id=plan_id,
            name=plan.name or plan_id,
            grants=_to_grants(plan.grants, plan_id),
            public=plan.public,
            addons_included=tuple(dict.fromkeys(plan.addons_included)),
        )
        for plan_id, plan in raw.plans.items()
    }
    addons = {
        addon_id: AddonDefinition(
            addon_id=addon_id,
            name=addon.name or addon_id,
            grants=_to_grants(addon.grants, addon_id),
        )
        for addon_id, addon in raw.addons.items()
    }
    return PlanCatalog(
        plans=MappingProxyType(plans),
        addons=MappingProxyType(addons),
        features=MappingProxyType({key: f.label for key, f in raw.features.items()}),
        currency=raw.currency,
    )
