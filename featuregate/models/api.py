"""API request/response schemas for FastAPI endpoints."""

from __future__ import annotations

from pydantic import BaseModel, Field

from featuregate.billing.evaluator import GateDecision
from featuregate.billing.guard import GuardResult


class GateResponse(BaseModel):
    feature: str
    allowed: bool
    reason: str | None = None
    upgrade_to: list[str] = Field(default_factory=list)
    allowance_remaining: int | None = None
    warning: str | None = None
    plan_id: str | None = None

    @classmethod
    def from_guard(cls, feature: str, result: GuardResult) -> GateResponse:
        return cls(
            feature=feature,
            allowed=result.allowed,
            reason=result.reason.value if result.reason else None,
            upgrade_to=list(result.upgrade_to),
            allowance_remaining=result.allowance_remaining,
            warning=result.warning.value if result.warning else None,
            plan_id=result.plan_id,
        )

    @classmethod
    def from_decision(
        cls, feature: str, decision: GateDecision, remaining: int | None = None
    ) -> GateResponse:
        return cls(
            feature=feature,
            allowed=decision.allowed,
            reason=decision.reason.value if decision.reason else None,
            upgrade_to=list(decision.upgrade_to),
            allowance_remaining=remaining,
            warning=decision.warning.value if decision.warning else None,
            plan_id=decision.plan_id,
        )


class BatchGateRequest(BaseModel):
    features: list[str] = Field(min_length=1, max_length=100)


class UsageResponse(BaseModel):
    feature: str
    period_start: str
    count: int
    allowance: int | None
    remaining: int | None


class ConsumeRequest(BaseModel):
    amount: int = Field(default=1, ge=1)
    token: str | None = Field(default=None, max_length=200)


class PlanSummary(BaseModel):
    id: str
    name: str
    public: bool
    tier: int
