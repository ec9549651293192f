"""Usage metering API routes."""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException

from featuregate.billing.guard import GuardResult
from featuregate.models.api import ConsumeRequest, GateResponse, UsageResponse
from featuregate.types import DenialReason
from featuregate.web.dependencies import Services, denial_detail, get_services
from featuregate.web.tenant_context import TenantContext, get_tenant

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/usage", tags=["usage"])


@router.get("/{feature}", response_model=UsageResponse)
async def get_usage(
    feature: str,
    tenant: TenantContext = Depends(get_tenant),
    services: Services = Depends(get_services),
) -> UsageResponse:
    try:
        snapshot = await services.meter.snapshot(tenant.org_id, feature)
    except Exception as e:
        logger.error("usage_read_failed", org_id=tenant.org_id, feature=feature, error=str(e))
        raise HTTPException(status_code=503, detail="Usage is temporarily unavailable") from e
    return UsageResponse(
        feature=snapshot.feature,
        period_start=snapshot.period_start,
        count=snapshot.count,
        allowance=snapshot.allowance,
        remaining=snapshot.remaining,
    )


@router.get("/{feature}/history", response_model=list[UsageResponse])
async def get_usage_history(
    feature: str,
    tenant: TenantContext = Depends(get_tenant),
    services: Services = Depends(get_services),
) -> list[dict[str, Any]]:
    try:
        records = await services.meter.history(tenant.org_id, feature)
    except Exception as e:
        logger.error(
            "usage_history_failed", org_id=tenant.org_id, feature=feature, error=str(e)
        )
        raise HTTPException(status_code=503, detail="Usage is temporarily unavailable") from e
    return [
        {
            "feature": r.feature,
            "period_start": r.period_start,
            "count": r.count,
            "allowance": r.allowance,
            "remaining": None if r.allowance is None else max(r.allowance - r.count, 0),
        }
        for r in records
    ]


@router.post("/{feature}", response_model=GateResponse)
async def consume_usage(
    feature: str,
    body: ConsumeRequest,
    tenant: TenantContext = Depends(get_tenant),
    services: Services = Depends(get_services),
) -> GateResponse:
    """Gate one metered action and record it if the allowance permits."""
    try:
        decision = await services.meter.consume(
            tenant.org_id, feature, amount=body.amount, token=body.token
        )
        remaining = await services.meter.remaining(tenant.org_id, feature)
    except Exception as e:
        logger.error("usage_consume_failed", org_id=tenant.org_id, feature=feature, error=str(e))
        failed = GuardResult(allowed=False, reason=DenialReason.SYSTEM_ERROR)
        raise HTTPException(status_code=402, detail=denial_detail(feature, failed)) from e

    if not decision.allowed:
        denied = GuardResult(
            allowed=False, reason=decision.reason, upgrade_to=decision.upgrade_to
        )
        raise HTTPException(status_code=402, detail=denial_detail(feature, denied))
    return GateResponse.from_decision(feature, decision, remaining)
