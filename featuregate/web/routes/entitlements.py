"""Entitlement check API routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from featuregate.models.api import BatchGateRequest, GateResponse
from featuregate.web.dependencies import Services, get_services
from featuregate.web.tenant_context import TenantContext, get_tenant

router = APIRouter(prefix="/api/entitlements", tags=["entitlements"])


@router.post("/batch", response_model=dict[str, GateResponse])
async def check_features(
    body: BatchGateRequest,
    tenant: TenantContext = Depends(get_tenant),
    services: Services = Depends(get_services),
) -> dict[str, GateResponse]:
    results = await services.guard.require_many(tenant.org_id, body.features)
    return {
        feature: GateResponse.from_guard(feature, result) for feature, result in results.items()
    }


@router.get("/{feature}", response_model=GateResponse)
async def check_feature(
    feature: str,
    tenant: TenantContext = Depends(get_tenant),
    services: Services = Depends(get_services),
) -> GateResponse:
    result = await services.guard.require(tenant.org_id, feature)
    return GateResponse.from_guard(feature, result)
