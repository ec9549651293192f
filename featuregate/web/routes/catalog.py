"""Pricing catalog API routes."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, HTTPException

from featuregate.exceptions import CatalogUnavailable, UnknownPlan
from featuregate.models.api import PlanSummary
from featuregate.web.dependencies import Services, get_services

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/catalog", tags=["catalog"])


@router.get("/plans", response_model=list[PlanSummary])
async def list_plans(services: Services = Depends(get_services)) -> list[PlanSummary]:
    """Plans in ascending tier order."""
    try:
        catalog = await services.catalog.get()
    except CatalogUnavailable as e:
        logger.warning("catalog_route_unavailable", error=str(e))
        raise HTTPException(status_code=503, detail="Pricing is temporarily unavailable") from e
    return [
        PlanSummary(id=plan_id, name=plan.name, public=plan.public, tier=tier)
        for tier, (plan_id, plan) in enumerate(catalog.plans.items())
    ]


@router.get("/plans/{plan_id}", response_model=PlanSummary)
async def get_plan(plan_id: str, services: Services = Depends(get_services)) -> PlanSummary:
    try:
        catalog = await services.catalog.get()
    except CatalogUnavailable as e:
        logger.warning("catalog_route_unavailable", error=str(e))
        raise HTTPException(status_code=503, detail="Pricing is temporarily unavailable") from e
    try:
        plan = catalog.require_plan(plan_id)
    except UnknownPlan as e:
        raise HTTPException(status_code=404, detail="Plan not found") from e
    return PlanSummary(
        id=plan_id, name=plan.name, public=plan.public, tier=catalog.tier_of(plan_id)
    )
