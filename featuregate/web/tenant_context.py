"""Tenant context for multi-tenant request scoping."""

from __future__ import annotations

from dataclasses import dataclass

import structlog
from fastapi import HTTPException, Request

from featuregate.config.settings import SENTINEL_ORG_ID, get_settings

logger = structlog.get_logger(__name__)

ORG_HEADER = "x-org-id"


@dataclass(frozen=True, slots=True)
class TenantContext:
    """Immutable tenant context carried through each request."""

    org_id: str


def get_single_tenant_context() -> TenantContext:
    """Return a TenantContext for single-tenant (self-hosted) mode."""
    return TenantContext(org_id=SENTINEL_ORG_ID)


async def get_tenant(request: Request) -> TenantContext:
    """Resolve the current tenant context from the request.

    In single-tenant mode, returns the sentinel org context.
    In header mode, the org id comes from the X-Org-ID header.
    """
    settings = getattr(request.app.state, "settings", None) or get_settings()
    if settings.auth_mode == "single":
        return get_single_tenant_context()

    org_id = request.headers.get(ORG_HEADER, "").strip()
    if not org_id:
        logger.warning("tenant_header_missing", path=request.url.path)
        raise HTTPException(status_code=401, detail="Missing organization context")
    return TenantContext(org_id=org_id)
