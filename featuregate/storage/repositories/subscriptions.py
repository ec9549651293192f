"""Subscription repositories: in-memory and DB-backed."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import structlog
from sqlalchemy import DateTime, bindparam, text
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from featuregate.billing.subscription import WorkspaceSubscription, as_utc
from featuregate.models.database import Subscription, _new_uuid, _utc_now

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = structlog.get_logger(__name__)

# One statement so concurrent first saves for an org cannot collide on org_id.
# Stripe identifiers are owned by the billing webhook and survive an update.
_UPSERT_SUBSCRIPTION = text(
    "INSERT INTO subscriptions "
    "(id, org_id, plan, status, addons_json, grace_period_end, period_anchor, "
    "created_at, updated_at) "
    "VALUES (:id, :org_id, :plan, :status, :addons_json, :grace_period_end, "
    ":period_anchor, :now, :now) "
    "ON CONFLICT (org_id) DO UPDATE SET "
    "plan = excluded.plan, "
    "status = excluded.status, "
    "addons_json = excluded.addons_json, "
    "grace_period_end = excluded.grace_period_end, "
    "period_anchor = excluded.period_anchor, "
    "updated_at = excluded.updated_at"
).bindparams(
    bindparam("grace_period_end", type_=DateTime(timezone=True)),
    bindparam("period_anchor", type_=DateTime(timezone=True)),
    bindparam("now", type_=DateTime(timezone=True)),
)


def _to_domain(row: Subscription) -> WorkspaceSubscription:
    try:
        addons = json.loads(row.addons_json or "[]")
    except json.JSONDecodeError:
        addons = None
    if not isinstance(addons, list):
        logger.warning("subscription_addons_corrupt", org_id=row.org_id)
        addons = []
    return WorkspaceSubscription(
        org_id=row.org_id,
        plan_id=row.plan,
        addons=frozenset(a for a in addons if isinstance(a, str)),
        status=row.status,
        grace_period_end=as_utc(row.grace_period_end) if row.grace_period_end else None,
        period_anchor=as_utc(row.period_anchor) if row.period_anchor else None,
    )


class DatabaseSubscriptionRepository:
    """Stores subscriptions in PostgreSQL via the Subscription model."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def get(self, org_id: str) -> WorkspaceSubscription | None:
        async with AsyncSession(self._engine) as session:
            statement = select(Subscription).where(col(Subscription.org_id) == org_id)
            results = await session.execute(statement)
            row = results.scalars().first()
        return _to_domain(row) if row is not None else None

    async def save(self, subscription: WorkspaceSubscription) -> None:
        grace_end = subscription.grace_period_end
        anchor = subscription.period_anchor
        params = {
            "id": _new_uuid(),
            "org_id": subscription.org_id,
            "plan": subscription.plan_id or "",
            "status": subscription.status.value,
            "addons_json": json.dumps(sorted(subscription.addons)),
            "grace_period_end": as_utc(grace_end) if grace_end is not None else None,
            "period_anchor": as_utc(anchor) if anchor is not None else None,
            "now": _utc_now(),
        }
        async with self._engine.begin() as conn:
            await conn.execute(_UPSERT_SUBSCRIPTION, params)
        logger.debug("subscription_saved", org_id=subscription.org_id)



class InMemorySubscriptionRepository:
    """In-memory fallback for dev/testing without a database."""

    def __init__(self) -> None:
        self._subscriptions: dict[str, WorkspaceSubscription] = {}

    async def get(self, org_id: str) -> WorkspaceSubscription | None:
        return self._subscriptions.get(org_id)

    async def save(self, subscription: WorkspaceSubscription) -> None:
        self._subscriptions[subscription.org_id] = subscription
