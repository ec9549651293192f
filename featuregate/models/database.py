"""SQLModel database table models."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel


def _utc_now() -> datetime:
    """Return current UTC time as an aware datetime for TIMESTAMP WITH TIME ZONE columns."""
    return datetime.now(UTC)


def _new_uuid() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Billing models
# ---------------------------------------------------------------------------


class Subscription(SQLModel, table=True):
    __tablename__ = "subscriptions"

    id: str = Field(default_factory=_new_uuid, primary_key=True)
    org_id: str = Field(unique=True, index=True)
    plan: str = Field(default="starter")
    status: str = Field(default="active")  # trialing | active | past_due | canceled
    addons_json: str = Field(default="[]")
    grace_period_end: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    period_anchor: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    stripe_customer_id: str | None = None
    stripe_subscription_id: str | None = None
    created_at: datetime = Field(default_factory=_utc_now, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=_utc_now, sa_type=DateTime(timezone=True))


class UsageCounter(SQLModel, table=True):
    __tablename__ = "usage_counters"
    __table_args__ = (
        # Target of the ON CONFLICT upsert
        UniqueConstraint("org_id", "feature", "period_start", name="uq_usage_counters_key"),
    )

    id: int | None = Field(default=None, primary_key=True)
    org_id: str = Field(index=True)
    feature: str = Field(index=True)
    period_start: str  # YYYY-MM-DD
    count: int = Field(default=0)
    allowance: int | None = None  # copied from the grant when the period's row is created
    created_at: datetime = Field(default_factory=_utc_now, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=_utc_now, sa_type=DateTime(timezone=True))


class UsageAction(SQLModel, table=True):
    __tablename__ = "usage_actions"
    __table_args__ = (
        UniqueConstraint("org_id", "feature", "token", name="uq_usage_actions_token"),
    )

    id: int | None = Field(default=None, primary_key=True)
    org_id: str = Field(index=True)
    feature: str
    token: str
    created_at: datetime = Field(default_factory=_utc_now, sa_type=DateTime(timezone=True))
