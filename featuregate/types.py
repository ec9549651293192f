"""Enums and type aliases for featuregate."""

from enum import StrEnum


class SubscriptionStatus(StrEnum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class DenialReason(StrEnum):
    FEATURE_UNDEFINED = "feature-undefined"
    NOT_GRANTED = "not-granted"
    ALLOWANCE_EXCEEDED = "allowance-exceeded"
    SYSTEM_ERROR = "system-error"


class GrantSource(StrEnum):
    PLAN = "plan"
    ADDON = "addon"


class GateWarning(StrEnum):
    GRACE_PERIOD = "grace-period"
