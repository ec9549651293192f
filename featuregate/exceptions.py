"""Exception hierarchy for featuregate."""


class FeatureGateError(Exception):
    """Base exception for all featuregate errors."""


class CatalogUnavailable(FeatureGateError):
    """Raised when the pricing catalog is unreachable or malformed."""


class UnknownPlan(FeatureGateError):
    """Raised by ``PlanCatalog.require_plan`` for a plan id absent from the catalog.

    The evaluator catches it and substitutes the fallback plan; the catalog
    API maps it to 404.
    """


class FeatureUndefined(FeatureGateError):
    """A feature key with no grant in any plan or add-on.

    Never raised to callers: the evaluator denies the check and logs this
    name as the ``error_type`` of its configuration warning.
    """


class GateSystemError(FeatureGateError):
    """Raised by ``FeatureGuard.check`` when an evaluation fails internally.

    ``FeatureGuard.require`` converts it to a ``system-error`` denial.
    """


class StorageError(FeatureGateError):
    """Raised when storage operations fail."""


class ConfigError(FeatureGateError, ValueError):
    """Raised when configuration is invalid."""
