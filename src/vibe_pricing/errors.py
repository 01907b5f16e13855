"""
Error taxonomy for the dynamic pricing engine.

Adapters (cache tiers, rule store, product catalog) raise these; the engine
components catch them at their boundary and degrade to a cache miss, an empty
index or "no rule matched". Nothing here reaches a checkout caller.
"""
from typing import Any, Optional


class PricingError(Exception):
    """Base exception for the pricing engine."""

    code = "PRICING_ERROR"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        """Flatten for structured log events."""
        return {"code": self.code, "message": self.message, **self.details}


class InvalidInput(PricingError):
    """Bad product reference or non-positive price."""

    code = "INVALID_INPUT"


class MalformedRuleData(PricingError):
    """A rule blob that cannot be parsed."""

    code = "MALFORMED_RULE_DATA"


class ExpressionSyntaxError(MalformedRuleData):
    """A complex-condition expression that does not parse."""

    code = "EXPRESSION_SYNTAX"

    def __init__(self, message: str, position: int = -1, source: str = ""):
        self.position = position
        self.source = source
        super().__init__(message, {"position": position, "source": source[:100]})


class DependencyUnavailable(PricingError):
    """A collaborator (cache tier, store, catalog) failed."""

    code = "DEPENDENCY_UNAVAILABLE"


class CacheTierError(DependencyUnavailable):
    code = "CACHE_TIER_UNAVAILABLE"


class RuleStoreError(DependencyUnavailable):
    code = "RULE_STORE_UNAVAILABLE"


class CatalogError(DependencyUnavailable):
    code = "CATALOG_UNAVAILABLE"


class BatchLoadFailure(CatalogError):
    """Batch product load for a cart failed."""

    code = "BATCH_LOAD_FAILURE"
