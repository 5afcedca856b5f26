# [Core: Dispatch Gateway]
"""
Error kinds raised by the dispatch gateway and the worker pipeline.

Every error carries a stable ``code`` that is written to the usage log, so
failures can be aggregated without parsing messages.
"""
from __future__ import annotations

from typing import List, Optional


class GatewayError(Exception):
    """Base class for failures of one logical dispatched call."""
    code = "GATEWAY_ERROR"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


class FeatureDisabled(GatewayError):
    code = "FEATURE_DISABLED"


class InsufficientBalance(GatewayError):
    code = "INSUFFICIENT_BALANCE"

    def __init__(self, message: str = "", amount: float = 0.0):
        super().__init__(message)
        self.amount = amount


class RateLimited(GatewayError):
    """A single attempt hit HTTP 429. Internal to the retry loop."""
    code = "RATE_LIMITED"

    def __init__(self, message: str = "", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class RateLimitExhausted(GatewayError):
    code = "RATE_LIMIT_EXHAUSTED"


class TransientNetworkError(GatewayError):
    code = "TRANSIENT_NETWORK_ERROR"


class UpstreamError(GatewayError):
    """Non-retryable rejection from the provider (bad request, auth, ...)."""
    code = "UPSTREAM_ERROR"

    def __init__(self, message: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class CostRunaway(GatewayError):
    code = "COST_RUNAWAY"

    def __init__(self, message: str = "", reserved: float = 0.0, actual: float = 0.0):
        super().__init__(message)
        self.reserved = reserved
        self.actual = actual


# ──────────────────────────────────────────────
# Worker pipeline errors
# ──────────────────────────────────────────────

class UnparsableResponse(ValueError):
    code = "UNPARSABLE_RESPONSE"


class ValidationFailed(ValueError):
    """Raised only when strict validation was requested."""
    code = "VALIDATION_FAILED"

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or []


class ExtractionFailed(RuntimeError):
    """Every routed worker failed; nothing to report."""
    code = "EXTRACTION_FAILED"

    def __init__(self, message: str, failures: Optional[list] = None):
        super().__init__(message)
        self.failures = failures or []
