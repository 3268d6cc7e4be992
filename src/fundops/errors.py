"""Error taxonomy for the commission and settlement engine.

Every error carries a stable ``code`` string. The service facade maps
these onto failed ServiceResults; pure engines simply raise them.

Codes:
    VALIDATION_ERROR     malformed input, violated model invariant
    NOT_APPLICABLE       rule skipped (conditions failed); not a failure
    RULE_CYCLE           sub-agent split references form a cycle
    NO_VAT_RATE          no rate covers the requested date
    INSUFFICIENT_CREDITS partial netting; carries the residual
    INVALID_TRANSITION   workflow transition not in the allowed map
    FORBIDDEN            role, self-approval, or feature-flag denial
    CONFLICT             concurrent or repeated request; carries current state
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional


class FundOpsError(Exception):
    """Base class for all engine errors."""

    code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(FundOpsError):
    code = "VALIDATION_ERROR"


class NotApplicable(FundOpsError):
    """Rule conditions did not match. Recorded as an outcome, never surfaced."""

    code = "NOT_APPLICABLE"


class RuleCycle(FundOpsError):
    code = "RULE_CYCLE"


class NoVatRate(FundOpsError):
    code = "NO_VAT_RATE"


class InsufficientCredits(FundOpsError):
    """Credits did not cover the target amount.

    Non-fatal: callers get the residual and continue.
    """

    code = "INSUFFICIENT_CREDITS"

    def __init__(self, message: str, residual: Decimal) -> None:
        super().__init__(message, {"residual": str(residual)})
        self.residual = residual


class InvalidTransition(FundOpsError):
    code = "INVALID_TRANSITION"


class Forbidden(FundOpsError):
    code = "FORBIDDEN"


class ConflictIdempotent(FundOpsError):
    """The requested transition is already satisfied.

    Treated as success by the service; ``current_state`` is what the caller sees.
    """

    code = "CONFLICT"

    def __init__(self, message: str, current_state: str) -> None:
        super().__init__(message, {"current_state": current_state})
        self.current_state = current_state


class NotFound(FundOpsError):
    code = "NOT_FOUND"
