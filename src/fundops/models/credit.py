"""Credit models — credits and the immutable events that move their balance.

A credit's remaining balance is never stored as mutable state. It is
derived from its original amount minus applications plus reversals:

    remaining = original - Σ applied + Σ restored

Invariant: 0 ≤ remaining ≤ original at every point of the event stream.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from fundops.errors import InsufficientCredits
from fundops.models.party import Scope


class CreditType(str, enum.Enum):
    REPURCHASE = "repurchase"
    EQUALISATION = "equalisation"


class CreditStatus(str, enum.Enum):
    """Derived status of a credit, computed from its balance."""
    AVAILABLE = "available"
    PARTIALLY_APPLIED = "partially_applied"
    FULLY_APPLIED = "fully_applied"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Credit:
    """An investor credit that can net fees.

    FUND-scoped credits net any line of their fund. DEAL-scoped credits
    only net DEAL lines of the same deal.
    """
    credit_id: str
    investor_id: str
    credit_type: CreditType
    scope: Scope
    currency: str
    original_amount: Decimal
    created_at: datetime
    fund_id: Optional[str] = None
    deal_id: Optional[str] = None
    cancelled: bool = False

    @property
    def scope_ref(self) -> str:
        return (self.deal_id if self.scope == Scope.DEAL else self.fund_id) or ""

    @property
    def scope_key(self) -> tuple[str, str, str, str]:
        """Serialization key: (investor, scope, scope ref, currency)."""
        return (self.investor_id, self.scope.value, self.scope_ref, self.currency)


@dataclass(frozen=True)
class CreditApplication:
    """One credit consumed against one target (charge or run line)."""
    application_id: str
    credit_id: str
    target_id: str
    amount_applied: Decimal
    balance_after: Decimal
    applied_at: datetime
    sequence: int


@dataclass(frozen=True)
class CreditReversal:
    """Undo of one application; restores exactly the applied amount."""
    reversal_id: str
    application_id: str
    credit_id: str
    target_id: str
    amount_restored: Decimal
    balance_after: Decimal
    reversed_at: datetime
    reason: str = ""


@dataclass(frozen=True)
class NettingResult:
    """Outcome of netting credits against a target amount.

    ``insufficient`` is informational: a positive residual is a normal
    partial netting, not an error.
    """
    target_id: str
    requested: Decimal
    applications: tuple[CreditApplication, ...]
    residual: Decimal

    @property
    def applied(self) -> Decimal:
        return sum((a.amount_applied for a in self.applications), Decimal("0"))

    @property
    def insufficient(self) -> bool:
        return self.residual > 0

    def shortfall(self) -> Optional[InsufficientCredits]:
        """The non-fatal notice for a partial netting, or None when fully covered."""
        if not self.insufficient:
            return None
        return InsufficientCredits(
            f"Credits covered {self.applied} of {self.requested}; {self.residual} remains payable",
            self.residual,
        )
