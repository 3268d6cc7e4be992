"""Parties and agreements.

Agreement invariants:
- FUND-scoped agreements must use TRACK pricing.
- TRACK pricing requires a selected track (A, B or C).
- CUSTOM pricing requires a custom rate.
- An approved agreement is immutable. Changes go through ``amend()``,
  which supersedes the approved version and returns a new draft.

State machine:
    DRAFT → ACTIVE → APPROVED → SUPERSEDED
"""

from __future__ import annotations

import dataclasses
import enum
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Optional

from fundops.errors import InvalidTransition, ValidationError


class PartyRole(str, enum.Enum):
    """Role-tag of an introducing party."""
    DISTRIBUTOR = "distributor"
    REFERRER = "referrer"
    PARTNER = "partner"


class Scope(str, enum.Enum):
    FUND = "FUND"
    DEAL = "DEAL"


class PricingMode(str, enum.Enum):
    TRACK = "TRACK"
    CUSTOM = "CUSTOM"


class Track(str, enum.Enum):
    A = "A"
    B = "B"
    C = "C"


class VatMode(str, enum.Enum):
    """How VAT relates to a computed fee.

    INCLUDED: the fee already contains VAT; it is backed out.
    ADDED: VAT is charged on top of the fee.
    EXEMPT: no VAT, no rate lookup.
    """
    INCLUDED = "included"
    ADDED = "added"
    EXEMPT = "exempt"


class AgreementStatus(str, enum.Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    APPROVED = "approved"
    SUPERSEDED = "superseded"


AGREEMENT_TRANSITIONS: Dict[AgreementStatus, frozenset] = {
    AgreementStatus.DRAFT: frozenset({AgreementStatus.ACTIVE}),
    AgreementStatus.ACTIVE: frozenset({AgreementStatus.APPROVED, AgreementStatus.DRAFT}),
    AgreementStatus.APPROVED: frozenset({AgreementStatus.SUPERSEDED}),
    AgreementStatus.SUPERSEDED: frozenset(),
}


@dataclass(frozen=True)
class Party:
    """An introducing party (distributor, referrer or partner).

    Parties are deactivated, never deleted, while anything references them.
    """
    party_id: str
    name: str
    role: PartyRole
    active: bool = True


@dataclass(frozen=True)
class Agreement:
    """Commercial terms between the fund and an introducing party.

    Frozen: status changes and amendments return new instances, so an
    approved agreement object can never be edited in place.

    Rates are fractions (``Decimal("0.015")`` is 1.5%).
    """
    agreement_id: str
    party_id: str
    scope: Scope
    pricing_mode: PricingMode
    fund_id: Optional[str] = None
    deal_id: Optional[str] = None
    selected_track: Optional[Track] = None
    custom_rate: Optional[Decimal] = None
    discount_rates: tuple[Decimal, ...] = ()
    cap_amount: Optional[Decimal] = None
    vat_mode: VatMode = VatMode.ADDED
    vat_country: str = "GB"
    effective_from: Optional[date] = None
    effective_to: Optional[date] = None
    status: AgreementStatus = AgreementStatus.DRAFT
    version: int = 1
    supersedes: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        errors = self.validate()
        if errors:
            raise ValidationError(
                f"Invalid agreement {self.agreement_id}: {'; '.join(errors)}",
                {"errors": errors},
            )

    def validate(self) -> list[str]:
        """Return a list of invariant violations. Empty means valid."""
        errors: list[str] = []
        if self.scope == Scope.FUND and self.pricing_mode != PricingMode.TRACK:
            errors.append("FUND-scoped agreements must use TRACK pricing")
        if self.scope == Scope.FUND and not self.fund_id:
            errors.append("FUND-scoped agreements require fund_id")
        if self.scope == Scope.DEAL and not self.deal_id:
            errors.append("DEAL-scoped agreements require deal_id")
        if self.pricing_mode == PricingMode.TRACK and self.selected_track is None:
            errors.append("TRACK pricing requires selected_track (A, B or C)")
        if self.pricing_mode == PricingMode.CUSTOM:
            if self.custom_rate is None:
                errors.append("CUSTOM pricing requires custom_rate")
            elif self.custom_rate < 0:
                errors.append("custom_rate must be non-negative")
        for rate in self.discount_rates:
            if rate < 0 or rate > 1:
                errors.append(f"discount rate out of range [0, 1]: {rate}")
        if self.cap_amount is not None and self.cap_amount < 0:
            errors.append("cap_amount must be non-negative")
        if (
            self.effective_from is not None
            and self.effective_to is not None
            and self.effective_to < self.effective_from
        ):
            errors.append("effective_to precedes effective_from")
        return errors

    @property
    def is_immutable(self) -> bool:
        return self.status in (AgreementStatus.APPROVED, AgreementStatus.SUPERSEDED)

    def covers(self, on: date) -> bool:
        if self.effective_from is not None and on < self.effective_from:
            return False
        if self.effective_to is not None and on > self.effective_to:
            return False
        return True

    def transition_to(self, new_status: AgreementStatus) -> Agreement:
        """Return a copy in ``new_status``, validating the transition is legal."""
        allowed = AGREEMENT_TRANSITIONS.get(self.status, frozenset())
        if new_status not in allowed:
            raise InvalidTransition(
                f"Invalid agreement transition: {self.status.value} → {new_status.value}. "
                f"Allowed: {', '.join(s.value for s in allowed)}"
            )
        return dataclasses.replace(self, status=new_status)

    def with_changes(self, **changes: Any) -> Agreement:
        """Edit a draft or active agreement. Approved agreements must be amended."""
        if self.is_immutable:
            raise ValidationError(
                f"Agreement {self.agreement_id} is {self.status.value}; use amend()"
            )
        return dataclasses.replace(self, **changes)

    def amend(self, new_agreement_id: str, **changes: Any) -> tuple[Agreement, Agreement]:
        """Supersede an approved agreement with a new draft version.

        Returns:
            (superseded original, new draft amendment)
        """
        if self.status != AgreementStatus.APPROVED:
            raise InvalidTransition(
                f"Only approved agreements can be amended (status={self.status.value})"
            )
        superseded = self.transition_to(AgreementStatus.SUPERSEDED)
        amendment = dataclasses.replace(
            self,
            agreement_id=new_agreement_id,
            status=AgreementStatus.DRAFT,
            version=self.version + 1,
            supersedes=self.agreement_id,
            **changes,
        )
        return superseded, amendment
