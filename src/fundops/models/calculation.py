"""Calculation inputs and outputs.

Contribution is the input event; FeeLine is the monetary output of one
(contribution, rule) pair. EvaluationResult wraps every rule attempt,
including the ones that did not produce a line, so a run can be replayed
and audited rule by rule.

FeeLine amounts are signed: discounts and credit netting are negative.

VAT semantics:
    included: total = gross, net = gross / (1 + r), vat = gross - net
    added:    net = gross, vat = gross * r, total = gross + vat
    exempt:   net = gross, vat = 0, total = gross
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Mapping, Optional

from fundops.models.credit import CreditApplication
from fundops.models.party import Scope, VatMode
from fundops.models.rules import CalculationBasis, RuleSet


@dataclass(frozen=True)
class Contribution:
    """An investor contribution or distribution event.

    ``parties`` maps a party role-tag to the introducing party's name.
    Immutable once referenced by an approved run.
    """
    contribution_id: str
    investor_id: str
    amount: Decimal
    contribution_date: date
    fund_id: Optional[str] = None
    deal_id: Optional[str] = None
    currency: str = "USD"
    parties: dict[str, str] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def scope(self) -> Scope:
        return Scope.DEAL if self.deal_id else Scope.FUND

    def hash_input(self) -> dict[str, Any]:
        """Fields that feed the run integrity hash."""
        return {
            "contribution_id": self.contribution_id,
            "investor_id": self.investor_id,
            "amount": self.amount,
            "contribution_date": self.contribution_date,
            "fund_id": self.fund_id,
            "deal_id": self.deal_id,
            "currency": self.currency,
            "parties": self.parties,
            "metadata": self.metadata,
        }


@dataclass(frozen=True)
class HistoricalAggregates:
    """Volume figures for an investor as of the evaluation date.

    Any of them may be unknown (None); a rule whose basis needs a
    missing figure fails with a validation error.
    """
    cumulative_amount: Optional[Decimal] = None
    monthly_volume: Optional[Decimal] = None
    quarterly_volume: Optional[Decimal] = None
    annual_volume: Optional[Decimal] = None
    deal_count: Optional[int] = None

    def basis_value(self, basis: CalculationBasis) -> Optional[Decimal]:
        return {
            CalculationBasis.CUMULATIVE_AMOUNT: self.cumulative_amount,
            CalculationBasis.MONTHLY_VOLUME: self.monthly_volume,
            CalculationBasis.QUARTERLY_VOLUME: self.quarterly_volume,
            CalculationBasis.ANNUAL_VOLUME: self.annual_volume,
        }.get(basis)


@dataclass(frozen=True)
class CalculationSettings:
    """Rounding and tie-break settings. Part of the run integrity hash."""
    payable_places: int = 2
    calc_places: int = 6
    rounding: str = "ROUND_HALF_EVEN"
    tie_break: str = "rule_id"

    def as_dict(self) -> dict[str, Any]:
        return {
            "payable_places": self.payable_places,
            "calc_places": self.calc_places,
            "rounding": self.rounding,
            "tie_break": self.tie_break,
        }


@dataclass(frozen=True)
class CalculationContext:
    """Everything a rule may read besides the contribution itself.

    ``aggregates`` is keyed by investor_id. ``target_prefix`` namespaces
    credit applications made by credit-netting rules (a run id in
    practice) so they can be reversed together.
    """
    ruleset: RuleSet
    aggregates: Mapping[str, HistoricalAggregates] = field(default_factory=dict)
    settings: CalculationSettings = field(default_factory=CalculationSettings)
    target_prefix: str = "preview"

    def aggregates_for(self, investor_id: str) -> Optional[HistoricalAggregates]:
        return self.aggregates.get(investor_id)


@dataclass(frozen=True)
class VatSnapshot:
    """VAT terms frozen onto a fee line when its run is approved."""
    country: Optional[str]
    rate: Decimal
    mode: VatMode
    effective_from: Optional[date] = None


@dataclass(frozen=True)
class FeeLine:
    """Monetary result of applying one rule to one contribution."""
    line_id: str
    contribution_id: str
    investor_id: str
    rule_id: str
    rule_version: int
    rule_checksum: str
    method: str
    base_amount: Decimal
    fee_gross: Decimal
    vat_amount: Decimal
    fee_net: Decimal
    total_payable: Decimal
    currency: str = "USD"
    scope: Scope = Scope.FUND
    fund_id: Optional[str] = None
    deal_id: Optional[str] = None
    applied_rate: Optional[Decimal] = None
    tier_order: Optional[int] = None
    credit_applications: tuple[CreditApplication, ...] = ()
    vat_snapshot: Optional[VatSnapshot] = None
    notes: str = ""


class EvaluationOutcome(str, enum.Enum):
    SUCCESS = "success"
    NOT_APPLICABLE = "not_applicable"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass(frozen=True)
class EvaluationResult:
    """Outcome of one rule against one contribution. All outcomes are kept."""
    contribution_id: str
    rule_id: str
    outcome: EvaluationOutcome
    line: Optional[FeeLine] = None
    reason: str = ""
    error_code: Optional[str] = None
