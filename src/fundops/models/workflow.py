"""Workflow models — runs, charges and approval steps.

Run state machine:
    DRAFT → REVIEWED → APPROVED → EXPORTED
    DRAFT | REVIEWED | APPROVED → FAILED

Charge state machine:
    DRAFT → PENDING → APPROVED → PAID
    PENDING → REJECTED → DRAFT   (re-open for correction)

Both records are mutable only through ``transition_to``. Once a run is
approved its lines, inputs and VAT snapshots are frozen; only status
moves after that.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from fundops.errors import InvalidTransition
from fundops.models.calculation import (
    Contribution,
    EvaluationResult,
    FeeLine,
    HistoricalAggregates,
    VatSnapshot,
)
from fundops.models.party import Scope

ZERO = Decimal("0")


class RunStatus(str, enum.Enum):
    DRAFT = "draft"
    REVIEWED = "reviewed"
    APPROVED = "approved"
    EXPORTED = "exported"
    FAILED = "failed"


RUN_TRANSITIONS: Dict[RunStatus, frozenset] = {
    RunStatus.DRAFT: frozenset({RunStatus.REVIEWED, RunStatus.FAILED}),
    RunStatus.REVIEWED: frozenset({RunStatus.APPROVED, RunStatus.FAILED}),
    RunStatus.APPROVED: frozenset({RunStatus.EXPORTED, RunStatus.FAILED}),
    RunStatus.EXPORTED: frozenset(),
    RunStatus.FAILED: frozenset(),
}


class ChargeStatus(str, enum.Enum):
    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    PAID = "paid"
    REJECTED = "rejected"


CHARGE_TRANSITIONS: Dict[ChargeStatus, frozenset] = {
    ChargeStatus.DRAFT: frozenset({ChargeStatus.PENDING}),
    ChargeStatus.PENDING: frozenset({ChargeStatus.APPROVED, ChargeStatus.REJECTED}),
    ChargeStatus.APPROVED: frozenset({ChargeStatus.PAID}),
    ChargeStatus.PAID: frozenset(),
    ChargeStatus.REJECTED: frozenset({ChargeStatus.DRAFT}),
}


class StepStatus(str, enum.Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass(frozen=True)
class ApprovalStep:
    """One completed approval stage. Append-only."""
    entity_id: str
    step_name: str
    approver_role: str
    status: StepStatus
    actor_id: str
    timestamp_utc: datetime
    comment: str = ""


@dataclass(frozen=True)
class RunTotals:
    """Signed totals over a run's fee lines."""
    base: Decimal = ZERO
    gross: Decimal = ZERO
    vat: Decimal = ZERO
    net: Decimal = ZERO
    total_payable: Decimal = ZERO
    credits_applied: Decimal = ZERO
    line_count: int = 0


@dataclass
class Run:
    """A computed batch of fee lines for one period."""
    run_id: str
    period_start: date
    period_end: date
    ruleset_version: str
    ruleset_checksum: str
    run_hash: str
    inputs: list[Contribution] = field(default_factory=list)
    lines: list[FeeLine] = field(default_factory=list)
    results: list[EvaluationResult] = field(default_factory=list)
    rule_snapshots: dict[str, dict[str, Any]] = field(default_factory=dict)
    settings: dict[str, Any] = field(default_factory=dict)
    aggregates: dict[str, HistoricalAggregates] = field(default_factory=dict)
    totals: RunTotals = field(default_factory=RunTotals)
    scope_breakdown: dict[str, RunTotals] = field(default_factory=dict)
    status: RunStatus = RunStatus.DRAFT
    created_by: str = ""
    created_utc: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    approved_by: Optional[str] = None
    frozen_utc: Optional[datetime] = None
    exported_utc: Optional[datetime] = None
    failure_reason: str = ""
    supersedes: Optional[str] = None
    steps: list[ApprovalStep] = field(default_factory=list)

    @property
    def is_frozen(self) -> bool:
        return self.status in (RunStatus.APPROVED, RunStatus.EXPORTED)

    def transition_to(self, new_status: RunStatus) -> None:
        """Transition to a new status, validating the transition is legal."""
        allowed = RUN_TRANSITIONS.get(self.status, frozenset())
        if new_status not in allowed:
            raise InvalidTransition(
                f"Invalid run transition: {self.status.value} → {new_status.value}. "
                f"Allowed: {', '.join(sorted(s.value for s in allowed))}"
            )
        self.status = new_status


@dataclass
class Charge:
    """A single fee obligation with its own approval workflow.

    Amounts:
        total_amount = base fee - discounts + VAT (capped)
        net_amount = total_amount - credits_applied
    """
    charge_id: str
    contribution_id: str
    investor_id: str
    agreement_id: str
    party_id: str
    scope: Scope
    currency: str
    base_amount: Decimal
    discount_amount: Decimal
    vat_amount: Decimal
    total_amount: Decimal
    fund_id: Optional[str] = None
    deal_id: Optional[str] = None
    credits_applied: Decimal = ZERO
    net_amount: Optional[Decimal] = None
    vat_snapshot: Optional[VatSnapshot] = None
    terms_snapshot: dict[str, Any] = field(default_factory=dict)
    status: ChargeStatus = ChargeStatus.DRAFT
    application_ids: list[str] = field(default_factory=list)
    reject_reason: str = ""
    created_utc: Optional[datetime] = None
    submitted_utc: Optional[datetime] = None
    approved_utc: Optional[datetime] = None
    rejected_utc: Optional[datetime] = None
    paid_utc: Optional[datetime] = None
    submitted_by: Optional[str] = None
    approved_by: Optional[str] = None
    rejected_by: Optional[str] = None
    paid_by: Optional[str] = None
    steps: list[ApprovalStep] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.net_amount is None:
            self.net_amount = self.total_amount - self.credits_applied

    def transition_to(self, new_status: ChargeStatus) -> None:
        """Transition to a new status, validating the transition is legal."""
        allowed = CHARGE_TRANSITIONS.get(self.status, frozenset())
        if new_status not in allowed:
            raise InvalidTransition(
                f"Invalid charge transition: {self.status.value} → {new_status.value}. "
                f"Allowed: {', '.join(sorted(s.value for s in allowed))}"
            )
        self.status = new_status
