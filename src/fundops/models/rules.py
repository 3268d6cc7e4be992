"""Commission rule models.

A CommissionRule is a tagged variant: ``variant`` selects the pure
calculation function, the remaining fields are the parameters that
variant reads. Rules are frozen. Every edit goes through
``with_changes()``, which bumps the version and recomputes the content
checksum, so identical field sets always carry identical checksums.

Tier ladders must partition [0, ∞): ascending min_threshold starting at
zero, each tier's max equal to the next tier's min, open top tier.
"""

from __future__ import annotations

import dataclasses
import enum
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Optional

from fundops.crypto.canonical import content_hash, to_canonical
from fundops.errors import ValidationError
from fundops.models.party import PartyRole, Scope, VatMode


class RuleVariant(str, enum.Enum):
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"
    TIERED = "tiered"
    HYBRID = "hybrid"
    CONDITIONAL = "conditional"
    MANAGEMENT_FEE = "management_fee"
    PROMOTE_SHARE = "promote_share"
    CREDIT_NETTING = "credit_netting"
    DISCOUNT = "discount"
    SUB_AGENT_SPLIT = "sub_agent_split"


class CalculationBasis(str, enum.Enum):
    """Which amount the rule's rate is applied to."""
    DISTRIBUTION_AMOUNT = "distribution_amount"
    CUMULATIVE_AMOUNT = "cumulative_amount"
    MONTHLY_VOLUME = "monthly_volume"
    QUARTERLY_VOLUME = "quarterly_volume"
    ANNUAL_VOLUME = "annual_volume"


class ConditionOperator(str, enum.Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_EQUAL = "greater_equal"
    LESS_EQUAL = "less_equal"
    BETWEEN = "between"
    IN = "in"
    NOT_IN = "not_in"


@dataclass(frozen=True)
class RuleCondition:
    """A single predicate over contribution or aggregate fields.

    Conditions sharing a ``group`` are ANDed; groups are ORed.
    Only required conditions gate their group.
    """
    field_name: str
    operator: ConditionOperator
    value: Any
    value2: Any = None
    group: int = 0
    is_required: bool = True


@dataclass(frozen=True)
class RuleTier:
    """One rung of a tier ladder. ``max_threshold=None`` is the open top."""
    tier_order: int
    min_threshold: Decimal
    max_threshold: Optional[Decimal] = None
    rate: Optional[Decimal] = None
    fixed_amount: Optional[Decimal] = None


# Variants that need a particular parameter to be meaningful.
_REQUIRES_RATE = frozenset({
    RuleVariant.PERCENTAGE,
    RuleVariant.MANAGEMENT_FEE,
    RuleVariant.PROMOTE_SHARE,
    RuleVariant.SUB_AGENT_SPLIT,
})


@dataclass(frozen=True)
class CommissionRule:
    """A versioned, checksummed commission rule.

    Usage:
        rule = CommissionRule(
            rule_id="r-dist-1",
            name="Distributor 1.5%",
            variant=RuleVariant.PERCENTAGE,
            rate=Decimal("0.015"),
            effective_from=date(2025, 1, 1),
        )
        edited = rule.with_changes(rate=Decimal("0.02"))
        assert edited.version == rule.version + 1
        assert edited.checksum != rule.checksum
    """
    rule_id: str
    name: str
    variant: RuleVariant
    effective_from: date
    effective_to: Optional[date] = None
    priority: int = 100
    combinable: bool = False
    is_active: bool = True
    rate: Optional[Decimal] = None
    fixed_amount: Optional[Decimal] = None
    threshold: Optional[Decimal] = None
    tiers: tuple[RuleTier, ...] = ()
    conditions: tuple[RuleCondition, ...] = ()
    basis: CalculationBasis = CalculationBasis.DISTRIBUTION_AMOUNT
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    parent_rule_id: Optional[str] = None
    scope: Optional[Scope] = None
    fund_id: Optional[str] = None
    deal_id: Optional[str] = None
    party_role: Optional[PartyRole] = None
    party_name: Optional[str] = None
    vat_mode: VatMode = VatMode.EXEMPT
    vat_country: Optional[str] = None
    version: int = 1
    checksum: str = field(default="", compare=False)

    def __post_init__(self) -> None:
        errors = self.validate()
        if errors:
            raise ValidationError(
                f"Invalid rule {self.rule_id}: {'; '.join(errors)}",
                {"errors": errors},
            )
        object.__setattr__(self, "checksum", self.compute_checksum())

    def validate(self) -> list[str]:
        # Ladder shape is checked by rules.tiers.validate_ladder
        from fundops.rules.tiers import validate_ladder

        errors: list[str] = []
        if not self.rule_id:
            errors.append("rule_id is required")
        if self.effective_to is not None and self.effective_to < self.effective_from:
            errors.append("effective_to precedes effective_from")
        if self.variant in _REQUIRES_RATE and self.rate is None:
            errors.append(f"{self.variant.value} requires rate")
        if self.variant == RuleVariant.FIXED_AMOUNT and self.fixed_amount is None:
            errors.append("fixed_amount requires fixed_amount")
        if self.variant == RuleVariant.HYBRID:
            if self.fixed_amount is None or self.rate is None or self.threshold is None:
                errors.append("hybrid requires fixed_amount, rate and threshold")
        if self.variant == RuleVariant.TIERED:
            if not self.tiers:
                errors.append("tiered requires at least one tier")
            else:
                errors.extend(validate_ladder(self.tiers))
        if self.variant == RuleVariant.CONDITIONAL:
            if not self.conditions:
                errors.append("conditional requires at least one condition")
            if self.rate is None and self.fixed_amount is None:
                errors.append("conditional requires rate or fixed_amount")
        if self.variant == RuleVariant.DISCOUNT and self.rate is None and self.fixed_amount is None:
            errors.append("discount requires rate or fixed_amount")
        if self.variant == RuleVariant.SUB_AGENT_SPLIT and not self.parent_rule_id:
            errors.append("sub_agent_split requires parent_rule_id")
        if self.parent_rule_id == self.rule_id and self.rule_id:
            errors.append("rule cannot reference itself")
        if self.rate is not None and self.rate < 0:
            errors.append("rate must be non-negative")
        if self.fixed_amount is not None and self.fixed_amount < 0:
            errors.append("fixed_amount must be non-negative")
        if (
            self.min_amount is not None
            and self.max_amount is not None
            and self.min_amount > self.max_amount
        ):
            errors.append("min_amount exceeds max_amount")
        if self.scope == Scope.DEAL and not self.deal_id:
            errors.append("DEAL-scoped rules require deal_id")
        if self.vat_mode != VatMode.EXEMPT and not self.vat_country:
            errors.append("vat_country is required unless vat_mode is exempt")
        return errors

    def compute_checksum(self) -> str:
        """Content checksum over every field except the checksum itself."""
        payload = {
            f.name: getattr(self, f.name)
            for f in dataclasses.fields(self)
            if f.name != "checksum"
        }
        return content_hash(payload)

    def is_effective(self, on: date) -> bool:
        if not self.is_active or on < self.effective_from:
            return False
        return self.effective_to is None or on <= self.effective_to

    def with_changes(self, **changes: Any) -> CommissionRule:
        """Return an edited copy with version + 1 and a fresh checksum."""
        changes.pop("checksum", None)
        changes.setdefault("version", self.version + 1)
        return dataclasses.replace(self, **changes)

    def snapshot(self) -> dict[str, Any]:
        """Canonical field dump, stored on runs for replay."""
        return to_canonical(self)


@dataclass(frozen=True)
class RuleSet:
    """An ordered collection of rules under one version label."""
    version: str
    rules: tuple[CommissionRule, ...] = ()

    def __post_init__(self) -> None:
        ids = [r.rule_id for r in self.rules]
        dupes = sorted({i for i in ids if ids.count(i) > 1})
        if dupes:
            raise ValidationError(f"Duplicate rule ids in ruleset: {', '.join(dupes)}")

    @property
    def checksum(self) -> str:
        return content_hash({
            "version": self.version,
            "rules": sorted(r.checksum for r in self.rules),
        })

    def get(self, rule_id: str) -> Optional[CommissionRule]:
        for rule in self.rules:
            if rule.rule_id == rule_id:
                return rule
        return None

    def ordered(self) -> list[CommissionRule]:
        """Rules in evaluation order: priority ascending, then rule_id."""
        return sorted(self.rules, key=lambda r: (r.priority, r.rule_id))
