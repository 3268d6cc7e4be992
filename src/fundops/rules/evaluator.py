"""Rule evaluator — turns a contribution into fee lines.

Each rule variant is a pure function of (rule, contribution, state)
registered in ``VARIANT_HANDLERS`` by its tag. The evaluator walks the
ruleset in (priority, rule_id) order and records one EvaluationResult
per rule:

- NOT_APPLICABLE: not effective on the date, out of scope, party or
  conditions did not match
- SKIPPED: a non-combinable rule already produced a line
- ERROR: validation failure, missing aggregate, RuleCycle, NoVatRate
- SUCCESS: a FeeLine was produced

Combinable rules always apply. Among non-combinable rules the first
applicable one wins. An error in one rule never stops the others.

Rounding: intermediates at calc precision, line amounts at payable
precision, both half-even.
"""

from __future__ import annotations

import logging
from concurrent.futures import Executor
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Iterable, Optional

from fundops.credits.ledger import CreditLedger
from fundops.errors import FundOpsError, NotApplicable, RuleCycle, ValidationError
from fundops.models.calculation import (
    CalculationContext,
    Contribution,
    EvaluationOutcome,
    EvaluationResult,
    FeeLine,
    HistoricalAggregates,
    VatSnapshot,
)
from fundops.models.credit import CreditApplication
from fundops.models.money import round_calc, round_payable
from fundops.models.party import Scope, VatMode
from fundops.models.rules import CalculationBasis, CommissionRule, RuleVariant
from fundops.rules.conditions import conditions_pass
from fundops.rules.tiers import select_tier
from fundops.vat.resolver import VatResolver

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass(frozen=True)
class Computation:
    """Raw result of a variant function, before VAT and rounding to payable."""
    base: Decimal
    gross: Decimal
    method: str
    rate: Optional[Decimal] = None
    tier_order: Optional[int] = None
    credit_applications: tuple[CreditApplication, ...] = ()
    notes: str = ""


@dataclass
class _ContributionState:
    """Per-contribution scratch state shared by the variant functions."""
    contribution: Contribution
    context: CalculationContext
    evaluator: RuleEvaluator
    gross: dict[str, Decimal] = field(default_factory=dict)
    outcomes: dict[str, EvaluationOutcome] = field(default_factory=dict)
    error_codes: dict[str, str] = field(default_factory=dict)
    resolving: set[str] = field(default_factory=set)
    positive_gross: Decimal = ZERO
    payable: Decimal = ZERO

    @property
    def aggregates(self) -> Optional[HistoricalAggregates]:
        return self.context.aggregates_for(self.contribution.investor_id)

    def places(self) -> tuple[int, int]:
        s = self.context.settings
        return s.calc_places, s.payable_places


VariantHandler = Callable[[CommissionRule, Contribution, _ContributionState], Computation]


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------

def _basis_amount(rule: CommissionRule, contribution: Contribution, state: _ContributionState) -> Decimal:
    if rule.basis == CalculationBasis.DISTRIBUTION_AMOUNT:
        return contribution.amount
    aggregates = state.aggregates
    value = aggregates.basis_value(rule.basis) if aggregates is not None else None
    if value is None:
        raise ValidationError(
            f"Rule {rule.rule_id} needs {rule.basis.value} for investor "
            f"{contribution.investor_id}, but the context does not provide it",
            {"rule_id": rule.rule_id, "basis": rule.basis.value},
        )
    return value


def _apply_caps(rule: CommissionRule, amount: Decimal) -> tuple[Decimal, str]:
    if rule.max_amount is not None and amount > rule.max_amount:
        return rule.max_amount, f"capped at max {rule.max_amount}"
    if rule.min_amount is not None and amount < rule.min_amount:
        return rule.min_amount, f"raised to min {rule.min_amount}"
    return amount, ""


def _percentage_of(rule: CommissionRule, base: Decimal, state: _ContributionState, method: str) -> Computation:
    calc_places, _ = state.places()
    gross, note = _apply_caps(rule, round_calc(base * rule.rate, calc_places))
    return Computation(base=base, gross=gross, method=method, rate=rule.rate, notes=note)


# ----------------------------------------------------------------------
# Variant handlers
# ----------------------------------------------------------------------

def _percentage(rule: CommissionRule, contribution: Contribution, state: _ContributionState) -> Computation:
    return _percentage_of(rule, _basis_amount(rule, contribution, state), state, "percentage")


def _fixed_amount(rule: CommissionRule, contribution: Contribution, state: _ContributionState) -> Computation:
    gross, note = _apply_caps(rule, rule.fixed_amount)
    return Computation(base=contribution.amount, gross=gross, method="fixed_amount", notes=note)


def _tiered(rule: CommissionRule, contribution: Contribution, state: _ContributionState) -> Computation:
    calc_places, _ = state.places()
    base = _basis_amount(rule, contribution, state)
    tier = select_tier(rule.tiers, base)
    if tier.rate is not None:
        raw = round_calc(base * tier.rate, calc_places)
    else:
        raw = tier.fixed_amount
    gross, note = _apply_caps(rule, raw)
    return Computation(
        base=base,
        gross=gross,
        method="tiered",
        rate=tier.rate,
        tier_order=tier.tier_order,
        notes=note,
    )


def _hybrid(rule: CommissionRule, contribution: Contribution, state: _ContributionState) -> Computation:
    calc_places, _ = state.places()
    base = _basis_amount(rule, contribution, state)
    excess = max(ZERO, base - rule.threshold)
    raw = rule.fixed_amount + round_calc(excess * rule.rate, calc_places)
    gross, note = _apply_caps(rule, raw)
    return Computation(base=base, gross=gross, method="hybrid", rate=rule.rate, notes=note)


def _conditional(rule: CommissionRule, contribution: Contribution, state: _ContributionState) -> Computation:
    # Conditions were already checked by the evaluator; only pricing remains
    if rule.rate is not None:
        return _percentage_of(rule, _basis_amount(rule, contribution, state), state, "conditional")
    gross, note = _apply_caps(rule, rule.fixed_amount)
    return Computation(base=contribution.amount, gross=gross, method="conditional", notes=note)


def _management_fee(rule: CommissionRule, contribution: Contribution, state: _ContributionState) -> Computation:
    return _percentage_of(rule, _basis_amount(rule, contribution, state), state, "management_fee")


def _promote_share(rule: CommissionRule, contribution: Contribution, state: _ContributionState) -> Computation:
    return _percentage_of(rule, _basis_amount(rule, contribution, state), state, "promote_share")


def _discount(rule: CommissionRule, contribution: Contribution, state: _ContributionState) -> Computation:
    calc_places, _ = state.places()
    base = state.positive_gross
    if base <= ZERO:
        raise NotApplicable(f"Discount {rule.rule_id}: no prior fees to discount")
    if rule.rate is not None:
        amount = round_calc(base * rule.rate, calc_places)
    else:
        amount = min(rule.fixed_amount, base)
    return Computation(base=base, gross=-amount, method="discount", rate=rule.rate)


def _sub_agent_split(rule: CommissionRule, contribution: Contribution, state: _ContributionState) -> Computation:
    parent_gross = state.evaluator.parent_gross(rule, state)
    return _percentage_of(rule, parent_gross, state, "sub_agent_split")


def _credit_netting(rule: CommissionRule, contribution: Contribution, state: _ContributionState) -> Computation:
    ledger = state.evaluator.credit_ledger
    if ledger is None:
        raise ValidationError(f"Rule {rule.rule_id}: credit netting requires a credit ledger")
    target = max(ZERO, state.payable)
    if target <= ZERO:
        raise NotApplicable(f"Credit netting {rule.rule_id}: nothing payable to net")
    target_id = f"{state.context.target_prefix}:{contribution.contribution_id}"
    netting = ledger.apply_fifo if state.evaluator.commit_credits else ledger.plan_fifo
    result = netting(
        target_id,
        contribution.investor_id,
        contribution.currency,
        target,
        fund_id=contribution.fund_id,
        deal_id=contribution.deal_id,
    )
    if not result.applications:
        raise NotApplicable(f"Credit netting {rule.rule_id}: no applicable credits")
    note = f"residual {result.residual}" if result.insufficient else ""
    return Computation(
        base=target,
        gross=-result.applied,
        method="credit_netting",
        credit_applications=result.applications,
        notes=note,
    )


VARIANT_HANDLERS: dict[RuleVariant, VariantHandler] = {
    RuleVariant.PERCENTAGE: _percentage,
    RuleVariant.FIXED_AMOUNT: _fixed_amount,
    RuleVariant.TIERED: _tiered,
    RuleVariant.HYBRID: _hybrid,
    RuleVariant.CONDITIONAL: _conditional,
    RuleVariant.MANAGEMENT_FEE: _management_fee,
    RuleVariant.PROMOTE_SHARE: _promote_share,
    RuleVariant.CREDIT_NETTING: _credit_netting,
    RuleVariant.DISCOUNT: _discount,
    RuleVariant.SUB_AGENT_SPLIT: _sub_agent_split,
}


# ----------------------------------------------------------------------
# Evaluator
# ----------------------------------------------------------------------

class RuleEvaluator:
    """Evaluates a ruleset against contributions.

    Usage:
        evaluator = RuleEvaluator(vat_resolver=resolver, credit_ledger=ledger)
        results = evaluator.evaluate(contribution, context)
        lines = RuleEvaluator.fee_lines(results)

    With ``commit_credits=False`` (the default) credit-netting rules only
    plan against the ledger; nothing is consumed. The service evaluates
    with ``commit_credits=True`` inside a run so netting is applied under
    the ledger's scope locks.
    """

    def __init__(
        self,
        vat_resolver: Optional[VatResolver] = None,
        credit_ledger: Optional[CreditLedger] = None,
        commit_credits: bool = False,
    ) -> None:
        self._vat_resolver = vat_resolver
        self.credit_ledger = credit_ledger
        self.commit_credits = commit_credits

    # ------------------------------------------------------------------
    # Applicability
    # ------------------------------------------------------------------

    @staticmethod
    def applicability(rule: CommissionRule, contribution: Contribution, context: CalculationContext) -> str:
        """Return why a rule does not apply, or "" when it does."""
        if not rule.is_effective(contribution.contribution_date):
            return "not effective on contribution date"
        if rule.scope == Scope.DEAL and contribution.deal_id != rule.deal_id:
            return "deal scope mismatch"
        if rule.fund_id and contribution.fund_id != rule.fund_id:
            return "fund scope mismatch"
        if rule.party_role is not None:
            party = contribution.parties.get(rule.party_role.value)
            if not party:
                return f"no {rule.party_role.value} on contribution"
            if rule.party_name and party.casefold() != rule.party_name.casefold():
                return f"{rule.party_role.value} does not match"
        aggregates = context.aggregates_for(contribution.investor_id)
        if not conditions_pass(rule.conditions, contribution, aggregates):
            return "conditions not met"
        return ""

    def parent_gross(self, rule: CommissionRule, state: _ContributionState) -> Decimal:
        """Gross of the rule a sub-agent split references, with cycle detection."""
        parent_id = rule.parent_rule_id
        if parent_id in state.resolving:
            raise RuleCycle(
                f"Circular sub-agent reference: {rule.rule_id} → {parent_id}",
                {"rule_id": rule.rule_id, "parent_rule_id": parent_id},
            )
        if parent_id in state.gross:
            return state.gross[parent_id]

        outcome = state.outcomes.get(parent_id)
        if outcome == EvaluationOutcome.ERROR:
            if state.error_codes.get(parent_id) == RuleCycle.code:
                raise RuleCycle(
                    f"Parent rule {parent_id} of {rule.rule_id} is in a sub-agent cycle",
                    {"rule_id": rule.rule_id, "parent_rule_id": parent_id},
                )
            raise ValidationError(f"Parent rule {parent_id} of {rule.rule_id} failed")
        if outcome is not None:
            raise NotApplicable(f"Parent rule {parent_id} produced no fee")

        parent = state.context.ruleset.get(parent_id)
        if parent is None:
            raise ValidationError(f"Rule {rule.rule_id} references unknown rule {parent_id}")
        reason = self.applicability(parent, state.contribution, state.context)
        if reason:
            raise NotApplicable(f"Parent rule {parent_id}: {reason}")
        return self._compute(parent, state).gross

    def _compute(self, rule: CommissionRule, state: _ContributionState) -> Computation:
        state.resolving.add(rule.rule_id)
        try:
            return VARIANT_HANDLERS[rule.variant](rule, state.contribution, state)
        finally:
            state.resolving.discard(rule.rule_id)

    # ------------------------------------------------------------------
    # Line building
    # ------------------------------------------------------------------

    def _vat_snapshot(self, rule: CommissionRule, contribution: Contribution) -> VatSnapshot:
        if rule.vat_mode == VatMode.EXEMPT:
            return VatSnapshot(country=rule.vat_country, rate=ZERO, mode=VatMode.EXEMPT)
        if self._vat_resolver is None:
            raise ValidationError(f"Rule {rule.rule_id} needs VAT but no resolver is configured")
        return self._vat_resolver.snapshot(
            rule.vat_country, contribution.contribution_date, rule.vat_mode,
        )

    def _build_line(
        self,
        rule: CommissionRule,
        contribution: Contribution,
        comp: Computation,
        state: _ContributionState,
    ) -> FeeLine:
        _, payable_places = state.places()
        gross = round_payable(comp.gross, payable_places)
        if comp.method == "credit_netting":
            snapshot = VatSnapshot(country=None, rate=ZERO, mode=VatMode.EXEMPT)
        else:
            snapshot = self._vat_snapshot(rule, contribution)
        if self._vat_resolver is not None:
            breakdown = self._vat_resolver.apply(gross, snapshot, payable_places)
            net, vat, total = breakdown.net, breakdown.vat, breakdown.total
        else:
            net, vat, total = gross, ZERO, gross
        return FeeLine(
            line_id=f"fl_{contribution.contribution_id}_{rule.rule_id}",
            contribution_id=contribution.contribution_id,
            investor_id=contribution.investor_id,
            rule_id=rule.rule_id,
            rule_version=rule.version,
            rule_checksum=rule.checksum,
            method=comp.method,
            base_amount=comp.base,
            fee_gross=gross,
            vat_amount=vat,
            fee_net=net,
            total_payable=total,
            currency=contribution.currency,
            scope=contribution.scope,
            fund_id=contribution.fund_id,
            deal_id=contribution.deal_id,
            applied_rate=comp.rate,
            tier_order=comp.tier_order,
            credit_applications=comp.credit_applications,
            vat_snapshot=snapshot,
            notes=comp.notes,
        )

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate(self, contribution: Contribution, context: CalculationContext) -> list[EvaluationResult]:
        """Evaluate every rule against one contribution.

        Returns one result per rule in evaluation order.
        """
        state = _ContributionState(contribution=contribution, context=context, evaluator=self)
        results: list[EvaluationResult] = []
        winner: Optional[str] = None
        cid = contribution.contribution_id

        for rule in context.ruleset.ordered():
            reason = self.applicability(rule, contribution, context)
            if reason:
                state.outcomes[rule.rule_id] = EvaluationOutcome.NOT_APPLICABLE
                results.append(EvaluationResult(cid, rule.rule_id, EvaluationOutcome.NOT_APPLICABLE, reason=reason))
                continue
            if not rule.combinable and winner is not None:
                state.outcomes[rule.rule_id] = EvaluationOutcome.SKIPPED
                results.append(EvaluationResult(
                    cid, rule.rule_id, EvaluationOutcome.SKIPPED,
                    reason=f"non-combinable rule {winner} already applied",
                ))
                continue
            try:
                comp = self._compute(rule, state)
                line = self._build_line(rule, contribution, comp, state)
            except NotApplicable as e:
                state.outcomes[rule.rule_id] = EvaluationOutcome.NOT_APPLICABLE
                results.append(EvaluationResult(
                    cid, rule.rule_id, EvaluationOutcome.NOT_APPLICABLE, reason=e.message,
                ))
                continue
            except FundOpsError as e:
                logger.warning("Rule %s failed for %s: %s", rule.rule_id, cid, e.message)
                state.outcomes[rule.rule_id] = EvaluationOutcome.ERROR
                state.error_codes[rule.rule_id] = e.code
                results.append(EvaluationResult(
                    cid, rule.rule_id, EvaluationOutcome.ERROR,
                    reason=e.message, error_code=e.code,
                ))
                continue

            state.outcomes[rule.rule_id] = EvaluationOutcome.SUCCESS
            state.gross[rule.rule_id] = line.fee_gross
            if line.fee_gross > ZERO:
                state.positive_gross += line.fee_gross
            state.payable += line.total_payable
            if not rule.combinable:
                winner = rule.rule_id
            results.append(EvaluationResult(cid, rule.rule_id, EvaluationOutcome.SUCCESS, line=line))

        return results

    def evaluate_batch(
        self,
        contributions: Iterable[Contribution],
        context: CalculationContext,
        executor: Optional[Executor] = None,
    ) -> list[EvaluationResult]:
        """Evaluate many contributions, optionally in parallel.

        Results keep input order regardless of the executor.
        """
        items = list(contributions)
        if executor is None:
            per_contribution = [self.evaluate(c, context) for c in items]
        else:
            per_contribution = list(executor.map(lambda c: self.evaluate(c, context), items))
        return [r for batch in per_contribution for r in batch]

    @staticmethod
    def fee_lines(results: Iterable[EvaluationResult]) -> list[FeeLine]:
        """Lines of the successful results, in result order."""
        return [r.line for r in results if r.outcome == EvaluationOutcome.SUCCESS and r.line is not None]
