"""Run aggregator — collects fee lines into a hashed, totalled Run.

A run captures everything needed to replay it:
- the contribution inputs (filtered to the period)
- every EvaluationResult, including non-applicable and failed rules
- a canonical snapshot of each rule in the ruleset
- the calculation settings and the investors' historical aggregates

The run hash covers ruleset version, inputs (sorted by a composite
key), settings and aggregates, so it does not depend on input order.
Totals are signed sums; discounts and credit netting reduce them.
"""

from __future__ import annotations

import logging
from concurrent.futures import Executor
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Optional

from fundops.crypto.canonical import compute_run_hash, content_hash
from fundops.errors import ValidationError
from fundops.models.calculation import (
    CalculationContext,
    Contribution,
    FeeLine,
    HistoricalAggregates,
)
from fundops.models.workflow import Run, RunTotals
from fundops.rules.evaluator import RuleEvaluator

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def compute_totals(lines: Iterable[FeeLine]) -> RunTotals:
    """Signed totals over fee lines. Base counts each contribution once."""
    base = gross = vat = net = total = credits = ZERO
    count = 0
    seen_contributions: set[str] = set()
    for line in lines:
        count += 1
        if line.contribution_id not in seen_contributions and line.method != "credit_netting":
            seen_contributions.add(line.contribution_id)
            base += line.base_amount
        gross += line.fee_gross
        vat += line.vat_amount
        net += line.fee_net
        total += line.total_payable
        if line.method == "credit_netting":
            credits += -line.fee_gross
    return RunTotals(
        base=base,
        gross=gross,
        vat=vat,
        net=net,
        total_payable=total,
        credits_applied=credits,
        line_count=count,
    )


def used_aggregates(
    inputs: Iterable[Contribution], context: CalculationContext,
) -> dict[str, HistoricalAggregates]:
    """Aggregates of the investors present in ``inputs``, keyed by investor."""
    used = {}
    for c in inputs:
        aggregates = context.aggregates_for(c.investor_id)
        if aggregates is not None:
            used[c.investor_id] = aggregates
    return used


def scope_breakdown(lines: Iterable[FeeLine]) -> dict[str, RunTotals]:
    """Totals per scope tag (FUND / DEAL)."""
    grouped: dict[str, list[FeeLine]] = {}
    for line in lines:
        grouped.setdefault(line.scope.value, []).append(line)
    return {scope: compute_totals(group) for scope, group in sorted(grouped.items())}


class RunAggregator:
    """Builds runs from contributions.

    Usage:
        aggregator = RunAggregator(evaluator)
        run = aggregator.build(
            "run_abc", date(2025, 1, 1), date(2025, 3, 31),
            contributions, context, created_by="fin-1",
        )
        assert aggregator.verify(run) == []
    """

    def __init__(self, evaluator: RuleEvaluator) -> None:
        self._evaluator = evaluator

    def build(
        self,
        run_id: str,
        period_start: date,
        period_end: date,
        contributions: Iterable[Contribution],
        context: CalculationContext,
        created_by: str = "",
        supersedes: Optional[str] = None,
        executor: Optional[Executor] = None,
        now: Optional[datetime] = None,
    ) -> Run:
        """Evaluate the period's contributions and assemble a draft run."""
        if period_end < period_start:
            raise ValidationError(
                f"Run period ends before it starts: {period_start} > {period_end}"
            )
        now = now or datetime.now(timezone.utc)
        inputs = [
            c for c in contributions
            if period_start <= c.contribution_date <= period_end
        ]
        ids = [c.contribution_id for c in inputs]
        if len(set(ids)) != len(ids):
            raise ValidationError("Duplicate contribution ids in run inputs")

        results = self._evaluator.evaluate_batch(inputs, context, executor=executor)
        lines = RuleEvaluator.fee_lines(results)
        settings = context.settings.as_dict()
        ruleset = context.ruleset
        aggregates = used_aggregates(inputs, context)

        run = Run(
            run_id=run_id,
            period_start=period_start,
            period_end=period_end,
            ruleset_version=ruleset.version,
            ruleset_checksum=ruleset.checksum,
            run_hash=compute_run_hash(
                ruleset.version, [c.hash_input() for c in inputs], settings, aggregates,
            ),
            inputs=inputs,
            lines=lines,
            results=results,
            rule_snapshots={r.rule_id: r.snapshot() for r in ruleset.rules},
            settings=settings,
            aggregates=aggregates,
            totals=compute_totals(lines),
            scope_breakdown=scope_breakdown(lines),
            created_by=created_by,
            created_utc=now,
            supersedes=supersedes,
        )
        logger.info(
            "Built run %s: %d inputs, %d lines, total %s",
            run_id, len(inputs), len(lines), run.totals.total_payable,
        )
        return run

    @staticmethod
    def verify(run: Run) -> list[str]:
        """Recompute hash, rule checksums and totals. Empty list means intact."""
        errors: list[str] = []
        expected_hash = compute_run_hash(
            run.ruleset_version, [c.hash_input() for c in run.inputs], run.settings, run.aggregates,
        )
        if expected_hash != run.run_hash:
            errors.append(f"run hash mismatch: stored {run.run_hash}, computed {expected_hash}")

        checksums = []
        for rule_id, snap in sorted(run.rule_snapshots.items()):
            fields = {k: v for k, v in snap.items() if k != "checksum"}
            computed = content_hash(fields)
            if computed != snap.get("checksum"):
                errors.append(f"rule {rule_id} checksum mismatch")
            checksums.append(computed)
        ruleset_checksum = content_hash({"version": run.ruleset_version, "rules": sorted(checksums)})
        if ruleset_checksum != run.ruleset_checksum:
            errors.append("ruleset checksum mismatch")

        if compute_totals(run.lines) != run.totals:
            errors.append("totals do not match fee lines")
        return errors

    @staticmethod
    def export_rows(run: Run) -> list[dict[str, Any]]:
        """One flat row per fee line, including its VAT snapshot."""
        rows = []
        for line in run.lines:
            snap = line.vat_snapshot
            rows.append({
                "run_id": run.run_id,
                "run_hash": run.run_hash,
                "line_id": line.line_id,
                "contribution_id": line.contribution_id,
                "investor_id": line.investor_id,
                "rule_id": line.rule_id,
                "rule_version": line.rule_version,
                "method": line.method,
                "scope": line.scope.value,
                "fund_id": line.fund_id,
                "deal_id": line.deal_id,
                "currency": line.currency,
                "base_amount": str(line.base_amount),
                "fee_gross": str(line.fee_gross),
                "vat_amount": str(line.vat_amount),
                "fee_net": str(line.fee_net),
                "total_payable": str(line.total_payable),
                "vat_country": snap.country if snap else None,
                "vat_rate": str(snap.rate) if snap else "0",
                "vat_mode": snap.mode.value if snap else None,
            })
        return rows
