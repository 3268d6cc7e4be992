"""Rule condition evaluation.

Conditions are grouped by ``group``. Within a group every required
condition must pass (AND); the rule applies if any group passes (OR).
Optional conditions never gate. A field that cannot be resolved makes its condition fail.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Optional

from fundops.models.calculation import Contribution, HistoricalAggregates
from fundops.models.rules import ConditionOperator, RuleCondition

_MISSING = object()


def resolve_field(
    name: str,
    contribution: Contribution,
    aggregates: Optional[HistoricalAggregates],
) -> Any:
    """Look up a condition field on the contribution, its aggregates or metadata."""
    d = contribution.contribution_date
    direct = {
        "amount": contribution.amount,
        "contribution_amount": contribution.amount,
        "investor": contribution.investor_id,
        "investor_id": contribution.investor_id,
        "fund": contribution.fund_id,
        "fund_id": contribution.fund_id,
        "deal": contribution.deal_id,
        "deal_id": contribution.deal_id,
        "currency": contribution.currency,
        "date": d,
        "contribution_date": d,
        "contribution_month": d.month,
        "contribution_quarter": (d.month - 1) // 3 + 1,
        "contribution_year": d.year,
    }
    if name in direct:
        return direct[name]

    if name.endswith("_name"):
        role = name[: -len("_name")]
        if role in contribution.parties:
            return contribution.parties[role]

    if aggregates is not None and name in (
        "cumulative_amount",
        "monthly_volume",
        "quarterly_volume",
        "annual_volume",
        "deal_count",
    ):
        return getattr(aggregates, name)

    return contribution.metadata.get(name, _MISSING)


def _parse_decimal(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation:
        return None


def _as_decimal(value: Any) -> Optional[Decimal]:
    number = _parse_decimal(value)
    return number if number is not None and number.is_finite() else None


def _is_non_finite(value: Any) -> bool:
    number = _parse_decimal(value)
    return number is not None and not number.is_finite()


def _fold(value: Any) -> Any:
    return value.casefold() if isinstance(value, str) else value


def _equals(actual: Any, expected: Any) -> bool:
    a, b = _as_decimal(actual), _as_decimal(expected)
    if a is not None and b is not None:
        return a == b
    return _fold(str(actual)) == _fold(str(expected))


def _compare(actual: Any, expected: Any, op: ConditionOperator) -> bool:
    # NaN and infinities never satisfy an ordering
    if _is_non_finite(actual) or _is_non_finite(expected):
        return False
    if isinstance(actual, date) and isinstance(expected, str):
        try:
            expected = date.fromisoformat(expected)
        except ValueError:
            return False
    a, b = _as_decimal(actual), _as_decimal(expected)
    if a is None or b is None:
        # Dates and other ordered values compare directly when types match
        if type(actual) is not type(expected):
            return False
        a, b = actual, expected
    if op == ConditionOperator.GREATER_THAN:
        return a > b
    if op == ConditionOperator.LESS_THAN:
        return a < b
    if op == ConditionOperator.GREATER_EQUAL:
        return a >= b
    return a <= b


def evaluate_condition(
    condition: RuleCondition,
    contribution: Contribution,
    aggregates: Optional[HistoricalAggregates],
) -> bool:
    """Evaluate one condition. Unresolvable fields fail the condition."""
    actual = resolve_field(condition.field_name, contribution, aggregates)
    if actual is _MISSING or actual is None:
        return False

    op = condition.operator
    if op == ConditionOperator.EQUALS:
        return _equals(actual, condition.value)
    if op == ConditionOperator.NOT_EQUALS:
        return not _equals(actual, condition.value)
    if op in (
        ConditionOperator.GREATER_THAN,
        ConditionOperator.LESS_THAN,
        ConditionOperator.GREATER_EQUAL,
        ConditionOperator.LESS_EQUAL,
    ):
        return _compare(actual, condition.value, op)
    if op == ConditionOperator.BETWEEN:
        return (
            _compare(actual, condition.value, ConditionOperator.GREATER_EQUAL)
            and _compare(actual, condition.value2, ConditionOperator.LESS_EQUAL)
        )
    if op in (ConditionOperator.IN, ConditionOperator.NOT_IN):
        options = condition.value if isinstance(condition.value, (list, tuple, set, frozenset)) else [condition.value]
        found = any(_equals(actual, option) for option in options)
        return found if op == ConditionOperator.IN else not found
    return False


def conditions_pass(
    conditions: Iterable[RuleCondition],
    contribution: Contribution,
    aggregates: Optional[HistoricalAggregates],
) -> bool:
    """AND within a group, OR across groups. No conditions means pass."""
    groups: dict[int, bool] = {}
    for condition in conditions:
        still_passing = groups.setdefault(condition.group, True)
        if condition.is_required and still_passing:
            groups[condition.group] = evaluate_condition(condition, contribution, aggregates)
    if not groups:
        return True
    return any(groups.values())
