"""JSON record decoding for engine inputs.

Amounts must arrive as strings or integers; floats are rejected by
``to_decimal`` so no binary rounding leaks into money. Dates are ISO
``YYYY-MM-DD`` strings.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Mapping, Optional

from fundops.errors import ValidationError
from fundops.models.calculation import Contribution, HistoricalAggregates
from fundops.models.credit import Credit, CreditType
from fundops.models.money import to_decimal
from fundops.models.party import PartyRole, Scope, VatMode
from fundops.models.rules import (
    CalculationBasis,
    CommissionRule,
    ConditionOperator,
    RuleCondition,
    RuleSet,
    RuleTier,
    RuleVariant,
)


def _date(raw: Any, field_name: str) -> date:
    if isinstance(raw, date):
        return raw
    try:
        return date.fromisoformat(str(raw))
    except ValueError:
        raise ValidationError(f"{field_name} must be an ISO date, got {raw!r}")


def _opt_date(raw: Any, field_name: str) -> Optional[date]:
    return None if raw is None else _date(raw, field_name)


def _reject_floats(value: Any, path: str) -> None:
    if isinstance(value, float):
        raise ValidationError(
            f"{path}: floats are not accepted, use str or int", {"field": path},
        )
    if isinstance(value, Mapping):
        for key, item in value.items():
            _reject_floats(item, f"{path}.{key}")
    elif isinstance(value, list):
        for i, item in enumerate(value):
            _reject_floats(item, f"{path}[{i}]")


def _opt_decimal(raw: Any, field_name: str) -> Optional[Decimal]:
    return None if raw is None else to_decimal(raw, field_name)


def _enum(cls, raw: Any, field_name: str):
    try:
        return cls(raw)
    except ValueError:
        allowed = ", ".join(m.value for m in cls)
        raise ValidationError(f"{field_name}: unknown value {raw!r}. Allowed: {allowed}")


def tier_from_dict(raw: Mapping[str, Any]) -> RuleTier:
    return RuleTier(
        tier_order=int(raw["tier_order"]),
        min_threshold=to_decimal(raw["min_threshold"], "min_threshold"),
        max_threshold=_opt_decimal(raw.get("max_threshold"), "max_threshold"),
        rate=_opt_decimal(raw.get("rate"), "rate"),
        fixed_amount=_opt_decimal(raw.get("fixed_amount"), "fixed_amount"),
    )


def condition_from_dict(raw: Mapping[str, Any]) -> RuleCondition:
    return RuleCondition(
        field_name=raw["field_name"],
        operator=_enum(ConditionOperator, raw["operator"], "operator"),
        value=raw.get("value"),
        value2=raw.get("value2"),
        group=int(raw.get("group", 0)),
        is_required=bool(raw.get("is_required", True)),
    )


def rule_from_dict(raw: Mapping[str, Any]) -> CommissionRule:
    """Decode one rule. A stored checksum, if present, must match."""
    try:
        rule = CommissionRule(
            rule_id=raw["rule_id"],
            name=raw.get("name", raw["rule_id"]),
            variant=_enum(RuleVariant, raw["variant"], "variant"),
            effective_from=_date(raw["effective_from"], "effective_from"),
            effective_to=_opt_date(raw.get("effective_to"), "effective_to"),
            priority=int(raw.get("priority", 100)),
            combinable=bool(raw.get("combinable", False)),
            is_active=bool(raw.get("is_active", True)),
            rate=_opt_decimal(raw.get("rate"), "rate"),
            fixed_amount=_opt_decimal(raw.get("fixed_amount"), "fixed_amount"),
            threshold=_opt_decimal(raw.get("threshold"), "threshold"),
            tiers=tuple(tier_from_dict(t) for t in raw.get("tiers", ())),
            conditions=tuple(condition_from_dict(c) for c in raw.get("conditions", ())),
            basis=_enum(CalculationBasis, raw.get("basis", "distribution_amount"), "basis"),
            min_amount=_opt_decimal(raw.get("min_amount"), "min_amount"),
            max_amount=_opt_decimal(raw.get("max_amount"), "max_amount"),
            parent_rule_id=raw.get("parent_rule_id"),
            scope=_enum(Scope, raw["scope"], "scope") if raw.get("scope") else None,
            fund_id=raw.get("fund_id"),
            deal_id=raw.get("deal_id"),
            party_role=_enum(PartyRole, raw["party_role"], "party_role") if raw.get("party_role") else None,
            party_name=raw.get("party_name"),
            vat_mode=_enum(VatMode, raw.get("vat_mode", "exempt"), "vat_mode"),
            vat_country=raw.get("vat_country"),
            version=int(raw.get("version", 1)),
        )
    except KeyError as e:
        raise ValidationError(f"Rule record missing field: {e.args[0]}")
    stored = raw.get("checksum")
    if stored and stored != rule.checksum:
        raise ValidationError(
            f"Rule {rule.rule_id} checksum mismatch: stored {stored}, computed {rule.checksum}"
        )
    return rule


def ruleset_from_dict(raw: Mapping[str, Any]) -> RuleSet:
    return RuleSet(
        version=str(raw["version"]),
        rules=tuple(rule_from_dict(r) for r in raw.get("rules", ())),
    )


def _metadata(raw: Mapping[str, Any]) -> dict[str, Any]:
    _reject_floats(raw, "metadata")
    return dict(raw)


def contribution_from_dict(raw: Mapping[str, Any]) -> Contribution:
    try:
        return Contribution(
            contribution_id=raw["contribution_id"],
            investor_id=raw["investor_id"],
            amount=to_decimal(raw["amount"], "amount"),
            contribution_date=_date(raw["contribution_date"], "contribution_date"),
            fund_id=raw.get("fund_id"),
            deal_id=raw.get("deal_id"),
            currency=raw.get("currency", "USD"),
            parties=dict(raw.get("parties", {})),
            metadata=_metadata(raw.get("metadata", {})),
        )
    except KeyError as e:
        raise ValidationError(f"Contribution record missing field: {e.args[0]}")


def aggregates_from_dict(raw: Mapping[str, Any]) -> HistoricalAggregates:
    return HistoricalAggregates(
        cumulative_amount=_opt_decimal(raw.get("cumulative_amount"), "cumulative_amount"),
        monthly_volume=_opt_decimal(raw.get("monthly_volume"), "monthly_volume"),
        quarterly_volume=_opt_decimal(raw.get("quarterly_volume"), "quarterly_volume"),
        annual_volume=_opt_decimal(raw.get("annual_volume"), "annual_volume"),
        deal_count=raw.get("deal_count"),
    )


def credit_from_dict(raw: Mapping[str, Any]) -> Credit:
    created = raw["created_at"]
    return Credit(
        credit_id=raw["credit_id"],
        investor_id=raw["investor_id"],
        credit_type=_enum(CreditType, raw["credit_type"], "credit_type"),
        scope=_enum(Scope, raw["scope"], "scope"),
        currency=raw.get("currency", "USD"),
        original_amount=to_decimal(raw["original_amount"], "original_amount"),
        created_at=created if isinstance(created, datetime) else datetime.fromisoformat(created),
        fund_id=raw.get("fund_id"),
        deal_id=raw.get("deal_id"),
        cancelled=bool(raw.get("cancelled", False)),
    )
