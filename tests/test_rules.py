"""Tests for commission rule models — proves validation, versioning and checksums."""

from datetime import date
from decimal import Decimal

import pytest

from fundops.errors import ValidationError
from fundops.models.party import Scope, VatMode
from fundops.models.rules import CommissionRule, RuleSet, RuleTier, RuleVariant


def _rule(**overrides) -> CommissionRule:
    fields = dict(
        rule_id="r-1",
        name="Distributor 1.5%",
        variant=RuleVariant.PERCENTAGE,
        rate=Decimal("0.015"),
        effective_from=date(2025, 1, 1),
    )
    fields.update(overrides)
    return CommissionRule(**fields)


class TestValidation:
    def test_percentage_needs_rate(self) -> None:
        with pytest.raises(ValidationError, match="requires rate"):
            _rule(rate=None)

    def test_hybrid_needs_all_parts(self) -> None:
        with pytest.raises(ValidationError, match="hybrid"):
            _rule(variant=RuleVariant.HYBRID, fixed_amount=Decimal("100"))

    def test_tiered_ladder_checked(self) -> None:
        with pytest.raises(ValidationError, match="start at 0"):
            _rule(
                variant=RuleVariant.TIERED,
                rate=None,
                tiers=(RuleTier(1, Decimal("10"), None, Decimal("0.01")),),
            )

    def test_self_reference_rejected(self) -> None:
        with pytest.raises(ValidationError, match="itself"):
            _rule(variant=RuleVariant.SUB_AGENT_SPLIT, parent_rule_id="r-1")

    def test_deal_scope_needs_deal(self) -> None:
        with pytest.raises(ValidationError, match="deal_id"):
            _rule(scope=Scope.DEAL)

    def test_vat_needs_country(self) -> None:
        with pytest.raises(ValidationError, match="vat_country"):
            _rule(vat_mode=VatMode.ADDED)

    def test_errors_collected(self) -> None:
        with pytest.raises(ValidationError) as exc:
            _rule(rate=Decimal("-1"), min_amount=Decimal("5"), max_amount=Decimal("1"))
        assert len(exc.value.details["errors"]) == 2

    def test_effective_window(self) -> None:
        rule = _rule(effective_to=date(2025, 6, 30))
        assert rule.is_effective(date(2025, 6, 30))
        assert not rule.is_effective(date(2025, 7, 1))
        assert not rule.is_effective(date(2024, 12, 31))
        assert not _rule(is_active=False).is_effective(date(2025, 3, 1))


class TestChecksum:
    def test_deterministic(self) -> None:
        assert _rule().checksum == _rule().checksum
        assert _rule().checksum.startswith("sha256:")

    def test_trailing_zeros_do_not_matter(self) -> None:
        assert _rule(rate=Decimal("0.0150")).checksum == _rule().checksum

    def test_edit_bumps_version_and_checksum(self) -> None:
        rule = _rule()
        edited = rule.with_changes(rate=Decimal("0.02"))
        assert edited.version == 2
        assert edited.checksum != rule.checksum
        assert edited.checksum == edited.compute_checksum()

    def test_snapshot_carries_checksum(self) -> None:
        snap = _rule().snapshot()
        assert snap["checksum"] == _rule().checksum
        assert snap["rate"] == "0.015"


class TestRuleSet:
    def test_duplicate_ids_rejected(self) -> None:
        with pytest.raises(ValidationError, match="r-1"):
            RuleSet("v1", (_rule(), _rule(name="copy")))

    def test_ordered_by_priority_then_id(self) -> None:
        ruleset = RuleSet("v1", (
            _rule(rule_id="b", priority=10),
            _rule(rule_id="a", priority=10),
            _rule(rule_id="c", priority=5),
        ))
        assert [r.rule_id for r in ruleset.ordered()] == ["c", "a", "b"]

    def test_checksum_independent_of_order(self) -> None:
        one, two = _rule(rule_id="a"), _rule(rule_id="b")
        assert RuleSet("v1", (one, two)).checksum == RuleSet("v1", (two, one)).checksum
        assert RuleSet("v1", (one,)).checksum != RuleSet("v2", (one,)).checksum
