"""Tests for agreements and charge computation — proves pricing invariants and frozen terms."""

from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path

import pytest

from fundops.charges.compute import agreement_rate, compute_charge, resolve_agreement
from fundops.errors import InvalidTransition, NotApplicable, ValidationError
from fundops.models.calculation import Contribution
from fundops.models.party import Agreement, AgreementStatus, PricingMode, Scope, Track, VatMode
from fundops.models.workflow import ChargeStatus
from fundops.policy.resolver import PolicyResolver
from fundops.vat.resolver import VatResolver


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"


@pytest.fixture
def resolver() -> PolicyResolver:
    return PolicyResolver.from_config_dir(CONFIG_DIR)


@pytest.fixture
def vat(resolver: PolicyResolver) -> VatResolver:
    return VatResolver(resolver.vat_table())


def _fund_agreement(**overrides) -> Agreement:
    fields = dict(
        agreement_id="agr-fund",
        party_id="p-1",
        scope=Scope.FUND,
        pricing_mode=PricingMode.TRACK,
        fund_id="f1",
        selected_track=Track.B,
        vat_mode=VatMode.ADDED,
        vat_country="GB",
        effective_from=date(2025, 1, 1),
        status=AgreementStatus.APPROVED,
    )
    fields.update(overrides)
    return Agreement(**fields)


def _deal_agreement(**overrides) -> Agreement:
    fields = dict(
        agreement_id="agr-deal",
        party_id="p-1",
        scope=Scope.DEAL,
        pricing_mode=PricingMode.CUSTOM,
        deal_id="d1",
        custom_rate=Decimal("0.02"),
        vat_mode=VatMode.EXEMPT,
        status=AgreementStatus.APPROVED,
    )
    fields.update(overrides)
    return Agreement(**fields)


def _make_contribution(**overrides) -> Contribution:
    fields = dict(
        contribution_id="c-1",
        investor_id="inv-1",
        amount=Decimal("100000"),
        contribution_date=date(2025, 3, 1),
        fund_id="f1",
    )
    fields.update(overrides)
    return Contribution(**fields)


class TestAgreementInvariants:
    def test_fund_scope_rejects_custom_pricing(self) -> None:
        with pytest.raises(ValidationError, match="TRACK pricing"):
            _fund_agreement(pricing_mode=PricingMode.CUSTOM, selected_track=None, custom_rate=Decimal("0.01"))

    def test_track_requires_selected_track(self) -> None:
        with pytest.raises(ValidationError, match="selected_track"):
            _fund_agreement(selected_track=None)

    def test_custom_requires_rate(self) -> None:
        with pytest.raises(ValidationError, match="custom_rate"):
            _deal_agreement(custom_rate=None)

    def test_discount_range(self) -> None:
        with pytest.raises(ValidationError, match="discount rate"):
            _fund_agreement(discount_rates=(Decimal("1.5"),))

    def test_lifecycle(self) -> None:
        draft = _fund_agreement(status=AgreementStatus.DRAFT)
        active = draft.transition_to(AgreementStatus.ACTIVE)
        approved = active.transition_to(AgreementStatus.APPROVED)
        assert draft.status == AgreementStatus.DRAFT
        assert approved.is_immutable
        with pytest.raises(InvalidTransition):
            draft.transition_to(AgreementStatus.APPROVED)

    def test_approved_cannot_be_edited(self) -> None:
        with pytest.raises(ValidationError, match="amend"):
            _fund_agreement().with_changes(selected_track=Track.C)

    def test_amend_supersedes(self) -> None:
        original = _fund_agreement()
        superseded, amendment = original.amend("agr-fund-v2", selected_track=Track.C)
        assert superseded.status == AgreementStatus.SUPERSEDED
        assert amendment.status == AgreementStatus.DRAFT
        assert amendment.version == 2
        assert amendment.supersedes == "agr-fund"
        assert amendment.selected_track == Track.C

    def test_only_approved_can_be_amended(self) -> None:
        with pytest.raises(InvalidTransition):
            _fund_agreement(status=AgreementStatus.ACTIVE).amend("x")


class TestResolveAgreement:
    def test_deal_beats_fund(self) -> None:
        agreements = [_fund_agreement(), _deal_agreement()]
        chosen = resolve_agreement(agreements, _make_contribution(deal_id="d1"))
        assert chosen.agreement_id == "agr-deal"

    def test_fund_fallback(self) -> None:
        agreements = [_fund_agreement(), _deal_agreement()]
        assert resolve_agreement(agreements, _make_contribution()).agreement_id == "agr-fund"

    def test_unapproved_ignored(self) -> None:
        agreements = [_fund_agreement(status=AgreementStatus.ACTIVE)]
        assert resolve_agreement(agreements, _make_contribution()) is None

    def test_highest_version_wins(self) -> None:
        agreements = [_fund_agreement(), _fund_agreement(agreement_id="agr-v2", version=2, selected_track=Track.C)]
        assert resolve_agreement(agreements, _make_contribution()).agreement_id == "agr-v2"


class TestComputeCharge:
    def test_track_rate_with_vat_added(self, resolver: PolicyResolver, vat: VatResolver) -> None:
        charge = compute_charge(_make_contribution(), _fund_agreement(), vat, resolver.track_rates())
        assert charge.status == ChargeStatus.DRAFT
        assert charge.base_amount == Decimal("1500.00")
        assert charge.vat_amount == Decimal("300.00")
        assert charge.total_amount == Decimal("1800.00")
        assert charge.net_amount == Decimal("1800.00")
        assert charge.terms_snapshot["rate"] == "0.0150"
        assert charge.terms_snapshot["vat_rate"] == "0.2"

    def test_discount_before_vat(self, resolver: PolicyResolver, vat: VatResolver) -> None:
        agreement = _fund_agreement(discount_rates=(Decimal("0.1"),))
        charge = compute_charge(_make_contribution(), agreement, vat, resolver.track_rates())
        assert charge.discount_amount == Decimal("150.00")
        assert charge.vat_amount == Decimal("270.00")
        assert charge.total_amount == Decimal("1620.00")

    def test_cap_applies_to_total(self, resolver: PolicyResolver, vat: VatResolver) -> None:
        agreement = _fund_agreement(cap_amount=Decimal("1000"))
        charge = compute_charge(_make_contribution(), agreement, vat, resolver.track_rates())
        assert charge.total_amount == Decimal("1000")
        assert charge.vat_amount == Decimal("166.67")

    def test_cap_recomputes_included_vat(self, resolver: PolicyResolver, vat: VatResolver) -> None:
        agreement = _fund_agreement(vat_mode=VatMode.INCLUDED, cap_amount=Decimal("600"))
        uncapped = compute_charge(
            _make_contribution(amount=Decimal("80000")),
            _fund_agreement(vat_mode=VatMode.INCLUDED), vat, resolver.track_rates(),
        )
        assert uncapped.total_amount == Decimal("1200.00")
        assert uncapped.vat_amount == Decimal("200.00")

        charge = compute_charge(
            _make_contribution(amount=Decimal("80000")), agreement, vat, resolver.track_rates(),
        )
        assert charge.total_amount == Decimal("600")
        assert charge.vat_amount == Decimal("100.00")

    def test_custom_deal_exempt(self, resolver: PolicyResolver, vat: VatResolver) -> None:
        charge = compute_charge(
            _make_contribution(deal_id="d1"), _deal_agreement(), vat, resolver.track_rates(),
            now=datetime(2025, 3, 2, tzinfo=timezone.utc),
        )
        assert charge.scope == Scope.DEAL
        assert charge.total_amount == Decimal("2000.00")
        assert charge.vat_amount == Decimal("0")

    def test_requires_approved_agreement(self, resolver: PolicyResolver, vat: VatResolver) -> None:
        with pytest.raises(ValidationError, match="approved"):
            compute_charge(
                _make_contribution(), _fund_agreement(status=AgreementStatus.ACTIVE),
                vat, resolver.track_rates(),
            )

    def test_out_of_term_not_applicable(self, resolver: PolicyResolver, vat: VatResolver) -> None:
        with pytest.raises(NotApplicable):
            compute_charge(
                _make_contribution(contribution_date=date(2024, 6, 1)), _fund_agreement(),
                vat, resolver.track_rates(),
            )

    def test_agreement_rate(self, resolver: PolicyResolver) -> None:
        assert agreement_rate(_fund_agreement(selected_track=Track.C), resolver.track_rates()) == Decimal("0.02")
        assert agreement_rate(_deal_agreement(), resolver.track_rates()) == Decimal("0.02")
