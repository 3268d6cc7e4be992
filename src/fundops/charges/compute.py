"""Charge computation from an approved agreement.

    base     = contribution amount × rate (track rate or custom rate)
    discount = Σ base × discount rate
    taxable  = base - discount
    VAT      = per agreement VAT mode (added / included / exempt)
    total    = taxable (+ VAT when added), clamped to the cap

The terms actually used are frozen into ``terms_snapshot`` so a charge
can be explained after its agreement is amended.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, Mapping, Optional
from uuid import uuid4

from fundops.errors import NotApplicable, ValidationError
from fundops.models.calculation import Contribution
from fundops.models.money import round_payable
from fundops.models.party import Agreement, AgreementStatus, PricingMode, Scope, Track, VatMode
from fundops.models.workflow import Charge
from fundops.vat.resolver import VatResolver

ZERO = Decimal("0")


def resolve_agreement(
    agreements: Iterable[Agreement],
    contribution: Contribution,
) -> Optional[Agreement]:
    """Pick the approved agreement governing a contribution.

    A DEAL agreement for the contribution's deal takes precedence over
    a FUND agreement for its fund. Among candidates the highest version wins.
    """
    approved = [
        a for a in agreements
        if a.status == AgreementStatus.APPROVED and a.covers(contribution.contribution_date)
    ]
    if contribution.deal_id:
        deal = [a for a in approved if a.scope == Scope.DEAL and a.deal_id == contribution.deal_id]
        if deal:
            return max(deal, key=lambda a: a.version)
    if contribution.fund_id:
        fund = [a for a in approved if a.scope == Scope.FUND and a.fund_id == contribution.fund_id]
        if fund:
            return max(fund, key=lambda a: a.version)
    return None


def agreement_rate(agreement: Agreement, track_rates: Mapping[Track, Decimal]) -> Decimal:
    if agreement.pricing_mode == PricingMode.TRACK:
        rate = track_rates.get(agreement.selected_track)
        if rate is None:
            raise ValidationError(f"No rate configured for track {agreement.selected_track.value}")
        return rate
    return agreement.custom_rate


def compute_charge(
    contribution: Contribution,
    agreement: Agreement,
    vat_resolver: VatResolver,
    track_rates: Mapping[Track, Decimal],
    charge_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Charge:
    """Compute a DRAFT charge for one contribution under an agreement.

    Raises:
        ValidationError: agreement not approved, or contribution has no scope.
        NotApplicable: agreement not in effect on the contribution date.
        NoVatRate: VAT mode needs a rate and none covers the date.
    """
    if agreement.status != AgreementStatus.APPROVED:
        raise ValidationError(
            f"Charges require an approved agreement ({agreement.agreement_id} is {agreement.status.value})"
        )
    if not contribution.fund_id and not contribution.deal_id:
        raise ValidationError(
            f"Contribution {contribution.contribution_id} has neither fund_id nor deal_id"
        )
    if not agreement.covers(contribution.contribution_date):
        raise NotApplicable(
            f"Agreement {agreement.agreement_id} not in effect on {contribution.contribution_date}"
        )

    now = now or datetime.now(timezone.utc)
    rate = agreement_rate(agreement, track_rates)
    base = round_payable(contribution.amount * rate)
    discount = sum((round_payable(base * d) for d in agreement.discount_rates), ZERO)
    taxable = base - discount

    snapshot = vat_resolver.snapshot(
        agreement.vat_country, contribution.contribution_date, agreement.vat_mode,
    )
    breakdown = vat_resolver.apply(taxable, snapshot)
    total = breakdown.total
    vat = breakdown.vat
    if agreement.cap_amount is not None and total > agreement.cap_amount:
        total = agreement.cap_amount
        if snapshot.mode != VatMode.EXEMPT:
            vat = total - round_payable(total / (1 + snapshot.rate))

    return Charge(
        charge_id=charge_id or f"charge_{uuid4().hex[:12]}",
        contribution_id=contribution.contribution_id,
        investor_id=contribution.investor_id,
        agreement_id=agreement.agreement_id,
        party_id=agreement.party_id,
        scope=contribution.scope,
        currency=contribution.currency,
        fund_id=contribution.fund_id,
        deal_id=contribution.deal_id,
        base_amount=base,
        discount_amount=discount,
        vat_amount=vat,
        total_amount=total,
        vat_snapshot=snapshot,
        terms_snapshot={
            "agreement_id": agreement.agreement_id,
            "agreement_version": agreement.version,
            "pricing_mode": agreement.pricing_mode.value,
            "selected_track": agreement.selected_track.value if agreement.selected_track else None,
            "rate": str(rate),
            "discount_rates": [str(d) for d in agreement.discount_rates],
            "cap_amount": str(agreement.cap_amount) if agreement.cap_amount is not None else None,
            "vat_mode": snapshot.mode.value,
            "vat_rate": str(snapshot.rate),
            "contribution_amount": str(contribution.amount),
            "contribution_date": contribution.contribution_date.isoformat(),
        },
        created_utc=now,
    )
