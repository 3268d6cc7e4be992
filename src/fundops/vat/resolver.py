"""VAT rate table, resolver, and inclusion arithmetic.

Table invariants (per country):
- effective ranges never overlap (both ends inclusive)
- at most one open-ended rate (effective_to is None)

Resolution picks the rate whose range contains the date. EXEMPT mode
never needs a rate. INCLUDED and ADDED raise NoVatRate when nothing
covers the date.

Round trip, within one unit of payable precision:
    vat_added(vat_included(x).net).total == x
    vat_included(vat_added(x).total).net == x
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Iterable, Optional

from fundops.errors import NoVatRate, ValidationError
from fundops.models.calculation import VatSnapshot
from fundops.models.money import percent_to_rate, round_payable, to_decimal
from fundops.models.party import VatMode

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
ONE = Decimal("1")


@dataclass(frozen=True)
class VatRate:
    """A VAT percentage valid for a country over a date range."""
    country_code: str
    percentage: Decimal
    effective_from: date
    effective_to: Optional[date] = None

    @property
    def rate(self) -> Decimal:
        return percent_to_rate(self.percentage)

    def covers(self, on: date) -> bool:
        if on < self.effective_from:
            return False
        return self.effective_to is None or on <= self.effective_to

    def overlaps(self, other: VatRate) -> bool:
        self_end = self.effective_to or date.max
        other_end = other.effective_to or date.max
        return self.effective_from <= other_end and other.effective_from <= self_end


@dataclass(frozen=True)
class VatBreakdown:
    """Net, VAT and total for one amount. Signs follow the input."""
    net: Decimal
    vat: Decimal
    total: Decimal


class VatTable:
    """Per-country VAT rates with non-overlap enforcement.

    Usage:
        table = VatTable()
        table.add(VatRate("GB", Decimal("20"), date(2011, 1, 4)))
        table.rates_for("GB")
    """

    def __init__(self, rates: Iterable[VatRate] = ()) -> None:
        self._rates: dict[str, list[VatRate]] = {}
        for rate in rates:
            self.add(rate)

    @classmethod
    def from_records(cls, records: Iterable[dict[str, Any]]) -> VatTable:
        """Build a table from JSON-style records (dates as ISO strings)."""
        rates = []
        for rec in records:
            rates.append(VatRate(
                country_code=rec["country_code"].upper(),
                percentage=to_decimal(rec["percentage"], "percentage"),
                effective_from=date.fromisoformat(rec["effective_from"]),
                effective_to=(
                    date.fromisoformat(rec["effective_to"])
                    if rec.get("effective_to") else None
                ),
            ))
        return cls(rates)

    def add(self, rate: VatRate) -> None:
        """Add a rate, rejecting overlaps and a second open-ended rate."""
        if rate.percentage < ZERO:
            raise ValidationError(f"VAT percentage must be non-negative: {rate.percentage}")
        if rate.effective_to is not None and rate.effective_to < rate.effective_from:
            raise ValidationError("VAT effective_to precedes effective_from")
        existing = self._rates.setdefault(rate.country_code, [])
        if rate.effective_to is None and any(r.effective_to is None for r in existing):
            raise ValidationError(
                f"{rate.country_code} already has an open-ended VAT rate"
            )
        for other in existing:
            if rate.overlaps(other):
                raise ValidationError(
                    f"{rate.country_code} VAT rate from {rate.effective_from} overlaps "
                    f"rate from {other.effective_from}"
                )
        existing.append(rate)
        existing.sort(key=lambda r: r.effective_from)

    def rates_for(self, country_code: str) -> list[VatRate]:
        return list(self._rates.get(country_code.upper(), []))

    def countries(self) -> list[str]:
        return sorted(self._rates)


class VatResolver:
    """Resolves the effective rate and builds snapshots for fee lines."""

    def __init__(self, table: VatTable) -> None:
        self._table = table

    @property
    def table(self) -> VatTable:
        return self._table

    def resolve(self, country_code: str, on: date) -> VatRate:
        """Return the rate covering ``on``.

        Raises:
            NoVatRate: no rate for the country covers the date.
        """
        for rate in self._table.rates_for(country_code):
            if rate.covers(on):
                return rate
        logger.warning("No VAT rate for %s on %s", country_code, on.isoformat())
        raise NoVatRate(
            f"No VAT rate for {country_code} on {on.isoformat()}",
            {"country_code": country_code, "date": on.isoformat()},
        )

    def snapshot(self, country_code: Optional[str], on: date, mode: VatMode) -> VatSnapshot:
        """Freeze the terms a line is taxed under."""
        if mode == VatMode.EXEMPT:
            return VatSnapshot(country=country_code, rate=ZERO, mode=mode)
        if not country_code:
            raise NoVatRate(f"VAT mode {mode.value} requires a country")
        rate = self.resolve(country_code, on)
        return VatSnapshot(
            country=country_code,
            rate=rate.rate,
            mode=mode,
            effective_from=rate.effective_from,
        )

    def apply(self, amount: Decimal, snapshot: VatSnapshot, places: int = 2) -> VatBreakdown:
        """Split ``amount`` into net / VAT / total under a snapshot."""
        if snapshot.mode == VatMode.INCLUDED:
            return vat_included(amount, snapshot.rate, places)
        if snapshot.mode == VatMode.ADDED:
            return vat_added(amount, snapshot.rate, places)
        amount = round_payable(amount, places)
        return VatBreakdown(net=amount, vat=ZERO, total=amount)


def vat_included(gross: Decimal, rate: Decimal, places: int = 2) -> VatBreakdown:
    """Back VAT out of a tax-inclusive amount."""
    gross = round_payable(gross, places)
    net = round_payable(gross / (ONE + rate), places)
    return VatBreakdown(net=net, vat=gross - net, total=gross)


def vat_added(net: Decimal, rate: Decimal, places: int = 2) -> VatBreakdown:
    """Charge VAT on top of a tax-exclusive amount."""
    net = round_payable(net, places)
    vat = round_payable(net * rate, places)
    return VatBreakdown(net=net, vat=vat, total=net + vat)
