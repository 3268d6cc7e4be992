"""VAT rates, resolution and inclusion arithmetic."""

from fundops.vat.resolver import (
    VatBreakdown,
    VatRate,
    VatResolver,
    VatTable,
    vat_added,
    vat_included,
)

__all__ = ["VatBreakdown", "VatRate", "VatResolver", "VatTable", "vat_added", "vat_included"]
