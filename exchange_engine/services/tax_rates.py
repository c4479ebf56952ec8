"""
Canadian sales tax rates by province.

Rates are static and applied once per priced amount. All arithmetic is
Decimal; results are rounded half-up to whole cents.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from exchange_engine.config import settings
from exchange_engine.core.money import round_half_up


@dataclass(frozen=True)
class TaxRates:
    hst: Decimal = Decimal("0")
    gst: Decimal = Decimal("0")
    pst: Decimal = Decimal("0")

    @property
    def total(self) -> Decimal:
        return self.hst + self.gst + self.pst


@dataclass(frozen=True)
class TaxBreakdown:
    """Tax on one amount, split by component for display."""
    jurisdiction: str
    rates: TaxRates
    hst_cents: int
    gst_cents: int
    pst_cents: int
    total_cents: int


TAX_RATES: dict[str, TaxRates] = {
    "ON": TaxRates(hst=Decimal("0.13")),
    "AB": TaxRates(gst=Decimal("0.05")),
    "BC": TaxRates(gst=Decimal("0.05"), pst=Decimal("0.07")),
    "SK": TaxRates(gst=Decimal("0.05"), pst=Decimal("0.06")),
    "MB": TaxRates(gst=Decimal("0.05"), pst=Decimal("0.07")),
    "QC": TaxRates(gst=Decimal("0.05"), pst=Decimal("0.09975")),
    "NB": TaxRates(hst=Decimal("0.15")),
    "NS": TaxRates(hst=Decimal("0.15")),
    "NL": TaxRates(hst=Decimal("0.15")),
    "PE": TaxRates(hst=Decimal("0.15")),
}

NO_TAX = TaxRates()
FALLBACK_JURISDICTION = "ON"


def resolve_jurisdiction(code: Optional[str]) -> str:
    """
    Normalize a province code.

    Unknown or missing codes fall back to DEFAULT_TAX_JURISDICTION, and to
    ON when that setting is not a known province either, so the code stored
    on an order always matches the rates applied to it.
    """
    normalized = (code or "").strip().upper()
    if normalized in TAX_RATES:
        return normalized
    default = (settings.DEFAULT_TAX_JURISDICTION or "").strip().upper()
    if default in TAX_RATES:
        return default
    return FALLBACK_JURISDICTION


def lookup_jurisdiction_rates(code: Optional[str]) -> TaxRates:
    """Rates for a province code. Unknown or missing codes use the default."""
    return TAX_RATES[resolve_jurisdiction(code)]


def compute_tax_cents(amount_cents: int, jurisdiction: Optional[str], is_exempt: bool = False) -> int:
    """Total tax on an amount, or 0 when the customer is exempt."""
    if is_exempt:
        return 0
    rates = lookup_jurisdiction_rates(jurisdiction)
    return round_half_up(Decimal(amount_cents) * rates.total)


def compute_tax_breakdown(amount_cents: int, jurisdiction: Optional[str], is_exempt: bool = False) -> TaxBreakdown:
    """
    Tax on an amount with per-component amounts.

    ``total_cents`` is computed from the combined rate, so it always equals
    compute_tax_cents(); component amounts are display values and may differ
    from it by a rounding cent.
    """
    code = resolve_jurisdiction(jurisdiction)
    if is_exempt:
        return TaxBreakdown(code, NO_TAX, 0, 0, 0, 0)

    rates = lookup_jurisdiction_rates(code)
    amount = Decimal(amount_cents)
    return TaxBreakdown(
        jurisdiction=code,
        rates=rates,
        hst_cents=round_half_up(amount * rates.hst),
        gst_cents=round_half_up(amount * rates.gst),
        pst_cents=round_half_up(amount * rates.pst),
        total_cents=round_half_up(amount * rates.total),
    )
