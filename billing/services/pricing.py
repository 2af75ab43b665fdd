"""
Calculs de facture : totaux de ligne, ventilation TVA, timbre fiscal, taxes
personnalisées et net à payer. Fonctions pures, sans arrondi interne
(l'affichage arrondit à 3 décimales).
"""
from __future__ import annotations

from typing import Iterable, List, Optional, Protocol, Sequence, Tuple

from pydantic import BaseModel, Field

from billing.errors import InvalidInput
from billing.models.invoice import CURRENCIES, VAT_RATES
from billing.models.tax import CustomTax


class PricedLine(Protocol):
    quantity: float
    unit_price_ht: float
    vat_rate: float
    discount_percent: float


class LineTotals(BaseModel):
    line_ht: float
    line_vat: float
    line_ttc: float


class VatBreakdownEntry(BaseModel):
    rate: float
    base: float = 0.0
    amount: float = 0.0


class InvoiceTotals(BaseModel):
    subtotal_ht: float = 0.0
    total_vat: float = 0.0
    total_discount: float = 0.0
    total_ttc: float = 0.0
    vat_breakdown: List[VatBreakdownEntry] = Field(default_factory=list)


class InvoiceSummary(InvoiceTotals):
    stamp_duty: float = 0.0
    custom_taxes_total: float = 0.0
    net_payable: float = 0.0


# ---------- Lignes ----------

def calculate_line_total(
    quantity: float,
    unit_price_ht: float,
    vat_rate: float,
    discount_percent: float,
    is_foreign: bool,
) -> LineTotals:
    line_ht = quantity * unit_price_ht * (1 - discount_percent / 100)
    # client étranger : jamais de TVA
    line_vat = 0.0 if is_foreign else line_ht * (vat_rate / 100)
    return LineTotals(line_ht=line_ht, line_vat=line_vat, line_ttc=line_ht + line_vat)


def validate_line(line, max_discount: Optional[float] = None) -> None:
    """Rejette les saisies incohérentes avant toute écriture."""
    if line.quantity is None or line.quantity <= 0:
        raise InvalidInput(f"quantity must be positive (got {line.quantity})")
    if line.unit_price_ht < 0:
        raise InvalidInput(f"unit price cannot be negative (got {line.unit_price_ht})")
    if line.vat_rate not in VAT_RATES:
        raise InvalidInput(f"unsupported VAT rate {line.vat_rate}")
    cap = max_discount if max_discount is not None else getattr(line, "max_discount", 100.0)
    if line.discount_percent < 0 or line.discount_percent > cap:
        raise InvalidInput(f"discount {line.discount_percent}% outside [0, {cap}]")


# ---------- Totaux ----------

def compute_totals(lines: Iterable[PricedLine], is_foreign: bool) -> InvoiceTotals:
    totals = InvoiceTotals()
    breakdown: dict[float, VatBreakdownEntry] = {}

    for line in lines:
        lt = calculate_line_total(
            line.quantity, line.unit_price_ht, line.vat_rate, line.discount_percent, is_foreign
        )
        gross_ht = line.quantity * line.unit_price_ht

        totals.subtotal_ht += lt.line_ht
        totals.total_vat += lt.line_vat
        totals.total_discount += gross_ht - lt.line_ht
        totals.total_ttc += lt.line_ttc

        if not is_foreign and line.vat_rate > 0:
            entry = breakdown.setdefault(line.vat_rate, VatBreakdownEntry(rate=line.vat_rate))
            entry.base += lt.line_ht
            entry.amount += lt.line_vat

    totals.vat_breakdown = sorted(breakdown.values(), key=lambda v: v.rate)
    return totals


def stamp_duty_for(enabled: bool, amount: float, is_foreign: bool) -> float:
    return 0.0 if is_foreign or not enabled else amount


def custom_tax_amount(tax: CustomTax, base_ttc: float) -> float:
    if tax.value_type == "fixed":
        return tax.value
    return base_ttc * (tax.value / 100)


def signed_custom_tax_amount(tax: CustomTax, base_ttc: float) -> float:
    amount = custom_tax_amount(tax, base_ttc)
    return amount if tax.application_type == "add" else -amount


def partition_custom_taxes(taxes: Iterable[CustomTax]) -> Tuple[List[CustomTax], List[CustomTax]]:
    before: List[CustomTax] = []
    after: List[CustomTax] = []
    for tax in taxes:
        (before if tax.application_order == "before_stamp" else after).append(tax)
    return before, after


def custom_taxes_total(taxes: Iterable[CustomTax], base_ttc: float) -> float:
    return sum(signed_custom_tax_amount(t, base_ttc) for t in taxes)


def compute_net_payable(
    total_ttc: float,
    stamp_duty: float,
    before_stamp: Sequence[CustomTax] = (),
    after_stamp: Sequence[CustomTax] = (),
) -> float:
    """
    TTC → taxes "avant timbre" → timbre → taxes "après timbre".
    Les pourcentages s'appliquent au TTC des lignes.
    """
    net = total_ttc
    for tax in before_stamp:
        net += signed_custom_tax_amount(tax, total_ttc)
    net += stamp_duty
    for tax in after_stamp:
        net += signed_custom_tax_amount(tax, total_ttc)
    return net


def summarize(
    lines: Iterable[PricedLine],
    is_foreign: bool,
    stamp_duty_enabled: bool = True,
    stamp_duty_amount: float = 0.0,
    custom_taxes: Iterable[CustomTax] = (),
) -> InvoiceSummary:
    totals = compute_totals(lines, is_foreign)
    summary = InvoiceSummary(**totals.model_dump())

    if is_foreign:
        # étranger : ni TVA, ni timbre, ni taxes
        summary.net_payable = totals.subtotal_ht
        return summary

    before, after = partition_custom_taxes(custom_taxes)
    summary.stamp_duty = stamp_duty_for(stamp_duty_enabled, stamp_duty_amount, is_foreign)
    summary.custom_taxes_total = custom_taxes_total(before + after, totals.total_ttc)
    summary.net_payable = compute_net_payable(totals.total_ttc, summary.stamp_duty, before, after)
    return summary


# ---------- Numérotation ----------

def generate_invoice_number(prefix: str, year: int, counter: int) -> str:
    return f"{prefix}-{year}-{counter:05d}"


def generate_credit_note_number(year: int, counter: int, prefix: str = "AV") -> str:
    return f"{prefix}-{year}-{counter:05d}"


def next_counter(used: Iterable[int]) -> int:
    return max(used, default=0) + 1


def counter_gaps(used: Iterable[int], limit: int = 10) -> List[int]:
    """Compteurs libres sous le maximum déjà attribué (trous de numérotation)."""
    used_set = set(used)
    top = max(used_set, default=0)
    gaps: List[int] = []
    for i in range(1, top):
        if len(gaps) >= limit:
            break
        if i not in used_set:
            gaps.append(i)
    return gaps


# ---------- Formats ----------

def format_currency(amount: float, currency: str = "TND") -> str:
    symbol = CURRENCIES.get(currency, currency)
    return f"{amount:.3f} {symbol}"
