"""
Proratisation des avoirs commerciaux.

Chaque avoir s'applique au "restant" de la facture (montants d'origine moins
les avoirs validés précédents), jamais aux montants d'origine : deux avoirs
successifs ne peuvent pas créditer deux fois la même somme.

Deux modes :
- "lines" : remise saisie ligne par ligne (HT, TTC ou taux, stockée en HT) ;
- "total" : nouveau total HT cible, appliqué au prorata de chaque ligne.
"""
from __future__ import annotations

from typing import Dict, Iterable, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, Field

from billing.errors import InvalidInput
from billing.models.credit_note import CreditNote, CreditNoteLine, CreditNoteMethod, CreditNoteUsageStatus, LineDiscount
from billing.models.invoice import Invoice, InvoiceLine
from billing.models.tax import CustomTax
from billing.services.pricing import VatBreakdownEntry, custom_taxes_total

DiscountField = Literal["ht", "ttc", "rate"]


class RemainingAmount(BaseModel):
    remaining_ht: float
    remaining_ttc: float


class ProratedTotals(BaseModel):
    new_subtotal_ht: float = 0.0
    new_total_vat: float = 0.0
    new_total_ttc: float = 0.0
    total_discount_ht: float = 0.0
    vat_breakdown: List[VatBreakdownEntry] = Field(default_factory=list)


class CreditNoteOutcome(BaseModel):
    withholding_rate: float = 0.0
    withholding_amount: float = 0.0
    new_custom_taxes: float = 0.0
    original_invoice_total: float = 0.0
    new_invoice_total: float = 0.0
    current_net_payable: float = 0.0
    new_net_payable: float = 0.0
    credit_amount: float = 0.0
    financial_credit: float = 0.0


# ---------- Restant après avoirs précédents ----------

def _get(row: Union[BaseModel, Mapping], name: str, default=None):
    if isinstance(row, Mapping):
        return row.get(name, default)
    return getattr(row, name, default)


def remaining_line_amounts(
    lines: Iterable[InvoiceLine],
    previous_credit_lines: Iterable[Union[CreditNoteLine, Mapping]] = (),
) -> Dict[str, RemainingAmount]:
    remaining = {
        l.id: RemainingAmount(remaining_ht=l.line_total_ht, remaining_ttc=l.line_total_ttc)
        for l in lines
    }
    for pl in previous_credit_lines:
        r = remaining.get(_get(pl, "invoice_line_id"))
        if r is None:
            continue
        r.remaining_ht -= float(_get(pl, "discount_ht", 0) or 0)
        r.remaining_ttc -= float(_get(pl, "discount_ttc", 0) or 0)
    return remaining


def previous_total_credited(credit_notes: Iterable[Union[CreditNote, Mapping]]) -> float:
    total = 0.0
    for cn in credit_notes:
        if _get(cn, "status") != "validated":
            continue
        total += float(_get(cn, "original_net_payable", 0) or 0) - float(_get(cn, "new_net_payable", 0) or 0)
    return total


class CreditNoteContext(BaseModel):
    """Facture + lignes + restant : tout ce qu'il faut pour calculer un avoir."""
    invoice: Invoice
    lines: List[InvoiceLine]
    custom_taxes: List[CustomTax] = Field(default_factory=list)
    stamp_duty: float = 0.0
    remaining: Dict[str, RemainingAmount] = Field(default_factory=dict)
    previous_total_credited: float = 0.0

    @property
    def is_foreign(self) -> bool:
        return self.invoice.is_foreign

    def vat_rate_for(self, line: InvoiceLine) -> float:
        return 0.0 if self.is_foreign else line.vat_rate

    def remaining_for(self, line: InvoiceLine) -> RemainingAmount:
        return self.remaining.get(line.id) or RemainingAmount(
            remaining_ht=line.line_total_ht, remaining_ttc=line.line_total_ttc
        )

    def line(self, line_id: str) -> InvoiceLine:
        for l in self.lines:
            if l.id == line_id:
                return l
        raise InvalidInput(f"line {line_id} does not belong to invoice {self.invoice.invoice_number}")

    @property
    def operational_ht(self) -> float:
        return sum(self.remaining_for(l).remaining_ht for l in self.lines)

    @property
    def operational_ttc(self) -> float:
        return sum(self.remaining_for(l).remaining_ttc for l in self.lines)

    @property
    def operational_vat(self) -> float:
        return self.operational_ttc - self.operational_ht

    @property
    def original_withholding_rate(self) -> float:
        return self.invoice.withholding_rate if self.invoice.withholding_applied else 0.0


# ---------- Remise par ligne (valeur canonique : HT) ----------

def _clamp(value: float, low: float, high: float) -> float:
    return min(max(low, value), high)


def discount_from_ht(value: float, max_ht: float) -> float:
    return _clamp(value, 0.0, max_ht)


def discount_from_ttc(value: float, vat_rate: float, max_ht: float, max_ttc: float) -> float:
    ttc = _clamp(value, 0.0, max_ttc)
    return min(ttc / (1 + vat_rate / 100), max_ht)


def discount_from_rate(rate: float, max_ht: float) -> float:
    return max_ht * (_clamp(rate, 0.0, 100.0) / 100)


def discount_ttc(discount_ht: float, vat_rate: float) -> float:
    return discount_ht * (1 + vat_rate / 100)


def discount_rate(discount_ht: float, max_ht: float) -> float:
    return discount_ht / max_ht * 100 if max_ht > 0 else 0.0


def edit_line_discount(context: CreditNoteContext, line_id: str, field: DiscountField, value: float) -> LineDiscount:
    """Convertit la dernière saisie (HT, TTC ou taux) en remise HT bornée par le restant."""
    line = context.line(line_id)
    rem = context.remaining_for(line)
    vat_rate = context.vat_rate_for(line)
    if field == "ht":
        ht = discount_from_ht(value, rem.remaining_ht)
    elif field == "ttc":
        ht = discount_from_ttc(value, vat_rate, rem.remaining_ht, rem.remaining_ttc)
    elif field == "rate":
        ht = discount_from_rate(value, rem.remaining_ht)
    else:
        raise InvalidInput(f"unknown discount field {field!r}")
    return LineDiscount(line_id=line_id, discount_ht=ht)


# ---------- Nouveaux totaux ----------

def _fold(context: CreditNoteContext, new_ht_by_line: Dict[str, float]) -> ProratedTotals:
    totals = ProratedTotals()
    vat_map: Dict[float, VatBreakdownEntry] = {}

    for line in context.lines:
        remaining_ht = context.remaining_for(line).remaining_ht
        new_ht = new_ht_by_line[line.id]
        rate = context.vat_rate_for(line)
        new_vat = new_ht * (rate / 100)

        totals.new_subtotal_ht += new_ht
        totals.total_discount_ht += remaining_ht - new_ht
        if rate > 0:
            entry = vat_map.setdefault(rate, VatBreakdownEntry(rate=rate))
            entry.base += new_ht
            entry.amount += new_vat

    totals.new_total_vat = sum(v.amount for v in vat_map.values())
    totals.new_total_ttc = totals.new_subtotal_ht + totals.new_total_vat
    totals.vat_breakdown = sorted(vat_map.values(), key=lambda v: v.rate)
    return totals


def compute_line_mode_totals(context: CreditNoteContext, discounts: Iterable[LineDiscount]) -> ProratedTotals:
    by_line = {d.line_id: d.discount_ht for d in discounts}
    new_ht = {}
    for line in context.lines:
        remaining_ht = context.remaining_for(line).remaining_ht
        new_ht[line.id] = remaining_ht - discount_from_ht(by_line.get(line.id, 0.0), remaining_ht)
    return _fold(context, new_ht)


def total_mode_ratio(context: CreditNoteContext, new_total_ht: float) -> float:
    op_ht = context.operational_ht
    return new_total_ht / op_ht if op_ht > 0 else 1.0


def compute_total_mode_totals(context: CreditNoteContext, new_total_ht: float) -> ProratedTotals:
    ratio = total_mode_ratio(context, target_ht_from_ht(context, new_total_ht))
    new_ht = {l.id: context.remaining_for(l).remaining_ht * ratio for l in context.lines}
    return _fold(context, new_ht)


def target_ht_from_ht(context: CreditNoteContext, value: float) -> float:
    return _clamp(value, 0.0, context.operational_ht)


def target_ht_from_ttc(context: CreditNoteContext, value: float) -> float:
    op_ttc = context.operational_ttc
    if op_ttc <= 0:
        return context.operational_ht
    return context.operational_ht * (_clamp(value, 0.0, op_ttc) / op_ttc)


def target_ht_from_vat(context: CreditNoteContext, value: float) -> float:
    op_vat = context.operational_vat
    if op_vat <= 0:
        return context.operational_ht
    return context.operational_ht * (_clamp(value, 0.0, op_vat) / op_vat)


# ---------- Net à payer, retenue, crédit financier ----------

def compute_outcome(
    context: CreditNoteContext,
    totals: ProratedTotals,
    withholding_override: Optional[float] = None,
) -> CreditNoteOutcome:
    inv = context.invoice
    rate = context.original_withholding_rate if withholding_override is None else withholding_override
    if rate < 0 or rate > 100:
        raise InvalidInput(f"withholding rate {rate} outside [0, 100]")

    new_ttc = totals.new_total_ttc
    new_taxes = custom_taxes_total(context.custom_taxes, new_ttc)
    withheld = new_ttc * (rate / 100)
    new_net = max(0.0, new_ttc - withheld + context.stamp_duty + new_taxes)

    # mesuré contre le restant, jamais contre la facture d'origine
    current_net = inv.net_payable - context.previous_total_credited
    paid = inv.paid_amount
    financial = paid - new_net if inv.payment_status in ("paid", "partial") and new_net < paid else 0.0

    return CreditNoteOutcome(
        withholding_rate=rate,
        withholding_amount=withheld,
        new_custom_taxes=new_taxes,
        original_invoice_total=inv.total_ttc + custom_taxes_total(context.custom_taxes, inv.total_ttc) + context.stamp_duty,
        new_invoice_total=new_ttc + new_taxes + context.stamp_duty,
        current_net_payable=current_net,
        new_net_payable=new_net,
        credit_amount=current_net - new_net,
        financial_credit=financial,
    )


class WithholdingThresholdGuard:
    """
    Le passage sous le seuil d'exonération (ex. TTC >= 1000 → < 1000) déclenche
    une seule fois par session la question "garder / annuler la retenue".
    """

    def __init__(self, threshold: float = 1000.0) -> None:
        self.threshold = threshold
        self.fired = False

    def check(self, original_ttc: float, new_ttc: float, original_rate: float) -> bool:
        if self.fired or original_rate <= 0:
            return False
        if original_ttc >= self.threshold and new_ttc < self.threshold:
            self.fired = True
            return True
        return False

    def reset(self) -> None:
        self.fired = False


# ---------- Lignes d'avoir ----------

def build_credit_note_lines(
    context: CreditNoteContext,
    mode: CreditNoteMethod,
    discounts: Iterable[LineDiscount] = (),
    new_total_ht: Optional[float] = None,
) -> List[CreditNoteLine]:
    by_line = {d.line_id: d.discount_ht for d in discounts}
    ratio = total_mode_ratio(context, target_ht_from_ht(context, new_total_ht or 0.0)) if mode == "total" else None

    out: List[CreditNoteLine] = []
    for idx, line in enumerate(context.lines):
        rem = context.remaining_for(line)
        if mode == "lines":
            disc_ht = discount_from_ht(by_line.get(line.id, 0.0), rem.remaining_ht)
        else:
            disc_ht = rem.remaining_ht * (1 - ratio)
        rate = context.vat_rate_for(line)
        new_ht = rem.remaining_ht - disc_ht
        new_vat = new_ht * (rate / 100)
        out.append(CreditNoteLine(
            invoice_line_id=line.id,
            product_id=line.product_id,
            product_name=line.description,
            original_quantity=line.quantity,
            original_unit_price_ht=line.unit_price_ht,
            original_line_total_ht=rem.remaining_ht,
            original_line_vat=line.line_vat,
            original_line_total_ttc=rem.remaining_ttc,
            discount_ht=disc_ht,
            discount_ttc=discount_ttc(disc_ht, rate),
            discount_rate=discount_rate(disc_ht, rem.remaining_ht),
            new_line_total_ht=new_ht,
            new_line_vat=new_vat,
            new_line_total_ttc=new_ht + new_vat,
            vat_rate=rate,
            line_order=idx,
        ))
    return out


def credit_note_usage_status(note: CreditNote) -> CreditNoteUsageStatus:
    generated = note.credit_generated
    if generated <= 0:
        return "available"
    if note.credit_refunded >= generated:
        return "refunded"
    if note.credit_refunded > 0:
        return "partially_refunded"
    if note.credit_used >= generated:
        return "fully_used"
    if note.credit_used > 0:
        return "partially_used"
    return "available"
