from __future__ import annotations

from typing import Dict, Iterable, Mapping, Optional

from pydantic import BaseModel

from billing.errors import InvalidInput
from billing.models.invoice import Invoice
from billing.models.payment import MixedPaymentLine, PaymentDraft
from billing.services.pricing import format_currency
from billing.services.withholding import remaining_balance, to_base_currency

MIXED_TOLERANCE = 0.001
_EPS = 1e-6

# méthode -> référence obligatoire
PAYMENT_METHODS: Dict[str, bool] = {
    "cash": False,
    "card": False,
    "check": True,
    "draft": True,
    "iban_transfer": True,
    "swift_transfer": True,
    "bank_deposit": True,
    "client_credit_note": False,
    "client_deposit": False,
    "mixed": False,
}

BALANCE_METHODS = ("client_credit_note", "client_deposit")

MIXED_PAYMENT_METHODS = {
    m: ref for m, ref in PAYMENT_METHODS.items() if m not in BALANCE_METHODS and m != "mixed"
}

CREDIT_NOTE_SOURCES = ("credit_note", "credit_note_unblock")


class BalanceBuckets(BaseModel):
    total: float = 0.0
    credit_note: float = 0.0
    deposit: float = 0.0

    def for_method(self, method: str) -> float:
        if method == "client_credit_note":
            return self.credit_note
        if method == "client_deposit":
            return self.deposit
        return self.total


def split_client_balance(total_balance: float, movements: Iterable[Mapping]) -> BalanceBuckets:
    """
    Répartit le solde client entre avoirs et acomptes, au prorata des crédits
    historiques de chaque source (pas de suivi unitaire).
    """
    credit_note_credits = 0.0
    deposit_credits = 0.0
    for m in movements:
        if m.get("movement_type") != "credit":
            continue
        if m.get("source_type") in CREDIT_NOTE_SOURCES:
            credit_note_credits += float(m.get("amount") or 0)
        elif m.get("source_type") == "direct_deposit":
            deposit_credits += float(m.get("amount") or 0)

    total_credits = credit_note_credits + deposit_credits
    if total_credits <= 0 or total_balance <= 0:
        return BalanceBuckets(total=total_balance)
    return BalanceBuckets(
        total=total_balance,
        credit_note=max(0.0, credit_note_credits / total_credits * total_balance),
        deposit=max(0.0, deposit_credits / total_credits * total_balance),
    )


def mixed_lines_total(lines: Iterable[MixedPaymentLine]) -> float:
    return sum(line.amount or 0 for line in lines)


def _validate_mixed_lines(draft: PaymentDraft, target: float) -> None:
    if not draft.mixed_lines:
        raise InvalidInput("mixed payment needs at least one line")
    for line in draft.mixed_lines:
        if line.method not in MIXED_PAYMENT_METHODS:
            raise InvalidInput(f"method {line.method!r} not allowed in a mixed payment")
        if line.amount <= 0:
            raise InvalidInput("mixed payment lines must have a positive amount")
        if MIXED_PAYMENT_METHODS[line.method] and not line.reference_number.strip():
            raise InvalidInput(f"reference number required for {line.method}")
    diff = target - mixed_lines_total(draft.mixed_lines)
    if abs(diff) >= MIXED_TOLERANCE:
        raise InvalidInput(f"mixed lines differ from payment amount by {diff:.3f}")


def validate_payment(draft: PaymentDraft, invoice: Invoice, buckets: Optional[BalanceBuckets] = None) -> None:
    if draft.method not in PAYMENT_METHODS:
        raise InvalidInput(f"unknown payment method {draft.method!r}")
    if draft.payment_date is None:
        raise InvalidInput("payment date is required")
    if draft.amount <= 0:
        raise InvalidInput("payment amount must be positive")

    remaining = remaining_balance(invoice)
    if draft.amount > remaining + _EPS:
        raise InvalidInput(f"amount {draft.amount:.3f} exceeds remaining balance {remaining:.3f}")

    rate = draft.exchange_rate if invoice.is_foreign else 1.0
    amount_base = draft.amount * rate

    if draft.method == "mixed":
        # lignes saisies en devise de base
        _validate_mixed_lines(draft, amount_base)
    elif draft.method in BALANCE_METHODS:
        cap = (buckets or BalanceBuckets()).for_method(draft.method)
        if amount_base > cap + _EPS:
            raise InvalidInput(f"amount {amount_base:.3f} exceeds available client balance {cap:.3f}")
    elif PAYMENT_METHODS[draft.method] and not draft.reference_number.strip():
        raise InvalidInput(f"reference number required for {draft.method}")


def can_save_payment(draft: PaymentDraft, invoice: Invoice, buckets: Optional[BalanceBuckets] = None) -> bool:
    try:
        validate_payment(draft, invoice, buckets)
    except InvalidInput:
        return False
    return True


def build_mixed_reference(lines: Iterable[MixedPaymentLine], currency: str = "TND") -> str:
    parts = []
    for line in lines:
        amt = format_currency(line.amount, currency)
        if MIXED_PAYMENT_METHODS.get(line.method) and line.reference_number:
            parts.append(f"{line.method}: {amt} ({line.reference_number})")
        else:
            parts.append(f"{line.method}: {amt}")
    return " | ".join(parts)


def max_balance_payment(invoice: Invoice, buckets: BalanceBuckets, method: str) -> float:
    """Montant max utilisable sur le solde client, en devise de base."""
    return min(buckets.for_method(method), to_base_currency(remaining_balance(invoice), invoice))
