"""
Retenue à la source (clients locaux) et taux de change (clients étrangers).

Net à payer local = (Total HT - retenue) + TVA + timbre (+ taxes personnalisées).
Net à payer étranger = Total HT.
Les deux réglages sont figés dès qu'un paiement existe.
"""
from __future__ import annotations

import logging

from billing.errors import ConfigurationLocked, InvalidInput
from billing.models.invoice import Invoice, PaymentStatus

log = logging.getLogger(__name__)


def withholding_amount(subtotal_ht: float, rate: float) -> float:
    return subtotal_ht * (rate / 100)


def adjusted_net_payable(invoice: Invoice) -> float:
    if invoice.is_foreign:
        return invoice.subtotal_ht
    withheld = withholding_amount(invoice.subtotal_ht, invoice.withholding_rate) if invoice.withholding_applied else 0.0
    return (invoice.subtotal_ht - withheld) + invoice.total_vat + invoice.stamp_duty + invoice.custom_taxes_total


def remaining_balance(invoice: Invoice) -> float:
    return max(0.0, adjusted_net_payable(invoice) - invoice.paid_amount)


def payment_status_for(paid_amount: float, net_payable: float) -> PaymentStatus:
    if paid_amount <= 0:
        return "unpaid"
    if paid_amount >= net_payable:
        return "paid"
    return "partial"


def to_base_currency(amount: float, invoice: Invoice) -> float:
    return amount * invoice.exchange_rate if invoice.is_foreign else amount


def apply_withholding(invoice: Invoice, rate: float, has_payments: bool) -> Invoice:
    if invoice.is_foreign:
        raise InvalidInput("withholding does not apply to foreign invoices")
    if has_payments:
        raise ConfigurationLocked(f"invoice {invoice.invoice_number}: withholding locked, payments exist")
    if rate < 0 or rate > 100:
        raise InvalidInput(f"withholding rate {rate} outside [0, 100]")

    amount = withholding_amount(invoice.subtotal_ht, rate)
    if rate > 0:
        net = (invoice.subtotal_ht - amount) + invoice.total_vat + invoice.stamp_duty + invoice.custom_taxes_total
    else:
        net = invoice.total_ttc + invoice.stamp_duty + invoice.custom_taxes_total

    log.debug("withholding %s%% on %s -> net %.3f", rate, invoice.invoice_number, net)
    return invoice.model_copy(update={
        "withholding_rate": rate,
        "withholding_amount": amount,
        "withholding_applied": True,
        "net_payable": net,
    })


def apply_exchange_rate(invoice: Invoice, currency: str, rate: float, has_payments: bool) -> Invoice:
    if not invoice.is_foreign:
        raise InvalidInput("exchange rate only applies to foreign invoices")
    if has_payments:
        raise ConfigurationLocked(f"invoice {invoice.invoice_number}: currency locked, payments exist")
    if rate <= 0:
        raise InvalidInput(f"exchange rate must be positive (got {rate})")
    return invoice.model_copy(update={
        "currency": currency,
        "exchange_rate": rate,
        "net_payable": invoice.subtotal_ht,
    })
