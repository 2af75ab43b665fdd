from __future__ import annotations

import logging
from typing import List, Optional

from billing.errors import InvalidInput, NotFound
from billing.models.common import hydrate
from billing.models.credit_note import CreditNote
from billing.models.invoice import Invoice
from billing.models.payment import Payment, PaymentDraft
from billing.services.client_service import ClientService
from billing.services.invoice_service import InvoiceService
from billing.services.payment_rules import (
    BALANCE_METHODS, BalanceBuckets, build_mixed_reference, validate_payment,
)
from billing.services.withholding import (
    adjusted_net_payable, apply_exchange_rate, apply_withholding, payment_status_for,
)
from billing.storage.repo import DataStore

log = logging.getLogger(__name__)

PAYMENT_TABLES = ("payments", "invoices", "clients", "client_account_movements", "credit_notes")


class PaymentService:
    """
    Configuration (retenue / devise) et encaissements d'une facture.
    Le statut de paiement se compare toujours au net à payer ajusté.
    """

    def __init__(self, store: DataStore, invoices: InvoiceService,
                 clients: Optional[ClientService] = None):
        self.store = store
        self.repo = store.table("payments")
        self.credit_notes_repo = store.table("credit_notes")
        self.invoices = invoices
        self.clients = clients or invoices.clients

    def list_payments(self, invoice_id: str) -> List[Payment]:
        rows = self.repo.find(lambda d: d.get("invoice_id") == invoice_id)
        return sorted(hydrate(Payment, rows), key=lambda p: (p.payment_date, p.created_at))

    def has_payments(self, invoice_id: str) -> bool:
        return self.invoices.has_payments(invoice_id)

    # ----------- configuration -----------

    def configure_withholding(self, invoice_id: str, rate: float) -> Invoice:
        inv = self.invoices.get_by_id(invoice_id)
        inv = apply_withholding(inv, rate, self.has_payments(invoice_id))
        self.invoices.save_invoice(inv)
        log.info("withholding %s%% set on %s", rate, inv.invoice_number)
        return inv

    def configure_currency(self, invoice_id: str, currency: str, rate: Optional[float] = None) -> Invoice:
        inv = self.invoices.get_by_id(invoice_id)
        if rate is None:
            rate = self.invoices.settings.exchange_rate_for(currency)
        inv = apply_exchange_rate(inv, currency, rate, self.has_payments(invoice_id))
        self.invoices.save_invoice(inv)
        log.info("currency %s @ %s set on %s", currency, rate, inv.invoice_number)
        return inv

    # ----------- encaissements -----------

    def balance_buckets(self, invoice: Invoice) -> BalanceBuckets:
        try:
            return self.clients.balance_buckets(invoice.client_id)
        except NotFound:
            return BalanceBuckets()

    def _transferred_credit_notes(self, client_id: str) -> List[CreditNote]:
        rows = self.credit_notes_repo.find(
            lambda d: d.get("client_id") == client_id and d.get("credit_transferred")
        )
        return sorted(hydrate(CreditNote, rows), key=lambda n: (n.credit_note_date, n.created_at))

    def _use_credit_notes(self, client_id: str, amount: float) -> None:
        """Impute un paiement par avoir sur les avoirs versés au compte, du plus ancien au plus récent."""
        for note in self._transferred_credit_notes(client_id):
            if amount <= 0:
                break
            used = min(amount, note.credit_available)
            if used <= 0:
                continue
            self.credit_notes_repo.update({"id": note.id, "credit_used": note.credit_used + used})
            amount -= used

    def _release_credit_notes(self, client_id: str, amount: float) -> None:
        for note in reversed(self._transferred_credit_notes(client_id)):
            if amount <= 0:
                break
            released = min(amount, note.credit_used)
            if released <= 0:
                continue
            self.credit_notes_repo.update({"id": note.id, "credit_used": note.credit_used - released})
            amount -= released

    def record_payment(self, invoice_id: str, draft: PaymentDraft) -> Payment:
        inv = self.invoices.get_by_id(invoice_id)
        if inv.status != "validated":
            raise InvalidInput(f"invoice {inv.invoice_number} must be validated before any payment")
        buckets = self.balance_buckets(inv) if draft.method in BALANCE_METHODS else None
        validate_payment(draft, inv, buckets)

        rate = draft.exchange_rate if inv.is_foreign else 1.0
        amount_base = draft.amount * rate

        reference = draft.reference_number.strip() or None
        if draft.method == "mixed":
            reference = build_mixed_reference(draft.mixed_lines, self.invoices.settings.base_currency)

        notes = draft.notes.strip() or None
        if inv.is_foreign:
            rate_note = f"Taux de change : 1 {inv.currency} = {rate} {self.invoices.settings.base_currency}"
            notes = f"{notes}\n{rate_note}" if notes else rate_note

        payment = Payment(
            invoice_id=inv.id,
            payment_date=draft.payment_date,
            amount=draft.amount,
            net_amount=amount_base,
            payment_method=draft.method,
            reference_number=reference,
            notes=notes,
        )

        with self.store.transaction(*PAYMENT_TABLES):
            self.repo.add(payment)
            if draft.method in BALANCE_METHODS:
                source = "credit_note_payment" if draft.method == "client_credit_note" else "deposit_payment"
                self.clients.debit_account(
                    inv.client_id, amount_base, source, source_id=inv.id,
                    notes=f"Paiement facture {inv.invoice_number}", movement_date=draft.payment_date,
                )
                if draft.method == "client_credit_note":
                    self._use_credit_notes(inv.client_id, amount_base)
            inv.paid_amount += draft.amount
            inv.payment_status = payment_status_for(inv.paid_amount, adjusted_net_payable(inv))
            self.invoices.save_invoice(inv)

        log.info("payment %.3f (%s) on %s -> %s", draft.amount, draft.method, inv.invoice_number, inv.payment_status)
        return payment

    def delete_payment(self, payment_id: str) -> Invoice:
        row = self.repo.get_by_id(payment_id)
        if row is None:
            raise NotFound("payment", payment_id)
        payment = Payment(**row)
        inv = self.invoices.get_by_id(payment.invoice_id)

        with self.store.transaction(*PAYMENT_TABLES):
            self.repo.delete(payment_id)
            if payment.payment_method in BALANCE_METHODS:
                # le montant retourne dans le bucket d'où il venait
                is_credit = payment.payment_method == "client_credit_note"
                self.clients.credit_account(
                    inv.client_id, payment.net_amount, "credit_note" if is_credit else "direct_deposit",
                    source_id=inv.id, notes=f"Annulation paiement facture {inv.invoice_number}",
                )
                if is_credit:
                    self._release_credit_notes(inv.client_id, payment.net_amount)
            inv.paid_amount = max(0.0, inv.paid_amount - payment.amount)
            inv.payment_status = payment_status_for(inv.paid_amount, adjusted_net_payable(inv))
            self.invoices.save_invoice(inv)

        log.info("payment %s removed from %s", payment_id, inv.invoice_number)
        return inv
