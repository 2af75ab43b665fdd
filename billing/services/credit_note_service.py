from __future__ import annotations

import logging
from datetime import date
from pathlib import Path
from typing import Iterable, List, Optional

from billing.errors import InvalidInput, NotFound
from billing.models.common import hydrate
from billing.models.credit_note import CreditNote, CreditNoteLine, CreditNoteMethod, LineDiscount
from billing.services.credit_note_calc import (
    CreditNoteContext, CreditNoteOutcome, ProratedTotals, WithholdingThresholdGuard,
    build_credit_note_lines, compute_line_mode_totals, compute_outcome,
    compute_total_mode_totals, previous_total_credited, remaining_line_amounts,
)
from billing.services.client_service import ClientService
from billing.services.invoice_service import InvoiceService, html_to_pdf, template_env
from billing.services.pricing import generate_credit_note_number, next_counter
from billing.storage.repo import DataStore

log = logging.getLogger(__name__)

REFUND_METHODS = ("cash", "bank_transfer", "check")


class CreditNoteService:
    """
    Avoirs commerciaux : toujours calculés sur le restant de la facture.
    Un avoir ne modifie jamais les lignes de facture, seulement
    total_credited / credit_note_count.
    """

    def __init__(self, store: DataStore, invoices: InvoiceService,
                 clients: Optional[ClientService] = None):
        self.store = store
        self.repo = store.table("credit_notes")
        self.lines_repo = store.table("credit_note_lines")
        self.invoices = invoices
        self.clients = clients or invoices.clients
        self.settings = invoices.settings

    # ----------- lecture -----------

    def list_for_invoice(self, invoice_id: str) -> List[CreditNote]:
        return hydrate(CreditNote, self.repo.find(lambda d: d.get("invoice_id") == invoice_id))

    def get_by_id(self, credit_note_id: str) -> CreditNote:
        row = self.repo.get_by_id(credit_note_id)
        if row is None:
            raise NotFound("credit note", credit_note_id)
        return CreditNote(**row)

    def get_lines(self, credit_note_id: str) -> List[CreditNoteLine]:
        rows = self.lines_repo.find(lambda d: d.get("credit_note_id") == credit_note_id)
        return sorted(hydrate(CreditNoteLine, rows), key=lambda l: l.line_order)

    def load_context(self, invoice_id: str) -> CreditNoteContext:
        inv = self.invoices.get_by_id(invoice_id)
        lines = self.invoices.get_lines(invoice_id)
        validated = [cn for cn in self.list_for_invoice(invoice_id) if cn.status == "validated"]
        ids = {cn.id for cn in validated}
        previous_lines = self.lines_repo.find(lambda d: d.get("credit_note_id") in ids)

        return CreditNoteContext(
            invoice=inv,
            lines=lines,
            custom_taxes=self.invoices.get_custom_taxes(invoice_id),
            stamp_duty=inv.stamp_duty,
            remaining=remaining_line_amounts(lines, previous_lines),
            previous_total_credited=previous_total_credited(validated),
        )

    # ----------- numérotation -----------

    def next_number(self, year: int) -> tuple[int, str]:
        org = self.settings.organization_id
        rows = self.repo.find(lambda d: d.get("organization_id") == org and d.get("credit_note_year") == year)
        counter = next_counter(int(r.get("credit_note_counter") or 0) for r in rows)
        return counter, generate_credit_note_number(year, counter, self.settings.credit_note_prefix)

    # ----------- calcul + création -----------

    def preview(self, context: CreditNoteContext, mode: CreditNoteMethod,
                discounts: Iterable[LineDiscount] = (), new_total_ht: Optional[float] = None,
                withholding_override: Optional[float] = None) -> tuple[ProratedTotals, CreditNoteOutcome]:
        if mode == "lines":
            totals = compute_line_mode_totals(context, discounts)
        elif mode == "total":
            if new_total_ht is None:
                raise InvalidInput("total mode needs a target HT")
            totals = compute_total_mode_totals(context, new_total_ht)
        else:
            raise InvalidInput(f"unknown credit note mode {mode!r}")
        return totals, compute_outcome(context, totals, withholding_override)

    def threshold_guard(self) -> WithholdingThresholdGuard:
        """Un garde par session de saisie : la question ne se pose qu'une fois."""
        return WithholdingThresholdGuard(self.settings.withholding_threshold)

    def needs_withholding_prompt(self, context: CreditNoteContext, totals: ProratedTotals,
                                 guard: WithholdingThresholdGuard) -> bool:
        return guard.check(context.operational_ttc, totals.new_total_ttc, context.original_withholding_rate)

    def create_commercial_credit_note(
        self,
        invoice_id: str,
        mode: CreditNoteMethod,
        discounts: Iterable[LineDiscount] = (),
        new_total_ht: Optional[float] = None,
        withholding_override: Optional[float] = None,
        reason: Optional[str] = None,
        credit_note_date: Optional[date] = None,
    ) -> CreditNote:
        discounts = list(discounts)
        context = self.load_context(invoice_id)
        if context.invoice.status != "validated":
            raise InvalidInput(f"invoice {context.invoice.invoice_number} must be validated before any credit note")
        totals, outcome = self.preview(context, mode, discounts, new_total_ht, withholding_override)
        if totals.total_discount_ht <= 0:
            raise InvalidInput("credit note without any discount")

        inv = context.invoice
        cn_date = credit_note_date or date.today()
        counter, number = self.next_number(cn_date.year)

        note = CreditNote(
            organization_id=inv.organization_id,
            invoice_id=inv.id,
            client_id=inv.client_id,
            credit_note_number=number,
            credit_note_prefix=self.settings.credit_note_prefix,
            credit_note_year=cn_date.year,
            credit_note_counter=counter,
            credit_note_type="commercial_price",
            credit_note_method=mode,
            credit_note_date=cn_date,
            subtotal_ht=totals.new_subtotal_ht,
            total_vat=totals.new_total_vat,
            total_ttc=totals.new_total_ttc,
            stamp_duty_amount=context.stamp_duty,
            withholding_rate=outcome.withholding_rate,
            withholding_amount=outcome.withholding_amount,
            original_net_payable=outcome.current_net_payable,
            new_net_payable=outcome.new_net_payable,
            financial_credit=outcome.financial_credit,
            credit_generated=outcome.financial_credit,
            currency=inv.currency,
            reason=reason,
        )
        lines = build_credit_note_lines(context, mode, discounts, new_total_ht)
        names = {l.id: l.description for l in context.lines}

        with self.store.transaction("credit_notes", "credit_note_lines", "invoices"):
            self.repo.add(note)
            self.lines_repo.add_many(
                l.model_copy(update={"credit_note_id": note.id, "product_name": names.get(l.invoice_line_id)})
                for l in lines
            )
            inv.total_credited = context.previous_total_credited + outcome.credit_amount
            inv.credit_note_count += 1
            self.invoices.save_invoice(inv)

        log.info("credit note %s on %s: credited %.3f, financial credit %.3f",
                 number, inv.invoice_number, outcome.credit_amount, outcome.financial_credit)
        return note

    def transfer_financial_credit(self, credit_note_id: str) -> CreditNote:
        """Verse le crédit financier (trop-perçu) sur le compte client."""
        note = self.get_by_id(credit_note_id)
        if note.status != "validated":
            raise InvalidInput(f"credit note {note.credit_note_number} is not validated")
        if note.credit_transferred:
            raise InvalidInput(f"credit note {note.credit_note_number} already transferred")
        if note.financial_credit <= 0:
            raise InvalidInput(f"credit note {note.credit_note_number} carries no financial credit")

        with self.store.transaction("credit_notes", "clients", "client_account_movements"):
            self.clients.credit_account(
                note.client_id, note.financial_credit, "credit_note", source_id=note.id,
                notes=f"Crédit financier avoir {note.credit_note_number}",
            )
            note.credit_transferred = True
            self.repo.update(note)
        return note

    def max_refundable(self, note: CreditNote) -> float:
        """min(payé, TTC - déjà crédité, crédit encore disponible)."""
        inv = self.invoices.get_by_id(note.invoice_id)
        if inv.payment_status == "unpaid":
            return 0.0
        return max(0.0, min(inv.paid_amount, inv.total_ttc - inv.total_credited, note.credit_available))

    def refund_credit(self, credit_note_id: str, amount: float, method: str = "bank_transfer",
                      reference_number: Optional[str] = None, notes: Optional[str] = None,
                      refund_date: Optional[date] = None) -> CreditNote:
        """Rembourse au client tout ou partie du crédit versé sur son compte."""
        note = self.get_by_id(credit_note_id)
        if not note.credit_transferred:
            raise InvalidInput(f"credit note {note.credit_note_number} has not been transferred to the client account")
        if method not in REFUND_METHODS:
            raise InvalidInput(f"unknown refund method {method!r}")
        cap = self.max_refundable(note)
        if amount <= 0 or amount > cap + 1e-6:
            raise InvalidInput(f"refund {amount:.3f} outside (0, {cap:.3f}]")

        detail = notes or f"Remboursement avoir {note.credit_note_number}"
        if reference_number:
            detail = f"{detail} ({method} {reference_number})"
        with self.store.transaction("credit_notes", "clients", "client_account_movements"):
            self.clients.debit_account(note.client_id, amount, "refund", source_id=note.id,
                                       notes=detail, movement_date=refund_date)
            note.credit_refunded += amount
            self.repo.update(note)

        log.info("credit note %s: refunded %.3f by %s", note.credit_note_number, amount, method)
        return note

    # ----------- export PDF ----------

    def render_credit_note_html(self, note: CreditNote) -> str:
        tpl = template_env(self.settings).get_template("credit_note.html")
        return tpl.render(
            note=note,
            invoice=self.invoices.get_by_id(note.invoice_id),
            lines=self.get_lines(note.id),
            currency=note.currency,
            company=self.settings.company,
        )

    def export_credit_note_pdf(self, note: CreditNote, out_dir: Optional[str] = None) -> str:
        exports_dir = Path(out_dir) if out_dir else Path(self.settings.exports_dir) / "avoirs"
        exports_dir.mkdir(parents=True, exist_ok=True)
        return html_to_pdf(self.render_credit_note_html(note), exports_dir / f"{note.credit_note_number}.pdf",
                           self.settings)
