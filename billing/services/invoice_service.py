# billing/services/invoice_service.py
from __future__ import annotations
import logging
import os
import re
from datetime import datetime
from pathlib import Path
from shutil import which
from typing import Dict, List, Optional

import pdfkit  # utilisé si wkhtmltopdf dispo
from jinja2 import Environment, FileSystemLoader, select_autoescape

from billing.errors import InvalidInput, NotFound
from billing.models.common import hydrate
from billing.models.invoice import Invoice, InvoiceDraft, InvoiceLine, InvoiceLineForm
from billing.models.tax import CustomTax
from billing.services.catalog_service import CatalogService
from billing.services.client_service import ClientService
from billing.services.pricing import (
    calculate_line_total, counter_gaps, format_currency, generate_invoice_number,
    next_counter, summarize, validate_line,
)
from billing.services.stock import build_stock_bubbles, check_stock, stock_differences, totals_by_product
from billing.services.withholding import apply_withholding
from billing.settings import Settings
from billing.storage.repo import DataStore

log = logging.getLogger(__name__)

WRITE_TABLES = (
    "invoices", "invoice_lines", "invoice_custom_taxes",
    "products", "stock_movements", "product_reservations",
)

# ---------- Formats ----------
def _slug(text: str) -> str:
    text = (text or "").strip()
    text = re.sub(r'[\\/:*?"<>|\n\r\t]', "_", text)
    text = re.sub(r"\s+", " ", text)
    return text or "Client"

# ---------- PDF helpers ----------
def _clean_path(p: str) -> str:
    """Corrige 'C\\:\\Program Files\\...' -> 'C:\\Program Files\\...' et normalise."""
    if not p:
        return ""
    p = p.strip().strip('"').strip("'")
    p = p.replace("\\:", ":")
    return os.path.normpath(p)

def find_wkhtmltopdf(settings: Settings) -> Optional[str]:
    """
    Localise wkhtmltopdf :
    - settings.wkhtmltopdf_path (alimenté par la variable WKHTMLTOPDF)
    - chemins Windows connus
    - PATH
    """
    if settings.wkhtmltopdf_path:
        path = _clean_path(settings.wkhtmltopdf_path)
        if Path(path).is_file():
            return path

    for c in (
        r"C:\Program Files\wkhtmltopdf\bin\wkhtmltopdf.exe",
        r"C:\Program Files (x86)\wkhtmltopdf\bin\wkhtmltopdf.exe",
    ):
        if Path(c).is_file():
            return c

    found = which("wkhtmltopdf")
    return _clean_path(found) if found else None

def render_pdf_with_weasyprint(html: str, out_path: Path, templates_dir: Path) -> None:
    """Fallback WeasyPrint (si wkhtmltopdf absent)."""
    try:
        from weasyprint import HTML, CSS
    except ImportError as e:
        raise RuntimeError(
            "wkhtmltopdf not found and WeasyPrint is not installed: "
            f"install the pdf extra or set WKHTMLTOPDF ({e})"
        ) from e

    css_file = templates_dir / "stylesheet.css"
    styles = [CSS(filename=str(css_file))] if css_file.exists() else None
    HTML(string=html, base_url=str(templates_dir.resolve())).write_pdf(str(out_path), stylesheets=styles)

def html_to_pdf(html: str, out_path: Path, settings: Settings) -> str:
    """wkhtmltopdf (pdfkit) en priorité, sinon WeasyPrint."""
    templates_dir = Path(settings.templates_dir)
    wkhtml = find_wkhtmltopdf(settings)
    if wkhtml:
        try:
            config = pdfkit.configuration(wkhtmltopdf=wkhtml)
            options = {"enable-local-file-access": None, "quiet": "", "encoding": "UTF-8"}
            css_path = str((templates_dir / "stylesheet.css").resolve())
            pdfkit.from_string(html, str(out_path), options=options, configuration=config, css=css_path)
            return str(out_path)
        except (IOError, OSError) as e:
            log.warning("wkhtmltopdf failed (%s), falling back to WeasyPrint", e)

    render_pdf_with_weasyprint(html, out_path, templates_dir)
    return str(out_path)

def template_env(settings: Settings) -> Environment:
    env = Environment(
        loader=FileSystemLoader(str(settings.templates_dir)),
        autoescape=select_autoescape(["html", "xml"]),
    )
    env.filters["money"] = format_currency
    return env


# ---------- Service ----------
class InvoiceService:
    def __init__(self, store: DataStore, settings: Settings,
                 catalog: Optional[CatalogService] = None,
                 clients: Optional[ClientService] = None):
        self.store = store
        self.settings = settings
        self.repo = store.table("invoices")
        self.lines_repo = store.table("invoice_lines")
        self.taxes_repo = store.table("invoice_custom_taxes")
        self.catalog = catalog or CatalogService(store)
        self.clients = clients or ClientService(store)

    # ----------- CRUD/list -----------
    def list_invoices(self) -> List[Invoice]:
        org = self.settings.organization_id
        return hydrate(Invoice, self.repo.find(lambda x: x.get("organization_id") == org))

    def list_by_client(self, client_id: str) -> List[Invoice]:
        return [i for i in self.list_invoices() if i.client_id == client_id]

    def get_by_id(self, invoice_id: str) -> Invoice:
        row = self.repo.get_by_id(invoice_id)
        if row is None:
            raise NotFound("invoice", invoice_id)
        return Invoice(**row)

    def get_lines(self, invoice_id: str) -> List[InvoiceLine]:
        lines = hydrate(InvoiceLine, self.lines_repo.find(lambda x: x.get("invoice_id") == invoice_id))
        return sorted(lines, key=lambda l: l.line_order)

    def get_custom_taxes(self, invoice_id: str) -> List[CustomTax]:
        return hydrate(CustomTax, self.taxes_repo.find(lambda x: x.get("invoice_id") == invoice_id))

    def save_invoice(self, inv: Invoice) -> Invoice:
        inv.updated_at = datetime.utcnow()
        self.repo.update(inv)
        return inv

    # ----------- numérotation -----------
    def _used_counters(self, year: int, prefix: Optional[str] = None) -> List[int]:
        org = self.settings.organization_id
        rows = self.repo.find(
            lambda x: x.get("organization_id") == org and x.get("invoice_year") == year
            and (prefix is None or x.get("invoice_prefix") == prefix)
        )
        return [int(r.get("invoice_counter") or 0) for r in rows]

    def next_counter(self, year: int, prefix: Optional[str] = None) -> int:
        return next_counter(self._used_counters(year, prefix))

    def counter_gaps(self, year: int, prefix: Optional[str] = None, limit: int = 10) -> List[int]:
        return counter_gaps(self._used_counters(year, prefix), limit)

    def is_counter_available(self, year: int, counter: int, prefix: Optional[str] = None) -> bool:
        return counter > 0 and counter not in self._used_counters(year, prefix)

    def has_payments(self, invoice_id: str) -> bool:
        payments = self.store.table("payments")
        return payments.find_one(lambda x: x.get("invoice_id") == invoice_id) is not None

    # ----------- lignes -----------
    def with_defaults(self, draft: InvoiceDraft) -> InvoiceDraft:
        """Complète le brouillon avec le timbre et le taux de change des réglages."""
        update = {}
        if draft.stamp_duty_enabled is None:
            update["stamp_duty_enabled"] = self.settings.stamp_duty_enabled
        if draft.stamp_duty_amount is None:
            update["stamp_duty_amount"] = self.settings.stamp_duty_amount
        if draft.exchange_rate is None:
            update["exchange_rate"] = self.settings.exchange_rate_for(draft.currency) if draft.is_foreign else 1.0
        return draft.model_copy(update=update) if update else draft

    def _validate_draft(self, draft: InvoiceDraft, original_totals: Optional[Dict[str, float]] = None) -> None:
        if not draft.client_id:
            raise InvalidInput("client is required")
        if not draft.lines:
            raise InvalidInput("an invoice needs at least one line")
        if draft.due_date and draft.due_date < draft.invoice_date:
            raise InvalidInput("due date precedes invoice date")
        if draft.is_foreign and draft.exchange_rate <= 0:
            raise InvalidInput("exchange rate must be positive")
        for line in draft.lines:
            validate_line(line)
        check_stock(draft.lines, original_totals)

    @staticmethod
    def _build_lines(invoice_id: str, lines: List[InvoiceLineForm], is_foreign: bool) -> List[InvoiceLine]:
        out = []
        for index, line in enumerate(lines):
            lt = calculate_line_total(line.quantity, line.unit_price_ht, line.vat_rate,
                                      line.discount_percent, is_foreign)
            out.append(InvoiceLine(
                invoice_id=invoice_id,
                product_id=line.product_id,
                description=line.description or None,
                quantity=line.quantity,
                unit_price_ht=line.unit_price_ht,
                vat_rate=line.vat_rate,
                discount_percent=line.discount_percent,
                line_total_ht=lt.line_ht,
                line_vat=lt.line_vat,
                line_total_ttc=lt.line_ttc,
                line_order=index,
            ))
        return out

    @staticmethod
    def _apply_summary(inv: Invoice, draft: InvoiceDraft) -> None:
        s = summarize(draft.lines, draft.is_foreign, draft.stamp_duty_enabled,
                      draft.stamp_duty_amount, draft.custom_taxes)
        inv.client_id = draft.client_id
        inv.client_type = draft.client_type
        inv.invoice_date = draft.invoice_date
        inv.due_date = draft.due_date
        inv.currency = draft.currency if draft.is_foreign else "TND"
        inv.exchange_rate = draft.exchange_rate if draft.is_foreign else 1.0
        inv.subtotal_ht = s.subtotal_ht
        inv.total_vat = s.total_vat
        inv.total_discount = s.total_discount
        inv.total_ttc = s.total_ttc
        inv.stamp_duty_enabled = False if draft.is_foreign else draft.stamp_duty_enabled
        inv.stamp_duty_amount = s.stamp_duty
        inv.custom_taxes_total = s.custom_taxes_total
        inv.net_payable = s.net_payable
        inv.notes = draft.notes

    def _replace_custom_taxes(self, invoice_id: str, taxes: List[CustomTax]) -> None:
        self.taxes_repo.delete_where(lambda x: x.get("invoice_id") == invoice_id)
        self.taxes_repo.add_many(t.model_copy(update={"invoice_id": invoice_id}) for t in taxes)

    # ----------- création -----------
    def create_invoice(self, draft: InvoiceDraft) -> Invoice:
        """
        Facture + lignes + taxes + réservations + stock, en une seule transaction.
        """
        draft = self.with_defaults(draft)
        self._validate_draft(draft)

        year = draft.invoice_date.year
        prefix = draft.prefix or self.settings.default_invoice_prefix
        counter = draft.counter or self.next_counter(year, prefix)
        if not self.is_counter_available(year, counter, prefix):
            raise InvalidInput(f"invoice number {generate_invoice_number(prefix, year, counter)} already used")

        inv = Invoice(
            organization_id=self.settings.organization_id,
            client_id=draft.client_id,
            invoice_number=generate_invoice_number(prefix, year, counter),
            invoice_prefix=prefix,
            invoice_year=year,
            invoice_counter=counter,
        )
        self._apply_summary(inv, draft)

        with self.store.transaction(*WRITE_TABLES):
            self.repo.add(inv)
            self.lines_repo.add_many(self._build_lines(inv.id, draft.lines, draft.is_foreign))
            if not draft.is_foreign:
                self._replace_custom_taxes(inv.id, draft.custom_taxes)

            for line in draft.lines:
                if line.from_reservation and line.reservation_id:
                    self.catalog.consume_reservation(line.reservation_id, line.product_id, line.quantity)

            for bubble in build_stock_bubbles(draft.lines):
                if not bubble.unlimited_stock:
                    self.catalog.adjust_stock(bubble.product_id, -bubble.quantity_used,
                                              f"Facture {inv.invoice_number}")

        log.info("invoice %s created (net payable %.3f)", inv.invoice_number, inv.net_payable)
        return inv

    # ----------- modification -----------
    def original_totals(self, invoice_id: str) -> Dict[str, float]:
        return totals_by_product(self.get_lines(invoice_id))

    def update_invoice(self, invoice_id: str, draft: InvoiceDraft) -> Invoice:
        """
        Remplace toutes les lignes. Le stock ne bouge que de la différence
        entre nouvelles quantités et quantités d'origine.
        Une facture "draft" a déjà rendu son stock : elle repasse en "created".
        Une facture validée, payée ou portant un avoir n'est plus modifiable.
        """
        inv = self.get_by_id(invoice_id)
        if inv.status not in ("created", "draft"):
            raise InvalidInput(f"invoice {inv.invoice_number} is {inv.status} and can no longer be edited")
        if inv.credit_note_count > 0:
            raise InvalidInput(f"invoice {inv.invoice_number} has credit notes and can no longer be edited")
        if self.has_payments(invoice_id):
            raise InvalidInput(f"invoice {inv.invoice_number} has payments and can no longer be edited")

        draft = self.with_defaults(draft)
        original_lines = self.get_lines(invoice_id)
        use_mode = inv.status == "draft"
        original = {} if use_mode else totals_by_product(original_lines)
        self._validate_draft(draft, original)

        self._apply_summary(inv, draft)
        if inv.withholding_applied:
            if inv.is_foreign:
                inv.withholding_applied = False
                inv.withholding_rate = 0.0
                inv.withholding_amount = 0.0
            else:
                # la retenue suit le nouveau sous-total
                inv = apply_withholding(inv, inv.withholding_rate, has_payments=False)
        if use_mode:
            inv.status = "created"

        with self.store.transaction(*WRITE_TABLES):
            self.save_invoice(inv)
            self.lines_repo.delete_where(lambda x: x.get("invoice_id") == invoice_id)
            self.lines_repo.add_many(self._build_lines(invoice_id, draft.lines, draft.is_foreign))
            self._replace_custom_taxes(invoice_id, [] if draft.is_foreign else draft.custom_taxes)

            diffs = stock_differences(draft.lines, [] if use_mode else original_lines)
            for product_id, diff in diffs.items():
                self.catalog.adjust_stock(product_id, -diff, f"Modification Facture {inv.invoice_number}")

        log.info("invoice %s updated (%d stock changes)", inv.invoice_number, len(diffs))
        return inv

    # ----------- cycle de vie -----------
    def _require_status(self, inv: Invoice, *allowed: str) -> None:
        if inv.status not in allowed:
            raise InvalidInput(f"invoice {inv.invoice_number} is {inv.status}, expected {' or '.join(allowed)}")

    def validate_invoice(self, invoice_id: str) -> Invoice:
        inv = self.get_by_id(invoice_id)
        self._require_status(inv, "created")
        inv.status = "validated"
        self.save_invoice(inv)
        log.info("invoice %s validated", inv.invoice_number)
        return inv

    def cancel_invoice(self, invoice_id: str) -> Invoice:
        """
        created -> draft : tout le stock des lignes est rendu.
        La facture peut ensuite être réutilisée (update_invoice) ou supprimée.
        """
        inv = self.get_by_id(invoice_id)
        self._require_status(inv, "created")
        reason = f"Annulation facture {inv.invoice_number}"

        with self.store.transaction("invoices", "products", "stock_movements"):
            for line in self.get_lines(invoice_id):
                try:
                    self.catalog.adjust_stock(line.product_id, line.quantity, reason,
                                              reason_category="Annulation facture")
                except NotFound:
                    log.warning("%s: product %s no longer exists, stock not restored", reason, line.product_id)
            inv.status = "draft"
            self.save_invoice(inv)

        log.info("invoice %s cancelled", inv.invoice_number)
        return inv

    def delete_invoice(self, invoice_id: str) -> None:
        """Seul un brouillon (stock déjà rendu) peut être supprimé."""
        inv = self.get_by_id(invoice_id)
        self._require_status(inv, "draft")
        with self.store.transaction("invoices", "invoice_lines", "invoice_custom_taxes"):
            self.lines_repo.delete_where(lambda x: x.get("invoice_id") == invoice_id)
            self.taxes_repo.delete_where(lambda x: x.get("invoice_id") == invoice_id)
            self.repo.delete(invoice_id)
        log.info("invoice %s deleted", inv.invoice_number)

    def mark_delivered(self, invoice_id: str) -> Invoice:
        inv = self.get_by_id(invoice_id)
        self._require_status(inv, "validated")
        inv.delivery_status = "delivered"
        return self.save_invoice(inv)

    # ----------- export PDF ----------
    def render_invoice_html(self, inv: Invoice) -> str:
        """Rend le HTML de facture via Jinja2 : templates/pdf/invoice.html"""
        tpl = template_env(self.settings).get_template("invoice.html")
        lines = self.get_lines(inv.id)
        summary = summarize(lines, inv.is_foreign, inv.stamp_duty_enabled, inv.stamp_duty_amount,
                            self.get_custom_taxes(inv.id))
        try:
            client_name = self.clients.get_by_id(inv.client_id).display_name
        except NotFound:
            client_name = "Client"

        return tpl.render(
            invoice=inv,
            lines=lines,
            summary=summary,
            currency=inv.currency,
            client={"name": client_name},
            company=self.settings.company,
        )

    def export_invoice_pdf(self, inv: Invoice, out_dir: Optional[str] = None) -> str:
        html = self.render_invoice_html(inv)
        exports_dir = Path(out_dir) if out_dir else Path(self.settings.exports_dir) / "factures"
        exports_dir.mkdir(parents=True, exist_ok=True)

        try:
            client_name = self.clients.get_by_id(inv.client_id).display_name
        except NotFound:
            client_name = "Client"
        out_path = exports_dir / f"{inv.invoice_number} ({_slug(client_name)}).pdf"
        return html_to_pdf(html, out_path, self.settings)
