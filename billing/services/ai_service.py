# billing/services/ai_service.py
from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, Iterable, List, Optional

import requests
from pydantic import BaseModel, Field, ValidationError

from billing.errors import RemoteCallError
from billing.models.invoice import InvoiceLineForm
from billing.settings import Settings

log = logging.getLogger(__name__)


class VatTarget(BaseModel):
    vatRate: float
    targetHt: Optional[float] = None
    targetTtc: Optional[float] = None


class GeneratedInvoice(BaseModel):
    lines: List[InvoiceLineForm] = Field(default_factory=list)
    summary: Any = None


class SearchResult(BaseModel):
    ids: List[str] = Field(default_factory=list)
    explanation: Optional[str] = None
    suggestions: List[str] = Field(default_factory=list)


class AIClient:
    """
    Client HTTP des fonctions distantes (génération de facture, recherche).
    Toute erreur réseau ou réponse invalide devient RemoteCallError.
    """

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.session = session or requests.Session()

    def _url(self, name: str) -> str:
        if not self.settings.functions_url:
            raise RemoteCallError("BILLING_FUNCTIONS_URL is not configured")
        return f"{self.settings.functions_url.rstrip('/')}/{name}"

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.settings.api_key:
            headers["Authorization"] = f"Bearer {self.settings.api_key}"
        return headers

    def call(self, name: str, body: Dict[str, Any]) -> Dict[str, Any]:
        url = self._url(name)
        try:
            resp = self.session.post(url, json=body, headers=self._headers(), timeout=self.settings.ai_timeout)
            resp.raise_for_status()
            data = resp.json()
        except requests.RequestException as e:
            log.error("remote function %s failed: %s", name, e)
            raise RemoteCallError(f"{name}: {e}") from e
        except ValueError as e:
            raise RemoteCallError(f"{name}: invalid JSON response") from e

        if not isinstance(data, dict):
            raise RemoteCallError(f"{name}: unexpected response")
        return data

    # ---------- Génération ----------

    def generate_invoice(
        self,
        client_id: str,
        invoice_date: date,
        invoice_number: str,
        products: Iterable[Dict[str, Any]],
        *,
        max_lines: int = 10,
        min_price_ttc: float = 0.0,
        max_price_ttc: float = 999999.0,
        allowed_vat_rates: Iterable[float] = (0, 7, 13, 19),
        vat_targets: Iterable[VatTarget] = (),
        stamp_duty_enabled: Optional[bool] = None,
        stamp_duty_amount: Optional[float] = None,
        is_foreign: bool = False,
    ) -> GeneratedInvoice:
        if stamp_duty_enabled is None:
            stamp_duty_enabled = self.settings.stamp_duty_enabled
        if stamp_duty_amount is None:
            stamp_duty_amount = self.settings.stamp_duty_amount
        body = {
            "clientId": client_id,
            "invoiceDate": invoice_date.isoformat(),
            "invoiceNumber": invoice_number,
            "maxLines": max_lines,
            "minPriceTtc": min_price_ttc,
            "maxPriceTtc": max_price_ttc,
            "allowedVatRates": list(allowed_vat_rates),
            "vatTargets": [t.model_dump() for t in vat_targets],
            "stampDutyEnabled": stamp_duty_enabled and not is_foreign,
            "stampDutyAmount": stamp_duty_amount,
            "products": list(products),
            "isForeignClient": is_foreign,
        }
        data = self.call("generate-ai-invoice", body)
        if not data.get("success"):
            raise RemoteCallError(data.get("message") or "invoice generation failed")

        lines = []
        try:
            for raw in data.get("lines") or []:
                line = InvoiceLineForm(**{**raw, "description": ""})
                if is_foreign:
                    line.vat_rate = 0
                lines.append(line)
        except ValidationError as e:
            raise RemoteCallError(f"generate-ai-invoice: malformed line ({e.error_count()} errors)") from e
        return GeneratedInvoice(lines=lines, summary=data.get("summary"))

    # ---------- Recherche ----------

    def search_invoices(self, query: str, invoices: List[Dict[str, Any]], language: str = "fr") -> SearchResult:
        data = self.call("invoice-ai-search", {"query": query, "invoices": invoices, "language": language})
        return SearchResult(
            ids=data.get("filteredInvoiceIds") or [],
            explanation=data.get("explanation"),
            suggestions=data.get("suggestions") or [],
        )

    def search_suppliers(self, query: str) -> SearchResult:
        data = self.call("supplier-ai-search", {"query": query.strip()})
        return SearchResult(
            ids=data.get("supplierIds") or [],
            explanation=data.get("explanation"),
            suggestions=data.get("suggestions") or [],
        )
