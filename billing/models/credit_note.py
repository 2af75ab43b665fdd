from __future__ import annotations
from pydantic import BaseModel, Field
from typing import Literal, Optional
from datetime import date, datetime
from .common import gen_id

CreditNoteType = Literal["commercial_price"]
CreditNoteStatus = Literal["draft", "validated", "cancelled"]
CreditNoteMethod = Literal["lines", "total"]
CreditNoteUsageStatus = Literal[
    "available", "partially_used", "fully_used", "partially_refunded", "refunded",
]


class CreditNote(BaseModel):
    id: str = Field(default_factory=gen_id)
    organization_id: str = "default"
    invoice_id: str
    client_id: str

    credit_note_number: str = ""
    credit_note_prefix: str = "AV"
    credit_note_year: int = Field(default_factory=lambda: date.today().year)
    credit_note_counter: int = 0
    credit_note_type: CreditNoteType = "commercial_price"
    credit_note_method: Optional[CreditNoteMethod] = None
    credit_note_date: date = Field(default_factory=date.today)

    # montants après remise
    subtotal_ht: float = 0.0
    total_vat: float = 0.0
    total_ttc: float = 0.0
    stamp_duty_amount: float = 0.0
    withholding_rate: float = 0.0
    withholding_amount: float = 0.0
    original_net_payable: float = 0.0
    new_net_payable: float = 0.0
    financial_credit: float = 0.0

    # suivi du crédit client
    credit_generated: float = 0.0
    credit_used: float = 0.0
    credit_refunded: float = 0.0
    credit_transferred: bool = False

    status: CreditNoteStatus = "validated"
    currency: str = "TND"
    reason: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        extra = "ignore"

    @property
    def credited_amount(self) -> float:
        return self.original_net_payable - self.new_net_payable

    @property
    def credit_available(self) -> float:
        """Crédit financier encore utilisable (ni consommé ni remboursé)."""
        return max(0.0, self.credit_generated - self.credit_used - self.credit_refunded)


class CreditNoteLine(BaseModel):
    id: str = Field(default_factory=gen_id)
    credit_note_id: Optional[str] = None
    invoice_line_id: str
    product_id: Optional[str] = None
    product_name: Optional[str] = None
    original_quantity: float = 0
    original_unit_price_ht: float = 0.0
    # base "restante" (après avoirs précédents)
    original_line_total_ht: float = 0.0
    original_line_vat: float = 0.0
    original_line_total_ttc: float = 0.0
    discount_ht: float = 0.0
    discount_ttc: float = 0.0
    discount_rate: float = 0.0
    new_line_total_ht: float = 0.0
    new_line_vat: float = 0.0
    new_line_total_ttc: float = 0.0
    vat_rate: float = 0
    line_order: int = 0


class LineDiscount(BaseModel):
    """Remise saisie sur une ligne : seule la valeur HT est stockée."""
    line_id: str
    discount_ht: float = 0.0
