from __future__ import annotations
from pydantic import BaseModel, Field
from typing import List, Literal, Optional
from datetime import date, datetime
from .common import gen_id

PaymentMethod = Literal[
    "cash", "card", "check", "draft", "iban_transfer", "swift_transfer",
    "bank_deposit", "client_credit_note", "client_deposit", "mixed",
]


class MixedPaymentLine(BaseModel):
    method: str = ""
    amount: float = 0.0
    reference_number: str = ""


class Payment(BaseModel):
    id: str = Field(default_factory=gen_id)
    invoice_id: str
    payment_date: date = Field(default_factory=date.today)
    amount: float  # devise de la facture
    net_amount: float = 0.0  # équivalent en devise de base
    payment_method: PaymentMethod
    reference_number: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class PaymentDraft(BaseModel):
    amount: float = 0.0
    method: str = ""
    payment_date: Optional[date] = Field(default_factory=date.today)
    reference_number: str = ""
    exchange_rate: float = 1.0
    mixed_lines: List[MixedPaymentLine] = Field(default_factory=list)
    notes: str = ""
