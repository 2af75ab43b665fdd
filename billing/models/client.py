from __future__ import annotations
from pydantic import BaseModel, EmailStr, Field
from typing import Literal, Optional
from datetime import date, datetime
from .common import gen_id

ClientType = Literal["individual_local", "company_local", "foreign"]
MovementType = Literal["credit", "debit"]
MovementSource = Literal[
    "credit_note", "credit_note_unblock", "direct_deposit",
    "credit_note_payment", "deposit_payment", "refund",
]

class Address(BaseModel):
    line1: str
    line2: str | None = None
    postal_code: str
    city: str
    country: str | None = None

class Client(BaseModel):
    id: str = Field(default_factory=gen_id)
    organization_id: str = "default"
    client_type: ClientType = "individual_local"
    first_name: str | None = None
    last_name: str | None = None
    company_name: str | None = None
    email: EmailStr | None = None
    phone: str | None = None
    address: Address | None = None
    account_balance: float = 0.0
    status: Literal["active", "archived"] = "active"
    notes: str | None = None

    @property
    def is_foreign(self) -> bool:
        return self.client_type == "foreign"

    @property
    def display_name(self) -> str:
        if self.company_name:
            return self.company_name
        return f"{self.first_name or ''} {self.last_name or ''}".strip() or "Client"

class ClientAccountMovement(BaseModel):
    id: str = Field(default_factory=gen_id)
    client_id: str
    organization_id: str = "default"
    movement_type: MovementType
    amount: float
    balance_after: float = 0.0
    source_type: MovementSource
    source_id: Optional[str] = None
    notes: Optional[str] = None
    movement_date: date = Field(default_factory=date.today)
    created_at: datetime = Field(default_factory=datetime.utcnow)
