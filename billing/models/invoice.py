from __future__ import annotations
from pydantic import BaseModel, Field
from typing import Dict, List, Literal, Optional
from datetime import date, datetime
from .common import gen_id
from .tax import CustomTax

InvoiceStatus = Literal["created", "draft", "validated"]
PaymentStatus = Literal["unpaid", "partial", "paid"]
DeliveryStatus = Literal["pending", "delivered"]

VAT_RATES = (0, 7, 13, 19)

# code -> symbole affiché
CURRENCIES: Dict[str, str] = {
    "TND": "DT",
    "EUR": "€",
    "USD": "$",
    "GBP": "£",
    "CAD": "CA$",
    "CHF": "CHF",
    "AED": "AED",
    "SAR": "SAR",
    "QAR": "QAR",
    "MAD": "MAD",
    "DZD": "DZD",
    "LYD": "LYD",
    "EGP": "EGP",
    "TRY": "₺",
    "CNY": "¥",
    "JPY": "¥",
}

INVOICE_PREFIXES = {"fr": "FAC", "en": "INV", "ar": "فاتورة"}


class InvoiceLine(BaseModel):
    id: str = Field(default_factory=gen_id)
    invoice_id: str
    product_id: str
    description: Optional[str] = None
    quantity: float = 1.0
    unit_price_ht: float = 0.0
    vat_rate: float = 0
    discount_percent: float = 0.0
    # snapshots calculés (cf. pricing.calculate_line_total)
    line_total_ht: float = 0.0
    line_vat: float = 0.0
    line_total_ttc: float = 0.0
    line_order: int = 0


class InvoiceLineForm(BaseModel):
    """Ligne en cours de saisie, avec les métadonnées produit utiles au stock."""
    id: Optional[str] = None
    product_id: str
    product_name: str = ""
    product_reference: Optional[str] = None
    description: str = ""
    quantity: float = 1.0
    unit_price_ht: float = 0.0
    vat_rate: float = 0
    discount_percent: float = 0.0
    max_discount: float = 100.0
    current_stock: Optional[float] = None
    reserved_stock: float = 0
    unlimited_stock: bool = False
    allow_out_of_stock_sale: bool = False
    # ligne issue d'une réservation : quantité figée
    from_reservation: bool = False
    reservation_id: Optional[str] = None
    reservation_quantity: Optional[float] = None


class StockBubble(BaseModel):
    product_id: str
    product_name: str = ""
    original_stock: Optional[float] = None
    quantity_used: float = 0
    remaining_stock: Optional[float] = None
    unlimited_stock: bool = False


class Invoice(BaseModel):
    id: str = Field(default_factory=gen_id)
    organization_id: str = "default"
    client_id: str

    invoice_number: str = ""
    invoice_prefix: str = "FAC"
    invoice_year: int = Field(default_factory=lambda: date.today().year)
    invoice_counter: int = 0
    invoice_date: date = Field(default_factory=date.today)
    due_date: Optional[date] = None

    client_type: str = "individual_local"
    currency: str = "TND"
    exchange_rate: float = 1.0

    subtotal_ht: float = 0.0
    total_vat: float = 0.0
    total_discount: float = 0.0
    total_ttc: float = 0.0
    stamp_duty_enabled: bool = True
    stamp_duty_amount: float = 0.0
    custom_taxes_total: float = 0.0
    net_payable: float = 0.0
    paid_amount: float = 0.0

    withholding_rate: float = 0.0
    withholding_amount: float = 0.0
    withholding_applied: bool = False

    total_credited: float = 0.0
    credit_note_count: int = 0

    status: InvoiceStatus = "created"
    payment_status: PaymentStatus = "unpaid"
    delivery_status: Optional[DeliveryStatus] = None
    notes: Optional[str] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        extra = "ignore"

    @property
    def is_foreign(self) -> bool:
        return self.client_type == "foreign"

    @property
    def stamp_duty(self) -> float:
        return self.stamp_duty_amount if self.stamp_duty_enabled and not self.is_foreign else 0.0


class InvoiceDraft(BaseModel):
    """Données du formulaire de création / modification."""
    client_id: str
    client_type: str = "individual_local"
    invoice_date: date = Field(default_factory=date.today)
    due_date: Optional[date] = None
    prefix: Optional[str] = None
    counter: Optional[int] = None
    currency: str = "TND"
    # None : valeurs par défaut des réglages (timbre, taux de change de la devise)
    exchange_rate: Optional[float] = None
    stamp_duty_enabled: Optional[bool] = None
    stamp_duty_amount: Optional[float] = None
    lines: List[InvoiceLineForm] = Field(default_factory=list)
    custom_taxes: List[CustomTax] = Field(default_factory=list)
    notes: Optional[str] = None

    @property
    def is_foreign(self) -> bool:
        return self.client_type == "foreign"
