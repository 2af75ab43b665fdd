from __future__ import annotations
from pydantic import BaseModel, Field
from typing import Literal, Optional
from datetime import datetime
from .common import gen_id


class Product(BaseModel):
  id: str = Field(default_factory=gen_id)
  organization_id: str = "default"
  name: str
  reference: Optional[str] = None
  ean: Optional[str] = None
  price_ht: float = 0.0
  vat_rate: float = 19
  max_discount: Optional[float] = None
  current_stock: Optional[float] = 0
  reserved_stock: float = 0
  unlimited_stock: bool = False
  allow_out_of_stock_sale: bool = False
  active: bool = True
  description: Optional[str] = None


class StockMovement(BaseModel):
  id: str = Field(default_factory=gen_id)
  product_id: str
  movement_type: Literal["add", "remove"]
  quantity: float
  previous_stock: float
  new_stock: float
  reason_category: str = "commercial"
  reason_detail: Optional[str] = None
  created_at: datetime = Field(default_factory=datetime.utcnow)


class Reservation(BaseModel):
  id: str = Field(default_factory=gen_id)
  product_id: str
  client_id: str
  quantity: float
  status: Literal["active", "expired", "used", "cancelled"] = "active"
  created_at: datetime = Field(default_factory=datetime.utcnow)
