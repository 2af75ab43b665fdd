from __future__ import annotations
from pydantic import BaseModel, Field
from typing import Literal, Optional
from .common import gen_id

TaxValueType = Literal["fixed", "percentage"]
TaxApplicationType = Literal["add", "deduct"]
TaxApplicationOrder = Literal["before_stamp", "after_stamp"]

class CustomTax(BaseModel):
    id: str = Field(default_factory=gen_id)
    invoice_id: Optional[str] = None
    name: str = ""
    value: float = 0.0
    value_type: TaxValueType = "fixed"
    application_type: TaxApplicationType = "add"
    application_order: TaxApplicationOrder = "before_stamp"
