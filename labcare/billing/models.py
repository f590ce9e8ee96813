"""Pydantic models for billable items and payment entries."""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator


class PaymentMethod(str, Enum):
    """Payment methods accepted at the collection desk."""

    CASH = "CASH"
    TRANSFER = "TRANSFER"
    QR = "QR"
    DEBIT_CARD = "DEBIT_CARD"
    CREDIT_CARD = "CREDIT_CARD"
    OTHER = "OTHER"


class BillableItem(BaseModel):
    """A priced analysis line eligible for selection and payment."""

    id: str
    analysis_id: Optional[str] = None
    description: str = ""
    total_amount: Decimal = Decimal("0")
    covered_amount: Decimal = Decimal("0")
    patient_amount: Optional[Decimal] = None
    selected: bool = True
    coverage_id: Optional[str] = None
    authorized: bool = False

    @model_validator(mode="after")
    def _derive_patient_amount(self) -> "BillableItem":
        if self.patient_amount is None:
            self.patient_amount = self.total_amount - self.covered_amount
        return self

    @property
    def natural_key(self) -> str:
        return self.analysis_id or self.id


class PaymentEntry(BaseModel):
    """A registered payment contribution."""

    id: str = Field(default_factory=lambda: uuid4().hex[:12])
    method: PaymentMethod
    amount: Decimal
    receipt_number: Optional[str] = None
    account_id: Optional[int] = None
