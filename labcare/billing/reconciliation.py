"""Billing reconciliation: totals, tax and the collection gate.

Pure computation over a BillingWorksheet. No rounding happens here; values
keep full Decimal precision until the gateway payload is built.

    subtotal                  = sum of patient_amount over selected items
    subtotal_with_coinsurance = subtotal + coinsurance
    iva                       = subtotal_with_coinsurance * iva_percentage / 100
    grand_total               = subtotal + coinsurance + iva
    remaining                 = grand_total - total_paid
    complete                  = |remaining| < 0.01
"""

from __future__ import annotations

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from labcare.billing.worksheet import BillingWorksheet

TOLERANCE = Decimal("0.01")


class Reconciliation(BaseModel):
    """Derived totals for a worksheet."""

    subtotal: Decimal = Decimal("0")
    coinsurance: Decimal = Decimal("0")
    subtotal_with_coinsurance: Decimal = Decimal("0")
    iva_percentage: Optional[Decimal] = None
    iva: Decimal = Decimal("0")
    grand_total: Decimal = Decimal("0")
    total_paid: Decimal = Decimal("0")
    remaining: Decimal = Decimal("0")
    complete: bool = False
    selected_count: int = 0
    gate_failures: list[str] = Field(default_factory=list)

    @property
    def iva_selected(self) -> bool:
        return self.iva_percentage is not None

    @property
    def can_leave_collection(self) -> bool:
        """True when the encounter may advance to the billing phase."""
        return not self.gate_failures


def reconcile(worksheet: BillingWorksheet) -> Reconciliation:
    """Compute totals and the collection gate for a worksheet.

    Args:
        worksheet: Items, payments, IVA choice and coinsurance.

    Returns:
        Reconciliation with totals, completeness and any unmet gate conditions.
    """
    selected = worksheet.selected_items
    subtotal = sum((item.patient_amount for item in selected), Decimal("0"))
    coinsurance = worksheet.coinsurance
    subtotal_with_coinsurance = subtotal + coinsurance

    if worksheet.iva_percentage is None:
        iva = Decimal("0")
    else:
        iva = subtotal_with_coinsurance * worksheet.iva_percentage / Decimal("100")

    grand_total = subtotal + coinsurance + iva
    total_paid = sum((entry.amount for entry in worksheet.payments), Decimal("0"))
    remaining = grand_total - total_paid
    complete = abs(remaining) < TOLERANCE

    failures: list[str] = []
    if not selected:
        failures.append("At least one billable item must be selected")
    if worksheet.iva_percentage is None:
        failures.append("An IVA percentage must be chosen")
    if not complete:
        failures.append(f"Payments do not cover the total (remaining {remaining})")

    return Reconciliation(
        subtotal=subtotal,
        coinsurance=coinsurance,
        subtotal_with_coinsurance=subtotal_with_coinsurance,
        iva_percentage=worksheet.iva_percentage,
        iva=iva,
        grand_total=grand_total,
        total_paid=total_paid,
        remaining=remaining,
        complete=complete,
        selected_count=len(selected),
        gate_failures=failures,
    )
