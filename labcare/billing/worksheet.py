"""Collection worksheet: the desk's local, editable view of an encounter's billing.

The worksheet is loaded from an encounter snapshot, edited in place while the
patient pays, and handed to the state machine on commit. It is never synced
back to the repository on its own.
"""

from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Optional

from pydantic import BaseModel, Field

from labcare.billing.models import BillableItem, PaymentEntry, PaymentMethod
from labcare.core.errors import ValidationError

if TYPE_CHECKING:
    from labcare.encounter.state import Encounter

logger = logging.getLogger(__name__)

DEFAULT_IVA_OPTIONS: tuple[Decimal, ...] = (Decimal("0"), Decimal("10.5"), Decimal("21"))
MAX_COINSURANCE = Decimal("999999999999")
CASH_MERGE_NOTICE = "payment updated"


class BillingWorksheet(BaseModel):
    """Selected items, registered payments, IVA choice and coinsurance."""

    items: list[BillableItem] = Field(default_factory=list)
    payments: list[PaymentEntry] = Field(default_factory=list)
    iva_percentage: Optional[Decimal] = None
    coinsurance: Decimal = Decimal("0")

    @classmethod
    def from_encounter(cls, encounter: "Encounter") -> "BillingWorksheet":
        """Load a worksheet from a de-duplicated encounter snapshot."""
        snapshot = encounter.deduplicated()
        return cls(
            items=[item.model_copy() for item in snapshot.billable_items],
            payments=[entry.model_copy() for entry in snapshot.payment_entries],
            iva_percentage=snapshot.iva_percentage,
            coinsurance=snapshot.coinsurance,
        )

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    def select_item(self, item_id: str, selected: bool = True) -> BillableItem:
        for item in self.items:
            if item.id == item_id:
                item.selected = selected
                return item
        raise ValidationError(f"Unknown billable item: {item_id}")

    @property
    def selected_items(self) -> list[BillableItem]:
        return [item for item in self.items if item.selected]

    # ------------------------------------------------------------------
    # Tax and coinsurance
    # ------------------------------------------------------------------

    def choose_iva(
        self,
        percentage: Decimal | float | str,
        options: Optional[list[Decimal] | tuple[Decimal, ...]] = None,
    ) -> Decimal:
        """Pick the IVA percentage. 0 is a valid, explicit choice."""
        value = Decimal(str(percentage))
        allowed = [Decimal(str(o)) for o in (options or DEFAULT_IVA_OPTIONS)]
        if value not in allowed:
            raise ValidationError(
                f"IVA {value}% is not one of the configured options "
                f"({', '.join(str(o) for o in allowed)})"
            )
        self.iva_percentage = value
        return value

    def clear_iva(self) -> None:
        self.iva_percentage = None

    def set_coinsurance(self, amount: Decimal | float | str | None) -> Decimal:
        """Set the fixed patient-responsibility amount.

        Input is sanitized the way the desk form does it: empty means zero,
        the value is clamped to [0, 999999999999] and kept to cents.
        """
        value = Decimal(str(amount)) if amount not in (None, "") else Decimal("0")
        value = min(max(value, Decimal("0")), MAX_COINSURANCE)
        self.coinsurance = value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        return self.coinsurance

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def add_payment(
        self,
        method: PaymentMethod,
        amount: Decimal | float | str,
        receipt_number: Optional[str] = None,
        account_id: Optional[int] = None,
    ) -> Optional[str]:
        """Register a payment contribution.

        A CASH contribution is summed into the existing CASH entry, if any.

        Returns:
            An informational notice when an existing entry was updated,
            otherwise None.
        """
        value = Decimal(str(amount))
        if value <= 0:
            raise ValidationError("Payment amount must be greater than zero")

        if method == PaymentMethod.CASH:
            existing = self.cash_entry
            if existing is not None:
                existing.amount = existing.amount + value
                logger.info(
                    "Merged cash contribution of %s into entry %s (now %s)",
                    value, existing.id, existing.amount,
                )
                return CASH_MERGE_NOTICE

        self.payments.append(
            PaymentEntry(
                method=method,
                amount=value,
                receipt_number=receipt_number,
                account_id=account_id,
            )
        )
        return None

    def remove_payment(self, entry_id: str) -> PaymentEntry:
        for index, entry in enumerate(self.payments):
            if entry.id == entry_id:
                return self.payments.pop(index)
        raise ValidationError(f"Unknown payment entry: {entry_id}")

    @property
    def cash_entry(self) -> Optional[PaymentEntry]:
        for entry in self.payments:
            if entry.method == PaymentMethod.CASH:
                return entry
        return None
