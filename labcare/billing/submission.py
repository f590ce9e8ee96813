"""Gateway payment submission: method mapping, rounding and payload building."""

from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from labcare.billing.models import PaymentMethod
from labcare.billing.reconciliation import reconcile
from labcare.billing.worksheet import BillingWorksheet
from labcare.core.errors import ValidationError

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


class GatewayPaymentMethod(str, Enum):
    """Payment methods understood by the billing gateway."""

    CASH = "CASH"
    QR = "QR"
    POSNET = "POSNET"
    CREDIT_CARD = "CREDIT_CARD"
    DEBIT_CARD = "DEBIT_CARD"
    TRANSFER = "TRANSFER"


# Every internal method has exactly one gateway counterpart.
METHOD_TABLE: dict[PaymentMethod, GatewayPaymentMethod] = {
    PaymentMethod.CASH: GatewayPaymentMethod.CASH,
    PaymentMethod.TRANSFER: GatewayPaymentMethod.TRANSFER,
    PaymentMethod.QR: GatewayPaymentMethod.QR,
    PaymentMethod.DEBIT_CARD: GatewayPaymentMethod.DEBIT_CARD,
    PaymentMethod.CREDIT_CARD: GatewayPaymentMethod.CREDIT_CARD,
    PaymentMethod.OTHER: GatewayPaymentMethod.CASH,
}

# Free-text tokens seen on payment records, including the desk's Spanish labels.
TOKEN_TABLE: dict[str, GatewayPaymentMethod] = {
    "CASH": GatewayPaymentMethod.CASH,
    "EFECTIVO": GatewayPaymentMethod.CASH,
    "OTHER": GatewayPaymentMethod.CASH,
    "OTRO": GatewayPaymentMethod.CASH,
    "QR": GatewayPaymentMethod.QR,
    "MERCADO_PAGO": GatewayPaymentMethod.QR,
    "TRANSFER": GatewayPaymentMethod.TRANSFER,
    "TRANSFERENCIA": GatewayPaymentMethod.TRANSFER,
    "CHEQUE": GatewayPaymentMethod.TRANSFER,
    "DEBIT_CARD": GatewayPaymentMethod.DEBIT_CARD,
    "TARJETA_DEBITO": GatewayPaymentMethod.DEBIT_CARD,
    "CREDIT_CARD": GatewayPaymentMethod.CREDIT_CARD,
    "TARJETA_CREDITO": GatewayPaymentMethod.CREDIT_CARD,
    "POSNET": GatewayPaymentMethod.POSNET,
}

# Collections paid into the bank account carry its id; everything else uses 0.
BANK_ACCOUNT_ID = 1
BANK_METHODS = frozenset({GatewayPaymentMethod.TRANSFER, GatewayPaymentMethod.QR})


def normalize_token(value: str) -> str:
    return value.strip().upper().replace(" ", "_")


def to_gateway_method(
    value: PaymentMethod | str | None,
    strict: bool = False,
) -> GatewayPaymentMethod:
    """Map a payment method (enum member or free-text token) to the gateway enum.

    Unknown or empty tokens resolve to CASH unless ``strict`` is set, in which
    case they raise ValidationError.
    """
    if isinstance(value, PaymentMethod):
        return METHOD_TABLE[value]

    token = normalize_token(value or "")
    mapped = TOKEN_TABLE.get(token)
    if mapped is not None:
        return mapped

    if strict:
        raise ValidationError(f"Unknown payment method: {value!r}")
    logger.warning("Unknown payment method %r submitted as CASH", value)
    return GatewayPaymentMethod.CASH


def round_money(value: Decimal) -> Decimal:
    """Round half-up to cents."""
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


class PaymentDetailRequest(BaseModel):
    analysis_id: str
    is_covered: bool
    coverage_id: Optional[str] = None


class CollectionRequest(BaseModel):
    payment_method: GatewayPaymentMethod
    amount: Decimal
    account_id: int = 0
    receipt_number: Optional[str] = None


class PaymentRequest(BaseModel):
    """Finalized payment submission sent to the billing gateway."""

    encounter_id: str
    details: list[PaymentDetailRequest] = Field(default_factory=list)
    collections: list[CollectionRequest] = Field(default_factory=list)
    iva: Decimal = Decimal("0.00")
    copayment: Decimal = Decimal("0.00")


def build_payment_request(
    encounter_id: str,
    worksheet: BillingWorksheet,
    strict: bool = False,
) -> PaymentRequest:
    """Build the gateway payload for a worksheet that passes the collection gate.

    Amounts are rounded to cents here and nowhere earlier.

    Raises:
        ValidationError: The worksheet does not pass the collection gate, or
            a payment method is unknown in strict mode.
    """
    summary = reconcile(worksheet)
    if not summary.can_leave_collection:
        raise ValidationError("; ".join(summary.gate_failures), encounter_id=encounter_id)

    details = [
        PaymentDetailRequest(
            analysis_id=item.natural_key,
            is_covered=item.covered_amount > 0,
            coverage_id=item.coverage_id,
        )
        for item in worksheet.selected_items
    ]

    collections = []
    for entry in worksheet.payments:
        method = to_gateway_method(entry.method, strict=strict)
        account_id = entry.account_id
        if account_id is None:
            account_id = BANK_ACCOUNT_ID if method in BANK_METHODS else 0
        collections.append(
            CollectionRequest(
                payment_method=method,
                amount=round_money(entry.amount),
                account_id=account_id,
                receipt_number=entry.receipt_number,
            )
        )

    return PaymentRequest(
        encounter_id=encounter_id,
        details=details,
        collections=collections,
        iva=round_money(summary.iva),
        copayment=round_money(worksheet.coinsurance),
    )
