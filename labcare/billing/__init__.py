"""Billing reconciliation and gateway submission for the collection desk."""

from labcare.billing.models import BillableItem, PaymentEntry, PaymentMethod
from labcare.billing.reconciliation import Reconciliation, reconcile
from labcare.billing.submission import (
    GatewayPaymentMethod,
    PaymentRequest,
    build_payment_request,
    to_gateway_method,
)
from labcare.billing.worksheet import BillingWorksheet

__all__ = [
    "BillableItem",
    "BillingWorksheet",
    "GatewayPaymentMethod",
    "PaymentEntry",
    "PaymentMethod",
    "PaymentRequest",
    "Reconciliation",
    "build_payment_request",
    "reconcile",
    "to_gateway_method",
]
