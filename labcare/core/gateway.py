"""Billing gateway interface and adapters."""

from __future__ import annotations

import itertools
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional

import httpx
from pydantic import BaseModel, Field

from labcare.billing.submission import GatewayPaymentMethod, PaymentRequest
from labcare.core.errors import ConflictError
from labcare.core.http_client import RestClient

logger = logging.getLogger(__name__)


class PaymentRef(BaseModel):
    """Gateway handle for a submitted payment."""

    payment_id: str
    status: str = "PENDING"
    collection_ids: list[str] = Field(default_factory=list)
    qr_data: Optional[str] = None


class Receipt(BaseModel):
    payment_id: str
    receipt_number: str
    status: str = "COMPLETED"
    issued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class BillingGateway(ABC):
    """Accepts finalized payments and confirms their collection."""

    @abstractmethod
    async def submit_payment(self, request: PaymentRequest) -> PaymentRef:
        pass

    @abstractmethod
    async def complete_collection(self, payment_ref: PaymentRef) -> Receipt:
        pass

    async def close(self) -> None:
        pass


class HttpBillingGateway(BillingGateway):
    """Remote billing gateway.

    Endpoints:
        POST /v1/payments                       submit
        POST /v1/payments/{payment_id}/complete confirm collection
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        api_key: str = "",
    ):
        headers = {"X-API-Key": api_key} if api_key else None
        # Gateway calls are writes and are sent once.
        self._rest = RestClient(base_url, timeout=timeout, transport=transport, headers=headers)

    async def submit_payment(self, request: PaymentRequest) -> PaymentRef:
        data = await self._rest.post("/v1/payments", json=request.model_dump(mode="json"))
        return PaymentRef.model_validate(data)

    async def complete_collection(self, payment_ref: PaymentRef) -> Receipt:
        data = await self._rest.post(f"/v1/payments/{payment_ref.payment_id}/complete")
        return Receipt.model_validate(data)

    async def close(self) -> None:
        await self._rest.close()


class InMemoryBillingGateway(BillingGateway):
    """Local gateway that accepts every submission. Used in development."""

    def __init__(self):
        self.submissions: list[PaymentRequest] = []
        self.completed: dict[str, Receipt] = {}
        self._receipts = itertools.count(1)

    async def submit_payment(self, request: PaymentRequest) -> PaymentRef:
        self.submissions.append(request)
        payment_id = uuid.uuid4().hex
        has_qr = any(c.payment_method == GatewayPaymentMethod.QR for c in request.collections)
        return PaymentRef(
            payment_id=payment_id,
            collection_ids=[f"{payment_id}-{i}" for i, _ in enumerate(request.collections)],
            qr_data=f"qr://{payment_id}" if has_qr else None,
        )

    async def complete_collection(self, payment_ref: PaymentRef) -> Receipt:
        if payment_ref.payment_id in self.completed:
            raise ConflictError(f"Payment {payment_ref.payment_id} already completed")
        receipt = Receipt(
            payment_id=payment_ref.payment_id,
            receipt_number=f"R-{next(self._receipts):08d}",
        )
        self.completed[payment_ref.payment_id] = receipt
        logger.info("Completed collection for payment %s", payment_ref.payment_id)
        return receipt
