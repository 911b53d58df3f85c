"""
Wompi Payment Gateway Adapter

Transactions API with bearer private key and amounts in cents. Wompi offers no
refund endpoint; refunds are handled manually in the merchant dashboard.
"""

import logging
from typing import Any, Dict, Mapping, Optional

from paygate.core.config import WompiSettings
from paygate.core.exceptions import MalformedPayload, UnsupportedOperation

from .base import (
    IntentResult,
    PaymentGateway,
    PaymentGatewayType,
    PaymentIntentRequest,
    RefundResult,
    StatusResult,
    WebhookEvent,
    dig,
    get_header,
)
from .money import Money
from .signatures import verify_body_hmac
from .status import CanonicalStatus, map_wompi_status

logger = logging.getLogger(__name__)

TRANSACTION_UPDATED = "transaction.updated"


class WompiAdapter(PaymentGateway):
    """Wompi payment gateway adapter."""

    gateway_type = PaymentGatewayType.WOMPI
    display_name = "Wompi"
    required_settings = ("public_key", "private_key")

    config: WompiSettings

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.config.private_key}"}

    async def create_payment_intent(self, request: PaymentIntentRequest) -> IntentResult:
        self._ensure_currency(request.amount)

        payment_method: Dict[str, Any] = {"type": request.metadata.get("payment_method", "CARD")}
        if "payment_method_token" in request.metadata:
            payment_method["token"] = request.metadata["payment_method_token"]
            payment_method["installments"] = 1

        body: Dict[str, Any] = {
            "amount_in_cents": request.amount.amount_minor,
            "currency": request.amount.currency,
            "customer_email": request.customer.email,
            "reference": f"ORDER_{request.order_id}_{request.payment_id}",
            "payment_method": payment_method,
        }
        if request.return_url:
            body["redirect_url"] = request.return_url
        if "acceptance_token" in request.metadata:
            body["acceptance_token"] = request.metadata["acceptance_token"]
        if request.customer.full_name or request.customer.phone:
            body["customer_data"] = {
                "full_name": request.customer.full_name,
                "phone_number": request.customer.phone or "",
            }

        response = await self._request(
            "POST", "/v1/transactions", json=body, headers=self._headers(), transaction_id=request.payment_id,
        )
        transaction = response.get("data")
        if not isinstance(transaction, dict):
            transaction = {}
        transaction_id = str(self._require(transaction, "id"))
        raw_status = transaction.get("status")
        logger.info(f"Wompi transaction {transaction_id} created for order {request.order_id}")

        return IntentResult(
            gateway_payment_id=transaction_id,
            status=map_wompi_status(raw_status),
            raw_status=raw_status,
            client_handle={
                "payment_url": transaction.get("payment_link_url"),
                "public_key": self.config.public_key,
            },
            gateway_data=transaction,
            failure_reason=transaction.get("status_message"),
        )

    async def get_payment_status(self, gateway_payment_id: str) -> StatusResult:
        response = await self._request(
            "GET",
            f"/v1/transactions/{gateway_payment_id}",
            headers=self._headers(),
            transaction_id=gateway_payment_id,
        )
        transaction = response.get("data") if isinstance(response.get("data"), dict) else {}
        raw_status = transaction.get("status")
        status = map_wompi_status(raw_status)
        return StatusResult(
            status=status,
            raw_status=raw_status,
            gateway_data=transaction,
            failure_reason=transaction.get("status_message") if status is CanonicalStatus.FAILED else None,
        )

    async def refund_payment(
        self,
        gateway_payment_id: str,
        amount: Optional[Money] = None,
        reason: Optional[str] = None,
        *,
        captured: Optional[Money] = None,
        gateway_data: Optional[Mapping[str, Any]] = None,
    ) -> RefundResult:
        raise UnsupportedOperation(
            "Refunds must be processed manually through the Wompi dashboard",
            provider=self.name,
        )

    async def verify_webhook_signature(self, payload: bytes, headers: Mapping[str, str]) -> bool:
        return verify_body_hmac(payload, get_header(headers, "x-wompi-signature"), self.config.webhook_secret)

    async def process_webhook(
        self,
        parsed: Dict[str, Any],
        raw_payload: bytes,
        headers: Mapping[str, str],
    ) -> Optional[WebhookEvent]:
        if parsed.get("event") != TRANSACTION_UPDATED:
            return None

        transaction = dig(parsed, "data", "transaction")
        if not isinstance(transaction, dict) or not transaction.get("id"):
            raise MalformedPayload(self.name, "transaction.updated event has no transaction")

        raw_status = transaction.get("status")
        status = map_wompi_status(raw_status)
        return WebhookEvent(
            gateway_name=self.name,
            event_type=TRANSACTION_UPDATED,
            gateway_payment_id=str(transaction["id"]),
            raw_status=raw_status,
            status=status,
            failure_reason=transaction.get("status_message") if status is CanonicalStatus.FAILED else None,
            raw_payload=raw_payload,
            headers=dict(headers),
            gateway_data=transaction,
        )

    def describe(self) -> Dict[str, Any]:
        info = super().describe()
        info.update(public_key=self.config.public_key, test_mode=self.config.test_mode)
        return info
