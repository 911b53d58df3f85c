"""
MercadoPago Payment Gateway Adapter

Payments API with bearer access token; amounts travel as decimal numbers.
Notifications only carry the payment id, so the current status is fetched
from the API while the webhook is processed.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from paygate.core.config import MercadoPagoSettings
from paygate.core.exceptions import MalformedPayload, ValidationError

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
from .signatures import verify_manifest_hmac
from .status import CanonicalStatus, map_mercadopago_status

logger = logging.getLogger(__name__)

PAYMENT_TOPIC = "payment"


@dataclass
class PreferenceResult:
    """A hosted checkout preference."""
    preference_id: str
    payment_url: Optional[str]
    sandbox_url: Optional[str] = None
    gateway_data: Dict[str, Any] = field(default_factory=dict)


class MercadoPagoAdapter(PaymentGateway):
    """MercadoPago payment gateway adapter."""

    gateway_type = PaymentGatewayType.MERCADOPAGO
    display_name = "MercadoPago"
    required_settings = ("access_token", "public_key")

    config: MercadoPagoSettings

    def _headers(self, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        headers = {"Authorization": f"Bearer {self.config.access_token}"}
        if idempotency_key:
            headers["X-Idempotency-Key"] = idempotency_key
        return headers

    @staticmethod
    def _back_urls(request: PaymentIntentRequest) -> Dict[str, str]:
        urls = {}
        if request.return_url:
            urls["success"] = request.return_url
            urls["pending"] = request.return_url
        if request.cancel_url:
            urls["failure"] = request.cancel_url
        return urls

    async def create_payment_intent(self, request: PaymentIntentRequest) -> IntentResult:
        self._ensure_currency(request.amount)

        body: Dict[str, Any] = {
            "transaction_amount": float(request.amount.to_major()),
            "description": request.description,
            "payment_method_id": request.metadata.get("payment_method_id", "visa"),
            "payer": {
                "email": request.customer.email,
                "first_name": request.customer.first_name or "",
                "last_name": request.customer.last_name or "",
            },
            "external_reference": f"ORDER_{request.order_id}",
            "metadata": {"order_id": str(request.order_id), "payment_id": request.payment_id},
        }
        if "token" in request.metadata:
            body["token"] = request.metadata["token"]
            body["installments"] = int(request.metadata.get("installments", 1))
        if request.webhook_url:
            body["notification_url"] = request.webhook_url
        if request.return_url:
            body["callback_url"] = request.return_url

        payment = await self._request(
            "POST",
            "/v1/payments",
            json=body,
            headers=self._headers(idempotency_key=request.payment_id),
            transaction_id=request.payment_id,
        )
        payment_id = str(self._require(payment, "id"))
        raw_status = payment.get("status")
        status = map_mercadopago_status(raw_status)
        logger.info(f"MercadoPago payment {payment_id} created for order {request.order_id}")

        return IntentResult(
            gateway_payment_id=payment_id,
            status=status,
            raw_status=raw_status,
            client_handle={
                "payment_url": dig(payment, "point_of_interaction", "transaction_data", "ticket_url"),
                "public_key": self.config.public_key,
            },
            gateway_data=payment,
            failure_reason=payment.get("status_detail") if status is CanonicalStatus.FAILED else None,
        )

    async def create_preference(self, request: PaymentIntentRequest) -> PreferenceResult:
        """Create a hosted checkout preference for the order."""
        self._ensure_currency(request.amount)

        body: Dict[str, Any] = {
            "items": [{
                "title": request.description,
                "quantity": 1,
                "unit_price": float(request.amount.to_major()),
                "currency_id": request.amount.currency,
            }],
            "payer": {
                "email": request.customer.email,
                "name": request.customer.first_name or "",
                "surname": request.customer.last_name or "",
            },
            "external_reference": f"ORDER_{request.order_id}",
            "metadata": {"order_id": str(request.order_id), "payment_id": request.payment_id},
        }
        back_urls = self._back_urls(request)
        if back_urls:
            body["back_urls"] = back_urls
            if "success" in back_urls:
                body["auto_return"] = "approved"
        if request.webhook_url:
            body["notification_url"] = request.webhook_url

        preference = await self._request(
            "POST", "/checkout/preferences", json=body, headers=self._headers(), transaction_id=request.payment_id,
        )
        return PreferenceResult(
            preference_id=str(self._require(preference, "id")),
            payment_url=preference.get("init_point"),
            sandbox_url=preference.get("sandbox_init_point"),
            gateway_data=preference,
        )

    async def create_hosted_checkout(self, request: PaymentIntentRequest) -> IntentResult:
        """Checkout Pro: the buyer pays on MercadoPago's page at ``payment_url``."""
        preference = await self.create_preference(request)
        logger.info(f"MercadoPago preference {preference.preference_id} created for order {request.order_id}")
        return IntentResult(
            gateway_payment_id=preference.preference_id,
            status=CanonicalStatus.PENDING,
            raw_status=None,
            client_handle={
                "preference_id": preference.preference_id,
                "payment_url": preference.sandbox_url if self.config.test_mode else preference.payment_url,
                "public_key": self.config.public_key,
            },
            gateway_data=preference.gateway_data,
        )

    async def get_payment_status(self, gateway_payment_id: str) -> StatusResult:
        payment = await self._request(
            "GET", f"/v1/payments/{gateway_payment_id}", headers=self._headers(), transaction_id=gateway_payment_id,
        )
        raw_status = payment.get("status")
        status = map_mercadopago_status(raw_status)
        return StatusResult(
            status=status,
            raw_status=raw_status,
            gateway_data=payment,
            failure_reason=payment.get("status_detail") if status is CanonicalStatus.FAILED else None,
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
        refund_amount = self._resolve_refund_amount(gateway_payment_id, amount, captured)
        if refund_amount is None:
            raise ValidationError("MercadoPago refunds need the captured amount", provider=self.name,
                                  transaction_id=gateway_payment_id)

        body: Dict[str, Any] = {}
        if captured is None or refund_amount < captured:
            body["amount"] = float(refund_amount.to_major())
        if reason:
            body["metadata"] = {"reason": reason}

        refund = await self._request(
            "POST",
            f"/v1/payments/{gateway_payment_id}/refunds",
            json=body,
            headers=self._headers(idempotency_key=str(uuid.uuid4())),
            transaction_id=gateway_payment_id,
        )
        return RefundResult(
            refund_id=str(self._require(refund, "id")),
            status=refund.get("status") or "pending",
            amount=refund_amount,
            gateway_data=refund,
        )

    async def verify_webhook_signature(self, payload: bytes, headers: Mapping[str, str]) -> bool:
        return verify_manifest_hmac(
            get_header(headers, "x-request-id"),
            get_header(headers, "x-signature"),
            self.config.webhook_secret,
        )

    async def process_webhook(
        self,
        parsed: Dict[str, Any],
        raw_payload: bytes,
        headers: Mapping[str, str],
    ) -> Optional[WebhookEvent]:
        topic = parsed.get("type") or parsed.get("topic")
        if topic != PAYMENT_TOPIC:
            return None

        payment_id = dig(parsed, "data", "id")
        if payment_id in (None, ""):
            raise MalformedPayload(self.name, "payment notification has no data.id")
        payment_id = str(payment_id)

        # NetworkError propagates so the notification is retried by MercadoPago.
        current = await self.get_payment_status(payment_id)
        notification_id = parsed.get("id")
        # Preference metadata is copied onto payments made through Checkout Pro.
        reference = dig(current.gateway_data, "metadata", "payment_id")

        return WebhookEvent(
            gateway_name=self.name,
            event_id=str(notification_id) if notification_id not in (None, "") else None,
            event_type=parsed.get("action") or topic,
            gateway_payment_id=payment_id,
            raw_status=current.raw_status,
            status=current.status,
            failure_reason=current.failure_reason,
            raw_payload=raw_payload,
            headers=dict(headers),
            gateway_data=current.gateway_data,
            payment_reference=str(reference) if reference else None,
        )

    def describe(self) -> Dict[str, Any]:
        info = super().describe()
        info.update(public_key=self.config.public_key, test_mode=self.config.test_mode)
        return info
