"""
Stripe Payment Gateway Adapter

Payment Intents over Stripe's form-encoded REST API. Amounts travel in minor
units; webhooks are signed with a timestamped HMAC-SHA256 header.
"""

import logging
from typing import Any, Dict, Mapping, Optional

import httpx

from paygate.core.config import StripeSettings
from paygate.core.exceptions import MalformedPayload

from .base import (
    DEFAULT_TIMEOUT_SECONDS,
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
from .signatures import verify_timestamped_hmac
from .status import CanonicalStatus, map_stripe_status

logger = logging.getLogger(__name__)

# Event types acted upon; the value overrides the mapped object status when set.
HANDLED_EVENTS: Dict[str, Optional[CanonicalStatus]] = {
    "payment_intent.succeeded": CanonicalStatus.COMPLETED,
    "payment_intent.processing": CanonicalStatus.PROCESSING,
    "payment_intent.canceled": CanonicalStatus.CANCELLED,
    # A failed attempt leaves the intent in requires_payment_method and the customer may retry it.
    "payment_intent.payment_failed": None,
    "payment_intent.requires_action": None,
    "payment_intent.amount_capturable_updated": None,
}


class StripeAdapter(PaymentGateway):
    """Stripe payment gateway adapter."""

    gateway_type = PaymentGatewayType.STRIPE
    display_name = "Stripe"
    required_settings = ("secret_key", "public_key")

    config: StripeSettings

    def __init__(
        self,
        config: StripeSettings,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        webhook_tolerance_seconds: Optional[int] = None,
    ):
        """
        Initialize Stripe adapter.

        Args:
            config: Stripe settings section
            http_client: Shared HTTP client
            timeout: Per-request timeout in seconds
            webhook_tolerance_seconds: Reject signatures older than this (off when None)
        """
        super().__init__(config, http_client=http_client, timeout=timeout)
        self.webhook_tolerance_seconds = webhook_tolerance_seconds

    def _headers(self, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        headers = {"Authorization": f"Bearer {self.config.secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def create_payment_intent(self, request: PaymentIntentRequest) -> IntentResult:
        self._ensure_currency(request.amount)

        form: Dict[str, str] = {
            "amount": str(request.amount.amount_minor),
            "currency": request.amount.currency.lower(),
            "automatic_payment_methods[enabled]": "true",
            "description": request.description,
            "receipt_email": request.customer.email,
        }
        for key, value in request.metadata.items():
            form[f"metadata[{key}]"] = str(value)
        form["metadata[order_id]"] = str(request.order_id)
        form["metadata[payment_id]"] = request.payment_id

        intent = await self._request(
            "POST",
            "/v1/payment_intents",
            data=form,
            headers=self._headers(idempotency_key=request.payment_id),
            transaction_id=request.payment_id,
        )
        intent_id = self._require(intent, "id")
        raw_status = intent.get("status")
        logger.info(f"Stripe payment intent {intent_id} created for order {request.order_id}")

        return IntentResult(
            gateway_payment_id=intent_id,
            status=map_stripe_status(raw_status),
            raw_status=raw_status,
            client_handle={
                "client_secret": intent.get("client_secret"),
                "public_key": self.config.public_key,
            },
            gateway_data=intent,
            failure_reason=dig(intent, "last_payment_error", "message"),
        )

    async def confirm_payment(
        self,
        gateway_payment_id: str,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> StatusResult:
        intent = await self._request(
            "POST",
            f"/v1/payment_intents/{gateway_payment_id}/confirm",
            data={key: str(value) for key, value in (extra or {}).items()},
            headers=self._headers(),
            transaction_id=gateway_payment_id,
        )
        return self._status_result(intent)

    async def get_payment_status(self, gateway_payment_id: str) -> StatusResult:
        intent = await self._request(
            "GET",
            f"/v1/payment_intents/{gateway_payment_id}",
            headers=self._headers(),
            transaction_id=gateway_payment_id,
        )
        return self._status_result(intent)

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

        form = {"payment_intent": gateway_payment_id}
        if refund_amount is not None:
            form["amount"] = str(refund_amount.amount_minor)
        if reason:
            # Stripe only accepts an enumerated reason; keep the free text as metadata.
            form["reason"] = "requested_by_customer"
            form["metadata[reason]"] = reason

        refund = await self._request(
            "POST", "/v1/refunds", data=form, headers=self._headers(), transaction_id=gateway_payment_id,
        )
        currency = refund.get("currency") or (refund_amount.currency if refund_amount else None)
        refunded = Money(int(refund.get("amount", 0)), currency.upper()) if currency else refund_amount

        return RefundResult(
            refund_id=self._require(refund, "id"),
            status=refund.get("status") or "pending",
            amount=refunded,
            gateway_data=refund,
        )

    async def verify_webhook_signature(self, payload: bytes, headers: Mapping[str, str]) -> bool:
        return verify_timestamped_hmac(
            payload,
            get_header(headers, "stripe-signature"),
            self.config.webhook_secret,
            tolerance_seconds=self.webhook_tolerance_seconds,
        )

    async def process_webhook(
        self,
        parsed: Dict[str, Any],
        raw_payload: bytes,
        headers: Mapping[str, str],
    ) -> Optional[WebhookEvent]:
        event_type = parsed.get("type")
        if not isinstance(event_type, str):
            raise MalformedPayload(self.name, "event type is missing or not a string")
        if event_type not in HANDLED_EVENTS:
            return None

        intent = dig(parsed, "data", "object")
        if not isinstance(intent, dict) or not intent.get("id"):
            raise MalformedPayload(self.name, f"{event_type} event has no payment intent object")

        raw_status = intent.get("status")
        status = HANDLED_EVENTS[event_type] or map_stripe_status(raw_status)
        return WebhookEvent(
            gateway_name=self.name,
            event_id=parsed.get("id"),
            event_type=event_type,
            gateway_payment_id=intent["id"],
            raw_status=raw_status,
            status=status,
            failure_reason=dig(intent, "last_payment_error", "message"),
            raw_payload=raw_payload,
            headers=dict(headers),
            gateway_data=intent,
        )

    def describe(self) -> Dict[str, Any]:
        info = super().describe()
        info.update(public_key=self.config.public_key, test_mode=self.config.test_mode)
        return info

    def _status_result(self, intent: Dict[str, Any]) -> StatusResult:
        raw_status = intent.get("status")
        return StatusResult(
            status=map_stripe_status(raw_status),
            raw_status=raw_status,
            gateway_data=intent,
            failure_reason=dig(intent, "last_payment_error", "message"),
        )
