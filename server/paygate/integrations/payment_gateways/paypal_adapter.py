"""
PayPal Payment Gateway Adapter

Orders v2 API with OAuth2 client-credentials authentication. Webhooks are
authenticated offline: the transmission signature is checked against the
signing certificate PayPal points to, and that certificate must chain to a
trusted root.
"""

import logging
import time
import uuid
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import certifi
import httpx
from cryptography import x509

from paygate.core.config import PayPalSettings
from paygate.core.exceptions import MalformedPayload, SignatureVerificationFailure, ValidationError

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
from .signatures import (
    certificate_common_name,
    paypal_transmission_message,
    verify_certificate_chain,
    verify_rsa_sha256,
)
from .status import CanonicalStatus, map_paypal_capture_status, map_paypal_status

logger = logging.getLogger(__name__)

PAYPAL_DOMAIN = "paypal.com"
SIGNATURE_ALGORITHM = "SHA256withRSA"
# Refresh OAuth tokens this many seconds before PayPal expires them.
TOKEN_EXPIRY_MARGIN_SECONDS = 60


@lru_cache(maxsize=1)
def load_default_trusted_roots() -> Tuple[x509.Certificate, ...]:
    """Root certificates from the certifi bundle."""
    return tuple(x509.load_pem_x509_certificates(Path(certifi.where()).read_bytes()))


def _is_paypal_host(host: Optional[str]) -> bool:
    if not host:
        return False
    host = host.lower().rstrip(".")
    return host == PAYPAL_DOMAIN or host.endswith("." + PAYPAL_DOMAIN)


def is_allowed_cert_url(url: Optional[str]) -> bool:
    """Only HTTPS URLs on a paypal.com host may supply signing certificates."""
    if not url:
        return False
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError, ValueError):
        return False
    return parsed.scheme == "https" and _is_paypal_host(parsed.host)


class PayPalAdapter(PaymentGateway):
    """PayPal payment gateway adapter."""

    gateway_type = PaymentGatewayType.PAYPAL
    display_name = "PayPal"
    required_settings = ("client_id", "client_secret")

    config: PayPalSettings

    def __init__(
        self,
        config: PayPalSettings,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        trusted_roots: Optional[Iterable[x509.Certificate]] = None,
    ):
        """
        Initialize PayPal adapter.

        Args:
            config: PayPal settings section
            http_client: Shared HTTP client
            timeout: Per-request timeout in seconds
            trusted_roots: Roots for webhook certificate validation (certifi bundle when omitted)
        """
        super().__init__(config, http_client=http_client, timeout=timeout)
        self._trusted_roots = list(trusted_roots) if trusted_roots is not None else None
        self._certificate_cache: Dict[str, List[x509.Certificate]] = {}
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0

    async def _get_access_token(self) -> str:
        now = time.monotonic()
        if self._access_token and now < self._token_expires_at:
            return self._access_token

        body = await self._request(
            "POST",
            "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self.config.client_id or "", self.config.client_secret or ""),
        )
        self._access_token = self._require(body, "access_token")
        expires_in = int(body.get("expires_in") or 0)
        self._token_expires_at = now + max(expires_in - TOKEN_EXPIRY_MARGIN_SECONDS, 0)
        return self._access_token

    async def _headers(self, request_id: Optional[str] = None) -> Dict[str, str]:
        headers = {"Authorization": f"Bearer {await self._get_access_token()}"}
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        return headers

    async def create_payment_intent(self, request: PaymentIntentRequest) -> IntentResult:
        self._ensure_currency(request.amount)

        application_context = {
            key: value
            for key, value in (("return_url", request.return_url), ("cancel_url", request.cancel_url))
            if value
        }
        order_body: Dict[str, Any] = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "reference_id": str(request.order_id),
                "custom_id": request.payment_id,
                "description": request.description,
                "amount": {
                    "currency_code": request.amount.currency,
                    "value": request.amount.format_major(),
                },
            }],
        }
        if application_context:
            order_body["application_context"] = application_context

        order = await self._request(
            "POST",
            "/v2/checkout/orders",
            json=order_body,
            headers=await self._headers(request_id=request.payment_id),
            transaction_id=request.payment_id,
        )
        order_id = self._require(order, "id")
        raw_status = order.get("status")
        logger.info(f"PayPal order {order_id} created for order {request.order_id}")

        return IntentResult(
            gateway_payment_id=order_id,
            status=map_paypal_status(raw_status),
            raw_status=raw_status,
            client_handle={"approval_url": self._approval_url(order)},
            gateway_data=order,
        )

    async def confirm_payment(
        self,
        gateway_payment_id: str,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> StatusResult:
        order = await self._request(
            "POST",
            f"/v2/checkout/orders/{gateway_payment_id}/capture",
            json=dict(extra or {}),
            headers=await self._headers(request_id=f"capture-{gateway_payment_id}"),
            transaction_id=gateway_payment_id,
        )
        return self._order_status(order)

    async def get_payment_status(self, gateway_payment_id: str) -> StatusResult:
        order = await self._request(
            "GET",
            f"/v2/checkout/orders/{gateway_payment_id}",
            headers=await self._headers(),
            transaction_id=gateway_payment_id,
        )
        return self._order_status(order)

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

        capture_id = self._capture(gateway_data or {}).get("id")
        if not capture_id:
            order = await self.get_payment_status(gateway_payment_id)
            capture_id = self._capture(order.gateway_data).get("id")
        if not capture_id:
            raise ValidationError(
                f"PayPal order {gateway_payment_id} has no capture to refund",
                provider=self.name,
                transaction_id=gateway_payment_id,
            )

        body: Dict[str, Any] = {}
        if refund_amount is not None:
            body["amount"] = {"value": refund_amount.format_major(), "currency_code": refund_amount.currency}
        if reason:
            body["note_to_payer"] = reason

        refund = await self._request(
            "POST",
            f"/v2/payments/captures/{capture_id}/refund",
            json=body,
            headers=await self._headers(request_id=str(uuid.uuid4())),
            transaction_id=gateway_payment_id,
        )
        value = dig(refund, "amount", "value")
        currency = dig(refund, "amount", "currency_code")
        refunded = Money.from_major(value, currency) if value and currency else refund_amount

        return RefundResult(
            refund_id=self._require(refund, "id"),
            status=refund.get("status") or "PENDING",
            amount=refunded,
            gateway_data=refund,
        )

    async def verify_webhook_signature(self, payload: bytes, headers: Mapping[str, str]) -> bool:
        transmission_id = get_header(headers, "paypal-transmission-id")
        transmission_time = get_header(headers, "paypal-transmission-time")
        signature = get_header(headers, "paypal-transmission-sig")
        cert_url = get_header(headers, "paypal-cert-url")
        auth_algo = get_header(headers, "paypal-auth-algo")

        if not all([transmission_id, transmission_time, signature, cert_url, self.config.webhook_id]):
            return False
        if auth_algo and auth_algo != SIGNATURE_ALGORITHM:
            logger.warning(f"PayPal webhook uses unsupported algorithm {auth_algo}")
            return False
        try:
            leaf = await self._signing_certificate(cert_url)
        except SignatureVerificationFailure as exc:
            logger.warning(f"PayPal webhook rejected: {exc.error_message}")
            return False

        message = paypal_transmission_message(transmission_id, transmission_time, self.config.webhook_id, payload)
        return verify_rsa_sha256(message, signature, leaf)

    async def process_webhook(
        self,
        parsed: Dict[str, Any],
        raw_payload: bytes,
        headers: Mapping[str, str],
    ) -> Optional[WebhookEvent]:
        event_type = parsed.get("event_type") or ""
        if not isinstance(event_type, str):
            raise MalformedPayload(self.name, "event_type is not a string")
        resource = parsed.get("resource")

        if event_type.startswith("CHECKOUT.ORDER."):
            if not isinstance(resource, dict) or not resource.get("id"):
                raise MalformedPayload(self.name, f"{event_type} event has no order resource")
            order_id = resource["id"]
            raw_status = resource.get("status")
            status = map_paypal_status(raw_status)
            failure_reason = None
        elif event_type.startswith("PAYMENT.CAPTURE."):
            if not isinstance(resource, dict):
                raise MalformedPayload(self.name, f"{event_type} event has no capture resource")
            order_id = dig(resource, "supplementary_data", "related_ids", "order_id")
            if not order_id:
                raise MalformedPayload(self.name, f"{event_type} capture is not linked to an order")
            raw_status = resource.get("status")
            status = map_paypal_capture_status(raw_status)
            failure_reason = dig(resource, "status_details", "reason")
        else:
            return None

        return WebhookEvent(
            gateway_name=self.name,
            event_id=parsed.get("id"),
            event_type=event_type,
            gateway_payment_id=order_id,
            raw_status=raw_status,
            status=status,
            failure_reason=failure_reason,
            raw_payload=raw_payload,
            headers=dict(headers),
            gateway_data=resource,
        )

    def describe(self) -> Dict[str, Any]:
        info = super().describe()
        info.update(client_id=self.config.client_id, sandbox=self.config.sandbox)
        return info

    def _get_trusted_roots(self) -> List[x509.Certificate]:
        if self._trusted_roots is None:
            self._trusted_roots = list(load_default_trusted_roots())
        return self._trusted_roots

    async def _signing_certificate(self, cert_url: str) -> x509.Certificate:
        """Fetch the certificate behind ``cert_url`` and check it is a PayPal cert we trust."""
        if not is_allowed_cert_url(cert_url):
            raise SignatureVerificationFailure(self.name, f"certificate URL not allowed: {cert_url}")

        try:
            chain = await self._load_certificates(cert_url)
        except (httpx.HTTPError, ValueError) as exc:
            raise SignatureVerificationFailure(self.name, f"signing certificate could not be loaded: {exc!r}") from exc

        leaf, intermediates = chain[0], chain[1:]
        if not _is_paypal_host(certificate_common_name(leaf)):
            raise SignatureVerificationFailure(self.name, "signing certificate is not issued to a paypal.com name")
        if not verify_certificate_chain(leaf, intermediates, self._get_trusted_roots()):
            raise SignatureVerificationFailure(self.name, "signing certificate does not chain to a trusted root")
        return leaf

    async def _load_certificates(self, cert_url: str) -> List[x509.Certificate]:
        cached = self._certificate_cache.get(cert_url)
        if cached:
            return cached

        response = await self.http_client.get(cert_url, timeout=self.timeout)
        response.raise_for_status()
        certificates = x509.load_pem_x509_certificates(response.content)
        self._certificate_cache[cert_url] = certificates
        return certificates

    @staticmethod
    def _approval_url(order: Dict[str, Any]) -> Optional[str]:
        for link in order.get("links") or []:
            if link.get("rel") in ("approve", "payer-action"):
                return link.get("href")
        return None

    @staticmethod
    def _capture(order: Mapping[str, Any]) -> Dict[str, Any]:
        return dig(order, "purchase_units", 0, "payments", "captures", 0) or {}

    def _order_status(self, order: Dict[str, Any]) -> StatusResult:
        raw_status = order.get("status")
        status = map_paypal_status(raw_status)
        failure_reason = None

        capture = self._capture(order)
        if capture and map_paypal_capture_status(capture.get("status")) is CanonicalStatus.FAILED:
            status = CanonicalStatus.FAILED
            failure_reason = dig(capture, "status_details", "reason") or capture.get("status")

        return StatusResult(status=status, raw_status=raw_status, gateway_data=order, failure_reason=failure_reason)
