"""
Payment Gateway Base Classes and Interfaces

Defines the contract and the shared HTTP plumbing for all payment gateway
adapters. Adapters translate between the provider's wire format and the
canonical types in this module; they never touch persistence.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Set, Tuple

import httpx

from paygate.core.config import GatewayConfig
from paygate.core.exceptions import (
    GatewayRejection,
    MalformedPayload,
    NetworkError,
    UnsupportedOperation,
    ValidationError,
)

from .money import Money
from .status import CanonicalStatus

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


class PaymentGatewayType(str, Enum):
    """Supported payment gateway types."""
    STRIPE = "stripe"
    PAYPAL = "paypal"
    PAYU = "payu"
    WOMPI = "wompi"
    MERCADOPAGO = "mercadopago"


@dataclass(frozen=True)
class CustomerInfo:
    """Customer information for payment processing."""
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    document: Optional[str] = None

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)


@dataclass(frozen=True)
class PaymentIntentRequest:
    """
    Everything an adapter needs to open a payment with its provider.

    ``payment_id`` is the internal identifier allocated before the outbound
    call so adapters can tag provider objects with it.
    """
    order_id: str
    payment_id: str
    amount: Money
    customer: CustomerInfo
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None
    webhook_url: Optional[str] = None
    metadata: Mapping[str, str] = field(default_factory=dict)

    @property
    def description(self) -> str:
        return f"Order #{self.order_id}"


@dataclass
class IntentResult:
    """Result of creating a payment with a provider."""
    gateway_payment_id: str
    status: CanonicalStatus
    raw_status: Optional[str]
    client_handle: Dict[str, Any] = field(default_factory=dict)
    gateway_data: Dict[str, Any] = field(default_factory=dict)
    failure_reason: Optional[str] = None


@dataclass
class StatusResult:
    """Result of a confirm or status query."""
    status: CanonicalStatus
    raw_status: Optional[str]
    gateway_data: Dict[str, Any] = field(default_factory=dict)
    failure_reason: Optional[str] = None


@dataclass
class RefundResult:
    """Result of a refund operation."""
    refund_id: str
    status: str
    amount: Money
    gateway_data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class WebhookEvent:
    """A provider notification normalized into canonical terms."""
    gateway_name: str
    event_type: str
    gateway_payment_id: str
    raw_status: Optional[str]
    status: CanonicalStatus
    raw_payload: bytes
    event_id: Optional[str] = None
    failure_reason: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    gateway_data: Dict[str, Any] = field(default_factory=dict)
    # Internal payment id echoed back by the provider, when it keeps one.
    payment_reference: Optional[str] = None

    @property
    def dedup_key(self) -> str:
        """Provider event id when there is one, otherwise payment/type/status."""
        if self.event_id:
            return self.event_id
        return f"{self.gateway_payment_id}:{self.event_type}:{self.raw_status}"


def get_header(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup."""
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


def dig(data: Any, *path: Any) -> Any:
    """Walk nested dicts/lists, returning None as soon as a step is missing."""
    current = data
    for step in path:
        if isinstance(current, dict):
            current = current.get(step)
        elif isinstance(current, list) and isinstance(step, int) and -len(current) <= step < len(current):
            current = current[step]
        else:
            return None
        if current is None:
            return None
    return current


class PaymentGateway(ABC):
    """Abstract base class for payment gateway adapters."""

    gateway_type: ClassVar[PaymentGatewayType]
    display_name: ClassVar[str]
    # Attribute names on the config section that must be non-empty.
    required_settings: ClassVar[Tuple[str, ...]] = ()

    def __init__(
        self,
        config: GatewayConfig,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        """
        Initialize the adapter.

        Args:
            config: The provider's settings section
            http_client: Shared client; when omitted the adapter owns one
            timeout: Per-request timeout in seconds
        """
        self.config = config
        self.timeout = timeout
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)

    @property
    def name(self) -> str:
        return self.gateway_type.value

    @property
    def base_url(self) -> str:
        return self.config.base_url.rstrip("/")

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    @abstractmethod
    async def create_payment_intent(self, request: PaymentIntentRequest) -> IntentResult:
        """
        Open a payment with the provider.

        Args:
            request: Order, amount and customer details

        Returns:
            IntentResult with the provider id and the client handle

        Raises:
            ValidationError: If the currency is not supported
            GatewayRejection: If the provider refuses the request
            NetworkError: If the provider cannot be reached
        """

    async def create_hosted_checkout(self, request: PaymentIntentRequest) -> IntentResult:
        """
        Open a provider-hosted checkout page instead of a direct payment.

        The returned ``gateway_payment_id`` names the checkout; providers that
        assign a different payment id later report it through
        ``WebhookEvent.payment_reference``.
        """
        raise UnsupportedOperation(f"{self.display_name} has no hosted checkout", provider=self.name)

    async def confirm_payment(
        self,
        gateway_payment_id: str,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> StatusResult:
        """
        Confirm (or capture) a payment.

        Providers without an explicit confirm step re-fetch the status.
        """
        return await self.get_payment_status(gateway_payment_id)

    @abstractmethod
    async def get_payment_status(self, gateway_payment_id: str) -> StatusResult:
        """Fetch the current provider status. Side-effect free."""

    @abstractmethod
    async def refund_payment(
        self,
        gateway_payment_id: str,
        amount: Optional[Money] = None,
        reason: Optional[str] = None,
        *,
        captured: Optional[Money] = None,
        gateway_data: Optional[Mapping[str, Any]] = None,
    ) -> RefundResult:
        """
        Refund a payment.

        Args:
            gateway_payment_id: Provider payment id
            amount: Amount to refund (None for the full captured amount)
            reason: Refund reason
            captured: Captured amount used to bound the refund
            gateway_data: Last stored provider data for the payment

        Returns:
            RefundResult with refund details

        Raises:
            ValidationError: If the amount exceeds the captured amount
            UnsupportedOperation: If the provider has no refund API
        """

    @abstractmethod
    async def verify_webhook_signature(self, payload: bytes, headers: Mapping[str, str]) -> bool:
        """Authenticate a webhook. Never raises; returns False on any problem."""

    def parse_webhook_payload(self, payload: bytes, headers: Mapping[str, str]) -> Dict[str, Any]:
        """Decode a webhook body. JSON unless the adapter says otherwise."""
        return self._decode_json(payload)

    @abstractmethod
    async def process_webhook(
        self,
        parsed: Dict[str, Any],
        raw_payload: bytes,
        headers: Mapping[str, str],
    ) -> Optional[WebhookEvent]:
        """
        Normalize a verified webhook.

        Returns:
            The event, or None when the event type is not one this layer handles

        Raises:
            MalformedPayload: If a handled event type is structurally invalid
        """

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def get_supported_currencies(self) -> Set[str]:
        return set(self.config.currencies)

    def missing_settings(self) -> List[str]:
        return [
            f"{self.name}.{setting}"
            for setting in self.required_settings
            if not getattr(self.config, setting, None)
        ]

    def is_configured(self) -> bool:
        return not self.missing_settings()

    def describe(self) -> Dict[str, Any]:
        """Public information for checkout clients. Never includes secrets."""
        return {
            "name": self.name,
            "display_name": self.display_name,
            "enabled": self.config.enabled,
            "configured": self.is_configured(),
            "currencies": sorted(self.get_supported_currencies()),
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _ensure_currency(self, amount: Money) -> None:
        if amount.currency not in self.get_supported_currencies():
            raise ValidationError(
                f"Currency {amount.currency} is not supported by {self.name}",
                provider=self.name,
            )

    def _resolve_refund_amount(
        self,
        gateway_payment_id: str,
        amount: Optional[Money],
        captured: Optional[Money],
    ) -> Optional[Money]:
        """Bound a refund by the captured amount; None means full refund."""
        if amount is None:
            return captured
        if amount.is_zero():
            raise ValidationError("Refund amount must be positive", provider=self.name,
                                  transaction_id=gateway_payment_id)
        if captured is not None:
            if amount.currency != captured.currency:
                raise ValidationError(
                    f"Refund currency {amount.currency} does not match payment currency {captured.currency}",
                    provider=self.name,
                    transaction_id=gateway_payment_id,
                )
            if amount > captured:
                raise ValidationError(
                    f"Refund of {amount} exceeds captured amount {captured}",
                    provider=self.name,
                    transaction_id=gateway_payment_id,
                )
        return amount

    def _decode_json(self, payload: bytes) -> Dict[str, Any]:
        try:
            data = json.loads(payload)
        except (UnicodeDecodeError, ValueError) as exc:
            raise MalformedPayload(self.name, f"Webhook body is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise MalformedPayload(self.name, "Webhook body must be a JSON object")
        return data

    async def _request(
        self,
        method: str,
        path: str,
        *,
        transaction_id: Optional[str] = None,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        """
        Issue one request and return the decoded JSON object.

        Transport failures become NetworkError; non-2xx answers and bodies that
        are not a JSON object become GatewayRejection.
        """
        url = path if path.startswith("http") else f"{self.base_url}{path}"
        try:
            response = await self.http_client.request(method, url, timeout=self.timeout, **kwargs)
        except httpx.TransportError as exc:
            logger.warning(f"{self.display_name} request {method} {path} failed: {exc!r}")
            raise NetworkError(self.name, exc, transaction_id) from exc

        if not response.is_success:
            logger.warning(
                f"{self.display_name} request {method} {path} returned HTTP {response.status_code}"
            )
            raise GatewayRejection(self.name, response.status_code, response.text,
                                   transaction_id=transaction_id)

        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            raise GatewayRejection(
                self.name,
                response.status_code,
                response.text,
                message=f"{self.display_name} returned a malformed response body",
                transaction_id=transaction_id,
            )
        return body

    def _require(self, data: Mapping[str, Any], key: str, response_text: str = "") -> Any:
        """Fetch a mandatory field from a provider response."""
        value = data.get(key)
        if value in (None, ""):
            raise GatewayRejection(
                self.name,
                200,
                response_text or json.dumps(data, default=str),
                message=f"{self.display_name} response is missing '{key}'",
            )
        return value

    async def close(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
