"""
Payment gateway integration modules

Provides adapters for the supported payment providers with a consistent
interface and error handling.
"""

from .base import (
    CustomerInfo,
    IntentResult,
    PaymentGateway,
    PaymentGatewayType,
    PaymentIntentRequest,
    RefundResult,
    StatusResult,
    WebhookEvent,
)
from .money import Money
from .registry import DEFAULT_FACTORIES, GatewayRegistry
from .status import CanonicalStatus

__all__ = [
    "CanonicalStatus",
    "CustomerInfo",
    "DEFAULT_FACTORIES",
    "GatewayRegistry",
    "IntentResult",
    "Money",
    "PaymentGateway",
    "PaymentGatewayType",
    "PaymentIntentRequest",
    "RefundResult",
    "StatusResult",
    "WebhookEvent",
]
