"""
Canonical payment status and the per-provider normalizers.

Each table lists every documented raw value for a provider. Anything else maps
to PENDING: providers add statuses over time and an unknown one must never
crash the orchestrator or move a payment to a terminal state.
"""

from enum import Enum
from typing import Dict, Mapping, Optional


class CanonicalStatus(str, Enum):
    """Provider-independent payment state."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    CanonicalStatus.FAILED,
    CanonicalStatus.CANCELLED,
    CanonicalStatus.REFUNDED,
})

DEFAULT_STATUS = CanonicalStatus.PENDING


STRIPE_STATUS_MAP: Dict[str, CanonicalStatus] = {
    "requires_payment_method": CanonicalStatus.PENDING,
    "requires_confirmation": CanonicalStatus.PENDING,
    "requires_action": CanonicalStatus.PENDING,
    "requires_capture": CanonicalStatus.PENDING,
    "processing": CanonicalStatus.PROCESSING,
    "succeeded": CanonicalStatus.COMPLETED,
    "canceled": CanonicalStatus.CANCELLED,
}

PAYPAL_STATUS_MAP: Dict[str, CanonicalStatus] = {
    "CREATED": CanonicalStatus.PENDING,
    "SAVED": CanonicalStatus.PENDING,
    "APPROVED": CanonicalStatus.PENDING,
    "PAYER_ACTION_REQUIRED": CanonicalStatus.PENDING,
    "COMPLETED": CanonicalStatus.COMPLETED,
    "CANCELLED": CanonicalStatus.CANCELLED,
    "VOIDED": CanonicalStatus.CANCELLED,
}

# Capture resources delivered with PAYMENT.CAPTURE.* webhooks.
PAYPAL_CAPTURE_STATUS_MAP: Dict[str, CanonicalStatus] = {
    "PENDING": CanonicalStatus.PENDING,
    "COMPLETED": CanonicalStatus.COMPLETED,
    "PARTIALLY_REFUNDED": CanonicalStatus.COMPLETED,
    "DECLINED": CanonicalStatus.FAILED,
    "FAILED": CanonicalStatus.FAILED,
    "REFUNDED": CanonicalStatus.REFUNDED,
}

# Transaction state returned by the PayU payments API.
PAYU_STATUS_MAP: Dict[str, CanonicalStatus] = {
    "APPROVED": CanonicalStatus.COMPLETED,
    "DECLINED": CanonicalStatus.FAILED,
    "EXPIRED": CanonicalStatus.FAILED,
    "ERROR": CanonicalStatus.FAILED,
    "PENDING": CanonicalStatus.PENDING,
}

# state_pol codes posted to the PayU confirmation URL.
PAYU_POL_STATUS_MAP: Dict[str, CanonicalStatus] = {
    "4": CanonicalStatus.COMPLETED,   # approved
    "6": CanonicalStatus.FAILED,      # declined
    "104": CanonicalStatus.FAILED,    # error
    "5": CanonicalStatus.FAILED,      # expired
    "7": CanonicalStatus.PENDING,     # pending
}

WOMPI_STATUS_MAP: Dict[str, CanonicalStatus] = {
    "PENDING": CanonicalStatus.PENDING,
    "APPROVED": CanonicalStatus.COMPLETED,
    "DECLINED": CanonicalStatus.FAILED,
    "VOIDED": CanonicalStatus.FAILED,
    "ERROR": CanonicalStatus.FAILED,
}

MERCADOPAGO_STATUS_MAP: Dict[str, CanonicalStatus] = {
    "pending": CanonicalStatus.PENDING,
    "in_process": CanonicalStatus.PENDING,
    "in_mediation": CanonicalStatus.PENDING,
    "authorized": CanonicalStatus.PENDING,
    "approved": CanonicalStatus.COMPLETED,
    "rejected": CanonicalStatus.FAILED,
    "cancelled": CanonicalStatus.FAILED,
    "refunded": CanonicalStatus.REFUNDED,
    "charged_back": CanonicalStatus.REFUNDED,
}


def normalize_status(mapping: Mapping[str, CanonicalStatus], raw_status: Optional[str]) -> CanonicalStatus:
    if raw_status is None:
        return DEFAULT_STATUS
    return mapping.get(str(raw_status), DEFAULT_STATUS)


def map_stripe_status(raw_status: Optional[str]) -> CanonicalStatus:
    return normalize_status(STRIPE_STATUS_MAP, raw_status)


def map_paypal_status(raw_status: Optional[str]) -> CanonicalStatus:
    return normalize_status(PAYPAL_STATUS_MAP, raw_status)


def map_paypal_capture_status(raw_status: Optional[str]) -> CanonicalStatus:
    return normalize_status(PAYPAL_CAPTURE_STATUS_MAP, raw_status)


def map_payu_status(raw_status: Optional[str]) -> CanonicalStatus:
    return normalize_status(PAYU_STATUS_MAP, raw_status)


def map_payu_pol_status(raw_status: Optional[str]) -> CanonicalStatus:
    return normalize_status(PAYU_POL_STATUS_MAP, raw_status)


def map_wompi_status(raw_status: Optional[str]) -> CanonicalStatus:
    return normalize_status(WOMPI_STATUS_MAP, raw_status)


def map_mercadopago_status(raw_status: Optional[str]) -> CanonicalStatus:
    return normalize_status(MERCADOPAGO_STATUS_MAP, raw_status)
