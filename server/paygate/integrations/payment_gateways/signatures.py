"""
Webhook signature schemes.

One function per signing construction used by the supported providers. Every
verifier returns a bool and never raises on malformed input; the final
comparison always goes through hmac.compare_digest.
"""

import base64
import hashlib
import hmac
import time
import zlib
from datetime import datetime, timezone
from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation
from typing import Dict, Iterable, List, Optional, Sequence, Union

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa


def constant_time_equals(expected: str, received: str) -> bool:
    """Compare two signature strings without leaking where they differ."""
    return hmac.compare_digest(expected.encode("utf-8"), received.encode("utf-8"))


def hmac_sha256_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def parse_signature_header(header: str) -> Dict[str, List[str]]:
    """Split ``k1=v1,k2=v2`` headers; repeated keys keep every value."""
    values: Dict[str, List[str]] = {}
    for element in header.split(","):
        key, sep, value = element.strip().partition("=")
        if not sep or not key:
            continue
        values.setdefault(key.strip(), []).append(value.strip())
    return values


# --- HMAC with timestamp (Stripe) -------------------------------------------

def timestamped_signature(secret: str, timestamp: str, payload: bytes) -> str:
    return hmac_sha256_hex(secret, timestamp.encode("ascii") + b"." + payload)


def verify_timestamped_hmac(
    payload: bytes,
    header: Optional[str],
    secret: Optional[str],
    tolerance_seconds: Optional[int] = None,
    now: Optional[float] = None,
) -> bool:
    """
    Verify a ``t=<unix-ts>,v1=<hex>`` signature header.

    The header may carry several ``v1`` values (secret rotation); any match is
    accepted. When ``tolerance_seconds`` is set, timestamps further than that
    from ``now`` are rejected.
    """
    if not header or not secret:
        return False
    try:
        parts = parse_signature_header(header)
        timestamps = parts.get("t", [])
        candidates = parts.get("v1", [])
        if len(timestamps) != 1 or not candidates:
            return False
        timestamp = timestamps[0]
        if not timestamp.isdigit():
            return False
        if tolerance_seconds is not None:
            current = time.time() if now is None else now
            if abs(current - int(timestamp)) > tolerance_seconds:
                return False

        expected = timestamped_signature(secret, timestamp, payload)
        matched = False
        for candidate in candidates:
            # no short-circuit: every candidate is compared
            matched = constant_time_equals(expected, candidate) or matched
        return matched
    except (UnicodeError, ValueError, TypeError):
        return False


# --- Raw-body HMAC (Wompi) --------------------------------------------------

def verify_body_hmac(payload: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    if not signature or not secret:
        return False
    try:
        return constant_time_equals(hmac_sha256_hex(secret, payload), signature.strip())
    except (UnicodeError, ValueError, TypeError):
        return False


# --- Manifest HMAC with request id (MercadoPago) ----------------------------

def mercadopago_manifest(request_id: str, timestamp: str) -> str:
    return f"id:{request_id};request-id:{request_id};ts:{timestamp};"


def verify_manifest_hmac(request_id: Optional[str], header: Optional[str], secret: Optional[str]) -> bool:
    """Verify an ``x-signature: ts=<ts>,v1=<hex>`` header against the request-id manifest."""
    if not request_id or not header or not secret:
        return False
    try:
        parts = parse_signature_header(header)
        timestamps = parts.get("ts", [])
        hashes_ = parts.get("v1", [])
        if len(timestamps) != 1 or len(hashes_) != 1 or not timestamps[0] or not hashes_[0]:
            return False
        manifest = mercadopago_manifest(request_id, timestamps[0])
        expected = hmac_sha256_hex(secret, manifest.encode("utf-8"))
        return constant_time_equals(expected, hashes_[0])
    except (UnicodeError, ValueError, TypeError):
        return False


# --- Concatenated-field digest (PayU) ---------------------------------------

def payu_format_value(value: Union[str, Decimal]) -> str:
    """
    Format an amount the way PayU signs confirmation notifications.

    Two decimals, except when the second decimal is zero, in which case one
    decimal is used: ``150.00 -> 150.0``, ``150.26 -> 150.26``.
    """
    amount = Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_EVEN)
    one_decimal = amount.quantize(Decimal("0.1"), rounding=ROUND_HALF_EVEN)
    if one_decimal == amount:
        return format(one_decimal, "f")
    return format(amount, "f")


def payu_signature(
    api_key: str,
    merchant_id: str,
    reference_code: str,
    value: str,
    currency: str,
    state: Optional[str] = None,
) -> str:
    fields = [api_key, merchant_id, reference_code, value, currency]
    if state is not None:
        fields.append(state)
    return hashlib.md5("~".join(fields).encode("utf-8")).hexdigest()


def verify_payu_signature(
    signature: Optional[str],
    api_key: Optional[str],
    merchant_id: Optional[str],
    reference_code: Optional[str],
    value: Optional[str],
    currency: Optional[str],
    state: Optional[str],
) -> bool:
    """Case-sensitive check of the ``sign`` field of a PayU confirmation."""
    if not all([signature, api_key, merchant_id, reference_code, value, currency, state]):
        return False
    try:
        expected = payu_signature(
            api_key, merchant_id, reference_code, payu_format_value(value), currency, state
        )
        return constant_time_equals(expected, signature)
    except (InvalidOperation, UnicodeError, ValueError, TypeError):
        return False


# --- Certificate-based RSA (PayPal) -----------------------------------------

def paypal_transmission_message(
    transmission_id: str,
    transmission_time: str,
    webhook_id: str,
    payload: bytes,
) -> bytes:
    """``<transmission-id>|<transmission-time>|<webhook-id>|<crc32 of body>``"""
    crc = zlib.crc32(payload) & 0xFFFFFFFF
    return f"{transmission_id}|{transmission_time}|{webhook_id}|{crc}".encode("utf-8")


def verify_rsa_sha256(message: bytes, signature_b64: Optional[str], certificate: x509.Certificate) -> bool:
    if not signature_b64:
        return False
    try:
        signature = base64.b64decode(signature_b64, validate=True)
        public_key = certificate.public_key()
        if not isinstance(public_key, rsa.RSAPublicKey):
            return False
        public_key.verify(signature, message, padding.PKCS1v15(), hashes.SHA256())
        return True
    except (InvalidSignature, ValueError, TypeError):
        return False


def _valid_at(certificate: x509.Certificate, moment: datetime) -> bool:
    return certificate.not_valid_before_utc <= moment <= certificate.not_valid_after_utc


def _issued_by(certificate: x509.Certificate, issuer: x509.Certificate) -> bool:
    if certificate.issuer != issuer.subject:
        return False
    try:
        certificate.verify_directly_issued_by(issuer)
        return True
    except (InvalidSignature, ValueError, TypeError):
        return False


def verify_certificate_chain(
    leaf: x509.Certificate,
    intermediates: Sequence[x509.Certificate],
    trusted_roots: Iterable[x509.Certificate],
    at: Optional[datetime] = None,
) -> bool:
    """
    Walk from the leaf to a trusted root through the supplied intermediates.

    Every certificate on the path must be inside its validity window.
    """
    moment = at or datetime.now(timezone.utc)
    roots = list(trusted_roots)
    pool = list(intermediates)
    current = leaf

    for _ in range(len(pool) + 1):
        if not _valid_at(current, moment):
            return False
        for root in roots:
            if _issued_by(current, root) and _valid_at(root, moment):
                return True
        parent = next((candidate for candidate in pool if _issued_by(current, candidate)), None)
        if parent is None:
            return False
        pool.remove(parent)
        current = parent
    return False


def certificate_common_name(certificate: x509.Certificate) -> Optional[str]:
    attributes = certificate.subject.get_attributes_for_oid(x509.NameOID.COMMON_NAME)
    if not attributes:
        return None
    value = attributes[0].value
    return value.decode("utf-8") if isinstance(value, bytes) else value
