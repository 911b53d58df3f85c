"""Provider stubs, webhook signing helpers and test certificates."""

import base64
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from urllib.parse import parse_qsl

import httpx
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.x509.oid import NameOID

from paygate.core.config import Settings
from paygate.integrations.payment_gateways.signatures import (
    hmac_sha256_hex,
    mercadopago_manifest,
    payu_format_value,
    payu_signature,
    timestamped_signature,
)

STRIPE_WEBHOOK_SECRET = "whsec_test_123"
WOMPI_WEBHOOK_SECRET = "wompi_events_secret"
MERCADOPAGO_WEBHOOK_SECRET = "mp_webhook_secret"
PAYPAL_WEBHOOK_ID = "WH-TEST-1"
PAYPAL_CERT_URL = "https://api.sandbox.paypal.com/v1/notifications/certs/CERT-TEST"

Route = Union[Tuple[int, Any], Callable[[httpx.Request], httpx.Response]]


class ProviderStub:
    """Routes provider requests to canned responses and records every request."""

    def __init__(self) -> None:
        self.routes: Dict[Tuple[str, str], Route] = {}
        self.requests: List[httpx.Request] = []

    def add(self, method: str, path: str, body: Any = None, status_code: int = 200) -> None:
        self.routes[(method.upper(), path)] = (status_code, body)

    def add_handler(self, method: str, path: str, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self.routes[(method.upper(), path)] = handler

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method.upper() and r.url.path == path]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"error": f"no stub for {request.method} {request.url.path}"})
        if callable(route):
            return route(request)
        status_code, body = route
        if isinstance(body, (bytes, str)):
            return httpx.Response(status_code, content=body)
        return httpx.Response(status_code, json=body)


def form_of(request: httpx.Request) -> Dict[str, str]:
    return dict(parse_qsl(request.content.decode("utf-8"), keep_blank_values=True))


def json_of(request: httpx.Request) -> Dict[str, Any]:
    return json.loads(request.content)


def raise_connect_error(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("connection refused", request=request)


# ---------------------------------------------------------------------------
# Webhook signing helpers
# ---------------------------------------------------------------------------

def stripe_event(event_id: str, event_type: str, intent: Dict[str, Any]) -> bytes:
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": intent}}).encode()


def stripe_headers(body: bytes, secret: str = STRIPE_WEBHOOK_SECRET, timestamp: str = "1700000000") -> Dict[str, str]:
    return {"Stripe-Signature": f"t={timestamp},v1={timestamped_signature(secret, timestamp, body)}"}


def wompi_headers(body: bytes, secret: str = WOMPI_WEBHOOK_SECRET) -> Dict[str, str]:
    return {"X-Wompi-Signature": hmac_sha256_hex(secret, body)}


def mercadopago_headers(request_id: str = "req-1", ts: str = "1700000000",
                        secret: str = MERCADOPAGO_WEBHOOK_SECRET) -> Dict[str, str]:
    digest = hmac_sha256_hex(secret, mercadopago_manifest(request_id, ts).encode())
    return {"x-request-id": request_id, "x-signature": f"ts={ts},v1={digest}"}


def payu_confirmation(settings: Settings, *, transaction_id: str, reference: str, value: str,
                      currency: str, state_pol: str, **extra: str) -> Dict[str, str]:
    fields = {
        "merchant_id": settings.payu.merchant_id,
        "reference_sale": reference,
        "value": value,
        "currency": currency,
        "state_pol": state_pol,
        "transaction_id": transaction_id,
        "sign": payu_signature(
            settings.payu.api_key,
            settings.payu.merchant_id,
            reference,
            payu_format_value(value),
            currency,
            state_pol,
        ),
    }
    fields.update(extra)
    return fields


# ---------------------------------------------------------------------------
# PayPal signing certificates
# ---------------------------------------------------------------------------

@dataclass
class PayPalPKI:
    root: x509.Certificate
    intermediate: x509.Certificate
    leaf: x509.Certificate
    leaf_key: rsa.RSAPrivateKey
    rogue_leaf: x509.Certificate
    rogue_key: rsa.RSAPrivateKey

    def chain_pem(self, leaf: Optional[x509.Certificate] = None) -> bytes:
        return b"".join(
            cert.public_bytes(serialization.Encoding.PEM) for cert in (leaf or self.leaf, self.intermediate)
        )

    def sign(self, message: bytes, key: Optional[rsa.RSAPrivateKey] = None) -> str:
        signature = (key or self.leaf_key).sign(message, padding.PKCS1v15(), hashes.SHA256())
        return base64.b64encode(signature).decode()


def _name(common_name: str) -> x509.Name:
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


def _certificate(subject: str, issuer: x509.Name, public_key, signing_key, ca: bool) -> x509.Certificate:
    now = datetime.now(timezone.utc)
    return (
        x509.CertificateBuilder()
        .subject_name(_name(subject))
        .issuer_name(issuer)
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=30))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
        .sign(signing_key, hashes.SHA256())
    )


def build_paypal_pki() -> PayPalPKI:
    """Test root -> intermediate -> paypal.com leaf, plus a leaf for a foreign host."""
    root_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    intermediate_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    leaf_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    rogue_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)

    root = _certificate("Paygate Test Root", _name("Paygate Test Root"), root_key.public_key(), root_key, ca=True)
    intermediate = _certificate(
        "Paygate Test Intermediate", root.subject, intermediate_key.public_key(), root_key, ca=True
    )
    leaf = _certificate(
        "messageverificationcerts.paypal.com", intermediate.subject, leaf_key.public_key(), intermediate_key, ca=False
    )
    rogue_leaf = _certificate(
        "webhooks.example.com", intermediate.subject, rogue_key.public_key(), intermediate_key, ca=False
    )
    return PayPalPKI(root, intermediate, leaf, leaf_key, rogue_leaf, rogue_key)


