"""
Payment error taxonomy.

Every error raised by the gateway layer derives from PaymentError so callers
can catch one type at the boundary and still branch on the specific failure.
"Ignored" webhook events are not errors and never appear here.
"""

from typing import Any, Dict, Optional


class PaymentError(Exception):
    """Base class for payment gateway errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        provider: Optional[str] = None,
        gateway_response: Optional[Dict[str, Any]] = None,
        transaction_id: Optional[str] = None
    ):
        super().__init__(message)
        self.error_message = message
        self.error_code = error_code
        self.provider = provider
        self.gateway_response = gateway_response
        self.transaction_id = transaction_id


class ConfigurationError(PaymentError):
    """A required secret or setting is missing or invalid."""

    def __init__(self, message: str, provider: Optional[str] = None, missing: Optional[list] = None):
        super().__init__(message, error_code="configuration_error", provider=provider)
        self.missing = list(missing or [])


class NetworkError(PaymentError):
    """Transport failure or timeout talking to a provider. Retryable by the caller."""

    def __init__(self, provider: str, cause: BaseException, transaction_id: Optional[str] = None):
        super().__init__(
            f"{provider} request failed: {cause}",
            error_code="network_error",
            provider=provider,
            transaction_id=transaction_id,
        )
        self.cause = cause


class GatewayRejection(PaymentError):
    """The provider answered with a non-2xx status or an unusable body."""

    def __init__(
        self,
        provider: str,
        http_status: int,
        body: str,
        message: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ):
        super().__init__(
            message or f"{provider} rejected the request with HTTP {http_status}",
            error_code="gateway_rejection",
            provider=provider,
            gateway_response={"http_status": http_status, "body": body},
            transaction_id=transaction_id,
        )
        self.http_status = http_status
        self.body = body


class SignatureVerificationFailure(PaymentError):
    """A webhook could not be authenticated. The event is dropped."""

    def __init__(self, provider: str, message: str = "Invalid webhook signature"):
        super().__init__(message, error_code="webhook_signature_invalid", provider=provider)


class ValidationError(PaymentError):
    """Bad refund amount, unsupported currency or otherwise invalid request."""

    def __init__(self, message: str, provider: Optional[str] = None, transaction_id: Optional[str] = None):
        super().__init__(message, error_code="validation_error", provider=provider, transaction_id=transaction_id)


class UnsupportedOperation(ValidationError):
    """The provider has no API for the requested operation."""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message, provider=provider)
        self.error_code = "unsupported_operation"


class NotSupportedError(PaymentError):
    """No adapter is registered under the requested gateway name."""

    def __init__(self, gateway_name: str):
        super().__init__(
            f"Unsupported payment gateway: {gateway_name}",
            error_code="gateway_not_supported",
            provider=gateway_name,
        )


class PaymentNotFound(PaymentError):
    def __init__(self, payment_id: str):
        super().__init__(f"Payment {payment_id} not found", error_code="payment_not_found")
        self.payment_id = payment_id


class MalformedPayload(PaymentError):
    """A webhook body that cannot be parsed into the provider's event shape."""

    def __init__(self, provider: str, message: str):
        super().__init__(message, error_code="malformed_payload", provider=provider)


class PaymentBusy(PaymentError):
    """Another worker still holds the payment's lock. Retryable by the caller."""

    def __init__(self, lock_key: str):
        super().__init__(
            f"Payment {lock_key} is being updated by another request",
            error_code="payment_busy",
        )
        self.lock_key = lock_key
