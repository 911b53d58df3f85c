from paygate.schemas.payment import (
    CustomerPayload,
    PaymentConfirm,
    PaymentIntentCreate,
    PaymentIntentRead,
    PaymentMethodRead,
    PaymentRead,
    PaymentRefundRead,
    PaymentStatusRead,
    RefundCreate,
    RefundRead,
    WebhookAck,
)

__all__ = [
    "CustomerPayload",
    "PaymentConfirm",
    "PaymentIntentCreate",
    "PaymentIntentRead",
    "PaymentMethodRead",
    "PaymentRead",
    "PaymentRefundRead",
    "PaymentStatusRead",
    "RefundCreate",
    "RefundRead",
    "WebhookAck",
]
