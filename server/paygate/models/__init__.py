from paygate.models.payment import Payment, PaymentRefund
from paygate.models.webhook_event import DeferredWebhookEvent, ProcessedWebhookEvent

__all__ = [
    "DeferredWebhookEvent",
    "Payment",
    "PaymentRefund",
    "ProcessedWebhookEvent",
]
