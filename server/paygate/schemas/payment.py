from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, EmailStr, Field

from paygate.core.config import GatewayName
from paygate.integrations.payment_gateways.status import CanonicalStatus
from paygate.schemas.common import CurrencyCode, ORMModel, Timestamped


class CustomerPayload(BaseModel):
    email: EmailStr
    first_name: str | None = Field(default=None, max_length=120)
    last_name: str | None = Field(default=None, max_length=120)
    phone: str | None = Field(default=None, max_length=40)
    document: str | None = Field(default=None, max_length=40)


class PaymentIntentCreate(BaseModel):
    order_id: str = Field(min_length=1, max_length=64)
    amount: Decimal = Field(gt=0, description="Amount in major units, e.g. 99.99")
    currency: CurrencyCode
    gateway: GatewayName | None = None
    customer: CustomerPayload
    return_url: str | None = None
    cancel_url: str | None = None
    webhook_url: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)
    hosted_checkout: bool = Field(default=False, description="Use the provider-hosted checkout page where offered")


class PaymentIntentRead(BaseModel):
    payment_id: str
    order_id: str
    gateway: str
    gateway_payment_id: str
    status: CanonicalStatus
    amount: Decimal
    amount_minor: int
    currency: CurrencyCode
    client_handle: dict[str, Any]


class PaymentConfirm(BaseModel):
    extra: dict[str, Any] = Field(default_factory=dict)


class PaymentStatusRead(BaseModel):
    payment_id: str
    status: CanonicalStatus


class RefundCreate(BaseModel):
    amount: Decimal | None = Field(default=None, gt=0, description="Major units; omit for the remaining balance")
    reason: str | None = Field(default=None, max_length=255)


class RefundRead(BaseModel):
    payment_id: str
    refund_id: str
    amount: Decimal
    currency: CurrencyCode
    refund_status: str
    payment_status: CanonicalStatus
    refunded_total: Decimal


class PaymentRefundRead(Timestamped):
    id: str
    refund_id: str
    amount_minor: int
    currency: CurrencyCode
    status: str
    reason: str | None


class PaymentRead(Timestamped):
    id: str
    order_id: str
    gateway_name: str
    gateway_payment_id: str
    amount_minor: int
    currency: CurrencyCode
    refunded_amount_minor: int
    status: CanonicalStatus
    raw_status: str | None
    failure_reason: str | None
    completed_at: datetime | None
    failed_at: datetime | None
    refunds: list[PaymentRefundRead] = Field(default_factory=list)


class PaymentMethodRead(ORMModel):
    name: str
    display_name: str
    currencies: list[str]
    details: dict[str, Any] = Field(default_factory=dict)


class WebhookAck(BaseModel):
    received: bool = True
    disposition: str
    provider: str
    payment_id: str | None = None
    status: CanonicalStatus | None = None
    detail: str | None = None
