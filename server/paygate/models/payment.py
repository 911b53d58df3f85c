from __future__ import annotations

import uuid
from datetime import datetime
from typing import Annotated, Any

from sqlalchemy import JSON, BigInteger, DateTime, Enum as SAEnum, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from paygate.db.base import Base
from paygate.integrations.payment_gateways.money import Money
from paygate.integrations.payment_gateways.status import CanonicalStatus
from paygate.models.mixins import TimestampMixin

Identifier = Annotated[str, mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))]


class Payment(TimestampMixin, Base):
    __tablename__ = "payments"
    __table_args__ = (
        UniqueConstraint("gateway_name", "gateway_payment_id", name="uq_payment_gateway_reference"),
    )

    id: Mapped[Identifier]
    order_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    gateway_name: Mapped[str] = mapped_column(String(32), nullable=False)
    gateway_payment_id: Mapped[str] = mapped_column(String(128), nullable=False)
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    refunded_amount_minor: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    status: Mapped[CanonicalStatus] = mapped_column(
        SAEnum(CanonicalStatus), default=CanonicalStatus.PENDING, nullable=False
    )
    raw_status: Mapped[str | None] = mapped_column(String(64), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    client_handle: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    raw_gateway_data: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    refunds: Mapped[list["PaymentRefund"]] = relationship(
        back_populates="payment", cascade="all, delete-orphan", lazy="selectin"
    )

    @property
    def amount(self) -> Money:
        return Money(self.amount_minor, self.currency)

    @property
    def refunded_amount(self) -> Money:
        return Money(self.refunded_amount_minor, self.currency)

    @property
    def refundable_amount(self) -> Money:
        return self.amount - self.refunded_amount


class PaymentRefund(TimestampMixin, Base):
    __tablename__ = "payment_refunds"

    id: Mapped[Identifier]
    payment_id: Mapped[str] = mapped_column(ForeignKey("payments.id", ondelete="CASCADE"), nullable=False, index=True)
    refund_id: Mapped[str] = mapped_column(String(128), nullable=False)
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_gateway_data: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)

    payment: Mapped[Payment] = relationship(back_populates="refunds")
