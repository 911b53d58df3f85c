from __future__ import annotations

import uuid
from typing import Annotated, Any

from sqlalchemy import JSON, Enum as SAEnum, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from paygate.db.base import Base
from paygate.integrations.payment_gateways.status import CanonicalStatus
from paygate.models.mixins import TimestampMixin

Identifier = Annotated[str, mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))]


class ProcessedWebhookEvent(TimestampMixin, Base):
    """Ledger row recording that a provider event has already been applied."""

    __tablename__ = "processed_webhook_events"
    __table_args__ = (UniqueConstraint("gateway_name", "dedup_key", name="uq_webhook_event_dedup"),)

    id: Mapped[Identifier]
    gateway_name: Mapped[str] = mapped_column(String(32), nullable=False)
    dedup_key: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    gateway_payment_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)


class DeferredWebhookEvent(TimestampMixin, Base):
    """
    Verified event for a payment that is not stored yet.

    Applied and deleted once the payment row is created.
    """

    __tablename__ = "deferred_webhook_events"
    __table_args__ = (UniqueConstraint("gateway_name", "dedup_key", name="uq_deferred_webhook_event_dedup"),)

    id: Mapped[Identifier]
    gateway_name: Mapped[str] = mapped_column(String(32), nullable=False)
    dedup_key: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    gateway_payment_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    status: Mapped[CanonicalStatus] = mapped_column(SAEnum(CanonicalStatus), nullable=False)
    raw_status: Mapped[str | None] = mapped_column(String(64), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    gateway_data: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
