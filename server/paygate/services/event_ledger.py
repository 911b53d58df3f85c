from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.core.logging import get_logger
from paygate.integrations.payment_gateways.base import WebhookEvent
from paygate.models.webhook_event import DeferredWebhookEvent, ProcessedWebhookEvent

logger = get_logger(__name__)


async def is_processed(session: AsyncSession, gateway_name: str, dedup_key: str) -> bool:
    result = await session.execute(
        select(ProcessedWebhookEvent.id).where(
            ProcessedWebhookEvent.gateway_name == gateway_name,
            ProcessedWebhookEvent.dedup_key == dedup_key,
        )
    )
    return result.scalars().first() is not None


async def record_event(
    session: AsyncSession,
    *,
    gateway_name: str,
    dedup_key: str,
    event_type: str,
    gateway_payment_id: str,
) -> bool:
    """
    Insert a ledger entry for an event.

    Returns False when the event was already recorded. The unique constraint on
    (gateway_name, dedup_key) catches inserts racing from other processes; in
    that case the whole session is rolled back and must not be reused for the
    same unit of work.
    """
    if await is_processed(session, gateway_name, dedup_key):
        return False

    session.add(
        ProcessedWebhookEvent(
            gateway_name=gateway_name,
            dedup_key=dedup_key,
            event_type=event_type,
            gateway_payment_id=gateway_payment_id,
        )
    )
    try:
        await session.flush()
    except IntegrityError:
        await session.rollback()
        logger.info("ledger.insert.conflict", provider=gateway_name, dedup_key=dedup_key)
        return False
    return True


async def defer_event(session: AsyncSession, event: WebhookEvent) -> bool:
    """
    Keep a verified event whose payment row does not exist yet.

    Returns False when the same event is already waiting. Like
    ``record_event``, a racing insert rolls the session back.
    """
    existing = await session.execute(
        select(DeferredWebhookEvent.id).where(
            DeferredWebhookEvent.gateway_name == event.gateway_name,
            DeferredWebhookEvent.dedup_key == event.dedup_key,
        )
    )
    if existing.scalars().first() is not None:
        return False

    session.add(
        DeferredWebhookEvent(
            gateway_name=event.gateway_name,
            dedup_key=event.dedup_key,
            event_type=event.event_type,
            gateway_payment_id=event.gateway_payment_id,
            status=event.status,
            raw_status=event.raw_status,
            failure_reason=event.failure_reason,
            gateway_data=event.gateway_data,
        )
    )
    try:
        await session.flush()
    except IntegrityError:
        await session.rollback()
        logger.info("ledger.deferred.conflict", provider=event.gateway_name, dedup_key=event.dedup_key)
        return False
    return True


async def take_deferred(
    session: AsyncSession, gateway_name: str, gateway_payment_id: str
) -> list[DeferredWebhookEvent]:
    """Remove and return the events waiting for a payment, oldest first."""
    result = await session.execute(
        select(DeferredWebhookEvent)
        .where(
            DeferredWebhookEvent.gateway_name == gateway_name,
            DeferredWebhookEvent.gateway_payment_id == gateway_payment_id,
        )
        .order_by(DeferredWebhookEvent.created_at, DeferredWebhookEvent.id)
    )
    events = list(result.scalars().all())
    for event in events:
        await session.delete(event)
    return events
