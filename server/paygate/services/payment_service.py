from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paygate.core.config import Settings
from paygate.core.exceptions import NetworkError, PaymentError, PaymentNotFound, ValidationError
from paygate.core.logging import get_logger
from paygate.integrations.payment_gateways.base import CustomerInfo, PaymentIntentRequest, StatusResult, WebhookEvent
from paygate.integrations.payment_gateways.money import Money
from paygate.integrations.payment_gateways.registry import GatewayRegistry
from paygate.integrations.payment_gateways.status import CanonicalStatus
from paygate.models.payment import Payment, PaymentRefund
from paygate.services import event_ledger
from paygate.services.locks import PaymentLockManager
from paygate.services.state_machine import TransitionResult, apply_transition

logger = get_logger(__name__)


class WebhookDisposition(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    INVALID_SIGNATURE = "invalid_signature"
    DEFERRED = "deferred"
    TRANSITION_REJECTED = "transition_rejected"
    DISABLED = "disabled"


@dataclass(slots=True)
class WebhookOutcome:
    disposition: WebhookDisposition
    provider: str
    event_type: str | None = None
    gateway_payment_id: str | None = None
    payment_id: str | None = None
    status: CanonicalStatus | None = None
    detail: str | None = None


@dataclass(slots=True)
class PaymentHandle:
    payment_id: str
    order_id: str
    gateway_name: str
    gateway_payment_id: str
    status: CanonicalStatus
    amount: Money
    client_handle: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class RefundOutcome:
    payment_id: str
    refund_id: str
    amount: Money
    refund_status: str
    payment_status: CanonicalStatus
    refunded_total: Money


def _as_utc(moment: datetime) -> datetime:
    # SQLite hands timezone-aware columns back naive.
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=timezone.utc)


class PaymentOrchestrator:
    """Drives payments through their adapters and keeps the persisted state consistent."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: GatewayRegistry,
        settings: Settings,
        locks: Optional[PaymentLockManager] = None,
    ) -> None:
        self.session_factory = session_factory
        self.registry = registry
        self.settings = settings
        self.locks = locks or PaymentLockManager()

    # ------------------------------------------------------------------
    # Outbound operations
    # ------------------------------------------------------------------

    async def create_intent(
        self,
        order_id: str,
        amount: Money,
        customer: CustomerInfo,
        gateway: Optional[str] = None,
        return_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
        webhook_url: Optional[str] = None,
        metadata: Optional[Mapping[str, str]] = None,
        hosted_checkout: bool = False,
    ) -> PaymentHandle:
        """
        Open a payment with the provider and store it as pending.

        ``hosted_checkout`` sends the buyer to the provider's own checkout page
        where the gateway offers one (MercadoPago Checkout Pro).
        """
        gateway_name = gateway or self.settings.default_gateway
        adapter = self.registry.create(gateway_name)
        if not adapter.config.enabled:
            raise ValidationError(f"Payment gateway '{gateway_name}' is disabled for checkout", provider=gateway_name)
        self._check_amount_limits(amount)

        payment_id = str(uuid.uuid4())
        app_url = self.settings.app_url.rstrip("/")
        request = PaymentIntentRequest(
            order_id=str(order_id),
            payment_id=payment_id,
            amount=amount,
            customer=customer,
            return_url=return_url or f"{app_url}/payment/success",
            cancel_url=cancel_url or f"{app_url}/payment/cancel",
            webhook_url=webhook_url or f"{app_url}/payments/webhook/{gateway_name}",
            metadata=dict(metadata or {}),
        )

        try:
            if hosted_checkout:
                result = await adapter.create_hosted_checkout(request)
            else:
                result = await adapter.create_payment_intent(request)
        except PaymentError as exc:
            self._log_gateway_error("payment.intent.failed", gateway_name, payment_id, exc, order_id=str(order_id))
            raise

        async with self.locks.hold(gateway_name, result.gateway_payment_id):
            async with self.session_factory() as session:
                payment = Payment(
                    id=payment_id,
                    order_id=str(order_id),
                    gateway_name=gateway_name,
                    gateway_payment_id=result.gateway_payment_id,
                    amount_minor=amount.amount_minor,
                    currency=amount.currency,
                    status=CanonicalStatus.PENDING,
                    client_handle=result.client_handle,
                    raw_gateway_data=result.gateway_data,
                    raw_status=result.raw_status,
                )
                session.add(payment)
                await session.flush()
                await self._record_and_apply(
                    session,
                    payment,
                    dedup_key=f"intent:{payment_id}",
                    event_type="intent.created",
                    status=result.status,
                    gateway_data=result.gateway_data,
                    failure_reason=result.failure_reason,
                    raw_status=result.raw_status,
                )
                await self._replay_deferred(session, payment)
                await session.commit()
                status = payment.status

        logger.info(
            "payment.intent.created",
            provider=gateway_name,
            payment_id=payment_id,
            gateway_payment_id=result.gateway_payment_id,
            order_id=str(order_id),
            status=status.value,
        )
        return PaymentHandle(
            payment_id=payment_id,
            order_id=str(order_id),
            gateway_name=gateway_name,
            gateway_payment_id=result.gateway_payment_id,
            status=status,
            amount=amount,
            client_handle=result.client_handle,
        )

    async def confirm(self, payment_id: str, extra: Optional[Mapping[str, Any]] = None) -> CanonicalStatus:
        payment = await self.get_payment(payment_id)
        adapter = self.registry.create(payment.gateway_name)
        try:
            result = await adapter.confirm_payment(payment.gateway_payment_id, extra)
        except PaymentError as exc:
            self._log_gateway_error("payment.confirm.failed", payment.gateway_name, payment_id, exc)
            raise
        return await self._apply_status_result(payment, result, source="confirm")

    async def status(self, payment_id: str, refresh: bool = False) -> CanonicalStatus:
        payment = await self.get_payment(payment_id)
        if not refresh:
            return payment.status

        adapter = self.registry.create(payment.gateway_name)
        try:
            result = await adapter.get_payment_status(payment.gateway_payment_id)
        except PaymentError as exc:
            self._log_gateway_error("payment.status.failed", payment.gateway_name, payment_id, exc)
            raise
        return await self._apply_status_result(payment, result, source="poll")

    async def refund(
        self,
        payment_id: str,
        amount: Optional[Money] = None,
        reason: Optional[str] = None,
    ) -> RefundOutcome:
        """
        Refund all or part of a completed payment.

        The per-payment lock is held across the provider call so two refunds
        can never both spend the same remaining balance.
        """
        located = await self.get_payment(payment_id)
        adapter = self.registry.create(located.gateway_name)

        async with self.locks.hold(located.gateway_name, located.gateway_payment_id):
            async with self.session_factory() as session:
                payment = await session.get(Payment, payment_id)
                if payment is None:
                    raise PaymentNotFound(payment_id)
                refund_amount = self._check_refundable(payment, amount)

                try:
                    result = await adapter.refund_payment(
                        payment.gateway_payment_id,
                        refund_amount,
                        reason,
                        captured=payment.refundable_amount,
                        gateway_data=payment.raw_gateway_data,
                    )
                except PaymentError as exc:
                    self._log_gateway_error("payment.refund.failed", payment.gateway_name, payment_id, exc,
                                            amount_minor=refund_amount.amount_minor)
                    raise

                session.add(
                    PaymentRefund(
                        payment_id=payment.id,
                        refund_id=result.refund_id,
                        amount_minor=refund_amount.amount_minor,
                        currency=refund_amount.currency,
                        status=str(result.status),
                        reason=reason,
                        raw_gateway_data=result.gateway_data,
                    )
                )
                payment.refunded_amount_minor += refund_amount.amount_minor

                if payment.refunded_amount_minor >= payment.amount_minor:
                    await self._record_and_apply(
                        session,
                        payment,
                        dedup_key=f"refund:{result.refund_id}",
                        event_type="refund.settled",
                        status=CanonicalStatus.REFUNDED,
                        gateway_data=None,
                    )
                await session.commit()

                outcome = RefundOutcome(
                    payment_id=payment.id,
                    refund_id=result.refund_id,
                    amount=refund_amount,
                    refund_status=str(result.status),
                    payment_status=payment.status,
                    refunded_total=payment.refunded_amount,
                )

        logger.info(
            "payment.refund.created",
            provider=located.gateway_name,
            payment_id=payment_id,
            refund_id=outcome.refund_id,
            amount_minor=outcome.amount.amount_minor,
            status=outcome.payment_status.value,
        )
        return outcome

    async def get_payment(self, payment_id: str) -> Payment:
        async with self.session_factory() as session:
            payment = await session.get(Payment, payment_id)
            if payment is None:
                raise PaymentNotFound(payment_id)
            return payment

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    async def handle_webhook(self, provider: str, raw_body: bytes, headers: Mapping[str, str]) -> WebhookOutcome:
        """
        Authenticate, normalize and apply one provider notification.

        Raises only for conditions the provider should retry or cannot fix:
        unknown provider, unparseable payload, or the provider being
        unreachable while the event is resolved.
        """
        if not self.settings.webhooks_enabled:
            logger.info("webhook.disabled", provider=provider)
            return WebhookOutcome(WebhookDisposition.DISABLED, provider)

        adapter = self.registry.create(provider)
        parsed = adapter.parse_webhook_payload(raw_body, headers)

        if self.settings.webhook_verify_signatures:
            if not await adapter.verify_webhook_signature(raw_body, headers):
                logger.warning("webhook.signature.invalid", provider=provider)
                return WebhookOutcome(WebhookDisposition.INVALID_SIGNATURE, provider)

        try:
            event = await adapter.process_webhook(parsed, raw_body, headers)
        except NetworkError as exc:
            logger.warning("webhook.resolve.failed", provider=provider, error=exc.error_message)
            raise

        if event is None:
            logger.info("webhook.ignored", provider=provider, event_type=parsed.get("type") or parsed.get("event_type"))
            return WebhookOutcome(WebhookDisposition.IGNORED, provider)

        if self.settings.webhook_log_events:
            logger.info(
                "webhook.received",
                provider=provider,
                event_type=event.event_type,
                gateway_payment_id=event.gateway_payment_id,
                dedup_key=event.dedup_key,
                raw_status=event.raw_status,
            )

        outcome = WebhookOutcome(
            WebhookDisposition.APPLIED,
            provider,
            event_type=event.event_type,
            gateway_payment_id=event.gateway_payment_id,
        )

        async with self.locks.hold(provider, event.gateway_payment_id):
            async with self.session_factory() as session:
                payment = await self._find_by_gateway_id(session, provider, event.gateway_payment_id)
                if payment is None and event.payment_reference:
                    payment = await self._claim_by_reference(session, provider, event)
                if payment is None:
                    # Usually the intent is still being stored; create_intent replays it.
                    if not await event_ledger.defer_event(session, event):
                        outcome.disposition = WebhookDisposition.DUPLICATE
                        return outcome
                    await session.commit()
                    logger.warning(
                        "webhook.deferred",
                        provider=provider,
                        gateway_payment_id=event.gateway_payment_id,
                        event_type=event.event_type,
                        dedup_key=event.dedup_key,
                    )
                    outcome.disposition = WebhookDisposition.DEFERRED
                    return outcome

                outcome.payment_id = payment.id
                recorded, transition = await self._record_and_apply(
                    session,
                    payment,
                    dedup_key=event.dedup_key,
                    event_type=event.event_type,
                    status=event.status,
                    gateway_data=event.gateway_data,
                    failure_reason=event.failure_reason,
                    raw_status=event.raw_status,
                )
                if not recorded:
                    logger.info("webhook.duplicate", provider=provider, payment_id=outcome.payment_id,
                                dedup_key=event.dedup_key)
                    outcome.disposition = WebhookDisposition.DUPLICATE
                    return outcome

                await session.commit()
                outcome.status = payment.status

        if transition is not None and not transition.succeeded:
            outcome.disposition = WebhookDisposition.TRANSITION_REJECTED
            outcome.detail = transition.reason
        return outcome

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _apply_status_result(self, located: Payment, result: StatusResult, *, source: str) -> CanonicalStatus:
        async with self.locks.hold(located.gateway_name, located.gateway_payment_id):
            async with self.session_factory() as session:
                payment = await session.get(Payment, located.id)
                if payment is None:
                    raise PaymentNotFound(located.id)
                recorded, _ = await self._record_and_apply(
                    session,
                    payment,
                    dedup_key=f"{source}:{payment.gateway_payment_id}:{result.raw_status}",
                    event_type=f"{source}.status",
                    status=result.status,
                    gateway_data=result.gateway_data,
                    failure_reason=result.failure_reason,
                    raw_status=result.raw_status,
                )
                if not recorded:
                    # Same provider status already applied; report what is stored.
                    return payment.status
                await session.commit()
                return payment.status

    async def _replay_deferred(self, session: AsyncSession, payment: Payment) -> None:
        """Apply events that arrived before ``payment`` was stored. Runs under its lock."""
        for deferred in await event_ledger.take_deferred(session, payment.gateway_name, payment.gateway_payment_id):
            recorded, _ = await self._record_and_apply(
                session,
                payment,
                dedup_key=deferred.dedup_key,
                event_type=deferred.event_type,
                status=deferred.status,
                gateway_data=deferred.gateway_data,
                failure_reason=deferred.failure_reason,
                raw_status=deferred.raw_status,
            )
            if recorded:
                logger.info(
                    "webhook.deferred.applied",
                    provider=payment.gateway_name,
                    payment_id=payment.id,
                    event_type=deferred.event_type,
                    dedup_key=deferred.dedup_key,
                )

    async def _record_and_apply(
        self,
        session: AsyncSession,
        payment: Payment,
        *,
        dedup_key: str,
        event_type: str,
        status: CanonicalStatus,
        gateway_data: Optional[Mapping[str, Any]],
        failure_reason: Optional[str] = None,
        raw_status: Optional[str] = None,
    ) -> tuple[bool, Optional[TransitionResult]]:
        """
        Ledger the update, then transition the payment.

        Must run under the payment's lock. Returns (False, None) for an update
        that was already applied; the payment is left untouched in that case.
        """
        recorded = await event_ledger.record_event(
            session,
            gateway_name=payment.gateway_name,
            dedup_key=dedup_key,
            event_type=event_type,
            gateway_payment_id=payment.gateway_payment_id,
        )
        if not recorded:
            return False, None

        previous = payment.status
        result = apply_transition(payment, status, gateway_data, failure_reason, raw_status)
        if not result.succeeded:
            logger.warning(
                "payment.transition.rejected",
                provider=payment.gateway_name,
                payment_id=payment.id,
                event_type=event_type,
                reason=result.reason,
            )
        elif result.changed:
            logger.info(
                "payment.status.changed",
                provider=payment.gateway_name,
                payment_id=payment.id,
                event_type=event_type,
                previous=previous.value,
                status=payment.status.value,
            )
        return True, result

    @staticmethod
    async def _find_by_gateway_id(session: AsyncSession, gateway_name: str, gateway_payment_id: str) -> Optional[Payment]:
        result = await session.execute(
            select(Payment).where(
                Payment.gateway_name == gateway_name,
                Payment.gateway_payment_id == gateway_payment_id,
            )
        )
        return result.scalars().first()

    @staticmethod
    async def _claim_by_reference(session: AsyncSession, gateway_name: str, event: WebhookEvent) -> Optional[Payment]:
        """
        Find a payment by the internal id the provider echoed back.

        A hosted checkout is stored under the checkout id; the first event for
        the real provider payment moves the row over to that id.
        """
        payment = await session.get(Payment, event.payment_reference)
        if payment is None or payment.gateway_name != gateway_name:
            return None
        logger.info(
            "payment.gateway_reference.updated",
            provider=gateway_name,
            payment_id=payment.id,
            previous=payment.gateway_payment_id,
            gateway_payment_id=event.gateway_payment_id,
        )
        payment.gateway_payment_id = event.gateway_payment_id
        return payment

    def _check_amount_limits(self, amount: Money) -> None:
        major = amount.to_major()
        if major < self.settings.min_amount:
            raise ValidationError(f"Amount {amount} is below the minimum of {self.settings.min_amount}")
        if major > self.settings.max_amount:
            raise ValidationError(f"Amount {amount} exceeds the maximum of {self.settings.max_amount}")

    def _check_refundable(self, payment: Payment, amount: Optional[Money]) -> Money:
        if payment.status is not CanonicalStatus.COMPLETED:
            raise ValidationError(
                f"Only completed payments can be refunded; payment is {payment.status.value}",
                provider=payment.gateway_name,
                transaction_id=payment.id,
            )
        if payment.completed_at is not None:
            deadline = _as_utc(payment.completed_at) + timedelta(days=self.settings.refund_period_days)
            if datetime.now(timezone.utc) > deadline:
                raise ValidationError(
                    f"Refund period of {self.settings.refund_period_days} days has expired",
                    provider=payment.gateway_name,
                    transaction_id=payment.id,
                )

        remaining = payment.refundable_amount
        if amount is None:
            return remaining
        if amount.currency != payment.currency:
            raise ValidationError(
                f"Refund currency {amount.currency} does not match payment currency {payment.currency}",
                provider=payment.gateway_name,
                transaction_id=payment.id,
            )
        if amount.is_zero():
            raise ValidationError("Refund amount must be positive", provider=payment.gateway_name,
                                  transaction_id=payment.id)
        if amount > remaining:
            raise ValidationError(
                f"Refund of {amount} exceeds the refundable balance of {remaining}",
                provider=payment.gateway_name,
                transaction_id=payment.id,
            )
        return amount

    @staticmethod
    def _log_gateway_error(event: str, provider: str, payment_id: str, exc: PaymentError, **context: Any) -> None:
        logger.error(
            event,
            provider=provider,
            payment_id=payment_id,
            error=exc.error_message,
            error_code=exc.error_code,
            **context,
        )
