"""
Payment orchestrator tests.

Each test drives the orchestrator against stubbed provider APIs and a fresh
SQLite database, then checks what was persisted.
"""

import asyncio
import json
from decimal import Decimal
from itertools import count
from urllib.parse import urlencode

import httpx
import pytest
from sqlalchemy import func, select

from paygate.core.exceptions import (
    GatewayRejection,
    NetworkError,
    NotSupportedError,
    PaymentNotFound,
    UnsupportedOperation,
    ValidationError,
)
from paygate.integrations.payment_gateways.money import Money
from paygate.integrations.payment_gateways.status import CanonicalStatus
from paygate.integrations.payment_gateways.stripe_adapter import StripeAdapter
from paygate.models.payment import Payment
from paygate.models.webhook_event import DeferredWebhookEvent, ProcessedWebhookEvent
from paygate.services.payment_service import WebhookDisposition
from support import (
    form_of,
    mercadopago_headers,
    payu_confirmation,
    raise_connect_error,
    stripe_event,
    stripe_headers,
)


@pytest.fixture
def stripe_api(provider_stub):
    """Stripe endpoints for intent pi_123; refunds echo the requested amount."""
    refund_ids = count(1)

    def refund(request: httpx.Request) -> httpx.Response:
        form = form_of(request)
        return httpx.Response(200, json={
            "id": f"re_{next(refund_ids)}",
            "status": "succeeded",
            "amount": int(form["amount"]),
            "currency": "usd",
        })

    provider_stub.add("POST", "/v1/payment_intents", {
        "id": "pi_123", "status": "requires_payment_method", "client_secret": "pi_123_secret",
    })
    provider_stub.add_handler("POST", "/v1/refunds", refund)
    return provider_stub


async def stripe_webhook(orchestrator, event_id, event_type, status, **intent):
    body = stripe_event(event_id, event_type, {"id": "pi_123", "status": status, **intent})
    return await orchestrator.handle_webhook("stripe", body, stripe_headers(body))


async def completed_stripe_payment(orchestrator, customer, amount=Money(9999, "USD")):
    handle = await orchestrator.create_intent("123", amount, customer, gateway="stripe")
    await stripe_webhook(orchestrator, "evt_succeeded", "payment_intent.succeeded", "succeeded")
    return handle


async def count_rows(session_factory, model):
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


class TestCreateIntent:
    @pytest.mark.asyncio
    async def test_intent_is_persisted_pending(self, orchestrator, stripe_api, customer):
        handle = await orchestrator.create_intent("123", Money(9999, "USD"), customer, gateway="stripe")

        assert handle.status is CanonicalStatus.PENDING
        assert handle.gateway_payment_id == "pi_123"
        assert handle.client_handle["client_secret"] == "pi_123_secret"

        payment = await orchestrator.get_payment(handle.payment_id)
        assert payment.order_id == "123"
        assert payment.amount == Money(9999, "USD")
        assert payment.raw_status == "requires_payment_method"

    @pytest.mark.asyncio
    async def test_default_urls_point_back_to_the_app(self, orchestrator, provider_stub, customer):
        provider_stub.add("POST", "/v1/payments", {"id": 555, "status": "pending"})

        await orchestrator.create_intent("77", Money.from_major("1500", "ARS"), customer, gateway="mercadopago")

        body = json.loads(provider_stub.requests[0].content)
        assert body["notification_url"] == "https://shop.example.com/payments/webhook/mercadopago"
        assert body["callback_url"] == "https://shop.example.com/payment/success"

    @pytest.mark.asyncio
    async def test_default_gateway(self, orchestrator, stripe_api, customer):
        handle = await orchestrator.create_intent("123", Money(9999, "USD"), customer)
        assert handle.gateway_name == "stripe"

    @pytest.mark.asyncio
    async def test_provider_failure_persists_nothing(self, orchestrator, provider_stub, session_factory, customer):
        provider_stub.add("POST", "/v1/payment_intents", {"error": {"type": "api_error"}}, status_code=500)

        with pytest.raises(GatewayRejection):
            await orchestrator.create_intent("123", Money(9999, "USD"), customer, gateway="stripe")
        assert await count_rows(session_factory, Payment) == 0

    @pytest.mark.asyncio
    async def test_amount_limits(self, orchestrator, stripe_api, customer):
        with pytest.raises(ValidationError):
            await orchestrator.create_intent("123", Money(50, "USD"), customer, gateway="stripe")
        assert stripe_api.requests == []

    @pytest.mark.asyncio
    async def test_unknown_gateway(self, orchestrator, customer):
        with pytest.raises(NotSupportedError):
            await orchestrator.create_intent("123", Money(9999, "USD"), customer, gateway="bitcoin")

    @pytest.mark.asyncio
    async def test_disabled_gateway_takes_no_payments(self, orchestrator, stripe_api, customer, settings,
                                                      session_factory):
        settings.stripe.enabled = False

        with pytest.raises(ValidationError, match="disabled"):
            await orchestrator.create_intent("123", Money(9999, "USD"), customer, gateway="stripe")
        assert stripe_api.requests == []
        assert await count_rows(session_factory, Payment) == 0

    @pytest.mark.asyncio
    async def test_hosted_checkout_is_unsupported_for_stripe(self, orchestrator, stripe_api, customer):
        with pytest.raises(UnsupportedOperation):
            await orchestrator.create_intent("123", Money(9999, "USD"), customer, gateway="stripe",
                                             hosted_checkout=True)
        assert stripe_api.requests == []


class TestStripeWebhookFlow:
    @pytest.mark.asyncio
    async def test_succeeded_webhook_completes_payment(self, orchestrator, stripe_api, customer):
        handle = await orchestrator.create_intent("123", Money(9999, "USD"), customer, gateway="stripe")

        outcome = await stripe_webhook(orchestrator, "evt_1", "payment_intent.succeeded", "succeeded")

        assert outcome.disposition is WebhookDisposition.APPLIED
        assert outcome.payment_id == handle.payment_id
        assert outcome.status is CanonicalStatus.COMPLETED
        payment = await orchestrator.get_payment(handle.payment_id)
        assert payment.status is CanonicalStatus.COMPLETED
        assert payment.raw_status == "succeeded"
        assert payment.completed_at is not None

    @pytest.mark.asyncio
    async def test_replayed_webhook_is_a_duplicate(self, orchestrator, stripe_api, customer, session_factory):
        await orchestrator.create_intent("123", Money(9999, "USD"), customer, gateway="stripe")

        first = await stripe_webhook(orchestrator, "evt_1", "payment_intent.succeeded", "succeeded")
        second = await stripe_webhook(orchestrator, "evt_1", "payment_intent.succeeded", "succeeded")

        assert first.disposition is WebhookDisposition.APPLIED
        assert second.disposition is WebhookDisposition.DUPLICATE
        # intent creation + one webhook
        assert await count_rows(session_factory, ProcessedWebhookEvent) == 2

    @pytest.mark.asyncio
    async def test_concurrent_deliveries_apply_once(self, orchestrator, stripe_api, customer):
        await orchestrator.create_intent("123", Money(9999, "USD"), customer, gateway="stripe")

        outcomes = await asyncio.gather(*(
            stripe_webhook(orchestrator, "evt_1", "payment_intent.succeeded", "succeeded") for _ in range(3)
        ))

        dispositions = sorted(outcome.disposition.value for outcome in outcomes)
        assert dispositions == ["applied", "duplicate", "duplicate"]

    @pytest.mark.asyncio
    async def test_invalid_signature_changes_nothing(self, orchestrator, stripe_api, customer):
        handle = await orchestrator.create_intent("123", Money(9999, "USD"), customer, gateway="stripe")
        body = stripe_event("evt_1", "payment_intent.succeeded", {"id": "pi_123", "status": "succeeded"})

        outcome = await orchestrator.handle_webhook("stripe", body, stripe_headers(body, secret="whsec_forged"))

        assert outcome.disposition is WebhookDisposition.INVALID_SIGNATURE
        assert (await orchestrator.get_payment(handle.payment_id)).status is CanonicalStatus.PENDING

    @pytest.mark.asyncio
    async def test_unverified_mode_skips_signature(self, orchestrator, stripe_api, customer, settings):
        settings.webhook_verify_signatures = False
        await orchestrator.create_intent("123", Money(9999, "USD"), customer, gateway="stripe")
        body = stripe_event("evt_1", "payment_intent.succeeded", {"id": "pi_123", "status": "succeeded"})

        outcome = await orchestrator.handle_webhook("stripe", body, {})

        assert outcome.disposition is WebhookDisposition.APPLIED

    @pytest.mark.asyncio
    async def test_webhooks_disabled(self, orchestrator, settings):
        settings.webhooks_enabled = False
        outcome = await orchestrator.handle_webhook("stripe", b"{}", {})
        assert outcome.disposition is WebhookDisposition.DISABLED

    @pytest.mark.asyncio
    async def test_unknown_payment_is_deferred(self, orchestrator, session_factory):
        body = stripe_event("evt_9", "payment_intent.succeeded", {"id": "pi_missing", "status": "succeeded"})

        outcome = await orchestrator.handle_webhook("stripe", body, stripe_headers(body))
        replay = await orchestrator.handle_webhook("stripe", body, stripe_headers(body))

        assert outcome.disposition is WebhookDisposition.DEFERRED
        assert outcome.gateway_payment_id == "pi_missing"
        assert replay.disposition is WebhookDisposition.DUPLICATE
        assert await count_rows(session_factory, DeferredWebhookEvent) == 1

    @pytest.mark.asyncio
    async def test_webhook_before_intent_is_stored(self, orchestrator, stripe_api, customer, session_factory):
        await stripe_webhook(orchestrator, "evt_early", "payment_intent.succeeded", "succeeded")

        handle = await orchestrator.create_intent("123", Money(9999, "USD"), customer, gateway="stripe")

        assert handle.status is CanonicalStatus.COMPLETED
        payment = await orchestrator.get_payment(handle.payment_id)
        assert payment.raw_status == "succeeded"
        assert payment.completed_at is not None
        assert await count_rows(session_factory, DeferredWebhookEvent) == 0

        replay = await stripe_webhook(orchestrator, "evt_early", "payment_intent.succeeded", "succeeded")
        assert replay.disposition is WebhookDisposition.DUPLICATE

    @pytest.mark.asyncio
    async def test_webhook_delivered_during_intent_creation(self, orchestrator, registry, stripe_api, customer):
        deliveries = []

        class RacingStripeAdapter(StripeAdapter):
            async def create_payment_intent(self, request):
                result = await super().create_payment_intent(request)
                deliveries.append(
                    await stripe_webhook(orchestrator, "evt_race", "payment_intent.succeeded", "succeeded")
                )
                return result

        registry.register("stripe", lambda s, client: RacingStripeAdapter(s.stripe, http_client=client))

        handle = await orchestrator.create_intent("123", Money(9999, "USD"), customer, gateway="stripe")

        assert [outcome.disposition for outcome in deliveries] == [WebhookDisposition.DEFERRED]
        assert handle.status is CanonicalStatus.COMPLETED
        assert (await orchestrator.get_payment(handle.payment_id)).status is CanonicalStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unhandled_event_type_is_ignored(self, orchestrator):
        body = stripe_event("evt_5", "charge.dispute.created", {"id": "dp_1"})

        outcome = await orchestrator.handle_webhook("stripe", body, stripe_headers(body))

        assert outcome.disposition is WebhookDisposition.IGNORED

    @pytest.mark.asyncio
    async def test_late_failure_after_completion_is_rejected(self, orchestrator, stripe_api, customer):
        handle = await completed_stripe_payment(orchestrator, customer)

        outcome = await stripe_webhook(
            orchestrator, "evt_late", "payment_intent.payment_failed", "requires_payment_method",
            last_payment_error={"message": "card_declined"},
        )

        assert outcome.disposition is WebhookDisposition.TRANSITION_REJECTED
        assert "completed -> pending" in outcome.detail
        payment = await orchestrator.get_payment(handle.payment_id)
        assert payment.status is CanonicalStatus.COMPLETED
        assert payment.failure_reason is None

    @pytest.mark.asyncio
    async def test_declined_attempt_then_retry_succeeds(self, orchestrator, stripe_api, customer):
        handle = await orchestrator.create_intent("123", Money(9999, "USD"), customer, gateway="stripe")

        declined = await stripe_webhook(
            orchestrator, "evt_declined", "payment_intent.payment_failed", "requires_payment_method",
            last_payment_error={"message": "card_declined"},
        )
        assert declined.disposition is WebhookDisposition.APPLIED
        assert declined.status is CanonicalStatus.PENDING
        payment = await orchestrator.get_payment(handle.payment_id)
        assert payment.failure_reason == "card_declined"
        assert payment.failed_at is None

        succeeded = await stripe_webhook(orchestrator, "evt_retry", "payment_intent.succeeded", "succeeded")

        assert succeeded.disposition is WebhookDisposition.APPLIED
        assert succeeded.status is CanonicalStatus.COMPLETED
        payment = await orchestrator.get_payment(handle.payment_id)
        assert payment.status is CanonicalStatus.COMPLETED
        assert payment.failure_reason is None


class TestConfirmAndStatus:
    @pytest.mark.asyncio
    async def test_confirm_applies_provider_status(self, orchestrator, stripe_api, customer):
        stripe_api.add("POST", "/v1/payment_intents/pi_123/confirm", {"id": "pi_123", "status": "succeeded"})
        handle = await orchestrator.create_intent("123", Money(9999, "USD"), customer, gateway="stripe")

        assert await orchestrator.confirm(handle.payment_id) is CanonicalStatus.COMPLETED
        assert await orchestrator.confirm(handle.payment_id) is CanonicalStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_status_refresh(self, orchestrator, stripe_api, customer):
        stripe_api.add("GET", "/v1/payment_intents/pi_123", {"id": "pi_123", "status": "processing"})
        handle = await orchestrator.create_intent("123", Money(9999, "USD"), customer, gateway="stripe")

        assert await orchestrator.status(handle.payment_id) is CanonicalStatus.PENDING
        assert stripe_api.calls("GET", "/v1/payment_intents/pi_123") == []
        assert await orchestrator.status(handle.payment_id, refresh=True) is CanonicalStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_unknown_payment_id(self, orchestrator):
        with pytest.raises(PaymentNotFound):
            await orchestrator.get_payment("does-not-exist")
        with pytest.raises(PaymentNotFound):
            await orchestrator.confirm("does-not-exist")


class TestRefunds:
    @pytest.mark.asyncio
    async def test_full_refund_of_fifty_dollars(self, orchestrator, stripe_api, customer):
        handle = await completed_stripe_payment(orchestrator, customer, Money.from_major("50", "USD"))

        outcome = await orchestrator.refund(handle.payment_id, reason="customer request")

        assert outcome.amount == Money(5000, "USD")
        assert outcome.payment_status is CanonicalStatus.REFUNDED
        assert outcome.refunded_total.to_major() == Decimal("50.00")
        assert form_of(stripe_api.calls("POST", "/v1/refunds")[0])["amount"] == "5000"

        payment = await orchestrator.get_payment(handle.payment_id)
        assert payment.status is CanonicalStatus.REFUNDED
        assert [refund.amount_minor for refund in payment.refunds] == [5000]

    @pytest.mark.asyncio
    async def test_partial_refunds_until_balance_is_spent(self, orchestrator, stripe_api, customer):
        handle = await completed_stripe_payment(orchestrator, customer, Money(5000, "USD"))

        first = await orchestrator.refund(handle.payment_id, Money(2000, "USD"))
        assert first.payment_status is CanonicalStatus.COMPLETED
        assert first.refunded_total == Money(2000, "USD")

        with pytest.raises(ValidationError):
            await orchestrator.refund(handle.payment_id, Money(3001, "USD"))

        second = await orchestrator.refund(handle.payment_id)
        assert second.amount == Money(3000, "USD")
        assert second.payment_status is CanonicalStatus.REFUNDED

        with pytest.raises(ValidationError):
            await orchestrator.refund(handle.payment_id, Money(1, "USD"))
        assert len(stripe_api.calls("POST", "/v1/refunds")) == 2

    @pytest.mark.asyncio
    async def test_only_completed_payments_are_refundable(self, orchestrator, stripe_api, customer):
        handle = await orchestrator.create_intent("123", Money(9999, "USD"), customer, gateway="stripe")

        with pytest.raises(ValidationError):
            await orchestrator.refund(handle.payment_id)
        assert stripe_api.calls("POST", "/v1/refunds") == []

    @pytest.mark.asyncio
    async def test_refund_currency_must_match(self, orchestrator, stripe_api, customer):
        handle = await completed_stripe_payment(orchestrator, customer)

        with pytest.raises(ValidationError):
            await orchestrator.refund(handle.payment_id, Money(100, "EUR"))

    @pytest.mark.asyncio
    async def test_refund_period(self, orchestrator, stripe_api, customer, settings):
        handle = await completed_stripe_payment(orchestrator, customer)
        settings.refund_period_days = 0

        with pytest.raises(ValidationError, match="Refund period"):
            await orchestrator.refund(handle.payment_id)

    @pytest.mark.asyncio
    async def test_concurrent_refunds_cannot_overspend(self, orchestrator, stripe_api, customer):
        handle = await completed_stripe_payment(orchestrator, customer, Money(5000, "USD"))

        results = await asyncio.gather(
            orchestrator.refund(handle.payment_id, Money(3000, "USD")),
            orchestrator.refund(handle.payment_id, Money(3000, "USD")),
            return_exceptions=True,
        )

        assert sum(1 for result in results if isinstance(result, ValidationError)) == 1
        payment = await orchestrator.get_payment(handle.payment_id)
        assert payment.refunded_amount == Money(3000, "USD")


class TestOtherProviders:
    @pytest.mark.asyncio
    async def test_payu_declined_confirmation(self, orchestrator, provider_stub, customer, settings):
        provider_stub.add("POST", "/payments-api/4.0/service.cgi", {
            "code": "SUCCESS",
            "transactionResponse": {"orderId": 1400123, "transactionId": "tx-1", "state": "PENDING"},
        })
        handle = await orchestrator.create_intent("123", Money.from_major("150000", "COP"), customer, gateway="payu")
        fields = payu_confirmation(
            settings, transaction_id="tx-1", reference=handle.client_handle["reference_code"],
            value="150000.00", currency="COP", state_pol="6", response_message_pol="INSUFFICIENT_FUNDS",
        )

        outcome = await orchestrator.handle_webhook(
            "payu", urlencode(fields).encode(), {"Content-Type": "application/x-www-form-urlencoded"}
        )

        assert outcome.disposition is WebhookDisposition.APPLIED
        assert outcome.status is CanonicalStatus.FAILED
        payment = await orchestrator.get_payment(handle.payment_id)
        assert payment.failure_reason == "INSUFFICIENT_FUNDS"
        assert payment.failed_at is not None

    @pytest.mark.asyncio
    async def test_mercadopago_unreachable_during_webhook(self, orchestrator, provider_stub, customer,
                                                          session_factory):
        provider_stub.add("POST", "/v1/payments", {"id": 12345, "status": "pending"})
        handle = await orchestrator.create_intent("123", Money.from_major("1500", "ARS"), customer,
                                                  gateway="mercadopago")
        provider_stub.add_handler("GET", "/v1/payments/12345", raise_connect_error)
        body = json.dumps({"id": 4455, "type": "payment", "action": "payment.updated",
                           "data": {"id": "12345"}}).encode()

        with pytest.raises(NetworkError):
            await orchestrator.handle_webhook("mercadopago", body, mercadopago_headers())

        assert (await orchestrator.get_payment(handle.payment_id)).status is CanonicalStatus.PENDING
        assert await count_rows(session_factory, ProcessedWebhookEvent) == 1

        # the provider's retry goes through once the API is reachable again
        provider_stub.add("GET", "/v1/payments/12345", {"id": 12345, "status": "approved"})
        outcome = await orchestrator.handle_webhook("mercadopago", body, mercadopago_headers())
        assert outcome.disposition is WebhookDisposition.APPLIED
        assert outcome.status is CanonicalStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_mercadopago_hosted_checkout(self, orchestrator, provider_stub, customer):
        provider_stub.add("POST", "/checkout/preferences", {
            "id": "pref-1",
            "init_point": "https://www.mercadopago.com/checkout?pref=pref-1",
            "sandbox_init_point": "https://sandbox.mercadopago.com/checkout?pref=pref-1",
        })
        handle = await orchestrator.create_intent("77", Money.from_major("1500", "ARS"), customer,
                                                  gateway="mercadopago", hosted_checkout=True)

        assert handle.gateway_payment_id == "pref-1"
        assert handle.status is CanonicalStatus.PENDING
        assert handle.client_handle["payment_url"] == "https://sandbox.mercadopago.com/checkout?pref=pref-1"
        assert provider_stub.calls("POST", "/v1/payments") == []

        provider_stub.add("GET", "/v1/payments/555", {
            "id": 555, "status": "approved", "metadata": {"payment_id": handle.payment_id},
        })
        body = json.dumps({"id": 4456, "type": "payment", "action": "payment.created",
                           "data": {"id": "555"}}).encode()

        outcome = await orchestrator.handle_webhook("mercadopago", body, mercadopago_headers())

        assert outcome.disposition is WebhookDisposition.APPLIED
        assert outcome.payment_id == handle.payment_id
        assert outcome.status is CanonicalStatus.COMPLETED
        payment = await orchestrator.get_payment(handle.payment_id)
        assert payment.gateway_payment_id == "555"
        assert payment.status is CanonicalStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_wompi_refund_is_unsupported(self, orchestrator, provider_stub, customer):
        provider_stub.add("POST", "/v1/transactions", {"data": {"id": "wtx-1", "status": "APPROVED"}})
        handle = await orchestrator.create_intent("123", Money.from_major("50000", "COP"), customer, gateway="wompi")
        assert handle.status is CanonicalStatus.COMPLETED

        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.refund(handle.payment_id)
        assert exc_info.value.error_code == "unsupported_operation"
