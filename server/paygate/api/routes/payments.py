from fastapi import APIRouter, Depends, HTTPException, Request, status

from paygate.api.dependencies.gateways import get_orchestrator, get_registry
from paygate.core.exceptions import (
    ConfigurationError,
    GatewayRejection,
    MalformedPayload,
    NetworkError,
    NotSupportedError,
    PaymentBusy,
    PaymentError,
    PaymentNotFound,
    ValidationError,
)
from paygate.core.logging import get_logger
from paygate.integrations.payment_gateways.base import CustomerInfo
from paygate.integrations.payment_gateways.money import Money
from paygate.integrations.payment_gateways.registry import GatewayRegistry
from paygate.schemas.payment import (
    PaymentConfirm,
    PaymentIntentCreate,
    PaymentIntentRead,
    PaymentMethodRead,
    PaymentRead,
    PaymentStatusRead,
    RefundCreate,
    RefundRead,
    WebhookAck,
)
from paygate.services.payment_service import PaymentOrchestrator

logger = get_logger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


def to_http_error(exc: PaymentError) -> HTTPException:
    if isinstance(exc, ValidationError):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(exc, (PaymentNotFound, NotSupportedError)):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, PaymentBusy):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, ConfigurationError):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    elif isinstance(exc, NetworkError):
        code = status.HTTP_504_GATEWAY_TIMEOUT
    elif isinstance(exc, GatewayRejection):
        code = status.HTTP_502_BAD_GATEWAY
    else:
        code = status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=code, detail={"error": exc.error_code, "message": exc.error_message})


@router.get("/methods", response_model=list[PaymentMethodRead])
async def list_payment_methods(registry: GatewayRegistry = Depends(get_registry)) -> list[PaymentMethodRead]:
    methods = []
    for info in registry.describe_enabled():
        details = {
            key: value
            for key, value in info.items()
            if key not in ("name", "display_name", "currencies", "enabled", "configured")
        }
        methods.append(
            PaymentMethodRead(
                name=info["name"],
                display_name=info["display_name"],
                currencies=info["currencies"],
                details=details,
            )
        )
    return methods


@router.post("/intents", response_model=PaymentIntentRead, status_code=status.HTTP_201_CREATED)
async def create_payment_intent(
    payload: PaymentIntentCreate,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> PaymentIntentRead:
    try:
        amount = Money.from_major(payload.amount, payload.currency)
        handle = await orchestrator.create_intent(
            payload.order_id,
            amount,
            CustomerInfo(**payload.customer.model_dump()),
            gateway=payload.gateway,
            return_url=payload.return_url,
            cancel_url=payload.cancel_url,
            webhook_url=payload.webhook_url,
            metadata=payload.metadata,
            hosted_checkout=payload.hosted_checkout,
        )
    except PaymentError as exc:
        raise to_http_error(exc) from exc

    return PaymentIntentRead(
        payment_id=handle.payment_id,
        order_id=handle.order_id,
        gateway=handle.gateway_name,
        gateway_payment_id=handle.gateway_payment_id,
        status=handle.status,
        amount=handle.amount.to_major(),
        amount_minor=handle.amount.amount_minor,
        currency=handle.amount.currency,
        client_handle=handle.client_handle,
    )


@router.post("/{payment_id}/confirm", response_model=PaymentStatusRead)
async def confirm_payment(
    payment_id: str,
    payload: PaymentConfirm | None = None,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> PaymentStatusRead:
    try:
        current = await orchestrator.confirm(payment_id, payload.extra if payload else None)
    except PaymentError as exc:
        raise to_http_error(exc) from exc
    return PaymentStatusRead(payment_id=payment_id, status=current)


@router.get("/{payment_id}", response_model=PaymentRead)
async def get_payment(
    payment_id: str,
    refresh: bool = False,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> PaymentRead:
    try:
        if refresh:
            await orchestrator.status(payment_id, refresh=True)
        payment = await orchestrator.get_payment(payment_id)
    except PaymentError as exc:
        raise to_http_error(exc) from exc
    return PaymentRead.model_validate(payment)


@router.post("/{payment_id}/refund", response_model=RefundRead)
async def refund_payment(
    payment_id: str,
    payload: RefundCreate,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> RefundRead:
    try:
        amount = None
        if payload.amount is not None:
            payment = await orchestrator.get_payment(payment_id)
            amount = Money.from_major(payload.amount, payment.currency)
        outcome = await orchestrator.refund(payment_id, amount, payload.reason)
    except PaymentError as exc:
        raise to_http_error(exc) from exc

    return RefundRead(
        payment_id=outcome.payment_id,
        refund_id=outcome.refund_id,
        amount=outcome.amount.to_major(),
        currency=outcome.amount.currency,
        refund_status=outcome.refund_status,
        payment_status=outcome.payment_status,
        refunded_total=outcome.refunded_total.to_major(),
    )


@router.post("/webhook/{provider}", response_model=WebhookAck)
async def receive_webhook(
    provider: str,
    request: Request,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> WebhookAck:
    raw_body = await request.body()
    try:
        outcome = await orchestrator.handle_webhook(provider, raw_body, dict(request.headers))
    except MalformedPayload as exc:
        logger.warning("webhook.payload.malformed", provider=provider, error=exc.error_message)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.error_message) from exc
    except NetworkError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.error_message) from exc
    except PaymentError as exc:
        raise to_http_error(exc) from exc

    return WebhookAck(
        disposition=outcome.disposition.value,
        provider=outcome.provider,
        payment_id=outcome.payment_id,
        status=outcome.status,
        detail=outcome.detail,
    )
