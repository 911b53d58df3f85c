from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from paygate.integrations.payment_gateways.status import CanonicalStatus
from paygate.models.payment import Payment


ALLOWED_TRANSITIONS: dict[CanonicalStatus, tuple[CanonicalStatus, ...]] = {
    CanonicalStatus.PENDING: (
        CanonicalStatus.PROCESSING,
        CanonicalStatus.COMPLETED,
        CanonicalStatus.FAILED,
        CanonicalStatus.CANCELLED,
    ),
    CanonicalStatus.PROCESSING: (
        CanonicalStatus.COMPLETED,
        CanonicalStatus.FAILED,
        CanonicalStatus.CANCELLED,
    ),
    CanonicalStatus.COMPLETED: (CanonicalStatus.REFUNDED,),
    CanonicalStatus.FAILED: (),
    CanonicalStatus.CANCELLED: (),
    CanonicalStatus.REFUNDED: (),
}


@dataclass(slots=True)
class TransitionResult:
    succeeded: bool
    reason: str | None = None
    previous: CanonicalStatus | None = None
    changed: bool = False


def can_transition(current: CanonicalStatus, target: CanonicalStatus) -> bool:
    allowed: Iterable[CanonicalStatus] | None = ALLOWED_TRANSITIONS.get(current)
    return allowed is not None and target in allowed


def apply_transition(
    payment: Payment,
    target: CanonicalStatus,
    gateway_data: Mapping[str, Any] | None = None,
    failure_reason: str | None = None,
    raw_status: str | None = None,
) -> TransitionResult:
    """
    Move a payment to ``target`` if the transition table allows it.

    A same-state update is accepted and only refreshes the provider data,
    including the reason of a failed attempt the customer may still retry.
    Nothing on the payment is modified when the transition is rejected.
    """
    current = payment.status
    if current == target:
        _refresh(payment, gateway_data, raw_status, failure_reason)
        return TransitionResult(succeeded=True, previous=current)

    if not can_transition(current, target):
        return TransitionResult(
            False, f"payment transition {current.value} -> {target.value} not permitted", previous=current
        )

    now = datetime.now(timezone.utc)
    if target == CanonicalStatus.COMPLETED:
        if payment.completed_at is None:
            payment.completed_at = now
        # Earlier declined attempts no longer describe the payment.
        payment.failure_reason = None
        failure_reason = None
    if target in (CanonicalStatus.FAILED, CanonicalStatus.CANCELLED) and payment.failed_at is None:
        payment.failed_at = now
    if target == CanonicalStatus.REFUNDED:
        # Provider-initiated refunds settle the whole remaining balance.
        payment.refunded_amount_minor = payment.amount_minor

    payment.status = target
    _refresh(payment, gateway_data, raw_status, failure_reason)
    return TransitionResult(succeeded=True, previous=current, changed=True)


def _refresh(
    payment: Payment,
    gateway_data: Mapping[str, Any] | None,
    raw_status: str | None,
    failure_reason: str | None,
) -> None:
    if gateway_data is not None:
        payment.raw_gateway_data = dict(gateway_data)
    if raw_status is not None:
        payment.raw_status = raw_status
    if failure_reason:
        payment.failure_reason = failure_reason
