from paygate.services import (
    event_ledger,
    locks,
    payment_service,
    state_machine,
)

__all__ = [
    "event_ledger",
    "locks",
    "payment_service",
    "state_machine",
]
