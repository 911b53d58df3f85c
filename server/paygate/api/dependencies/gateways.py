from fastapi import Request

from paygate.integrations.payment_gateways.registry import GatewayRegistry
from paygate.services.payment_service import PaymentOrchestrator


def get_registry(request: Request) -> GatewayRegistry:
    return request.app.state.registry


def get_orchestrator(request: Request) -> PaymentOrchestrator:
    return request.app.state.orchestrator
