"""
Gateway registry.

Maps gateway names to factories and caches one adapter per name. All adapters
share a single ``httpx.AsyncClient`` owned by the registry unless the caller
supplies one.
"""

import logging
from typing import Any, Callable, Dict, List, Mapping, Optional

import httpx

from paygate.core.config import Settings
from paygate.core.exceptions import ConfigurationError, NotSupportedError

from .base import PaymentGateway
from .mercadopago_adapter import MercadoPagoAdapter
from .payu_adapter import PayUAdapter
from .paypal_adapter import PayPalAdapter
from .stripe_adapter import StripeAdapter
from .wompi_adapter import WompiAdapter

logger = logging.getLogger(__name__)

GatewayFactory = Callable[[Settings, httpx.AsyncClient], PaymentGateway]


def _stripe(settings: Settings, client: httpx.AsyncClient) -> PaymentGateway:
    return StripeAdapter(
        settings.stripe,
        http_client=client,
        timeout=settings.payment_timeout_seconds,
        webhook_tolerance_seconds=settings.stripe_webhook_tolerance_seconds,
    )


def _paypal(settings: Settings, client: httpx.AsyncClient) -> PaymentGateway:
    return PayPalAdapter(settings.paypal, http_client=client, timeout=settings.payment_timeout_seconds)


def _payu(settings: Settings, client: httpx.AsyncClient) -> PaymentGateway:
    return PayUAdapter(settings.payu, http_client=client, timeout=settings.payment_timeout_seconds)


def _wompi(settings: Settings, client: httpx.AsyncClient) -> PaymentGateway:
    return WompiAdapter(settings.wompi, http_client=client, timeout=settings.payment_timeout_seconds)


def _mercadopago(settings: Settings, client: httpx.AsyncClient) -> PaymentGateway:
    return MercadoPagoAdapter(settings.mercadopago, http_client=client, timeout=settings.payment_timeout_seconds)


DEFAULT_FACTORIES: Dict[str, GatewayFactory] = {
    "stripe": _stripe,
    "paypal": _paypal,
    "payu": _payu,
    "wompi": _wompi,
    "mercadopago": _mercadopago,
}


class GatewayRegistry:
    """Resolves gateway names to configured adapter instances."""

    def __init__(
        self,
        settings: Settings,
        factories: Optional[Mapping[str, GatewayFactory]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings
        self._factories: Dict[str, GatewayFactory] = dict(DEFAULT_FACTORIES if factories is None else factories)
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=settings.payment_timeout_seconds)
        self._adapters: Dict[str, PaymentGateway] = {}

    def register(self, name: str, factory: GatewayFactory) -> None:
        """Register (or replace) the factory for a gateway name."""
        self._factories[name] = factory
        self._adapters.pop(name, None)

    def list_supported(self) -> List[str]:
        return list(self._factories)

    def _get(self, name: str) -> PaymentGateway:
        if name not in self._factories:
            raise NotSupportedError(name)
        adapter = self._adapters.get(name)
        if adapter is None:
            adapter = self._factories[name](self.settings, self.http_client)
            self._adapters[name] = adapter
        return adapter

    def create(self, name: str, require_configured: bool = True) -> PaymentGateway:
        """
        Return the adapter for ``name``.

        Raises:
            NotSupportedError: If no factory is registered under the name
            ConfigurationError: If the adapter lacks required settings
        """
        adapter = self._get(name)
        if require_configured:
            missing = adapter.missing_settings()
            if missing:
                raise ConfigurationError(
                    f"Payment gateway '{name}' is not configured; missing: {', '.join(missing)}",
                    provider=name,
                    missing=missing,
                )
        return adapter

    def list_enabled(self) -> List[str]:
        """Gateways that are both switched on and fully configured."""
        enabled = []
        for name in self._factories:
            adapter = self._get(name)
            if adapter.config.enabled and adapter.is_configured():
                enabled.append(name)
        return enabled

    def describe_enabled(self) -> List[Dict[str, Any]]:
        """Payment-method listing for checkout clients."""
        return [self._get(name).describe() for name in self.list_enabled()]

    async def aclose(self) -> None:
        for adapter in self._adapters.values():
            await adapter.close()
        self._adapters.clear()
        if self._owns_client:
            await self.http_client.aclose()
