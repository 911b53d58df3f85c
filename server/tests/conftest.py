"""
Shared test configuration and fixtures for the payment gateway suite.

Provider APIs are replaced by an httpx.MockTransport routed through
``ProviderStub``; persistence runs on a throwaway SQLite file per test.
"""

from decimal import Decimal

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from paygate import models  # noqa: F401
from paygate.core.config import (
    MercadoPagoSettings,
    PayPalSettings,
    PayUSettings,
    Settings,
    StripeSettings,
    WompiSettings,
)
from paygate.db.base import Base
from paygate.integrations.payment_gateways.base import CustomerInfo
from paygate.integrations.payment_gateways.paypal_adapter import PayPalAdapter
from paygate.integrations.payment_gateways.registry import GatewayRegistry
from paygate.services.payment_service import PaymentOrchestrator
from support import (
    MERCADOPAGO_WEBHOOK_SECRET,
    PAYPAL_WEBHOOK_ID,
    STRIPE_WEBHOOK_SECRET,
    WOMPI_WEBHOOK_SECRET,
    PayPalPKI,
    ProviderStub,
    build_paypal_pki,
)


@pytest.fixture(scope="session")
def paypal_pki() -> PayPalPKI:
    return build_paypal_pki()


# ---------------------------------------------------------------------------
# Settings, transport, registry
# ---------------------------------------------------------------------------

@pytest.fixture
def settings() -> Settings:
    """Settings with every gateway enabled and fully configured."""
    return Settings(
        _env_file=None,
        app_url="https://shop.example.com",
        database_url="sqlite+aiosqlite:///:memory:",
        max_amount=Decimal("1000000"),
        stripe=StripeSettings(
            enabled=True,
            secret_key="sk_test_123",
            public_key="pk_test_123",
            webhook_secret=STRIPE_WEBHOOK_SECRET,
        ),
        paypal=PayPalSettings(
            enabled=True,
            client_id="paypal-client",
            client_secret="paypal-secret",
            webhook_id=PAYPAL_WEBHOOK_ID,
        ),
        payu=PayUSettings(
            enabled=True,
            merchant_id="508029",
            account_id="512321",
            api_key="4Vj8eK4rloUd272L48hsrarnUA",
            api_login="pRRXKOl8ikMmt9u",
        ),
        wompi=WompiSettings(
            enabled=True,
            public_key="pub_test_123",
            private_key="prv_test_123",
            webhook_secret=WOMPI_WEBHOOK_SECRET,
        ),
        mercadopago=MercadoPagoSettings(
            enabled=True,
            access_token="TEST-access-token",
            public_key="TEST-public-key",
            webhook_secret=MERCADOPAGO_WEBHOOK_SECRET,
        ),
    )


@pytest.fixture
def customer() -> CustomerInfo:
    return CustomerInfo(email="customer@example.com", first_name="Ana", last_name="Gomez", phone="3001234567")


@pytest.fixture
def provider_stub() -> ProviderStub:
    return ProviderStub()


@pytest_asyncio.fixture
async def http_client(provider_stub):
    client = httpx.AsyncClient(transport=httpx.MockTransport(provider_stub))
    yield client
    await client.aclose()


@pytest.fixture
def registry(settings, http_client, paypal_pki) -> GatewayRegistry:
    """Registry over the stubbed transport; PayPal trusts the test root."""
    gateway_registry = GatewayRegistry(settings, http_client=http_client)
    gateway_registry.register(
        "paypal",
        lambda s, client: PayPalAdapter(s.paypal, http_client=client, trusted_roots=[paypal_pki.root]),
    )
    return gateway_registry


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'paygate.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    await engine.dispose()


@pytest.fixture
def orchestrator(session_factory, registry, settings) -> PaymentOrchestrator:
    return PaymentOrchestrator(session_factory, registry, settings)
