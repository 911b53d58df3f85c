from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paygate.api.dependencies.redis import create_redis_client
from paygate.api.routes import health, payments
from paygate.core.config import Settings, get_settings
from paygate.core.logging import configure_logging, get_logger
from paygate.integrations.payment_gateways.registry import GatewayRegistry
from paygate.services.locks import PaymentLockManager
from paygate.services.payment_service import PaymentOrchestrator

logger = get_logger(__name__)


def create_application(
    settings: Optional[Settings] = None,
    *,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    registry: Optional[GatewayRegistry] = None,
    redis_client: Optional[Redis] = None,
) -> FastAPI:
    """
    Build the API application.

    Collaborators are created up front and stored on ``app.state`` so the
    routes work even when the lifespan is not run (e.g. in-process clients).
    Anything passed in is treated as owned by the caller and left open on
    shutdown.
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    db_session = None
    if session_factory is None:
        from paygate.db import session as db_session

        session_factory = db_session.async_session_factory

    owns_registry = registry is None
    registry = registry or GatewayRegistry(settings)
    owns_redis = redis_client is None
    if owns_redis:
        redis_client = create_redis_client(settings)

    locks = PaymentLockManager(redis_client, timeout_seconds=settings.lock_timeout_seconds)
    orchestrator = PaymentOrchestrator(session_factory, registry, settings, locks=locks)

    @asynccontextmanager
    async def lifespan(application: FastAPI) -> AsyncIterator[None]:
        logger.info(
            "application.startup",
            environment=settings.environment,
            gateways=registry.list_enabled(),
        )
        if db_session is not None:
            await db_session.init_models()
        try:
            yield
        finally:
            logger.info("application.shutdown")
            if owns_registry:
                await registry.aclose()
            if owns_redis and redis_client is not None:
                await redis_client.aclose()
            if db_session is not None:
                await db_session.dispose_engine()

    application = FastAPI(title=settings.app_name, lifespan=lifespan)
    application.state.settings = settings
    application.state.session_factory = session_factory
    application.state.registry = registry
    application.state.redis_client = redis_client
    application.state.orchestrator = orchestrator

    application.include_router(health.router)
    application.include_router(payments.router)

    if settings.allowed_origins:
        application.add_middleware(
            CORSMiddleware,
            allow_origins=[str(origin) for origin in settings.allowed_origins],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    return application


app = create_application()
