from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends
from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.api.dependencies.database import get_db
from paygate.api.dependencies.gateways import get_registry
from paygate.api.dependencies.redis import get_redis_client
from paygate.core.logging import get_logger
from paygate.integrations.payment_gateways.registry import GatewayRegistry

logger = get_logger(__name__)
router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(
    db: AsyncSession = Depends(get_db),
    registry: GatewayRegistry = Depends(get_registry),
    redis_client: Redis | None = Depends(get_redis_client),
) -> dict[str, Any]:
    health_status: dict[str, Any] = {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {},
        "gateways": registry.list_enabled(),
    }

    try:
        await db.execute(text("SELECT 1"))
        health_status["checks"]["database"] = {"status": "healthy"}
    except SQLAlchemyError as exc:
        logger.error("health.database.failed", error=str(exc))
        health_status["checks"]["database"] = {"status": "unhealthy", "error": str(exc)}
        health_status["status"] = "unhealthy"

    if redis_client is not None:
        try:
            await redis_client.ping()
            health_status["checks"]["redis"] = {"status": "healthy"}
        except (RedisError, OSError) as exc:
            logger.error("health.redis.failed", error=str(exc))
            health_status["checks"]["redis"] = {"status": "unhealthy", "error": str(exc)}
            health_status["status"] = "unhealthy"

    return health_status
