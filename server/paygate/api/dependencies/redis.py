from fastapi import Request
from redis.asyncio import Redis

from paygate.core.config import Settings
from paygate.core.logging import get_logger

logger = get_logger(__name__)


def create_redis_client(settings: Settings) -> Redis | None:
    """Redis client for cross-process payment locks, or None when they are off."""
    if not settings.use_redis_locks:
        return None
    logger.info("redis.locks.enabled", timeout_seconds=settings.lock_timeout_seconds)
    return Redis.from_url(settings.redis_url)


def get_redis_client(request: Request) -> Redis | None:
    return getattr(request.app.state, "redis_client", None)
