from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from redis.asyncio import Redis
from redis.exceptions import LockNotOwnedError, RedisError

from paygate.core.exceptions import PaymentBusy
from paygate.core.logging import get_logger

logger = get_logger(__name__)

LOCK_PREFIX = "paygate:payment:lock:"


@dataclass(slots=True)
class _LockEntry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


class PaymentLockManager:
    """
    Serializes work on one payment.

    Keys are (gateway, gateway_payment_id). Each key gets its own asyncio.Lock,
    dropped once nobody holds or waits for it. With a Redis client the same key
    is also locked in Redis so several worker processes serialize too.

    ``timeout_seconds`` is both the Redis key lifetime and how long to wait for
    another holder; waiting longer raises ``PaymentBusy``.
    """

    def __init__(self, redis_client: Redis | None = None, timeout_seconds: int = 30) -> None:
        self.redis_client = redis_client
        self.timeout_seconds = timeout_seconds
        self._entries: dict[str, _LockEntry] = {}

    @staticmethod
    def key(gateway_name: str, gateway_payment_id: str) -> str:
        return f"{gateway_name}:{gateway_payment_id}"

    def active_keys(self) -> list[str]:
        return list(self._entries)

    @asynccontextmanager
    async def hold(self, gateway_name: str, gateway_payment_id: str) -> AsyncIterator[None]:
        key = self.key(gateway_name, gateway_payment_id)
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _LockEntry()
        entry.holders += 1
        try:
            async with entry.lock:
                if self.redis_client is None:
                    yield
                else:
                    async with self._redis_lock(key):
                        yield
        finally:
            entry.holders -= 1
            if entry.holders == 0:
                self._entries.pop(key, None)

    @asynccontextmanager
    async def _redis_lock(self, key: str) -> AsyncIterator[None]:
        lock = self.redis_client.lock(
            f"{LOCK_PREFIX}{key}",
            timeout=self.timeout_seconds,
            blocking_timeout=self.timeout_seconds,
        )
        try:
            acquired = await lock.acquire()
        except RedisError as exc:
            logger.warning("payment.lock.unavailable", key=key, error=str(exc))
            raise PaymentBusy(key) from exc
        if not acquired:
            logger.warning("payment.lock.busy", key=key, timeout_seconds=self.timeout_seconds)
            raise PaymentBusy(key)

        try:
            yield
        finally:
            try:
                await lock.release()
            except LockNotOwnedError:
                # The work inside already committed; only the exclusivity window was shorter.
                logger.error("payment.lock.expired", key=key, timeout_seconds=self.timeout_seconds)
