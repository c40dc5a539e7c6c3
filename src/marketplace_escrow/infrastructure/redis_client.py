"""Redis client for client-supplied idempotency keys.

Usage:
    from marketplace_escrow.infrastructure.redis_client import get_redis, close_redis

    redis = get_redis()
    store = IdempotencyStore(redis)
    owner = await store.claim("offer", key, str(offer_id))
"""

from __future__ import annotations

from typing import TYPE_CHECKING, TypeVar

import redis.asyncio as aioredis
from tenacity import AsyncRetrying, RetryError, retry_if_result, stop_after_delay, wait_fixed

from marketplace_escrow.config import get_settings
from marketplace_escrow.domain.exceptions import DuplicateOperationError
from marketplace_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = get_logger(__name__)

T = TypeVar("T")

_redis_client: aioredis.Redis | None = None


async def init_redis() -> aioredis.Redis:
    """Initialize and return the Redis client. Called during app startup."""
    global _redis_client
    settings = get_settings()
    _redis_client = aioredis.from_url(
        settings.redis_url,
        decode_responses=True,
    )
    # Verify connectivity
    await _redis_client.ping()
    logger.info("redis.connected", url=settings.redis_url)
    return _redis_client


def get_redis() -> aioredis.Redis:
    """Return the Redis client singleton. Must call init_redis() first."""
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


def get_redis_or_none() -> aioredis.Redis | None:
    """Return the Redis client if it was initialized, else None."""
    return _redis_client


async def close_redis() -> None:
    """Close the Redis connection. Called during app shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        logger.info("redis.disconnected")
        _redis_client = None


# --- Idempotency Helpers ---


class IdempotencyStore:
    """Maps a client idempotency key to the id of the entity it created.

    A create claims its key before touching the database, so of two
    concurrent requests with the same key exactly one creates the entity.
    The other waits for that entity to be committed and returns it.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        ttl_seconds: int | None = None,
        wait_seconds: float | None = None,
    ) -> None:
        settings = get_settings()
        self._redis = redis
        self._ttl = ttl_seconds or settings.redis_idempotency_ttl_seconds
        self._wait_seconds = wait_seconds or settings.idempotency_wait_seconds

    @staticmethod
    def _key(scope: str, key: str) -> str:
        return f"idempotency:{scope}:{key}"

    async def lookup(self, scope: str, key: str) -> str | None:
        """Return the entity id recorded for key, or None if the key is new."""
        value = await self._redis.get(self._key(scope, key))
        if isinstance(value, bytes):
            value = value.decode()
        return value

    async def claim(self, scope: str, key: str, entity_id: str) -> str:
        """Reserve key for entity_id.

        Returns the id that owns the key: entity_id when this call won the
        claim, otherwise the id recorded by the earlier request.
        """
        while True:
            stored = await self._redis.set(
                self._key(scope, key), entity_id, ex=self._ttl, nx=True
            )
            if stored:
                return entity_id
            owner = await self.lookup(scope, key)
            if owner is not None:
                logger.info("idempotency.key_taken", scope=scope, key=key, owner=owner)
                return owner
            # The earlier claim expired between SET and GET; claim again.

    async def release(self, scope: str, key: str, entity_id: str) -> None:
        """Drop the claim on key if entity_id still owns it."""
        if await self.lookup(scope, key) == entity_id:
            await self._redis.delete(self._key(scope, key))
            logger.info("idempotency.released", scope=scope, key=key, entity_id=entity_id)

    async def replay(self, key: str, fetch: Callable[[], Awaitable[T | None]]) -> T:
        """Return the entity created under key once its creator has committed it.

        fetch returns None while the entity is not yet visible. Raises
        DuplicateOperationError if it does not appear within wait_seconds.
        """
        retrying = AsyncRetrying(
            stop=stop_after_delay(self._wait_seconds),
            wait=wait_fixed(0.05),
            retry=retry_if_result(lambda entity: entity is None),
        )
        try:
            return await retrying(fetch)
        except RetryError:
            logger.error("idempotency.replay_timeout", key=key, wait_seconds=self._wait_seconds)
            raise DuplicateOperationError(key) from None
