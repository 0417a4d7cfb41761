"""Key-value stores for restoring analysis session state across reloads."""

from __future__ import annotations

import logging
from typing import Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError

from gap_engine.config import settings

logger = logging.getLogger(__name__)

# Failures a store may raise when its backend is unreachable or misbehaving.
STORE_ERRORS: tuple[type[Exception], ...] = (RedisError, OSError)


class SessionStore(Protocol):
    """Minimal byte-oriented store used for cache and selection snapshots."""

    async def load(self, key: str) -> bytes | None: ...

    async def save(self, key: str, data: bytes) -> None: ...


class InMemorySessionStore:
    """Process-local store; state lives as long as the object does."""

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}

    async def load(self, key: str) -> bytes | None:
        return self._data.get(key)

    async def save(self, key: str, data: bytes) -> None:
        self._data[key] = bytes(data)

    def keys(self) -> list[str]:
        return sorted(self._data)


class RedisSessionStore:
    """Store session snapshots in Redis with the configured TTL.

    Without an injected client one is created from ``settings.redis_url``
    and owned by the store; ``close`` releases it.
    """

    def __init__(self, redis_client: Redis | None = None, ttl_seconds: int | None = None) -> None:
        self._owns_client = redis_client is None
        self.redis = redis_client or Redis.from_url(settings.redis_url, decode_responses=False)
        self.ttl_seconds = ttl_seconds or settings.cache_ttl_seconds

    async def load(self, key: str) -> bytes | None:
        raw = await self.redis.get(key)
        if raw is None:
            return None
        if isinstance(raw, str):
            return raw.encode("utf-8")
        return bytes(raw)

    async def save(self, key: str, data: bytes) -> None:
        await self.redis.set(key, data, ex=self.ttl_seconds)
        logger.debug("Session state saved", extra={"key": key, "bytes": len(data)})

    async def close(self) -> None:
        if self._owns_client:
            await self.redis.aclose()
            logger.info("Redis session store closed")
