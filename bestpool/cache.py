import json
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Tuple

import redis.asyncio as aioredis
import structlog

from .config import settings

logger = structlog.get_logger()


class CacheBackend(ABC):
    """Key-value store with TTL semantics used by the market data cache"""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: float) -> None:
        ...

    @abstractmethod
    async def delete_prefix(self, prefix: str) -> int:
        ...

    async def close(self):
        pass

    async def health_check(self) -> dict:
        return {"status": "connected", "backend": type(self).__name__}


class InMemoryCacheBackend(CacheBackend):
    """Process-local backend; values are stored serialized so readers never share state"""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}

    async def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None

        payload, expires_at = entry
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            return None

        return json.loads(payload)

    async def set(self, key: str, value: Any, ttl: float) -> None:
        self._entries[key] = (json.dumps(value), self._clock() + ttl)

    async def delete_prefix(self, prefix: str) -> int:
        keys = [key for key in self._entries if key.startswith(prefix)]
        for key in keys:
            del self._entries[key]
        return len(keys)

    def __len__(self) -> int:
        return len(self._entries)


class RedisCacheBackend(CacheBackend):
    """Redis backend; TTL is enforced by the server"""

    def __init__(self, redis_url: str = settings.REDIS_URL, client: Optional[aioredis.Redis] = None):
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(
            redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=20,
            socket_connect_timeout=5,
            socket_timeout=5
        )

    async def connect(self):
        await self.client.ping()
        logger.info("Connected to Redis", url=self.redis_url)

    async def get(self, key: str) -> Optional[Any]:
        payload = await self.client.get(key)
        if payload is None:
            return None
        return json.loads(payload)

    async def set(self, key: str, value: Any, ttl: float) -> None:
        await self.client.set(key, json.dumps(value), px=max(1, int(ttl * 1000)))

    async def delete_prefix(self, prefix: str) -> int:
        keys = [key async for key in self.client.scan_iter(match=f"{prefix}*")]
        if not keys:
            return 0
        return await self.client.delete(*keys)

    async def close(self):
        await self.client.aclose()
        logger.info("Disconnected from Redis")

    async def health_check(self) -> dict:
        health = {"status": "disconnected", "backend": type(self).__name__, "latency_ms": None}
        try:
            start_time = time.time()
            await self.client.ping()
            latency = (time.time() - start_time) * 1000
            health.update(status="connected", latency_ms=round(latency, 2))
        except Exception as e:
            health["error"] = str(e)
        return health


async def create_cache_backend() -> CacheBackend:
    """Build the configured backend, falling back to memory when Redis is disabled"""
    if settings.ENABLE_REDIS:
        backend = RedisCacheBackend(settings.REDIS_URL)
        await backend.connect()
        return backend

    logger.warning("Redis is disabled - using in-memory cache")
    return InMemoryCacheBackend()
