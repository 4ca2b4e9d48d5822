from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from redis.asyncio import Redis

from cantodam.core.config import get_settings
from cantodam.services.resilience import get_resilience_redis


logger = logging.getLogger(__name__)


class AssetProxyCache:
    """String cache of raw Canto asset JSON, one entry per proxy identifier.

    The backend is resolved once by :meth:`ensure_initialized`. Without Redis
    the entries live in a process-local dict, which is what tests and single
    process setups use.
    """

    def __init__(
        self,
        *,
        prefix: str | None = None,
        redis: Redis | None = None,
        redis_factory: Callable[[], Awaitable[Redis | None]] | None = None,
    ) -> None:
        self._prefix = prefix if prefix is not None else get_settings().asset_cache_prefix
        self._redis = redis
        self._redis_factory = redis_factory
        self._initialized = redis is not None or redis_factory is None
        self._local: dict[str, str] = {}
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls) -> "AssetProxyCache":
        return cls(redis_factory=get_resilience_redis)

    async def ensure_initialized(self) -> None:
        if self._initialized:
            return
        async with self._lock:
            if self._initialized:
                return
            if self._redis_factory is not None:
                self._redis = await self._redis_factory()
            if self._redis is None:
                logger.info("asset_cache_backend=memory prefix=%s", self._prefix)
            self._initialized = True

    def _key(self, identifier: str) -> str:
        return f"{self._prefix}{identifier}"

    async def set(self, identifier: str, value: str) -> None:
        await self.ensure_initialized()
        if self._redis is None:
            self._local[identifier] = value
            return
        await self._redis.set(self._key(identifier), value)

    async def get(self, identifier: str) -> str | None:
        await self.ensure_initialized()
        if self._redis is None:
            return self._local.get(identifier)
        return await self._redis.get(self._key(identifier))

    async def has(self, identifier: str) -> bool:
        await self.ensure_initialized()
        if self._redis is None:
            return identifier in self._local
        return bool(await self._redis.exists(self._key(identifier)))

    async def remove(self, identifier: str) -> int:
        await self.ensure_initialized()
        if self._redis is None:
            return 1 if self._local.pop(identifier, None) is not None else 0
        return int(await self._redis.delete(self._key(identifier)))

    async def flush(self) -> int:
        # Only keys under this cache's prefix are touched.
        await self.ensure_initialized()
        if self._redis is None:
            removed = len(self._local)
            self._local.clear()
            return removed
        removed = 0
        batch: list[str] = []
        async for key in self._redis.scan_iter(match=f"{self._prefix}*", count=500):
            batch.append(key)
            if len(batch) >= 500:
                removed += int(await self._redis.delete(*batch))
                batch = []
        if batch:
            removed += int(await self._redis.delete(*batch))
        logger.info("asset_cache_flushed prefix=%s removed=%s", self._prefix, removed)
        return removed
