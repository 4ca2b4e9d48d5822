from __future__ import annotations

import pytest

from cantodam.services.cache import AssetProxyCache


class _FakeRedis:
    # Just enough of redis.asyncio.Redis for the cache.
    def __init__(self) -> None:
        self.data: dict[str, str] = {}

    async def set(self, key: str, value: str) -> None:
        self.data[key] = value

    async def get(self, key: str) -> str | None:
        return self.data.get(key)

    async def exists(self, key: str) -> int:
        return int(key in self.data)

    async def delete(self, *keys: str) -> int:
        return sum(1 for key in keys if self.data.pop(key, None) is not None)

    async def scan_iter(self, match: str, count: int = 10):
        prefix = match.rstrip("*")
        for key in list(self.data):
            if key.startswith(prefix):
                yield key


@pytest.mark.asyncio
async def test_memory_cache_operations() -> None:
    cache = AssetProxyCache(prefix="t:")
    await cache.set("image-42", '{"id": "42"}')
    assert await cache.has("image-42")
    assert await cache.get("image-42") == '{"id": "42"}'
    assert await cache.remove("image-42") == 1
    assert await cache.remove("image-42") == 0
    assert await cache.get("image-42") is None


@pytest.mark.asyncio
async def test_memory_cache_flush() -> None:
    cache = AssetProxyCache(prefix="t:")
    await cache.set("image-1", "{}")
    await cache.set("video-2", "{}")
    assert await cache.flush() == 2
    assert not await cache.has("image-1")


@pytest.mark.asyncio
async def test_redis_backend_is_resolved_once_and_prefixed() -> None:
    redis = _FakeRedis()
    calls = {"count": 0}

    async def _factory():
        calls["count"] += 1
        return redis

    cache = AssetProxyCache(prefix="canto:", redis_factory=_factory)
    await cache.set("image-42", "{}")
    await cache.set("image-43", "{}")
    redis.data["other:key"] = "keep"

    assert calls["count"] == 1
    assert redis.data["canto:image-42"] == "{}"
    assert await cache.has("image-43")
    assert await cache.flush() == 2
    assert redis.data == {"other:key": "keep"}


@pytest.mark.asyncio
async def test_missing_redis_falls_back_to_memory() -> None:
    async def _factory():
        return None

    cache = AssetProxyCache(prefix="canto:", redis_factory=_factory)
    await cache.ensure_initialized()
    await cache.set("image-42", "{}")
    assert await cache.get("image-42") == "{}"
