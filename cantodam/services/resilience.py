from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx
from redis.asyncio import Redis

from cantodam.core.config import get_settings
from cantodam.core.errors import CantoTransportError
from cantodam.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


async def get_resilience_redis() -> Redis | None:
    # Reuse a shared Redis connection for the asset cache and OAuth state.
    settings = get_settings()
    if not settings.redis_url:
        return None
    try:
        current_loop = asyncio.get_running_loop()
    except RuntimeError:
        return None
    global _redis_pool, _redis_loop
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            try:
                _redis_pool = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
                _redis_loop = current_loop
            except Exception as exc:  # noqa: BLE001 - Redis might be unavailable in dev
                logger.warning("resilience_redis_unavailable", exc_info=exc)
                return None
    return _redis_pool


@dataclass(frozen=True)
class CallTimeouts:
    # Connect bound plus an overall deadline for one outbound call.
    connect_ms: int
    call_ms: int

    def as_httpx(self) -> httpx.Timeout:
        return httpx.Timeout(self.call_ms / 1000.0, connect=self.connect_ms / 1000.0)


def default_call_timeouts() -> CallTimeouts:
    settings = get_settings()
    return CallTimeouts(connect_ms=settings.ext_connect_timeout_ms, call_ms=settings.ext_call_timeout_ms)


async def call_with_deadline(
    func: Callable[[], Awaitable[Any]],
    *,
    timeouts: CallTimeouts | None = None,
    integration: str = "canto",
) -> Any:
    # Fail fast instead of retrying; cancelling the caller cancels the request.
    timeouts = timeouts or default_call_timeouts()
    try:
        return await asyncio.wait_for(func(), timeout=timeouts.call_ms / 1000.0)
    except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
        increment_counter(f"{integration}_timeouts_total")
        raise CantoTransportError(f"{integration} call timed out after {timeouts.call_ms}ms") from exc
