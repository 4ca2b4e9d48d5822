from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass, field
import functools
import logging
import time
from typing import Any, Awaitable, Callable, Deque, TypeVar
from uuid import uuid4


logger = logging.getLogger(__name__)

_F = TypeVar("_F", bound=Callable[..., Awaitable[Any]])


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


@dataclass(frozen=True)
class RequestContext:
    # Request-scoped identity passed explicitly into API clients for timing logs.
    request_id: str = field(default_factory=lambda: uuid4().hex[:12])
    started_at: float = field(default_factory=time.monotonic)


_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Capture external call latency and outcomes.
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def external_samples(integration: str | None = None) -> list[ExternalCallSample]:
    return [sample for sample in _external_samples if integration is None or sample.integration == integration]


def reset_telemetry() -> None:
    # Tests clear process-wide samples between cases.
    _external_samples.clear()
    _counters.clear()


def timed_call(integration: str) -> Callable[[_F], _F]:
    """Time an async client method and log it against the caller's request.

    The wrapped method's instance must expose a ``context`` attribute holding a
    :class:`RequestContext`; the log line carries request id, method, offset
    since the request started and elapsed time, all in milliseconds.
    """

    def decorator(func: _F) -> _F:
        @functools.wraps(func)
        async def wrapper(self, *args: Any, **kwargs: Any) -> Any:
            context: RequestContext = getattr(self, "context", None) or RequestContext()
            start = time.monotonic()
            success = False
            try:
                result = await func(self, *args, **kwargs)
                success = True
                return result
            finally:
                elapsed_ms = (time.monotonic() - start) * 1000.0
                offset_ms = (start - context.started_at) * 1000.0
                record_external_call(integration=integration, latency_ms=elapsed_ms, success=success)
                logger.debug(
                    "%s,%s,%.0f,%.0f",
                    context.request_id,
                    f"{type(self).__name__}.{func.__name__}",
                    offset_ms,
                    elapsed_ms,
                )

        return wrapper  # type: ignore[return-value]

    return decorator
