from __future__ import annotations

import asyncio
import random
from typing import Awaitable, Callable, Iterable, Optional, Type, TypeVar

import httpx

from telemetry.logging_utils import get_logger

T = TypeVar("T")

logger = get_logger(__name__)

RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


def backoff_delays(retries: int, base_delay: float, factor: float, jitter: float):
    """Yield the pause before each retry: base * factor**n plus up to `jitter` seconds."""
    for attempt in range(max(retries - 1, 0)):
        yield base_delay * factor**attempt + (random.uniform(0, jitter) if jitter else 0.0)


def is_retryable_http_error(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    return getattr(exc, "status_code", None) in RETRYABLE_STATUS


async def retry_async_with_backoff(
    fn: Callable[[], Awaitable[T]],
    *,
    retries: int = 3,
    base_delay: float = 0.5,
    factor: float = 2.0,
    jitter: float = 0.1,
    retry_exceptions: Iterable[Type[BaseException]] = (Exception,),
    should_retry: Optional[Callable[[BaseException], bool]] = None,
) -> T:
    """Await `fn`, retrying up to `retries` attempts in total; the final error propagates."""
    catch = tuple(retry_exceptions)
    attempt = 0
    for delay in backoff_delays(retries, base_delay, factor, jitter):
        attempt += 1
        try:
            return await fn()
        except catch as exc:
            if should_retry is not None and not should_retry(exc):
                raise
            logger.info("retry_scheduled", extra={"attempt": attempt, "delay_s": round(delay, 3), "error": repr(exc)})
            await asyncio.sleep(delay)
    return await fn()
