"""Retry with exponential backoff for transient storage failures."""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

from iocflow.errors import StorageTransient

logger = logging.getLogger("iocflow.retry")

T = TypeVar("T")


def _is_retryable(e: Exception) -> bool:
    return isinstance(e, StorageTransient)


async def async_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    base_delay: float = 0.1,
    max_delay: float = 2.0,
    jitter: float = 0.0,
    retry_if: Callable[[Exception], bool] = _is_retryable,
    description: str = "operation",
) -> T:
    """
    Call ``fn`` until it succeeds, retrying only retryable failures.

    Args:
        fn: Zero-argument coroutine factory
        attempts: Total number of tries
        base_delay: First backoff in seconds; doubles on each retry
        max_delay: Cap on a single backoff
        jitter: Fractional random spread applied to each delay
        retry_if: Predicate deciding whether an exception is retryable
        description: Used in log messages

    Raises:
        The last exception once attempts are exhausted or a failure is not retryable
    """
    last_exc: Optional[Exception] = None

    for i in range(attempts):
        try:
            return await fn()
        except Exception as e:
            last_exc = e
            if i == attempts - 1 or not retry_if(e):
                raise

            # exponential backoff + jitter
            delay = min(max_delay, base_delay * (2 ** i))
            if jitter:
                delay = delay * (1.0 + random.uniform(-jitter, jitter))
            logger.warning(f"{description} failed ({e}); retry {i + 1}/{attempts - 1} in {delay:.2f}s")
            await asyncio.sleep(max(0.0, delay))

    raise last_exc or RuntimeError("async_retry failed without exception")
