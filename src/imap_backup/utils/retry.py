"""Retry helpers for run-level operations such as connecting."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    base_delay_s: float = 0.5,
    max_delay_s: float = 20.0,
    jitter_s: float = 0.25,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
) -> T:
    """Retry an async function with exponential backoff.

    Args:
        fn: Async callable to execute.
        attempts: Number of attempts before giving up.
        base_delay_s: Base delay in seconds.
        max_delay_s: Maximum delay between attempts.
        jitter_s: Random jitter added to delay.
        retry_on: Exception types to retry on.

    Returns:
        Result of the callable.

    Raises:
        BaseException: The last exception if retries are exhausted.
    """
    last_exc: BaseException | None = None
    for i in range(1, attempts + 1):
        try:
            return await fn()
        except retry_on as exc:
            last_exc = exc
            if i >= attempts:
                break
            delay = min(max_delay_s, base_delay_s * (2 ** (i - 1)))
            delay = delay + random.uniform(0, jitter_s)
            logger.warning("Attempt %d/%d failed (%r); retrying in %.1fs", i, attempts, exc, delay)
            await asyncio.sleep(delay)
    assert last_exc is not None
    raise last_exc
