from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


class RetryableError(Exception):
    """A transient failure; the operation may succeed if attempted again."""


def backoff_delay(attempt: int, *, base_delay: float, max_delay: float) -> float:
    return float(min(max_delay, base_delay * (2**attempt)) + random.uniform(0.0, 0.5))


async def async_retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 10.0,
    label: str = "operation",
) -> T:
    for attempt in range(attempts):
        try:
            return await fn()
        except RetryableError as exc:
            if attempt == attempts - 1:
                raise
            sleep_for = backoff_delay(attempt, base_delay=base_delay, max_delay=max_delay)
            logger.info("%s failed on attempt %s/%s, retrying in %.2fs: %s", label, attempt + 1, attempts, sleep_for, exc)
            await asyncio.sleep(sleep_for)
    raise ValueError("attempts must be at least 1")
