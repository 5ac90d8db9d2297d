from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, Tuple, Type, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


def compute_backoff(attempt: int, base: float = 1.5, jitter: float = 0.5) -> float:
    """Compute exponential backoff with jitter."""
    delay = base ** attempt
    return delay + random.uniform(0, jitter)


async def schedule_retry(attempt: int, base: float = 1.5, jitter: float = 0.5) -> None:
    """Sleep for computed backoff delay before retrying."""
    delay = compute_backoff(attempt, base=base, jitter=jitter)
    await asyncio.sleep(delay)


async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    max_attempts: int,
    retry_on: Tuple[Type[BaseException], ...],
    base: float = 1.5,
    jitter: float = 0.5,
    description: str = "call",
) -> T:
    """Run ``func`` until it succeeds or ``max_attempts`` is exhausted.

    Only exceptions listed in ``retry_on`` are retried; the last one is
    re-raised once attempts run out.
    """
    attempt = 1
    while True:
        try:
            return await func()
        except retry_on as exc:
            if attempt >= max_attempts:
                raise
            logger.warning(
                f"{description} failed on attempt {attempt}/{max_attempts}: {exc}"
            )
            await schedule_retry(attempt, base=base, jitter=jitter)
            attempt += 1
