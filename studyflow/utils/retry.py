from __future__ import annotations

import asyncio
import random

import httpx

from ..contracts import RetryPolicy

TRANSIENT_ERRORS = (httpx.TransportError, httpx.TimeoutException, asyncio.TimeoutError)


def compute_backoff(attempt: int, base: float = 1.5, jitter: float = 0.5) -> float:
    """Compute exponential backoff with jitter."""
    delay = base ** attempt
    return delay + random.uniform(0, jitter)


def is_transient(exc: BaseException) -> bool:
    """Return ``True`` for network errors worth another attempt."""
    return isinstance(exc, TRANSIENT_ERRORS)


async def schedule_retry(attempt: int, policy: RetryPolicy | None = None) -> None:
    """Sleep for computed backoff delay before retrying."""
    policy = policy or RetryPolicy()
    delay = compute_backoff(attempt, base=policy.backoff_base, jitter=policy.jitter)
    await asyncio.sleep(delay)
