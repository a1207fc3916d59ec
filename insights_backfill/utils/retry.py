"""Retry helpers."""

from __future__ import annotations

import asyncio
import functools
import logging
import random
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

RETRY_EXCEPTIONS = (OSError, asyncio.TimeoutError)


def _default_should_retry(exc: BaseException) -> bool:
    return isinstance(exc, RETRY_EXCEPTIONS)


def retry_async(
    func: Callable[..., Awaitable],
    *,
    attempts: int = 3,
    base_delay: float = 1.0,
    jitter: float = 1.0,
    should_retry: Callable[[BaseException], bool] | None = None,
    sleep: Callable[[float], Awaitable] | None = None,
):
    """Wrap ``func`` so retryable failures are retried with doubling delays.

    The delay before retry ``n`` is ``base_delay * 2 ** (n - 1)`` plus up to
    ``jitter`` seconds. The last failure, or any failure ``should_retry``
    rejects, is raised unchanged.
    """
    check = should_retry or _default_should_retry

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        pause = sleep or asyncio.sleep
        delay = base_delay
        for attempt in range(1, attempts + 1):
            try:
                return await func(*args, **kwargs)
            except Exception as exc:
                if attempt >= attempts or not check(exc):
                    raise
                wait = delay + (random.random() * jitter if jitter else 0.0)
                logger.warning(
                    "Retrying %s after error (attempt %d/%d, sleeping %.1fs): %s",
                    getattr(func, "__name__", func),
                    attempt,
                    attempts,
                    wait,
                    exc,
                )
                await pause(wait)
                delay *= 2

    return wrapper
