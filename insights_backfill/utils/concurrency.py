"""Bounded concurrency for async work items."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def run_with_concurrency(
    items: Sequence[T],
    limit: int,
    handler: Callable[[T], Awaitable[Any]],
    *,
    on_complete: Callable[[int, int], None] | None = None,
) -> int:
    """Run ``handler`` over ``items`` with at most ``limit`` calls in flight.

    Items are dispatched in order; completion order is not. ``on_complete`` is
    called with ``(completed, total)`` after every successful item. The first
    failure stops dispatching and lets in-flight items finish. When several
    items fail at once, every outcome is collected and the error of the item
    dispatched first is re-raised.
    """
    limit = max(1, limit)
    total = len(items)
    completed = 0
    in_flight: dict[asyncio.Task, int] = {}

    async def wait_for_one() -> None:
        nonlocal completed
        done, _ = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
        errors: list[BaseException] = []
        for task in sorted(done, key=in_flight.__getitem__):
            del in_flight[task]
            error = task.exception()
            if error is not None:
                errors.append(error)
                continue
            completed += 1
            if on_complete:
                on_complete(completed, total)
        if errors:
            if len(errors) > 1:
                logger.warning("%d work items failed together; raising the first", len(errors))
            raise errors[0]

    try:
        for position, item in enumerate(items):
            in_flight[asyncio.create_task(handler(item))] = position
            if len(in_flight) >= limit:
                await wait_for_one()
        while in_flight:
            await wait_for_one()
    except BaseException:
        if in_flight:
            logger.info("Waiting for %d in-flight tasks before aborting", len(in_flight))
            await asyncio.gather(*in_flight, return_exceptions=True)
        raise
    return completed
