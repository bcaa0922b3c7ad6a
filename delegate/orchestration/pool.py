"""Bounded-concurrency map over a list, preserving input order."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Sequence, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")


async def map_with_concurrency_limit(
    items: Sequence[T],
    concurrency: int,
    fn: Callable[[T, int], Awaitable[R]],
) -> list[R]:
    """Apply ``fn(item, index)`` to every item with at most *concurrency* in flight.

    K workers repeatedly claim the next unclaimed index, so every index is
    processed exactly once and ``results[i]`` corresponds to ``items[i]``.
    An exception in one transform does not cancel its siblings; once every
    worker has drained, the first exception (by index) is re-raised.
    """
    if not items:
        return []

    limit = max(1, min(int(concurrency), len(items)))
    results: list[R] = [None] * len(items)  # type: ignore[list-item]
    errors: dict[int, BaseException] = {}
    next_index = 0

    async def worker() -> None:
        nonlocal next_index
        while next_index < len(items):
            index = next_index
            next_index += 1
            try:
                results[index] = await fn(items[index], index)
            except Exception as exc:
                logger.debug("pool.item_failed", index=index, error=str(exc))
                errors[index] = exc

    await asyncio.gather(*(worker() for _ in range(limit)))

    if errors:
        raise errors[min(errors)]
    return results
