from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Sequence, TypeVar

T = TypeVar("T")


async def run_bounded(
    tasks: Sequence[Callable[[], Awaitable[T]]],
    limit: int,
) -> list[T | Exception]:
    """Run ``tasks`` with at most ``limit`` in flight.

    Every task runs to completion; a failure is returned in its slot instead
    of cancelling the others. Results keep the input order, completion order
    is unspecified.
    """
    if limit < 1:
        raise ValueError("limit must be at least 1")
    if not tasks:
        return []

    semaphore = asyncio.Semaphore(limit)

    async def _guarded(task: Callable[[], Awaitable[T]]) -> T:
        async with semaphore:
            return await task()

    results = await asyncio.gather(*(_guarded(task) for task in tasks), return_exceptions=True)
    outcomes: list[T | Exception] = []
    for result in results:
        if isinstance(result, BaseException) and not isinstance(result, Exception):
            raise result
        outcomes.append(result)
    return outcomes
