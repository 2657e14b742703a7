"""Apply an async function to a row stream with a fixed concurrency window."""

import asyncio
from typing import Any, AsyncIterable, AsyncIterator, Awaitable, Callable, List, TypeVar

T = TypeVar('T')


async def row_collector(rows: AsyncIterable[T], count: int = 1) -> AsyncIterator[List[T]]:
    """Group rows into lists of ``count``; the final list holds the remainder."""
    if count < 1:
        raise ValueError("count must be at least 1")
    batch: List[T] = []
    async for row in rows:
        batch.append(row)
        if len(batch) >= count:
            yield batch
            batch = []
    if batch:
        yield batch


async def concurrent_map(rows: AsyncIterable[T], fn: Callable[[T], Awaitable[Any]],
                         concurrency: int = 10) -> int:
    """Await ``fn`` over each batch of ``concurrency`` rows before pulling the next.

    Returns the number of rows processed. Exceptions raised by ``fn``
    propagate; callers that need per-row isolation catch inside ``fn``.
    """
    processed = 0
    async for batch in row_collector(rows, concurrency):
        await asyncio.gather(*(fn(row) for row in batch))
        processed += len(batch)
    return processed
