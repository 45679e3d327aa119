"""Fan-in combinator for concurrent output channels.

:func:`merge_channels` drains a fixed set of async iterators concurrently
and yields ``(channel_index, item)`` pairs in arrival order.  A channel is
dropped once it is exhausted; the merged iterator ends when every channel
has ended.

Ordering contract: items from the *same* channel keep their order.  Items
from *different* channels are ordered only by when their pump task put
them on the shared queue; two chunks that become ready at the same moment
may come out either way round.

Backpressure: the shared queue is bounded.  When the consumer falls behind
the pumps block on ``put`` and stop reading their source, which for a
subprocess pipe means the kernel buffer fills and the writer blocks.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Sequence
from typing import Generic, TypeVar

T = TypeVar("T")

_DONE = object()


class _Failed:
    __slots__ = ("exc",)

    def __init__(self, exc: BaseException) -> None:
        self.exc = exc


class _Channel(Generic[T]):
    __slots__ = ("index", "source")

    def __init__(self, index: int, source: AsyncIterator[T]) -> None:
        self.index = index
        self.source = source


async def merge_channels(
    channels: Sequence[AsyncIterator[T]],
    *,
    max_buffered: int = 64,
) -> AsyncIterator[tuple[int, T]]:
    """Yield ``(index, item)`` from *channels* as each item arrives."""
    if max_buffered < 1:
        msg = "max_buffered must be >= 1"
        raise ValueError(msg)

    queue: asyncio.Queue[tuple[int, object]] = asyncio.Queue(maxsize=max_buffered)

    async def pump(channel: _Channel[T]) -> None:
        try:
            async for item in channel.source:
                await queue.put((channel.index, item))
        except Exception as exc:
            await queue.put((channel.index, _Failed(exc)))
            return
        await queue.put((channel.index, _DONE))

    tasks = [
        asyncio.create_task(pump(_Channel(i, source)))
        for i, source in enumerate(channels)
    ]
    remaining = len(tasks)
    try:
        while remaining:
            index, item = await queue.get()
            if item is _DONE:
                remaining -= 1
                continue
            if isinstance(item, _Failed):
                raise item.exc
            yield index, item  # type: ignore[misc]
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


async def read_chunks(reader: asyncio.StreamReader, size: int = 8192) -> AsyncIterator[bytes]:
    """Yield raw chunks from *reader* until EOF."""
    while True:
        chunk = await reader.read(size)
        if not chunk:
            return
        yield chunk
