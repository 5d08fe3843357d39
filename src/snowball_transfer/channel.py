# src/snowball_transfer/channel.py
"""Single-slot handoff channel between the fetch jobs and the archive sink."""

import asyncio
from typing import AsyncIterator, Generic, List, TypeVar, Union

from snowball_transfer.exceptions import ChannelClosedError

T = TypeVar("T")


class _Closed:
    """Sentinel placed on the queue by `close()`."""


_CLOSED: _Closed = _Closed()


class HandoffChannel(Generic[T]):
    """
    A closable queue holding at most one unconsumed item.

    Producers `await put(item)`, which blocks while the slot is occupied.
    The consumer iterates with `async for` until the channel is closed.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Union[T, _Closed]] = asyncio.Queue(maxsize=1)
        self._closed: bool = False
        self._drained: bool = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def put(self, item: T) -> None:
        """
        Publishes an item, waiting until the slot is free.

        Args:
            item (T): The item to hand off.
        """
        if self._closed:
            raise ChannelClosedError("Cannot publish on a closed channel.")
        await self._queue.put(item)

    async def close(self) -> None:
        """Signals the consumer that no more items will be published."""
        if self._closed:
            return
        self._closed = True
        await self._queue.put(_CLOSED)

    def drain_nowait(self) -> List[T]:
        """
        Removes and returns every unconsumed item without waiting.

        Used once the consumer has stopped, so items still sitting in the
        slot can be cleaned up by the caller. The close marker is discarded.

        Returns:
            List[T]: The items that were never consumed.
        """
        leftovers: List[T] = []
        while True:
            try:
                item: Union[T, _Closed] = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return leftovers
            if not isinstance(item, _Closed):
                leftovers.append(item)

    def __aiter__(self) -> AsyncIterator[T]:
        return self

    async def __anext__(self) -> T:
        if self._drained:
            raise StopAsyncIteration
        item: Union[T, _Closed] = await self._queue.get()
        if isinstance(item, _Closed):
            self._drained = True
            raise StopAsyncIteration
        return item
