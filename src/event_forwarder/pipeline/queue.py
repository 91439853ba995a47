from __future__ import annotations

import asyncio
from typing import Callable, Generic, Optional, TypeVar

from loguru import logger

from .errors import QueueClosedError

T = TypeVar("T")


class BoundedQueue(Generic[T]):
    """FIFO queue with a hard capacity and high/low watermark logging.

    `put` blocks while the queue is full; callers cancel it to give up.
    Once closed, further puts raise QueueClosedError.
    """

    def __init__(
        self,
        capacity: int,
        high_watermark: int | None = None,
        low_watermark: int | None = None,
        *,
        name: str = "queue",
        on_size: Optional[Callable[[int], None]] = None,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be > 0")

        self._capacity = capacity
        self._q: asyncio.Queue[T] = asyncio.Queue(maxsize=capacity)
        self._name = name
        self._on_size = on_size

        self._high_wm = (
            high_watermark if high_watermark is not None else max(1, int(0.8 * capacity))
        )
        self._low_wm = low_watermark if low_watermark is not None else int(0.5 * capacity)
        self._high_fired = False  # avoid duplicate warnings
        self._closed = False

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def size(self) -> int:
        return self._q.qsize()

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True

    async def put(self, item: T) -> None:
        if self._closed:
            raise QueueClosedError(f"{self._name} is closed")
        await self._q.put(item)
        self._changed()
        if not self._high_fired and self.size >= self._high_wm:
            self._high_fired = True
            logger.warning(f"{self._name} above high watermark ({self.size}/{self._capacity})")

    async def get(self) -> T:
        item = await self._q.get()
        self._changed()
        if self._high_fired and self.size <= self._low_wm:
            self._high_fired = False
            logger.info(f"{self._name} recovered ({self.size}/{self._capacity})")
        return item

    def _changed(self) -> None:
        if self._on_size:
            self._on_size(self.size)
