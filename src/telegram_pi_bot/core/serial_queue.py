from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

T = TypeVar("T")


class SerialQueue:
    """Run async tasks one at a time, in submission order.

    A failing task does not block the ones queued after it; its exception is
    raised to the caller that enqueued it.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._pending = 0

    async def enqueue(self, task: Callable[[], Awaitable[T]]) -> T:
        self._pending += 1
        try:
            async with self._lock:
                return await task()
        finally:
            self._pending -= 1

    def is_idle(self) -> bool:
        return self._pending == 0
