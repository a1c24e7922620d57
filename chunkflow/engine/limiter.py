from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

from chunkflow.core.errors import ValidationError

T = TypeVar("T")


class ConcurrencyLimiter:
    """Caps the number of tasks running at once.

    asyncio.Semaphore wakes waiters in the order they blocked, so admission
    is FIFO. Create one per run: the semaphore binds to the running loop.
    """

    def __init__(self, max_concurrent: int) -> None:
        if max_concurrent < 1:
            raise ValidationError("max_concurrent must be >= 1", step="limiter")
        self.max_concurrent = max_concurrent
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self.active = 0
        self.peak_active = 0
        self.admitted = 0

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        async with self._semaphore:
            self.active += 1
            self.admitted += 1
            self.peak_active = max(self.peak_active, self.active)
            try:
                yield
            finally:
                self.active -= 1

    async def run(self, task: Callable[[], Awaitable[T]]) -> T:
        async with self.slot():
            return await task()


def with_limit(max_concurrent: int) -> Callable[[Callable[[], Awaitable[Any]]], Awaitable[Any]]:
    return ConcurrencyLimiter(max_concurrent).run
