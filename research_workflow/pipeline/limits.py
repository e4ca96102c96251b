"""Concurrency limits for task execution."""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional


class ConcurrencyLimitTimeout(RuntimeError):
    pass


class ConcurrencyLimiter:
    """Bounds in-flight work per event loop.

    The semaphore is created lazily for the running loop, so one limiter can be
    reused across separate ``asyncio.run`` calls.
    """

    def __init__(
        self, max_inflight: int, name: str, timeout: Optional[float] = None
    ) -> None:
        if max_inflight < 1:
            raise ValueError(f"max_inflight 必须 >= 1，当前为 {max_inflight}")
        self.max_inflight = max_inflight
        self.name = name
        self.timeout = timeout
        self.in_flight = 0
        self._sem: Optional[asyncio.Semaphore] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def _semaphore(self) -> asyncio.Semaphore:
        loop = asyncio.get_running_loop()
        if self._sem is None or self._loop is not loop:
            self._sem = asyncio.Semaphore(self.max_inflight)
            self._loop = loop
            self.in_flight = 0
        return self._sem

    @asynccontextmanager
    async def acquire(self, timeout: Optional[float] = None) -> AsyncIterator[None]:
        sem = self._semaphore()
        wait_seconds = timeout if timeout is not None else self.timeout
        try:
            await asyncio.wait_for(sem.acquire(), timeout=wait_seconds)
        except asyncio.TimeoutError as e:
            raise ConcurrencyLimitTimeout(f"{self.name} 并发已达上限") from e
        self.in_flight += 1
        try:
            yield
        finally:
            self.in_flight -= 1
            sem.release()
