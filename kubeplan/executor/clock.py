"""Time source for the executor.

Barrier waits, retry backoff and per-node timeouts all go through a
``Clock`` so tests can observe 90-second barriers and 30-minute timeouts
without waiting for them.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable
from typing import TypeVar

T = TypeVar("T")


class Clock(ABC):
    """Monotonic time, cancellable sleeps and bounded awaits."""

    @abstractmethod
    def monotonic(self) -> float:
        """Seconds on a monotonic scale."""

    @abstractmethod
    async def sleep(self, seconds: float) -> None:
        """Suspend for *seconds*.  Must stay cancellable."""

    @abstractmethod
    async def wait_for(self, aw: Awaitable[T], timeout: float) -> T:
        """Await *aw*; cancel it and raise TimeoutError after *timeout* seconds."""


class SystemClock(Clock):
    """Real time via the running event loop."""

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    async def wait_for(self, aw: Awaitable[T], timeout: float) -> T:
        return await asyncio.wait_for(aw, timeout=timeout)


class SimulatedClock(Clock):
    """Virtual time for tests.

    ``sleep`` advances virtual time instantly and records the request.
    ``wait_for`` gives the awaited call ``settle`` real seconds to finish;
    a call still pending after that is treated as having run past its
    timeout, so a collaborator that never returns times out at once while
    virtual time moves forward by the full timeout.
    """

    def __init__(self, start: float = 0.0, settle: float = 0.5) -> None:
        self._now = start
        self._settle = settle
        self.sleeps: list[float] = []
        self.timeouts: list[float] = []

    def monotonic(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self._now += seconds
        await asyncio.sleep(0)

    async def wait_for(self, aw: Awaitable[T], timeout: float) -> T:
        task = asyncio.ensure_future(aw)
        try:
            done, _ = await asyncio.wait({task}, timeout=self._settle)
        except asyncio.CancelledError:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise
        if task in done:
            return task.result()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        self.timeouts.append(timeout)
        self._now += timeout
        raise TimeoutError(f"timed out after {timeout:g}s (simulated)")

    @property
    def elapsed(self) -> float:
        return sum(self.sleeps)
