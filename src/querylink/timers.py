"""Clocks and cancellable scheduled tasks.

The query client and HTTP client never touch the event loop's timers
directly; they go through a ``Scheduler`` so tests can swap in
``ManualScheduler`` and move time forward explicitly.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import math
import time
from collections.abc import Callable
from typing import Protocol, runtime_checkable

import structlog

log = structlog.get_logger(__name__)


@runtime_checkable
class Timer(Protocol):
    """Handle to a scheduled callback."""

    def cancel(self) -> None:
        """Prevent the callback from running. Idempotent."""
        ...


@runtime_checkable
class Scheduler(Protocol):
    """Clock plus timer factory."""

    def now(self) -> int:
        """Current time as a Unix timestamp in ms."""
        ...

    def call_later(self, delay: float, callback: Callable[[], None]) -> Timer:
        """Run callback after delay ms."""
        ...

    async def sleep(self, delay: float) -> None:
        """Suspend the current task for delay ms."""
        ...


class _NullTimer:
    def cancel(self) -> None:
        pass


class LoopScheduler:
    """Scheduler backed by wall-clock time and the running asyncio loop."""

    def now(self) -> int:
        return int(time.time() * 1000)

    def call_later(self, delay: float, callback: Callable[[], None]) -> Timer:
        if delay == math.inf:
            return _NullTimer()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Synchronous callers outside a loop (e.g. hydration at startup)
            log.debug("timer_not_armed", reason="no running event loop", delay=delay)
            return _NullTimer()
        return loop.call_later(delay / 1000, callback)

    async def sleep(self, delay: float) -> None:
        await asyncio.sleep(delay / 1000)


class _ManualTimer:
    __slots__ = ("callback", "cancelled", "when")

    def __init__(self, when: float, callback: Callable[[], None]) -> None:
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Deterministic scheduler: time only moves when ``advance()`` is called.

    Usage:
        scheduler = ManualScheduler()
        client = QueryClient(scheduler=scheduler)
        ...
        scheduler.advance(6000)  # fires every timer due within 6s
    """

    def __init__(self, start: int = 0) -> None:
        self._now = start
        self._queue: list[tuple[float, int, _ManualTimer]] = []
        self._seq = itertools.count()

    def now(self) -> int:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> Timer:
        timer = _ManualTimer(self._now + max(delay, 0), callback)
        heapq.heappush(self._queue, (timer.when, next(self._seq), timer))
        return timer

    async def sleep(self, delay: float) -> None:
        if delay <= 0:
            return
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()

        def wake() -> None:
            if not future.done():
                future.set_result(None)

        timer = self.call_later(delay, wake)
        try:
            await future
        finally:
            timer.cancel()

    def advance(self, ms: float) -> None:
        """Move the clock forward, firing due timers in order."""
        target = self._now + ms
        while self._queue and self._queue[0][0] <= target:
            when, _, timer = heapq.heappop(self._queue)
            if timer.cancelled:
                continue
            self._now = int(when)
            timer.callback()
        self._now = int(target)

    @property
    def pending(self) -> int:
        """Number of timers that are armed and not cancelled."""
        return sum(1 for _, _, timer in self._queue if not timer.cancelled)
