"""
One-shot timers with cancellable handles.

Two implementations share the Scheduler interface:
- AsyncioScheduler: wall-clock timers on a running asyncio loop
- ManualScheduler: virtual clock advanced explicitly (tests, replays)

Callbacks always run on the scheduler's own thread of execution, one at a
time, so callers never need locks.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from parksim.infrastructure.logging import get_logger

logger = get_logger(__name__)


class TimerHandle:
    """Handle to a pending timer. Cancelling guarantees the callback never runs."""

    def __init__(self, when: float, callback: Callable[..., Any], args: tuple = ()):
        self.when = when
        self._callback = callback
        self._args = args
        self._cancelled = False
        self._fired = False
        self._inner: Optional[asyncio.TimerHandle] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def fired(self) -> bool:
        return self._fired

    @property
    def active(self) -> bool:
        return not (self._cancelled or self._fired)

    def cancel(self) -> None:
        if not self.active:
            return
        self._cancelled = True
        if self._inner is not None:
            self._inner.cancel()
        logger.debug("Timer cancelled", when=self.when)

    def _run(self) -> None:
        if not self.active:
            return
        self._fired = True
        self._callback(*self._args)


class Scheduler(ABC):
    """Clock plus one-shot timer facility."""

    @abstractmethod
    def now(self) -> float:
        """Current time in seconds."""

    @abstractmethod
    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        """Run `callback(*args)` once after `delay` seconds."""


class AsyncioScheduler(Scheduler):
    """
    Scheduler backed by an asyncio event loop.

    The loop is looked up lazily so the scheduler can be built before the
    loop starts running.
    """

    def __init__(
        self,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._loop = loop
        self._clock = clock

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now(self) -> float:
        return self._clock()

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        delay = max(0.0, delay)
        handle = TimerHandle(self.now() + delay, callback, args)
        handle._inner = self.loop.call_later(delay, self._fire, handle)
        logger.debug("Timer armed", delay=delay)
        return handle

    @staticmethod
    def _fire(handle: TimerHandle) -> None:
        try:
            handle._run()
        except Exception as e:
            logger.error("Timer callback error", error=str(e))


class ManualScheduler(Scheduler):
    """
    Virtual-clock scheduler.

    Time only moves when advance() is called; due timers fire in
    (deadline, arm order) sequence, including timers armed by callbacks
    that fall inside the advanced window.

    Usage:
        scheduler = ManualScheduler()
        scheduler.call_later(15, on_done)
        scheduler.advance(15)   # on_done runs here
    """

    def __init__(self, start: float = 0.0):
        self._now = start
        self._queue: list[tuple[float, int, TimerHandle]] = []
        self._counter = itertools.count()
        self.fired_count = 0

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        handle = TimerHandle(self._now + max(0.0, delay), callback, args)
        heapq.heappush(self._queue, (handle.when, next(self._counter), handle))
        logger.debug("Timer armed", delay=delay)
        return handle

    def advance(self, seconds: float) -> int:
        """Move the clock forward, firing due timers. Returns how many fired."""
        if seconds < 0:
            raise ValueError("cannot move the clock backwards")

        target = self._now + seconds
        fired = 0

        while self._queue and self._queue[0][0] <= target:
            when, _, handle = heapq.heappop(self._queue)
            self._now = max(self._now, when)
            if not handle.active:
                continue
            try:
                handle._run()
            except Exception as e:
                logger.error("Timer callback error", error=str(e))
            fired += 1

        self._now = target
        self.fired_count += fired
        return fired

    def run_all(self, limit: int = 10_000) -> int:
        """Fire every pending timer, advancing the clock as needed."""
        fired = 0
        while self.pending and fired < limit:
            next_when = min(h.when for _, _, h in self._queue if h.active)
            fired += self.advance(max(0.0, next_when - self._now))
        return fired

    @property
    def pending(self) -> int:
        return sum(1 for _, _, h in self._queue if h.active)
