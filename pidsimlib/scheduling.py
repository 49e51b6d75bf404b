"""Host-side schedulers that drive :meth:`SimulationEngine.tick` periodically.

The engine never owns a timer. It asks a scheduler for a repeating task on
``start`` and cancels it on ``stop``; any discipline that can call a
zero-argument callback at a fixed cadence will do.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
from dataclasses import dataclass, field
from typing import Callable, Iterator, List, Optional, Protocol, Tuple


class ScheduledTask(Protocol):
    def cancel(self) -> None:
        ...


class Scheduler(Protocol):
    def schedule_repeating(self, interval: float, callback: Callable[[], None]) -> ScheduledTask:
        ...


@dataclass
class _ManualTask:
    interval: float
    callback: Callable[[], None]
    cancelled: bool = False

    def cancel(self) -> None:
        self.cancelled = True


@dataclass
class ManualScheduler:
    """Virtual-clock scheduler for deterministic tests and scripted runs.

    Nothing fires until :meth:`advance` moves the clock forward; due tasks then
    run in time order on the caller's thread.
    """

    now: float = 0.0

    _queue: List[Tuple[float, int, _ManualTask]] = field(init=False, default_factory=list, repr=False)
    _counter: Iterator[int] = field(init=False, default_factory=itertools.count, repr=False)

    def schedule_repeating(self, interval: float, callback: Callable[[], None]) -> _ManualTask:
        if interval <= 0:
            raise ValueError("interval must be positive")
        task = _ManualTask(interval=interval, callback=callback)
        heapq.heappush(self._queue, (self.now + interval, next(self._counter), task))
        return task

    @property
    def pending(self) -> int:
        return sum(1 for _, _, task in self._queue if not task.cancelled)

    def advance(self, seconds: float) -> int:
        """Move the clock forward, firing due callbacks. Returns how many ran."""

        deadline = self.now + seconds
        fired = 0
        while self._queue and self._queue[0][0] <= deadline:
            due, _, task = heapq.heappop(self._queue)
            if task.cancelled:
                continue
            self.now = due
            task.callback()
            fired += 1
            if not task.cancelled:
                heapq.heappush(self._queue, (due + task.interval, next(self._counter), task))
        self.now = deadline
        return fired


class _LoopTask:
    def __init__(self, loop: asyncio.AbstractEventLoop, interval: float, callback: Callable[[], None]) -> None:
        self._loop = loop
        self._interval = interval
        self._callback = callback
        self._handle: Optional[asyncio.TimerHandle] = loop.call_later(interval, self._run)
        self.cancelled = False

    def _run(self) -> None:
        if self.cancelled:
            return
        self._handle = self._loop.call_later(self._interval, self._run)
        self._callback()

    def cancel(self) -> None:
        self.cancelled = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


class AsyncioScheduler:
    """Repeating callbacks on a single asyncio event loop (one mutator thread)."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop

    def schedule_repeating(self, interval: float, callback: Callable[[], None]) -> _LoopTask:
        if interval <= 0:
            raise ValueError("interval must be positive")
        loop = self._loop or asyncio.get_running_loop()
        return _LoopTask(loop, interval, callback)


__all__ = [
    "ScheduledTask",
    "Scheduler",
    "ManualScheduler",
    "AsyncioScheduler",
]
