"""
Scheduling Clock

Timer source for the poll scheduler. The scheduler only ever asks for
"now" and "call me back in N seconds", so the same code runs on the
asyncio loop in the field and on a virtual clock in tests.

Usage:
    clock = LoopClock()
    handle = clock.call_later(5.0, callback)
    handle.cancel()

    clock = VirtualClock()
    await clock.advance(12)   # fires every timer due in the next 12s
"""

import asyncio
import heapq
import itertools
from abc import ABC, abstractmethod
from typing import Callable, Protocol


class TimerHandle(Protocol):
    """Anything with cancel() - asyncio.TimerHandle satisfies this"""

    def cancel(self) -> None: ...


class Clock(ABC):
    """Time source and one-shot timer factory"""

    @abstractmethod
    def now(self) -> float:
        """Monotonic time in seconds"""

    @abstractmethod
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        """Run callback once after delay seconds"""


class LoopClock(Clock):
    """Clock backed by the running asyncio event loop"""

    def now(self) -> float:
        return asyncio.get_running_loop().time()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return asyncio.get_running_loop().call_later(max(0.0, delay), callback)


class _VirtualTimer:
    """Heap entry for VirtualClock"""

    __slots__ = ("when", "seq", "callback", "cancelled")

    def __init__(self, when: float, seq: int, callback: Callable[[], None]):
        self.when = when
        self.seq = seq
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True

    def __lt__(self, other: "_VirtualTimer") -> bool:
        return (self.when, self.seq) < (other.when, other.seq)


class VirtualClock(Clock):
    """
    Manually advanced clock for deterministic tests.

    Timers fire in deadline order (ties in creation order). After each
    firing the event loop is yielded to a few times so tasks spawned by
    the callback can run to completion when they do no real I/O.
    """

    SETTLE_ITERATIONS = 20

    def __init__(self, start: float = 0.0):
        self._now = start
        self._timers: list[_VirtualTimer] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        timer = _VirtualTimer(self._now + max(0.0, delay), next(self._seq), callback)
        heapq.heappush(self._timers, timer)
        return timer

    @property
    def pending(self) -> int:
        """Number of armed, non-cancelled timers"""
        return sum(1 for t in self._timers if not t.cancelled)

    async def settle(self) -> None:
        """Let spawned tasks run"""
        for _ in range(self.SETTLE_ITERATIONS):
            await asyncio.sleep(0)

    async def advance(self, seconds: float) -> None:
        """Move time forward, firing every timer that falls due"""
        target = self._now + seconds
        await self.settle()

        while self._timers and self._timers[0].when <= target:
            timer = heapq.heappop(self._timers)
            if timer.cancelled:
                continue
            self._now = timer.when
            timer.callback()
            await self.settle()

        self._now = target
