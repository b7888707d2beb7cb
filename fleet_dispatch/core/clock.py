"""
Time source for the dispatch core.

Offer windows are cancellable timers, never sleeps. The scheduler asks the
clock for ``now()`` and schedules expiry callbacks with ``call_later``; tests
and the simulation script swap in ``ManualClock`` to move time by hand.
"""
from __future__ import annotations

import asyncio
import heapq
import itertools
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Callable, Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Clock(ABC):
    @abstractmethod
    def now(self) -> datetime:
        """Current time, timezone-aware UTC"""

    @abstractmethod
    def call_later(self, delay_seconds: float, callback: Callable[[], None]) -> TimerHandle:
        """Run ``callback`` once after ``delay_seconds``; the handle cancels it"""


class SystemClock(Clock):
    """Wall clock backed by the running event loop"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def call_later(self, delay_seconds: float, callback: Callable[[], None]) -> TimerHandle:
        return asyncio.get_running_loop().call_later(delay_seconds, callback)


class _ManualTimer:
    def __init__(self, deadline: datetime, callback: Callable[[], None]):
        self.deadline = deadline
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualClock(Clock):
    """Simulated clock. Time only moves on ``advance``/``set``."""

    def __init__(self, start: datetime | None = None):
        self._now = start or datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
        self._timers: list[tuple[datetime, int, _ManualTimer]] = []
        self._sequence = itertools.count()

    def now(self) -> datetime:
        return self._now

    def call_later(self, delay_seconds: float, callback: Callable[[], None]) -> TimerHandle:
        timer = _ManualTimer(self._now + timedelta(seconds=delay_seconds), callback)
        heapq.heappush(self._timers, (timer.deadline, next(self._sequence), timer))
        return timer

    @property
    def pending_timers(self) -> int:
        return sum(1 for _, _, timer in self._timers if not timer.cancelled)

    def advance(self, seconds: float) -> None:
        """Move time forward, firing due callbacks in deadline order"""
        self.set(self._now + timedelta(seconds=seconds))

    def set(self, moment: datetime) -> None:
        if moment < self._now:
            raise ValueError("ManualClock cannot move backwards")
        while self._timers and self._timers[0][0] <= moment:
            deadline, _, timer = heapq.heappop(self._timers)
            if timer.cancelled:
                continue
            # callbacks observe the clock at their own deadline
            self._now = deadline
            timer.callback()
        self._now = moment
