"""Deadlines in microseconds and the queue of timers that fire on them."""

from __future__ import annotations

import heapq
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from .stats import ProgramStats

INT_MAX = 2**31 - 1
USEC_PER_SEC = 1_000_000


def _now_us() -> int:
    return time.time_ns() // 1000


def _trunc_div(a: int, b: int) -> int:
    quotient = abs(a) // b
    return quotient if a >= 0 else -quotient


def set_timeout(timeout: int, now: int | None = None) -> int:
    """Deadline, in microseconds, timeout milliseconds after now."""
    if now is None:
        now = _now_us()
    return now + timeout * 1000


def ms_passed_since(start: int, now: int | None = None) -> int:
    """Milliseconds elapsed since start; INT_MAX when start is unset."""
    if start // USEC_PER_SEC == 0:
        return INT_MAX
    if now is None:
        now = _now_us()
    start_sec, start_usec = divmod(start, USEC_PER_SEC)
    now_sec, now_usec = divmod(now, USEC_PER_SEC)
    return (now_sec - start_sec) * 1000 + _trunc_div(now_usec - start_usec, 1000)


@dataclass(eq=False)
class Timer:
    """Everything due at one instant: timed-out requests and throttled destinations."""

    when: int
    timed_out_sids: list = field(default_factory=list)
    throttled_destinations: list = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.timed_out_sids and not self.throttled_destinations


class TimerQueue:
    """Timers keyed by their deadline, reachable in deadline order."""

    def __init__(self, stats: ProgramStats | None = None, clock: Callable[[], int] | None = None):
        self.stats = stats if stats is not None else ProgramStats()
        self.clock = clock if clock is not None else _now_us
        self._timers: dict[int, Timer] = {}
        self._heap: list[int] = []
        self._per_second: dict[int, int] = {}

    def __len__(self) -> int:
        return len(self._timers)

    def new_timer(self, when: int) -> Timer:
        """The timer for a deadline, created when there is none yet."""
        timer = self._timers.get(when)
        if timer is not None:
            return timer
        second = when // USEC_PER_SEC
        if second not in self._per_second:
            self._per_second[second] = 0
            self.stats.active_timers_sec += 1
            self.stats.total_timers_sec += 1
        self._per_second[second] += 1
        self.stats.active_timers_usec += 1
        self.stats.total_timers_usec += 1
        timer = Timer(when)
        self._timers[when] = timer
        heapq.heappush(self._heap, when)
        return timer

    def find_timer(self, when: int) -> Timer | None:
        return self._timers.get(when)

    def cleanup_timer(self, timer: Timer | None) -> bool:
        """Drop a timer with nothing left to do; tell whether it is gone."""
        if timer is None:
            return True
        if not timer.empty:
            return False
        if self._timers.get(timer.when) is timer:
            del self._timers[timer.when]
            self.stats.active_timers_usec -= 1
            second = timer.when // USEC_PER_SEC
            self._per_second[second] -= 1
            if not self._per_second[second]:
                del self._per_second[second]
                self.stats.active_timers_sec -= 1
        return True

    def next_timer(self) -> Timer | None:
        """The earliest timer that still has work, discarding empty ones."""
        while self._heap:
            when = self._heap[0]
            timer = self._timers.get(when)
            if timer is None:
                heapq.heappop(self._heap)
                continue
            if self.cleanup_timer(timer):
                continue
            return timer
        return None

    def ms_to_next_timer(self) -> int:
        """How long to wait for the next timer, capped at one second."""
        timer = self.next_timer()
        if timer is None:
            return 1000
        now_sec, now_usec = divmod(self.clock(), USEC_PER_SEC)
        when_sec, when_usec = divmod(timer.when, USEC_PER_SEC)
        if now_sec > when_sec:
            return 0
        if now_sec == when_sec:
            if now_usec > when_usec:
                return 0
            return (when_usec - now_usec) // 1000
        if when_sec - now_sec > 5:
            return 1000
        return 1000 * (when_sec - now_sec) + _trunc_div(when_usec - now_usec, 1000)