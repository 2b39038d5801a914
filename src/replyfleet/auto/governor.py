"""Rate and timing governor — randomized delays, skip decisions, reply ceilings.

All delay helpers take an explicit random source so tests can pass a seeded
``random.Random`` and get deterministic timings.
"""

from __future__ import annotations

import random
import time
from collections import deque
from datetime import datetime, time as dtime
from typing import Callable, Protocol

MINUTE_S = 60.0
HOUR_S = 3600.0
APPROACHING_RATIO = 0.8


class RandomSource(Protocol):
    def random(self) -> float: ...

    def uniform(self, a: float, b: float) -> float: ...


def _between(bounds: tuple[int, int], rng: RandomSource) -> float:
    lo, hi = bounds
    if hi < lo:
        lo, hi = hi, lo
    return rng.uniform(lo, hi) / 1000.0


def typing_delay(bounds_ms: tuple[int, int], rng: RandomSource = random) -> float:
    """Seconds to wait between two typed characters."""
    return _between(bounds_ms, rng)


def pre_reply_delay(bounds_ms: tuple[int, int], rng: RandomSource = random) -> float:
    """Seconds to wait before starting to type a reply."""
    return _between(bounds_ms, rng)


def poll_interval(base_ms: int, jitter_ms: int, rng: RandomSource = random) -> float:
    """Seconds until the next poll: ``base`` plus up to ``jitter`` extra."""
    return (base_ms + rng.random() * max(jitter_ms, 0)) / 1000.0


def should_skip(probability: float, rng: RandomSource = random) -> bool:
    """Decide whether to skip replying to an event.

    A probability of 0 never skips and 1 always skips.
    """
    if probability <= 0:
        return False
    if probability >= 1:
        return True
    return rng.random() < probability


def _parse_hhmm(value: str) -> dtime:
    hours, minutes = value.split(":")
    return dtime(int(hours), int(minutes))


def within_active_hours(
    window: tuple[str, str] | None, now: datetime | None = None
) -> bool:
    """Check a ``("HH:MM", "HH:MM")`` window. None means always active.

    Windows that wrap midnight (``("22:00", "06:00")``) are supported.
    """
    if not window:
        return True
    start, end = _parse_hhmm(window[0]), _parse_hhmm(window[1])
    current = (now or datetime.now()).time()
    if start <= end:
        return start <= current < end
    return current >= start or current < end


class RateLimiter:
    """Sliding one-minute and one-hour reply ceilings for one session."""

    def __init__(
        self,
        max_per_minute: int = 5,
        max_per_hour: int = 30,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_per_minute = max_per_minute
        self.max_per_hour = max_per_hour
        self._clock = clock
        self._sent: deque[float] = deque()

    def configure(self, max_per_minute: int, max_per_hour: int) -> None:
        self.max_per_minute = max_per_minute
        self.max_per_hour = max_per_hour

    def _prune(self, now: float) -> None:
        while self._sent and now - self._sent[0] >= HOUR_S:
            self._sent.popleft()

    def _minute_count(self, now: float) -> int:
        return sum(1 for t in self._sent if now - t < MINUTE_S)

    def can_reply(self) -> bool:
        now = self._clock()
        self._prune(now)
        if self._minute_count(now) >= self.max_per_minute:
            return False
        return len(self._sent) < self.max_per_hour

    def record(self) -> None:
        self._sent.append(self._clock())

    def status(self) -> dict[str, int]:
        """Current usage of both windows."""
        now = self._clock()
        self._prune(now)
        return {
            "minute": self._minute_count(now),
            "minute_limit": self.max_per_minute,
            "hour": len(self._sent),
            "hour_limit": self.max_per_hour,
        }

    def is_approaching_limit(self) -> bool:
        """True once either window is at 80% of its ceiling."""
        s = self.status()
        return (
            s["minute"] >= s["minute_limit"] * APPROACHING_RATIO
            or s["hour"] >= s["hour_limit"] * APPROACHING_RATIO
        )

    def reset(self) -> None:
        self._sent.clear()
