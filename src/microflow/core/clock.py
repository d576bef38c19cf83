"""Clock abstraction for time-dependent engines.

WallClock: real wall-clock time (live feeds)
SimClock: deterministic manual time (tests, offline analysis)

Engines never call time.time() directly -- they take a clock.
"""

from __future__ import annotations

import time
from typing import Protocol


class IClock(Protocol):
    """Clock interface used by all time-dependent code."""

    def now_ms(self) -> int:
        """Current time as milliseconds since epoch."""
        ...


class WallClock:
    """Real wall-clock time."""

    def now_ms(self) -> int:
        return int(time.time() * 1000)


class SimClock:
    """Manually advanced clock.

    Time advances only when explicitly set or advanced.
    """

    def __init__(self, start_ms: int = 1_704_067_200_000) -> None:
        self._now = start_ms

    def now_ms(self) -> int:
        return self._now

    def set_time(self, t_ms: int) -> None:
        """Jump to an absolute time. Must be monotonically increasing."""
        if t_ms < self._now:
            raise ValueError(f"SimClock cannot go backwards: {t_ms} < {self._now}")
        self._now = t_ms

    def advance_ms(self, ms: int) -> None:
        """Advance time by milliseconds."""
        self.set_time(self._now + ms)
