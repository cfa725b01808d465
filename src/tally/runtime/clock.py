# src/tally/runtime/clock.py
from __future__ import annotations

import time
from typing import Protocol

from tally.ledger.constants import SECONDS_PER_DAY


class Clock(Protocol):
    def now(self) -> int:
        """Wall-clock unix seconds."""
        ...


class SystemClock:
    def now(self) -> int:
        return int(time.time())


class ManualClock:
    """Deterministic clock for tests and replays. Never moves backwards."""

    def __init__(self, start_s: int = 0) -> None:
        self._now = int(start_s)

    def now(self) -> int:
        return self._now

    def set(self, now_s: int) -> None:
        n = int(now_s)
        if n < self._now:
            raise ValueError(f"clock must be non-decreasing: {n} < {self._now}")
        self._now = n

    def advance(self, seconds: int) -> int:
        self.set(self._now + int(seconds))
        return self._now


def day_index(now_s: int) -> int:
    """Day bucket for a unix timestamp (floor division by 86,400)."""
    return int(now_s) // SECONDS_PER_DAY
