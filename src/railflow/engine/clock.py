# src/railflow/engine/clock.py
"""Clock abstraction for testable polling and timeout logic.

The stability extractor, the pause loop and web turn stall warnings all
measure elapsed time and sleep between polls. Routing both through a Clock
lets tests run those loops deterministically.

Production code uses SystemClock (the default).
Tests inject MockClock, whose sleep() advances time instead of waiting.
"""

from __future__ import annotations

import asyncio
import time
from typing import Protocol


class Clock(Protocol):
    """Abstract clock for polling loops.

    Implementations:
    - SystemClock: time.monotonic() and asyncio.sleep() (production)
    - MockClock: controllable time, sleep advances it (testing)
    """

    def monotonic(self) -> float:
        """Return monotonic time in seconds.

        Must never go backwards; suitable for elapsed time and deadlines.
        """
        ...

    async def sleep(self, seconds: float) -> None:
        """Suspend the caller for the given number of seconds."""
        ...


class SystemClock:
    """Production clock using time.monotonic() and asyncio.sleep()."""

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class MockClock:
    """Controllable clock for deterministic testing.

    sleep() advances the clock by the requested amount and yields once to
    the event loop, so polling loops make progress without real waiting.

    Example:
        clock = MockClock(start=0.0)
        extractor = StabilityExtractor(settings, clock=clock)
        await extractor.wait_for_stable(sampler, prompt, timeout=10.0)
        assert clock.monotonic() < 10.0
    """

    def __init__(self, start: float = 0.0) -> None:
        self._current = start

    def monotonic(self) -> float:
        return self._current

    async def sleep(self, seconds: float) -> None:
        self.advance(max(0.0, seconds))
        await asyncio.sleep(0)

    def advance(self, seconds: float) -> None:
        """Advance mock time.

        Raises:
            ValueError: If seconds is negative.
        """
        if seconds < 0:
            raise ValueError(f"Cannot advance time by negative amount: {seconds}")
        self._current += seconds

    def set(self, value: float) -> None:
        """Set mock time to an absolute value (may move backwards; tests only)."""
        self._current = value


# Default clock for production use
DEFAULT_CLOCK: Clock = SystemClock()
