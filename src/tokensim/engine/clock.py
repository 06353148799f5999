"""Clock abstraction for time-dependent simulation components.

Every duration in tokensim (circuit breaker windows, cooldowns, action
delays and timeouts, state timers, lineage limits, load debouncing) is
expressed in milliseconds of an injected Clock.

Production code uses SystemClock (the default).
Tests inject MockClock to fast-forward virtual time without sleep().
"""

from __future__ import annotations

import time
from typing import Protocol


class Clock(Protocol):
    """Abstract millisecond clock.

    Implementations:
    - SystemClock: time.monotonic() scaled to milliseconds (production)
    - MockClock: Manually advanced virtual time (testing)
    """

    def now_ms(self) -> float:
        """Return the current time in milliseconds.

        Must never go backwards in production; used for elapsed time and
        deadline arithmetic only, never as a calendar timestamp.
        """
        ...


class SystemClock:
    """Production clock backed by the system monotonic clock."""

    def now_ms(self) -> float:
        return time.monotonic() * 1000.0


class MockClock:
    """Controllable clock for deterministic testing.

    Example:
        clock = MockClock()
        manager = FeedbackLoopManager(config, clock=clock)

        for _ in range(3):
            manager.record_event("B", "message")
        assert not manager.can_create_feedback("A", "B", "exec-1", "message").allowed

        clock.advance(500)  # cooldown elapses
        assert manager.can_create_feedback("A", "B", "exec-1", "message").allowed
    """

    def __init__(self, start: float = 0.0) -> None:
        """Initialize mock clock.

        Args:
            start: Initial time in milliseconds (default 0.0).
        """
        self._current = float(start)

    def now_ms(self) -> float:
        return self._current

    def advance(self, ms: float) -> None:
        """Advance virtual time.

        Raises:
            ValueError: If ms is negative.
        """
        if ms < 0:
            raise ValueError(f"Cannot advance time by negative amount: {ms}")
        self._current += ms

    def set(self, value: float) -> None:
        """Jump to an absolute time.

        Unlike advance(), this may move time backwards. Only tests that
        deliberately exercise clock skew should do that.
        """
        self._current = float(value)


# Default clock for production use
DEFAULT_CLOCK: Clock = SystemClock()
