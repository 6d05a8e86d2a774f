# src/storyloom/engine/clock.py
"""Clock abstraction for testable retry scheduling.

This module provides a Clock protocol that abstracts wall-clock access,
enabling deterministic testing of time-dependent code paths like
rate-limit backoff and the retry sweep.

Production code uses SystemClock (the default).
Tests inject MockClock to control time advancement.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Protocol


class Clock(Protocol):
    """Abstract wall clock for retry scheduling.

    Implementations:
    - SystemClock: Uses datetime.now(UTC) (production)
    - MockClock: Returns controllable times (testing)
    """

    def now(self) -> datetime:
        """Return the current time as a timezone-aware UTC datetime."""
        ...


class SystemClock:
    """Production clock reading the system wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(UTC)


class MockClock:
    """Controllable clock for deterministic testing.

    Allows tests to advance time programmatically without sleep().

    Example:
        clock = MockClock()
        policy = BackoffPolicy(clock=clock)

        retry_at = policy.next(1)  # now + 10 minutes
        clock.advance(minutes=11)
        assert clock.now() > retry_at
    """

    DEFAULT_START = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)

    def __init__(self, start: datetime | None = None) -> None:
        """Initialize mock clock at a given time.

        Args:
            start: Initial aware datetime (default 2024-01-01 12:00 UTC).

        Raises:
            ValueError: If start is naive.
        """
        start = start or self.DEFAULT_START
        if start.tzinfo is None:
            raise ValueError(f"MockClock needs an aware start time, got {start!r}")
        self._current = start.astimezone(UTC)

    def now(self) -> datetime:
        """Return current mock time."""
        return self._current

    def advance(self, delta: timedelta | None = None, **kwargs: float) -> datetime:
        """Advance mock time.

        Accepts a timedelta or timedelta keyword arguments
        (``clock.advance(minutes=11)``).

        Raises:
            ValueError: If the step is negative.
        """
        step = delta if delta is not None else timedelta(**kwargs)
        if step < timedelta(0):
            raise ValueError(f"Cannot advance time by negative amount: {step}")
        self._current += step
        return self._current

    def set(self, value: datetime) -> None:
        """Set mock time to an absolute value.

        Note:
            Unlike advance(), this can move time backwards. Use with caution.
        """
        if value.tzinfo is None:
            raise ValueError(f"MockClock needs an aware time, got {value!r}")
        self._current = value.astimezone(UTC)


# Default clock for production use
DEFAULT_CLOCK: Clock = SystemClock()
