# src/storyloom/engine/backoff.py
"""BackoffPolicy: when a rate-limited stage may run again.

Uses tenacity's wait_exponential as the delay strategy. Tenacity drives the
arithmetic only; nothing here sleeps or loops. The returned time is persisted
as the stage's retry_at, and the retry sweep re-admits the stage once it
passes.

The policy never classifies errors. Collaborators decide what is transient.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from tenacity import RetryCallState, wait_exponential

from storyloom.engine.clock import DEFAULT_CLOCK, Clock

if TYPE_CHECKING:
    from storyloom.core.config import BackoffSettings


class BackoffPolicy:
    """Exponential backoff with a cap.

    Delay for attempt N is ``initial * base ** (N - 1)``, never more than
    ``cap``. Monotonic non-decreasing in N and always positive.

    Example:
        policy = BackoffPolicy()       # 10 min, doubling, capped at 60 min
        policy.delay(1)                # timedelta(minutes=10)
        policy.delay(3)                # timedelta(minutes=40)
        policy.delay(9)                # timedelta(minutes=60)
    """

    def __init__(
        self,
        *,
        initial: timedelta = timedelta(minutes=10),
        cap: timedelta = timedelta(minutes=60),
        exponential_base: float = 2.0,
        clock: Clock | None = None,
    ) -> None:
        if initial <= timedelta(0):
            raise ValueError(f"initial delay must be positive, got {initial}")
        if cap < initial:
            raise ValueError(f"cap ({cap}) must be >= initial delay ({initial})")
        if exponential_base < 1.0:
            raise ValueError(f"exponential_base must be >= 1.0, got {exponential_base}")
        self._initial = initial
        self._cap = cap
        self._clock = clock or DEFAULT_CLOCK
        self._wait = wait_exponential(
            multiplier=initial.total_seconds(),
            max=cap.total_seconds(),
            exp_base=exponential_base,
            min=initial.total_seconds(),
        )

    @classmethod
    def from_settings(cls, settings: BackoffSettings, *, clock: Clock | None = None) -> BackoffPolicy:
        """Factory from BackoffSettings config model."""
        return cls(
            initial=timedelta(seconds=settings.initial_delay_seconds),
            cap=timedelta(seconds=settings.max_delay_seconds),
            exponential_base=settings.exponential_base,
            clock=clock,
        )

    @property
    def cap(self) -> timedelta:
        return self._cap

    def delay(self, attempt_count: int) -> timedelta:
        """Delay before the stage may run again after its Nth attempt was rate limited.

        Raises:
            ValueError: If attempt_count < 1
        """
        if attempt_count < 1:
            raise ValueError(f"attempt_count must be >= 1, got {attempt_count}")
        state = RetryCallState(retry_object=None, fn=None, args=(), kwargs={})  # type: ignore[arg-type]
        state.attempt_number = attempt_count
        return timedelta(seconds=self._wait(state))

    def next(self, attempt_count: int, now: datetime | None = None) -> datetime:
        """Absolute UTC time at which the stage may run again."""
        base = now if now is not None else self._clock.now()
        return base + self.delay(attempt_count)
