# tests/property/engine/test_backoff_properties.py
"""Property-based tests for BackoffPolicy.

Properties tested:
1. Every delay is positive and never exceeds the cap
2. Delays are monotonic non-decreasing in the attempt number
3. The first delay is exactly the initial delay
4. next() is now + delay(), independent of the clock when now is given
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from hypothesis import given
from hypothesis import strategies as st

from storyloom.engine.backoff import BackoffPolicy
from tests.property.settings import QUICK_SETTINGS, STANDARD_SETTINGS

attempts = st.integers(min_value=1, max_value=200)
initial_seconds = st.integers(min_value=1, max_value=3600)
cap_multipliers = st.integers(min_value=1, max_value=48)
bases = st.sampled_from([1.0, 1.5, 2.0, 3.0])


@st.composite
def policies(draw: st.DrawFn) -> BackoffPolicy:
    initial = draw(initial_seconds)
    return BackoffPolicy(
        initial=timedelta(seconds=initial),
        cap=timedelta(seconds=initial * draw(cap_multipliers)),
        exponential_base=draw(bases),
    )


class TestBackoffBounds:
    @given(policy=policies(), attempt=attempts)
    @STANDARD_SETTINGS
    def test_delay_is_positive_and_capped(self, policy: BackoffPolicy, attempt: int) -> None:
        """Property: 0 < delay(n) <= cap for every n >= 1."""
        delay = policy.delay(attempt)
        assert delay > timedelta(0)
        assert delay <= policy.cap

    @given(policy=policies(), attempt=attempts)
    @STANDARD_SETTINGS
    def test_delay_is_monotonic(self, policy: BackoffPolicy, attempt: int) -> None:
        """Property: delay(n) <= delay(n + 1)."""
        assert policy.delay(attempt) <= policy.delay(attempt + 1)

    @given(initial=initial_seconds, multiplier=cap_multipliers, base=bases)
    @STANDARD_SETTINGS
    def test_first_delay_is_initial(self, initial: int, multiplier: int, base: float) -> None:
        policy = BackoffPolicy(
            initial=timedelta(seconds=initial), cap=timedelta(seconds=initial * multiplier), exponential_base=base
        )
        assert policy.delay(1) == timedelta(seconds=initial)

    @given(attempt=st.integers(min_value=7, max_value=500))
    @STANDARD_SETTINGS
    def test_default_policy_saturates_at_one_hour(self, attempt: int) -> None:
        assert BackoffPolicy().delay(attempt) == timedelta(minutes=60)


class TestNextRetry:
    @given(
        policy=policies(),
        attempt=attempts,
        now=st.datetimes(
            min_value=datetime(2020, 1, 1), max_value=datetime(2040, 1, 1), timezones=st.just(UTC)
        ),
    )
    @STANDARD_SETTINGS
    def test_next_is_now_plus_delay(self, policy: BackoffPolicy, attempt: int, now: datetime) -> None:
        """Property: next() is strictly after now, by exactly delay()."""
        retry_at = policy.next(attempt, now)
        assert retry_at > now
        assert retry_at - now == policy.delay(attempt)


class TestRejection:
    @given(attempt=st.integers(max_value=0))
    @QUICK_SETTINGS
    def test_non_positive_attempts_rejected(self, attempt: int) -> None:
        with pytest.raises(ValueError, match="attempt_count must be >= 1"):
            BackoffPolicy().delay(attempt)
