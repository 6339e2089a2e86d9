"""Property-based tests for retry backoff policies."""

import random
from unittest.mock import MagicMock

import pytest
from hypothesis import given, settings, strategies as st

from mediaforge.modules.job.retry import (
    ConstantBackoff,
    ExponentialBackoff,
    LinearBackoff,
    retry_policy_from_settings,
)

attempts = st.integers(min_value=1, max_value=50)


class TestConstantBackoff:
    @given(attempt=attempts)
    @settings(max_examples=100)
    def test_same_delay_for_every_attempt(self, attempt: int) -> None:
        assert ConstantBackoff(30).delay(attempt) == 30

    def test_negative_delay_is_clamped(self) -> None:
        assert ConstantBackoff(-5).delay(1) == 0


class TestLinearBackoff:
    def test_grows_by_step(self) -> None:
        policy = LinearBackoff(initial_delay=10, step=5, max_delay=100)
        assert [policy.delay(n) for n in (1, 2, 3)] == [10, 15, 20]

    @given(attempt=attempts)
    @settings(max_examples=100)
    def test_capped(self, attempt: int) -> None:
        assert LinearBackoff(30, 30, 120).delay(attempt) <= 120


class TestExponentialBackoff:
    def test_doubles_without_jitter(self) -> None:
        policy = ExponentialBackoff(initial_delay=1, multiplier=2, max_delay=1000)
        assert [policy.delay(n) for n in (1, 2, 3, 4)] == [1, 2, 4, 8]

    @given(attempt=attempts, seed=st.integers(min_value=0, max_value=2**32 - 1))
    @settings(max_examples=100)
    def test_jitter_stays_within_spread_and_cap(self, attempt: int, seed: int) -> None:
        policy = ExponentialBackoff(
            initial_delay=30, multiplier=2, max_delay=600, jitter=0.1, rng=random.Random(seed)
        )
        base = policy.base_delay(attempt)
        delay = policy.delay(attempt)

        assert 0 <= delay <= 600
        assert base * 0.9 - 1e-9 <= delay <= min(base * 1.1, 600) + 1e-9

    @given(attempt=attempts)
    @settings(max_examples=100)
    def test_monotonic_without_jitter(self, attempt: int) -> None:
        policy = ExponentialBackoff(initial_delay=30, multiplier=2, max_delay=600)
        assert policy.delay(attempt + 1) >= policy.delay(attempt)


class TestPolicyFromSettings:
    def make_settings(self, name: str) -> MagicMock:
        return MagicMock(
            RETRY_BACKOFF=name,
            RETRY_DELAY_SECONDS=30,
            RETRY_MAX_DELAY_SECONDS=600,
            RETRY_BACKOFF_MULTIPLIER=2.0,
            RETRY_JITTER=0.1,
        )

    @pytest.mark.parametrize("name,cls", [
        ("constant", ConstantBackoff),
        ("linear", LinearBackoff),
        ("Exponential", ExponentialBackoff),
    ])
    def test_known_policies(self, name: str, cls) -> None:
        assert isinstance(retry_policy_from_settings(self.make_settings(name)), cls)

    def test_unknown_policy(self) -> None:
        with pytest.raises(ValueError, match="Unsupported retry backoff"):
            retry_policy_from_settings(self.make_settings("fibonacci"))
