"""Tests for step retry strategies."""

import asyncio

import pytest

from core.exceptions import PermanentProviderError, TransientProviderError
from workflow.retry_strategies import RETRY_PRESETS, RetryPolicy, RetryStrategy


# ─── RetryStrategy creation ───

@pytest.mark.unit
class TestRetryStrategyCreation:
    def test_none_strategy(self):
        s = RetryStrategy.none()
        assert s.policy == RetryPolicy.NONE
        assert s.max_attempts == 1

    def test_fixed_strategy(self):
        s = RetryStrategy.fixed(max_attempts=3, delay=5.0)
        assert s.policy == RetryPolicy.FIXED
        assert s.base_delay == 5.0
        assert s.jitter is False

    def test_exponential_strategy(self):
        s = RetryStrategy.exponential(max_attempts=5, base_delay=1.0, max_delay=60.0)
        assert s.policy == RetryPolicy.EXPONENTIAL
        assert s.max_attempts == 5
        assert s.jitter is True

    def test_from_dict_fills_from_default(self):
        s = RetryStrategy.from_dict({'policy': 'linear', 'base_delay': 10}, default=RetryStrategy.fixed(4, 60))
        assert s.policy == RetryPolicy.LINEAR
        assert s.base_delay == 10.0
        assert s.max_attempts == 4

    def test_from_dict_unknown_policy(self):
        with pytest.raises(ValueError):
            RetryStrategy.from_dict({'policy': 'sometimes'})

    def test_to_dict_roundtrip(self):
        original = RetryStrategy.exponential(max_attempts=5)
        restored = RetryStrategy.from_dict(original.to_dict())
        assert restored == original


# ─── Delay computation ───

@pytest.mark.unit
class TestComputeDelay:
    def test_fixed(self):
        s = RetryStrategy.fixed(delay=300.0)
        assert s.compute_delay(1) == 300.0
        assert s.compute_delay(5) == 300.0
        assert s.compute_delay_ms(1) == 300_000

    def test_exponential_without_jitter(self):
        s = RetryStrategy.exponential(base_delay=1.0, max_delay=100.0, jitter=False)
        assert [s.compute_delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_exponential_capped(self):
        s = RetryStrategy.exponential(base_delay=10.0, max_delay=25.0, jitter=False)
        assert s.compute_delay(5) == 25.0

    def test_exponential_jitter_in_range(self):
        s = RetryStrategy.exponential(base_delay=10.0, max_delay=100.0, jitter=True)
        for _ in range(20):
            assert 8.0 <= s.compute_delay(1) <= 12.0

    def test_linear(self):
        s = RetryStrategy.linear(base_delay=2.0, max_delay=100.0)
        assert s.compute_delay(3) == 6.0

    def test_none(self):
        assert RetryStrategy.none().compute_delay(1) == 0.0


# ─── Retry decisions ───

@pytest.mark.unit
class TestShouldRetry:
    def test_attempt_budget(self):
        s = RetryStrategy.fixed(max_attempts=3)
        assert s.should_retry(1) is True
        assert s.should_retry(2) is True
        assert s.should_retry(3) is False

    def test_none_never_retries(self):
        assert RetryStrategy.none().should_retry(0) is False

    def test_transient_errors_retry(self):
        s = RetryStrategy.fixed()
        assert s.should_retry(1, TransientProviderError("503")) is True
        assert s.should_retry(1, asyncio.TimeoutError()) is True

    def test_permanent_and_unknown_errors_do_not_retry(self):
        s = RetryStrategy.fixed()
        assert s.should_retry(1, PermanentProviderError("invalid number")) is False
        assert s.should_retry(1, KeyError("x")) is False


@pytest.mark.unit
class TestPresets:
    def test_presets_exist(self):
        assert set(RETRY_PRESETS) == {'none', 'default', 'messaging', 'appointments'}

    def test_default_is_five_minutes_three_attempts(self):
        s = RETRY_PRESETS['default']
        assert s.policy == RetryPolicy.FIXED
        assert s.max_attempts == 3
        assert s.base_delay == 300.0
