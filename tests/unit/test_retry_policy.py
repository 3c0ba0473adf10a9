"""Tests for RetryPolicy backoff calculation and retry decisions."""

import random

import pytest
from pydantic import ValidationError

from autoflow.errors import ErrorCategory
from autoflow.safeguards.retry_handler import BackoffStrategy, RetryPolicy


class TestDelays:
    def test_fixed(self):
        policy = RetryPolicy(max_attempts=5, strategy="fixed", base_delay_ms=100)
        assert [policy.calculate_delay_ms(n) for n in (1, 2, 3)] == [100, 100, 100]

    def test_linear(self):
        policy = RetryPolicy(max_attempts=5, strategy=BackoffStrategy.LINEAR, base_delay_ms=100)
        assert [policy.calculate_delay_ms(n) for n in (1, 2, 3)] == [100, 200, 300]

    def test_exponential(self):
        policy = RetryPolicy(max_attempts=5, base_delay_ms=100, multiplier=3)
        assert [policy.calculate_delay_ms(n) for n in (1, 2, 3)] == [100, 300, 900]

    def test_seconds(self):
        policy = RetryPolicy(strategy="fixed", base_delay_ms=250)
        assert policy.calculate_delay(1) == 0.25

    @pytest.mark.parametrize("strategy", ["fixed", "linear", "exponential"])
    def test_never_exceeds_max_delay(self, strategy):
        policy = RetryPolicy(strategy=strategy, base_delay_ms=700, max_delay_ms=5000, jitter=True)
        rng = random.Random(7)
        for attempt in range(1, 200):
            assert 0 <= policy.calculate_delay_ms(attempt, rng) <= 5000

    def test_huge_attempt_count_is_capped(self):
        policy = RetryPolicy(base_delay_ms=1000, max_delay_ms=60_000)
        assert policy.calculate_delay_ms(10_000) == 60_000

    def test_huge_multiplier_is_capped(self):
        policy = RetryPolicy(base_delay_ms=1000, max_delay_ms=60_000, multiplier=1e12)
        assert policy.calculate_delay_ms(64) == 60_000

    def test_jitter_draws_below_cap(self):
        policy = RetryPolicy(strategy="fixed", base_delay_ms=1000, jitter=True)
        delays = {policy.calculate_delay_ms(1, random.Random(seed)) for seed in range(10)}
        assert len(delays) > 1
        assert all(0 <= d <= 1000 for d in delays)


class TestShouldRetry:
    def test_stops_at_max_attempts(self):
        policy = RetryPolicy(max_attempts=3)
        assert policy.should_retry(1, ErrorCategory.TRANSIENT)
        assert policy.should_retry(2, ErrorCategory.TRANSIENT)
        assert not policy.should_retry(3, ErrorCategory.TRANSIENT)

    def test_permanent_and_cancelled_not_retried(self):
        policy = RetryPolicy(max_attempts=5)
        assert not policy.should_retry(1, ErrorCategory.PERMANENT)
        assert not policy.should_retry(1, ErrorCategory.CANCELLED)
        assert policy.should_retry(1, ErrorCategory.PLUGIN)
        assert policy.should_retry(1, ErrorCategory.RESOURCE)

    def test_timeout_follows_flag(self):
        assert RetryPolicy(max_attempts=2).should_retry(1, ErrorCategory.TIMEOUT)
        assert not RetryPolicy(max_attempts=2, retry_on_timeout=False).should_retry(1, ErrorCategory.TIMEOUT)


class TestValidation:
    def test_camel_case_keys(self):
        policy = RetryPolicy.model_validate({"maxAttempts": 4, "baseDelayMs": 10, "maxDelayMs": 20})
        assert (policy.max_attempts, policy.base_delay_ms, policy.max_delay_ms) == (4, 10, 20)

    def test_max_delay_raised_to_base(self):
        assert RetryPolicy(base_delay_ms=2000, max_delay_ms=500).max_delay_ms == 2000

    @pytest.mark.parametrize("kwargs", [
        {"max_attempts": 0},
        {"base_delay_ms": -1},
        {"multiplier": 0.5},
        {"strategy": "random"},
    ])
    def test_rejects_bad_values(self, kwargs):
        with pytest.raises(ValidationError):
            RetryPolicy(**kwargs)
