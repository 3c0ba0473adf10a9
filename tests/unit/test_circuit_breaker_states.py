"""Tests for per-target circuit breakers."""

import pytest

from autoflow.errors import CircuitOpenError
from autoflow.safeguards.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry, CircuitState
from tests.workflow_fixtures import FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def breaker(clock):
    return CircuitBreaker("api.example.com", failure_threshold=3, window=60, reset_timeout=30, clock=clock)


def trip(breaker):
    for _ in range(breaker.failure_threshold):
        breaker.before_call()
        breaker.record_failure()


class TestClosed:
    def test_starts_closed(self, breaker):
        assert breaker.state == CircuitState.CLOSED
        breaker.before_call()

    def test_opens_at_threshold(self, breaker):
        breaker.record_failure()
        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED

        breaker.record_failure()

        assert breaker.state == CircuitState.OPEN

    def test_failures_outside_window_are_forgotten(self, breaker, clock):
        breaker.record_failure()
        breaker.record_failure()
        clock.advance(61)
        breaker.record_failure()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.snapshot().consecutive_failures == 1

    def test_success_resets_count(self, breaker):
        breaker.record_failure()
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED


class TestOpen:
    def test_rejects_with_retry_after(self, breaker, clock):
        trip(breaker)
        clock.advance(10)

        with pytest.raises(CircuitOpenError) as exc_info:
            breaker.before_call()

        assert exc_info.value.target == "api.example.com"
        assert exc_info.value.retry_after == pytest.approx(20)

    def test_half_open_after_reset_timeout(self, breaker, clock):
        trip(breaker)
        clock.advance(30)
        assert breaker.state == CircuitState.HALF_OPEN


class TestHalfOpen:
    def test_single_probe(self, breaker, clock):
        trip(breaker)
        clock.advance(30)

        breaker.before_call()
        with pytest.raises(CircuitOpenError):
            breaker.before_call()

    def test_probe_success_closes(self, breaker, clock):
        trip(breaker)
        clock.advance(30)
        breaker.before_call()

        breaker.record_success()

        assert breaker.state == CircuitState.CLOSED
        breaker.before_call()

    def test_probe_failure_reopens(self, breaker, clock):
        trip(breaker)
        clock.advance(30)
        breaker.before_call()

        breaker.record_failure()

        assert breaker.state == CircuitState.OPEN
        assert breaker.snapshot().opened_at == clock.now

    def test_release_probe_frees_slot(self, breaker, clock):
        trip(breaker)
        clock.advance(30)
        breaker.before_call()

        breaker.release_probe()

        breaker.before_call()
        assert breaker.state == CircuitState.HALF_OPEN


class TestRegistry:
    def test_one_breaker_per_target(self, clock):
        registry = CircuitBreakerRegistry(failure_threshold=1, clock=clock)
        a = registry.get("a")

        assert registry.get("a") is a
        assert registry.get("b") is not a

        a.record_failure()
        states = {s.target: s.state for s in registry.snapshots()}
        assert states == {"a": CircuitState.OPEN, "b": CircuitState.CLOSED}
