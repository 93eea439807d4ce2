"""Tests for the circuit breaker and timeout helper."""

import asyncio

import pytest

from repolens.gateways.circuit_breaker import (
    BreakerRegistry,
    CircuitBreaker,
    CircuitBreakerOpen,
    CircuitState,
    run_with_timeout,
)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestCircuitBreaker:

    def test_opens_after_threshold(self):
        breaker = CircuitBreaker("agent", failure_threshold=2, clock=FakeClock())
        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitBreakerOpen):
            breaker.check()

    def test_half_open_after_cooldown(self):
        clock = FakeClock()
        breaker = CircuitBreaker("agent", failure_threshold=1, cooldown_seconds=10, clock=clock)
        breaker.record_failure()
        clock.now = 11
        breaker.check()
        assert breaker.state == CircuitState.HALF_OPEN

    def test_trial_success_closes(self):
        clock = FakeClock()
        breaker = CircuitBreaker("agent", failure_threshold=1, cooldown_seconds=10, clock=clock)
        breaker.record_failure()
        clock.now = 11
        breaker.check()
        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED

    def test_trial_failure_reopens(self):
        clock = FakeClock()
        breaker = CircuitBreaker("agent", failure_threshold=1, cooldown_seconds=10, clock=clock)
        breaker.record_failure()
        clock.now = 11
        breaker.check()
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN

    def test_success_resets_failure_count(self):
        breaker = CircuitBreaker("agent", failure_threshold=2, clock=FakeClock())
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED


class TestBreakerRegistry:

    def test_one_breaker_per_endpoint(self):
        registry = BreakerRegistry()
        assert registry.get("analyze") is registry.get("analyze")
        assert registry.get("analyze") is not registry.get("chat")


class TestRunWithTimeout:

    @pytest.mark.asyncio
    async def test_returns_result(self):
        breaker = CircuitBreaker("agent")

        async def call():
            return 42

        assert await run_with_timeout(call, 1.0, breaker) == 42

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self):
        breaker = CircuitBreaker("agent", failure_threshold=1)

        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(TimeoutError):
            await run_with_timeout(slow, 0.01, breaker)
        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_open_breaker_short_circuits(self):
        breaker = CircuitBreaker("agent", failure_threshold=1)
        breaker.record_failure()
        called = []

        async def call():
            called.append(True)

        with pytest.raises(CircuitBreakerOpen):
            await run_with_timeout(call, 1.0, breaker)
        assert called == []
