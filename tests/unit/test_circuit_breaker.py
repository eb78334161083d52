"""Tests for CircuitBreaker pattern."""

import asyncio
import json
import logging

import pytest

from scaled_backend.models import CircuitBreakerConfig
from scaled_backend.patterns.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerError,
    CircuitBreakerMetrics,
    CircuitOpenError,
    CircuitState,
)


class CallCounter:
    """Guarded call that records invocations and fails on demand."""

    def __init__(self, fail: bool = False) -> None:
        self.calls = 0
        self.fail = fail

    async def __call__(self) -> str:
        self.calls += 1
        if self.fail:
            raise ConnectionError("dependency down")
        return "ok"


async def trip(breaker: CircuitBreaker, times: int) -> None:
    failing = CallCounter(fail=True)
    for _ in range(times):
        with pytest.raises(ConnectionError):
            await breaker.execute(failing)


class TestCircuitBreakerDefaultState:
    """Tests for circuit breaker initial state and configuration."""

    @pytest.mark.asyncio
    async def test_circuit_closed_by_default(self):
        """Test circuit breaker starts in CLOSED state."""
        breaker = CircuitBreaker(name="test")
        assert breaker.state == CircuitState.CLOSED
        assert breaker.is_closed
        assert not breaker.is_open
        assert not breaker.is_half_open

    def test_defaults_without_environment(self):
        """Test default thresholds when nothing is configured."""
        breaker = CircuitBreaker(name="test")
        assert breaker.config == CircuitBreakerConfig(
            failure_threshold=5, open_duration_ms=30_000.0, success_threshold=3
        )

    def test_config_loaded_from_environment(self, monkeypatch):
        """Test per-name environment variables configure the breaker."""
        monkeypatch.setenv("CIRCUIT_BREAKER_FAILURE_THRESHOLD_ORDERS", "7")
        monkeypatch.setenv("CIRCUIT_BREAKER_OPEN_DURATION_MS_ORDERS", "1500")
        monkeypatch.setenv("CIRCUIT_BREAKER_SUCCESS_THRESHOLD_ORDERS", "4")

        breaker = CircuitBreaker(name="orders")

        assert breaker.config.failure_threshold == 7
        assert breaker.config.open_duration_ms == 1500.0
        assert breaker.config.success_threshold == 4

    def test_explicit_arguments_override_config(self):
        """Test keyword arguments take precedence over the base config."""
        breaker = CircuitBreaker(
            name="test",
            failure_threshold=2,
            config=CircuitBreakerConfig(failure_threshold=9, success_threshold=6),
        )
        assert breaker.config.failure_threshold == 2
        assert breaker.config.success_threshold == 6

    def test_invalid_config_rejected(self):
        """Test non-positive thresholds are rejected."""
        with pytest.raises(ValueError, match="failure_threshold"):
            CircuitBreaker(name="test", failure_threshold=0)


class TestCircuitBreakerFailureThreshold:
    """Tests for CLOSED state failure accounting."""

    @pytest.mark.asyncio
    async def test_circuit_opens_after_failure_threshold(self, fake_clock):
        """Test three consecutive failures with threshold=3 open the circuit."""
        breaker = CircuitBreaker(name="test", failure_threshold=3, clock=fake_clock)

        await trip(breaker, 2)
        assert breaker.is_closed

        await trip(breaker, 1)
        assert breaker.is_open
        assert breaker.get_metrics().last_failure_timestamp == fake_clock.now

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, fake_clock):
        """Test failures must be consecutive to open the circuit."""
        breaker = CircuitBreaker(name="test", failure_threshold=3, clock=fake_clock)

        await trip(breaker, 2)
        assert await breaker.execute(CallCounter()) == "ok"
        assert breaker.get_metrics().failure_count == 0

        await trip(breaker, 2)
        assert breaker.is_closed

    @pytest.mark.asyncio
    async def test_guarded_failure_propagates_unchanged(self):
        """Test the guarded call's own exception reaches the caller."""
        breaker = CircuitBreaker(name="test", failure_threshold=3)

        async def boom() -> None:
            raise ValueError("constraint violated")

        with pytest.raises(ValueError, match="constraint violated"):
            await breaker.execute(boom)

    @pytest.mark.asyncio
    async def test_failure_count_tracking(self):
        """Test that failure and success counts are tracked correctly."""
        breaker = CircuitBreaker(name="test", failure_threshold=10)

        await trip(breaker, 1)
        await breaker.execute(CallCounter())

        metrics = breaker.get_metrics()
        assert isinstance(metrics, CircuitBreakerMetrics)
        assert metrics.failure_count == 0
        assert metrics.success_count == 1
        assert metrics.request_count == 2


class TestCircuitBreakerOpenState:
    """Tests for fast-fail behaviour while OPEN."""

    @pytest.mark.asyncio
    async def test_open_circuit_does_not_invoke_call(self, fake_clock):
        """Test no invocations happen while the open window lasts."""
        breaker = CircuitBreaker(
            name="test", failure_threshold=3, open_duration_ms=1000, clock=fake_clock
        )
        await trip(breaker, 3)

        counter = CallCounter()
        for _ in range(5):
            with pytest.raises(CircuitOpenError):
                await breaker.execute(counter)
            fake_clock.advance(0.1)

        assert counter.calls == 0
        assert breaker.get_metrics().total_rejected == 5

    @pytest.mark.asyncio
    async def test_open_error_is_distinct_from_call_errors(self, fake_clock):
        """Test CircuitOpenError is a breaker error, not the dependency's error."""
        breaker = CircuitBreaker(name="db", failure_threshold=1, clock=fake_clock)
        await trip(breaker, 1)

        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.execute(CallCounter())

        assert isinstance(exc_info.value, CircuitBreakerError)
        assert not isinstance(exc_info.value, ConnectionError)
        assert exc_info.value.name == "db"
        assert "'db' is open" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_scenario_999ms_fast_fails_1001ms_probes(self, fake_clock):
        """Test threshold=3, open=1000ms: 999ms fast-fails, 1001ms invokes the call."""
        breaker = CircuitBreaker(
            name="test",
            failure_threshold=3,
            open_duration_ms=1000,
            success_threshold=2,
            clock=fake_clock,
        )
        await trip(breaker, 3)
        assert breaker.is_open

        counter = CallCounter()
        fake_clock.advance(0.999)
        with pytest.raises(CircuitOpenError):
            await breaker.execute(counter)
        assert counter.calls == 0

        fake_clock.advance(0.002)
        assert await breaker.execute(counter) == "ok"
        assert counter.calls == 1
        assert breaker.is_half_open

    @pytest.mark.asyncio
    async def test_open_window_boundary_is_exclusive(self, fake_clock):
        """Test exactly open_duration after the failure is still OPEN."""
        breaker = CircuitBreaker(
            name="test", failure_threshold=1, open_duration_ms=1000, clock=fake_clock
        )
        await trip(breaker, 1)

        fake_clock.advance(1.0)
        with pytest.raises(CircuitOpenError):
            await breaker.execute(CallCounter())


class TestCircuitBreakerHalfOpenState:
    """Tests for HALF_OPEN state transitions."""

    @pytest.mark.asyncio
    async def test_circuit_closes_on_recovery(self, fake_clock):
        """Test success_threshold successes in HALF_OPEN close the circuit."""
        breaker = CircuitBreaker(
            name="test",
            failure_threshold=1,
            open_duration_ms=100,
            success_threshold=3,
            clock=fake_clock,
        )
        await trip(breaker, 1)
        fake_clock.advance(0.2)

        await breaker.execute(CallCounter())
        await breaker.execute(CallCounter())
        assert breaker.is_half_open

        await breaker.execute(CallCounter())
        assert breaker.is_closed

        metrics = breaker.get_metrics()
        assert metrics.failure_count == 0
        assert metrics.half_open_success_count == 0

    @pytest.mark.asyncio
    async def test_failure_in_half_open_reopens_and_discards_progress(self, fake_clock):
        """Test a single HALF_OPEN failure reopens and resets partial successes."""
        breaker = CircuitBreaker(
            name="test",
            failure_threshold=1,
            open_duration_ms=100,
            success_threshold=3,
            clock=fake_clock,
        )
        await trip(breaker, 1)
        fake_clock.advance(0.2)

        await breaker.execute(CallCounter())
        await breaker.execute(CallCounter())
        assert breaker.get_metrics().half_open_success_count == 2

        await trip(breaker, 1)
        assert breaker.is_open
        assert breaker.get_metrics().half_open_success_count == 0
        assert breaker.get_metrics().last_failure_timestamp == fake_clock.now

        # The new failure restarts the open window
        fake_clock.advance(0.05)
        with pytest.raises(CircuitOpenError):
            await breaker.execute(CallCounter())

        fake_clock.advance(0.1)
        for _ in range(2):
            await breaker.execute(CallCounter())
        assert breaker.is_half_open

        await breaker.execute(CallCounter())
        assert breaker.is_closed

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens_below_threshold(self, fake_clock):
        """Test HALF_OPEN reopens on one failure even with a high failure threshold."""
        breaker = CircuitBreaker(
            name="test",
            failure_threshold=3,
            open_duration_ms=100,
            clock=fake_clock,
        )
        await trip(breaker, 3)
        fake_clock.advance(0.2)

        await trip(breaker, 1)
        assert breaker.is_open


class TestCircuitBreakerFallback:
    """Tests for caller-supplied fallbacks."""

    @pytest.mark.asyncio
    async def test_fallback_used_when_open(self, fake_clock):
        """Test OPEN returns the fallback result without invoking the call."""
        breaker = CircuitBreaker(name="cache", failure_threshold=1, clock=fake_clock)
        await trip(breaker, 1)

        counter = CallCounter()
        result = await breaker.execute(counter, fallback=lambda: "fallback")

        assert result == "fallback"
        assert counter.calls == 0

    @pytest.mark.asyncio
    async def test_fallback_used_on_failure(self):
        """Test a failing call returns the fallback and still counts as a failure."""
        breaker = CircuitBreaker(name="cache", failure_threshold=5)

        result = await breaker.execute(CallCounter(fail=True), fallback=lambda: None)

        assert result is None
        assert breaker.get_metrics().failure_count == 1

    @pytest.mark.asyncio
    async def test_async_fallback_is_awaited(self):
        """Test a coroutine-returning fallback is awaited."""
        breaker = CircuitBreaker(name="cache", failure_threshold=5)

        async def fallback() -> str:
            return "from-replica"

        result = await breaker.execute(CallCounter(fail=True), fallback=fallback)
        assert result == "from-replica"

    @pytest.mark.asyncio
    async def test_fallback_is_not_a_circuit_outcome(self, fake_clock):
        """Test fallback invocations leave success/failure accounting untouched."""
        breaker = CircuitBreaker(
            name="cache", failure_threshold=1, open_duration_ms=1000, clock=fake_clock
        )
        await trip(breaker, 1)
        before = breaker.get_metrics()

        for _ in range(3):
            await breaker.execute(CallCounter(), fallback=lambda: None)

        after = breaker.get_metrics()
        assert after.request_count == before.request_count
        assert after.success_count == before.success_count
        assert after.failure_count == before.failure_count
        assert after.total_fallbacks == 3
        assert breaker.is_open


class TestCircuitBreakerContextManager:
    """Tests for the async context manager form."""

    @pytest.mark.asyncio
    async def test_context_manager_records_outcomes(self, fake_clock):
        """Test `async with` applies the same accounting as execute."""
        breaker = CircuitBreaker(name="test", failure_threshold=2, clock=fake_clock)

        async with breaker:
            pass

        for _ in range(2):
            with pytest.raises(RuntimeError, match="Failure"):
                async with breaker:
                    raise RuntimeError("Failure")

        assert breaker.is_open

        with pytest.raises(CircuitOpenError):
            async with breaker:
                pass

    @pytest.mark.asyncio
    async def test_cancellation_is_not_a_failure(self):
        """Test a cancelled guarded block does not count against the dependency."""
        breaker = CircuitBreaker(name="test", failure_threshold=1)

        with pytest.raises(asyncio.CancelledError):
            async with breaker:
                raise asyncio.CancelledError()

        assert breaker.is_closed
        assert breaker.get_metrics().failure_count == 0


class TestCircuitBreakerObservability:
    """Tests for the state-change hook and structured logging."""

    @pytest.mark.asyncio
    async def test_state_change_hook_receives_transitions(self, fake_clock):
        """Test the hook sees CLOSED->OPEN->HALF_OPEN->CLOSED."""
        transitions = []
        breaker = CircuitBreaker(
            name="test",
            failure_threshold=1,
            open_duration_ms=100,
            success_threshold=1,
            clock=fake_clock,
            on_state_change=lambda name, old, new: transitions.append((name, old, new)),
        )

        await trip(breaker, 1)
        fake_clock.advance(0.2)
        await breaker.execute(CallCounter())

        assert transitions == [
            ("test", CircuitState.CLOSED, CircuitState.OPEN),
            ("test", CircuitState.OPEN, CircuitState.HALF_OPEN),
            ("test", CircuitState.HALF_OPEN, CircuitState.CLOSED),
        ]

    @pytest.mark.asyncio
    async def test_failing_hook_does_not_break_calls(self):
        """Test an exception in the hook is contained."""

        def bad_hook(name, old, new):
            raise RuntimeError("hook exploded")

        breaker = CircuitBreaker(name="test", failure_threshold=1, on_state_change=bad_hook)

        await trip(breaker, 1)
        assert breaker.is_open

    @pytest.mark.asyncio
    async def test_concurrent_failures_open_once(self):
        """Test concurrent failures produce a single CLOSED->OPEN transition."""
        transitions = []
        breaker = CircuitBreaker(
            name="test",
            failure_threshold=3,
            on_state_change=lambda name, old, new: transitions.append(new),
        )

        async def slow_failure() -> None:
            await asyncio.sleep(0.01)
            raise ConnectionError("timeout")

        results = await asyncio.gather(
            *(breaker.execute(slow_failure) for _ in range(10)),
            return_exceptions=True,
        )

        assert all(isinstance(r, ConnectionError) for r in results)
        assert transitions == [CircuitState.OPEN]

    @pytest.mark.asyncio
    async def test_open_transition_logged_as_json(self, caplog):
        """Test the OPEN transition is logged as a structured warning."""
        breaker = CircuitBreaker(name="postgres", failure_threshold=1)

        with caplog.at_level(logging.WARNING, logger="circuit_breaker.postgres"):
            await trip(breaker, 1)

        entries = [json.loads(r.getMessage()) for r in caplog.records]
        assert entries[-1]["event"] == "circuit_breaker_state_change"
        assert entries[-1]["to_state"] == "open"
        assert entries[-1]["trigger"] == "failure_threshold_exceeded"


class TestCircuitBreakerReset:
    """Tests for reset."""

    @pytest.mark.asyncio
    async def test_reset_restores_closed_state(self):
        """Test reset clears state and counters."""
        breaker = CircuitBreaker(name="test", failure_threshold=1)
        await trip(breaker, 1)
        assert breaker.is_open

        breaker.reset()

        metrics = breaker.get_metrics()
        assert breaker.is_closed
        assert metrics.failure_count == 0
        assert metrics.request_count == 0
        assert metrics.last_failure_timestamp is None
