"""CircuitBreaker pattern for failing fast when a remote dependency is degraded."""

import asyncio
import dataclasses
import inspect
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Self, TypeVar

from scaled_backend.models import CircuitBreakerConfig

T = TypeVar("T")

StateChangeHook = Callable[[str, "CircuitState", "CircuitState"], None]


class CircuitState(Enum):
    """Circuit breaker state enumeration."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerError(Exception):
    """Base class for errors raised by the circuit breaker itself."""

    pass


class CircuitOpenError(CircuitBreakerError):
    """Raised when a call is skipped because the circuit is open and no fallback was given.

    Distinct from any exception raised by the guarded call, so callers can tell
    "dependency down, fast-failed" apart from "dependency answered with an error".
    """

    def __init__(self, name: str, retry_in: float) -> None:
        super().__init__(
            f"Circuit breaker '{name}' is open. Next probe allowed in {retry_in:.3f}s."
        )
        self.name = name
        self.retry_in = retry_in


@dataclass
class CircuitBreakerMetrics:
    """Metrics for tracking circuit breaker state and events.

    Timestamps are taken from the breaker's clock (monotonic seconds by default).
    """

    state: CircuitState
    failure_count: int
    success_count: int
    request_count: int
    last_failure_timestamp: float | None
    last_state_change: float
    total_rejected: int = field(default=0)
    total_fallbacks: int = field(default=0)
    half_open_success_count: int = field(default=0)


class CircuitBreaker:
    """Guard for calls to an unreliable dependency (database, cache, ...).

    Tracks consecutive failures and moves through three states:

    - CLOSED: Normal operation, calls pass through
    - OPEN: Circuit tripped, calls are rejected (or served by a fallback)
    - HALF_OPEN: Probing recovery, calls are attempted and any failure reopens

    Transitions are driven only by call outcomes and elapsed time.

    Args:
        name: Name of the guarded dependency.
        failure_threshold: Consecutive failures before opening.
        open_duration_ms: Milliseconds to stay open before probing.
        success_threshold: Successes in HALF_OPEN required to close.
        config: Base configuration. Explicit arguments override it; when omitted
            it is read from CIRCUIT_BREAKER_*_<NAME> environment variables.
        clock: Monotonic time source in seconds. Injectable for tests.
        on_state_change: Optional hook called as ``hook(name, from_state, to_state)``.

    Example:
        ```python
        breaker = CircuitBreaker(name="redis", failure_threshold=5)

        cached = await breaker.execute(
            lambda: redis.get(key),
            fallback=lambda: None,  # cache down: treat as a miss
        )
        ```
    """

    def __init__(
        self,
        name: str = "default",
        failure_threshold: int | None = None,
        open_duration_ms: float | None = None,
        success_threshold: int | None = None,
        *,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        on_state_change: StateChangeHook | None = None,
    ) -> None:
        base = config or CircuitBreakerConfig.from_env(name)
        overrides: dict[str, Any] = {
            key: value
            for key, value in (
                ("failure_threshold", failure_threshold),
                ("open_duration_ms", open_duration_ms),
                ("success_threshold", success_threshold),
            )
            if value is not None
        }
        self._config = dataclasses.replace(base, **overrides) if overrides else base
        self._name = name
        self._clock = clock
        self._on_state_change = on_state_change

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._total_request_count = 0
        self._rejected_count = 0
        self._fallback_count = 0
        self._last_failure_timestamp: float | None = None
        self._last_state_change = clock()
        self._half_open_success_count = 0
        self._lock = asyncio.Lock()
        self._logger = logging.getLogger(f"circuit_breaker.{name}")

    @property
    def name(self) -> str:
        """Name of the guarded dependency."""
        return self._name

    @property
    def config(self) -> CircuitBreakerConfig:
        """Effective configuration."""
        return self._config

    @property
    def state(self) -> CircuitState:
        """Current state of the circuit breaker."""
        return self._state

    @property
    def is_closed(self) -> bool:
        """Check if circuit is closed (normal operation)."""
        return self._state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        """Check if circuit is open (rejecting calls)."""
        return self._state == CircuitState.OPEN

    @property
    def is_half_open(self) -> bool:
        """Check if circuit is half-open (probing recovery)."""
        return self._state == CircuitState.HALF_OPEN

    def _open_window_elapsed(self, now: float) -> bool:
        if self._last_failure_timestamp is None:
            return True
        return now - self._last_failure_timestamp > self._config.open_duration

    def _log_state_change(
        self,
        from_state: CircuitState,
        to_state: CircuitState,
        trigger: str,
    ) -> None:
        """Log state transition with structured JSON."""
        log_entry = {
            "event": "circuit_breaker_state_change",
            "name": self._name,
            "from_state": from_state.value,
            "to_state": to_state.value,
            "trigger": trigger,
            "timestamp": datetime.now(UTC).isoformat(),
            "metrics": {
                "failure_count": self._failure_count,
                "success_count": self._success_count,
                "request_count": self._total_request_count,
            },
        }
        if to_state == CircuitState.OPEN:
            self._logger.warning(json.dumps(log_entry))
        else:
            self._logger.info(json.dumps(log_entry))

    def _transition(self, to_state: CircuitState, trigger: str) -> None:
        """Move to `to_state`. Must be called with the lock held."""
        from_state = self._state
        self._state = to_state
        self._last_state_change = self._clock()
        self._log_state_change(from_state, to_state, trigger)

        if self._on_state_change is not None:
            try:
                self._on_state_change(self._name, from_state, to_state)
            except Exception:
                self._logger.exception("on_state_change hook failed for '%s'", self._name)

    async def _before_call(self) -> None:
        """Admit or reject a call based on current state.

        Raises:
            CircuitOpenError: If the circuit is open and the open window has not elapsed.
        """
        async with self._lock:
            if self._state != CircuitState.OPEN:
                return

            now = self._clock()
            if self._open_window_elapsed(now):
                self._half_open_success_count = 0
                self._transition(CircuitState.HALF_OPEN, "timeout_elapsed")
                return

            self._rejected_count += 1
            assert self._last_failure_timestamp is not None
            retry_in = self._config.open_duration - (now - self._last_failure_timestamp)
            raise CircuitOpenError(self._name, max(retry_in, 0.0))

    async def _record_success(self) -> None:
        async with self._lock:
            self._total_request_count += 1
            self._success_count += 1
            self._failure_count = 0

            if self._state == CircuitState.HALF_OPEN:
                self._half_open_success_count += 1
                if self._half_open_success_count >= self._config.success_threshold:
                    self._half_open_success_count = 0
                    self._transition(CircuitState.CLOSED, "half_open_success")

    async def _record_failure(self) -> None:
        async with self._lock:
            self._total_request_count += 1
            self._failure_count += 1
            self._last_failure_timestamp = self._clock()

            if self._state == CircuitState.HALF_OPEN:
                self._half_open_success_count = 0
                self._transition(CircuitState.OPEN, "half_open_failure")
            elif (
                self._state == CircuitState.CLOSED
                and self._failure_count >= self._config.failure_threshold
            ):
                self._transition(CircuitState.OPEN, "failure_threshold_exceeded")

    async def _run_fallback(self, fallback: Callable[[], Any]) -> Any:
        async with self._lock:
            self._fallback_count += 1
        value = fallback()
        if inspect.isawaitable(value):
            value = await value
        return value

    async def execute(
        self,
        call: Callable[[], Awaitable[T]],
        fallback: Callable[[], T | Awaitable[T]] | None = None,
    ) -> T:
        """Run `call` through the circuit.

        Args:
            call: Zero-argument callable returning an awaitable.
            fallback: Optional zero-argument callable returning a value or an
                awaitable. Used when the circuit is open or the call fails.
                Its invocation is never counted as a circuit outcome.

        Returns:
            T: Result of `call`, or of `fallback` when it was used.

        Raises:
            CircuitOpenError: If the circuit is open and no fallback was given.
            Exception: The guarded call's own exception when no fallback was given.
        """
        try:
            await self._before_call()
        except CircuitOpenError:
            if fallback is None:
                raise
            return await self._run_fallback(fallback)

        try:
            result = await call()
        except Exception:
            await self._record_failure()
            if fallback is None:
                raise
            return await self._run_fallback(fallback)

        await self._record_success()
        return result

    async def __aenter__(self) -> Self:
        """Check circuit state before allowing the guarded block."""
        await self._before_call()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object | None,
    ) -> None:
        """Record success or failure of the guarded block. Never suppresses."""
        if exc_type is None:
            await self._record_success()
        elif issubclass(exc_type, Exception):
            await self._record_failure()

    def get_metrics(self) -> CircuitBreakerMetrics:
        """Get current metrics for this circuit breaker.

        Returns:
            CircuitBreakerMetrics: Current metrics including state and counts.
        """
        return CircuitBreakerMetrics(
            state=self._state,
            failure_count=self._failure_count,
            success_count=self._success_count,
            request_count=self._total_request_count,
            last_failure_timestamp=self._last_failure_timestamp,
            last_state_change=self._last_state_change,
            total_rejected=self._rejected_count,
            total_fallbacks=self._fallback_count,
            half_open_success_count=self._half_open_success_count,
        )

    def reset(self) -> None:
        """Reset circuit breaker to initial CLOSED state."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._total_request_count = 0
        self._rejected_count = 0
        self._fallback_count = 0
        self._last_failure_timestamp = None
        self._last_state_change = self._clock()
        self._half_open_success_count = 0
