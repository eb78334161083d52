"""Process-wide circuit breakers keyed by dependency name."""

import threading
from typing import Any

from scaled_backend.models import CircuitBreakerConfig
from scaled_backend.patterns.circuit_breaker import CircuitBreaker, CircuitState

# Thresholds used by the 1M req/s tier for its two remote dependencies.
DEFAULT_BREAKERS: dict[str, CircuitBreakerConfig] = {
    "postgres": CircuitBreakerConfig(
        failure_threshold=3,
        open_duration_ms=20_000.0,
        success_threshold=2,
    ),
    "redis": CircuitBreakerConfig(
        failure_threshold=5,
        open_duration_ms=30_000.0,
        success_threshold=3,
    ),
}


class CircuitBreakerRegistry:
    """Holds exactly one CircuitBreaker per logical dependency.

    Breakers are created on first lookup from environment configuration unless
    registered explicitly beforehand.

    Example:
        ```python
        registry = CircuitBreakerRegistry()
        registry.register("postgres", failure_threshold=3, open_duration_ms=20_000)

        rows = await registry.guarded("postgres").execute(lambda: store.get(user_id))
        registry.get_circuit_state("postgres")  # CircuitState.CLOSED
        ```
    """

    def __init__(self, defaults: dict[str, CircuitBreakerConfig] | None = None) -> None:
        self._defaults = dict(defaults or {})
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def register(self, name: str, **settings: Any) -> CircuitBreaker:
        """Create (or replace) the breaker for `name`.

        Args:
            name: Dependency name.
            **settings: Keyword arguments forwarded to CircuitBreaker.

        Returns:
            CircuitBreaker: The registered breaker.
        """
        if "config" not in settings and name in self._defaults:
            settings["config"] = self._defaults[name]
        breaker = CircuitBreaker(name=name, **settings)
        with self._lock:
            self._breakers[name] = breaker
        return breaker

    def get(self, name: str) -> CircuitBreaker:
        """Return the breaker for `name`, creating it on first use."""
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(name=name, config=self._defaults.get(name))
                self._breakers[name] = breaker
            return breaker

    def guarded(self, name: str) -> CircuitBreaker:
        """Alias of `get`, reads as ``registry.guarded("redis").execute(...)``."""
        return self.get(name)

    def get_circuit_state(self, name: str) -> CircuitState:
        """Current state of the breaker guarding `name`."""
        return self.get(name).state

    def states(self) -> dict[str, CircuitState]:
        """Snapshot of every known breaker's state, for health reporting."""
        with self._lock:
            return {name: breaker.state for name, breaker in self._breakers.items()}

    def reset_all(self) -> None:
        """Reset every registered breaker to CLOSED."""
        with self._lock:
            breakers = list(self._breakers.values())
        for breaker in breakers:
            breaker.reset()

    def __contains__(self, name: object) -> bool:
        return name in self._breakers

    def __len__(self) -> int:
        return len(self._breakers)


_default_registry = CircuitBreakerRegistry(defaults=DEFAULT_BREAKERS)


def default_registry() -> CircuitBreakerRegistry:
    """The process-wide registry used by `guarded` and `get_circuit_state`."""
    return _default_registry


def guarded(name: str) -> CircuitBreaker:
    """Process-wide breaker guarding the dependency `name`."""
    return _default_registry.guarded(name)


def get_circuit_state(name: str) -> CircuitState:
    """Current state of the process-wide breaker guarding `name`."""
    return _default_registry.get_circuit_state(name)
