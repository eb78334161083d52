"""Write-path resilience patterns."""

from scaled_backend.patterns.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerError,
    CircuitBreakerMetrics,
    CircuitOpenError,
    CircuitState,
)
from scaled_backend.patterns.registry import (
    CircuitBreakerRegistry,
    default_registry,
    get_circuit_state,
    guarded,
)
from scaled_backend.patterns.ticker import IntervalTicker, ManualTicker, Ticker
from scaled_backend.patterns.write_queue import (
    BatchSubmissionError,
    WriteQueue,
    WriteQueueMetrics,
    WriteQueueShutdownError,
)

__all__ = [
    # Circuit Breaker
    "CircuitBreaker",
    "CircuitBreakerError",
    "CircuitBreakerMetrics",
    "CircuitOpenError",
    "CircuitState",
    # Registry
    "CircuitBreakerRegistry",
    "default_registry",
    "get_circuit_state",
    "guarded",
    # Ticker
    "IntervalTicker",
    "ManualTicker",
    "Ticker",
    # Write Queue
    "BatchSubmissionError",
    "WriteQueue",
    "WriteQueueMetrics",
    "WriteQueueShutdownError",
]
