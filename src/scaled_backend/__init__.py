"""Scaled Backend.

Write-behind batching and circuit breaking for a user CRUD API scaled to
1M requests/second: concurrent writes are coalesced into periodic bulk
inserts, and every call to the database or cache is guarded so a degraded
dependency fails fast instead of cascading.
"""

from scaled_backend.models import (
    CircuitBreakerConfig,
    User,
    WriteIntent,
    WriteKind,
    WriteQueueConfig,
)
from scaled_backend.patterns.circuit_breaker import (
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
)
from scaled_backend.patterns.registry import get_circuit_state, guarded
from scaled_backend.patterns.write_queue import BatchSubmissionError, WriteQueue
from scaled_backend.persistence.base import RecordNotFoundError
from scaled_backend.service import EmailTakenError, UserService

__version__ = "0.1.0"

__all__ = [
    "BatchSubmissionError",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitOpenError",
    "CircuitState",
    "EmailTakenError",
    "RecordNotFoundError",
    "User",
    "UserService",
    "WriteIntent",
    "WriteKind",
    "WriteQueue",
    "WriteQueueConfig",
    "get_circuit_state",
    "guarded",
]
