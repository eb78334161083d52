"""Domain models for the scaled-backend write path.

This module defines the records, write intents and configuration objects shared
by the write queue, the circuit breaker and the storage backends.
"""

from __future__ import annotations

import asyncio
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class WriteKind(str, Enum):
    """Kind of write carried by a WriteIntent.

    Attributes:
        CREATE: Insert a new user row. Batched into one bulk insert per flush.
        UPDATE: Update fields of an existing user row.
        DELETE: Remove an existing user row.
    """

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True, slots=True)
class User:
    """A persisted user record.

    Attributes:
        id: Primary key assigned by the store.
        name: Display name.
        email: Unique email address.
        created_at: Creation timestamp as reported by the store.
    """

    id: int
    name: str
    email: str
    created_at: str

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dict (used for cache payloads)."""
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> User:
        """Build a User from a dict produced by `to_dict` or a database row."""
        return cls(
            id=int(data["id"]),
            name=str(data["name"]),
            email=str(data["email"]),
            created_at=str(data["created_at"]),
        )


@dataclass
class WriteIntent:
    """A single pending write, owned by the write queue until drained.

    The `completion` future is attached by the queue on enqueue and resolved
    exactly once by the draining flush, either with the resulting record or
    with the failure of the batch it was drained into.

    Attributes:
        kind: Operation kind.
        payload: Partial record fields. Update and delete intents carry `id`.
        submitted_at: Wall-clock seconds when the intent was created.
        completion: Single-assignment result slot observed by the caller.
    """

    kind: WriteKind
    payload: dict[str, Any]
    submitted_at: float = field(default_factory=time.time)
    completion: asyncio.Future[Any] | None = field(default=None, repr=False, compare=False)

    @classmethod
    def create(cls, name: str, email: str) -> WriteIntent:
        return cls(kind=WriteKind.CREATE, payload={"name": name, "email": email})

    @classmethod
    def update(cls, user_id: int, **fields: Any) -> WriteIntent:
        return cls(kind=WriteKind.UPDATE, payload={"id": user_id, **fields})

    @classmethod
    def delete(cls, user_id: int) -> WriteIntent:
        return cls(kind=WriteKind.DELETE, payload={"id": user_id})


@dataclass(frozen=True, slots=True)
class WriteQueueConfig:
    """Configuration for the batching write queue.

    Attributes:
        batch_size: Maximum number of intents drained per flush (default: 100).
        flush_interval_ms: Milliseconds between timer-driven flushes (default: 50).
    """

    batch_size: int = 100
    flush_interval_ms: float = 50.0

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if self.flush_interval_ms <= 0:
            raise ValueError("flush_interval_ms must be positive")

    @property
    def flush_interval(self) -> float:
        """Flush interval in seconds."""
        return self.flush_interval_ms / 1000.0

    @classmethod
    def from_env(cls) -> WriteQueueConfig:
        """Load configuration from WRITE_QUEUE_* environment variables."""
        return cls(
            batch_size=int(os.getenv("WRITE_QUEUE_BATCH_SIZE", "100")),
            flush_interval_ms=float(os.getenv("WRITE_QUEUE_FLUSH_INTERVAL_MS", "50.0")),
        )


@dataclass(frozen=True, slots=True)
class CircuitBreakerConfig:
    """Configuration for a circuit breaker.

    Attributes:
        failure_threshold: Consecutive failures in CLOSED before opening (default: 5).
        open_duration_ms: Milliseconds to stay OPEN before probing (default: 30000).
        success_threshold: Successes in HALF_OPEN required to close (default: 3).
    """

    failure_threshold: int = 5
    open_duration_ms: float = 30_000.0
    success_threshold: int = 3

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        if self.open_duration_ms < 0:
            raise ValueError("open_duration_ms must be non-negative")
        if self.success_threshold < 1:
            raise ValueError("success_threshold must be at least 1")

    @property
    def open_duration(self) -> float:
        """Open duration in seconds."""
        return self.open_duration_ms / 1000.0

    @classmethod
    def from_env(cls, name: str) -> CircuitBreakerConfig:
        """Load configuration from CIRCUIT_BREAKER_*_<NAME> environment variables."""
        suffix = name.upper()
        return cls(
            failure_threshold=int(
                os.getenv(f"CIRCUIT_BREAKER_FAILURE_THRESHOLD_{suffix}", "5")
            ),
            open_duration_ms=float(
                os.getenv(f"CIRCUIT_BREAKER_OPEN_DURATION_MS_{suffix}", "30000")
            ),
            success_threshold=int(
                os.getenv(f"CIRCUIT_BREAKER_SUCCESS_THRESHOLD_{suffix}", "3")
            ),
        )
