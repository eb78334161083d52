"""User service composing cache-aside reads, write-behind creates and guarded updates."""

import json
import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from scaled_backend.models import User, WriteIntent
from scaled_backend.patterns.circuit_breaker import CircuitBreaker
from scaled_backend.patterns.registry import CircuitBreakerRegistry, default_registry
from scaled_backend.patterns.write_queue import BatchSubmissionError, WriteQueue
from scaled_backend.persistence.base import (
    CacheBackend,
    DuplicateRecordError,
    RecordNotFoundError,
    UserStore,
)

T = TypeVar("T")

CACHE_TTL_SECONDS = 120

logger = logging.getLogger(__name__)


def user_key(user_id: int | str) -> str:
    """Cache key for a user. Short keys keep cache memory down."""
    return f"u:{user_id}"


class EmailTakenError(Exception):
    """Raised when a write violates the unique email constraint."""

    def __init__(self, email: str | None) -> None:
        super().__init__(f"Email already taken: {email}" if email else "Email already taken")
        self.email = email


@dataclass
class ServiceMetrics:
    """Request counters for the user service."""

    requests: int
    cache_hits: int
    cache_misses: int
    db_queries: int
    errors: int


@dataclass(frozen=True, slots=True)
class UserLookup:
    """Result of a user read.

    Attributes:
        user: The user record.
        cache_hit: True when served from the cache.
    """

    user: User
    cache_hit: bool


class UserService:
    """
    Request-handling facade for the user resource.

    - Reads are cache-aside: cache first (a failing cache counts as a miss),
      then the store, then the cache is populated.
    - Creates go through the batching write queue.
    - Updates and deletes hit the store directly and invalidate the cache.

    Every store call is guarded by the database breaker and every cache call
    by the cache breaker, whose fallbacks make cache outages non-fatal.

    Args:
        store: User store for reads, updates and deletes.
        cache: Cache backend in front of the store.
        write_queue: Queue that batches creates. If it has no breaker, the
            database breaker is attached to it.
        db_breaker: Breaker guarding the store. Defaults to the registry's "postgres".
        cache_breaker: Breaker guarding the cache. Defaults to the registry's "redis".
        cache_ttl: Cache TTL in seconds. Defaults to USER_CACHE_TTL_SECONDS or 120.
        registry: Registry used for default breakers.
    """

    def __init__(
        self,
        store: UserStore,
        cache: CacheBackend,
        write_queue: WriteQueue,
        *,
        db_breaker: CircuitBreaker | None = None,
        cache_breaker: CircuitBreaker | None = None,
        cache_ttl: int | None = None,
        registry: CircuitBreakerRegistry | None = None,
    ) -> None:
        registry = registry or default_registry()
        self._store = store
        self._cache = cache
        self._write_queue = write_queue
        self._db_breaker = db_breaker or registry.guarded("postgres")
        self._cache_breaker = cache_breaker or registry.guarded("redis")
        self._cache_ttl = cache_ttl or int(
            os.getenv("USER_CACHE_TTL_SECONDS", str(CACHE_TTL_SECONDS))
        )

        # Bulk inserts must trip the same circuit as every other store call.
        if write_queue.circuit_breaker is None:
            write_queue.circuit_breaker = self._db_breaker
        elif write_queue.circuit_breaker is not self._db_breaker:
            logger.warning(
                json.dumps(
                    {
                        "event": "write_queue_breaker_mismatch",
                        "queue_breaker": write_queue.circuit_breaker.name,
                        "db_breaker": self._db_breaker.name,
                    }
                )
            )

        self._requests = 0
        self._cache_hits = 0
        self._cache_misses = 0
        self._db_queries = 0
        self._errors = 0

    def _query(self, call: Callable[[], Awaitable[T]]) -> Callable[[], Awaitable[T]]:
        async def run() -> T:
            self._db_queries += 1
            return await call()

        return run

    async def _cache_get(self, key: str) -> Any | None:
        return await self._cache_breaker.execute(lambda: self._cache.get(key), fallback=lambda: None)

    async def _cache_set(self, key: str, value: Any) -> None:
        await self._cache_breaker.execute(
            lambda: self._cache.set(key, value, self._cache_ttl),
            fallback=lambda: None,
        )

    async def _invalidate(self, user_id: int) -> None:
        key = user_key(user_id)
        await self._cache_breaker.execute(lambda: self._cache.delete(key), fallback=lambda: None)

    async def get_user(self, user_id: int) -> UserLookup:
        """Read a user, cache first.

        Raises:
            RecordNotFoundError: If no such user exists.
            CircuitOpenError: If the store is unavailable and fast-failed.
        """
        self._requests += 1
        key = user_key(user_id)

        cached = await self._cache_get(key)
        if cached is not None:
            self._cache_hits += 1
            return UserLookup(user=User.from_dict(cached), cache_hit=True)

        self._cache_misses += 1

        try:
            user = await self._db_breaker.execute(self._query(lambda: self._store.get(user_id)))
        except Exception:
            self._errors += 1
            raise

        if user is None:
            raise RecordNotFoundError(user_id)

        await self._cache_set(key, user.to_dict())
        return UserLookup(user=user, cache_hit=False)

    async def create_user(self, name: str, email: str) -> User:
        """Create a user through the write queue.

        Raises:
            EmailTakenError: If the batch carrying this create hit a unique violation.
            BatchSubmissionError: If the batch failed for any other reason.
        """
        self._requests += 1
        try:
            user: User = await self._write_queue.enqueue(WriteIntent.create(name, email))
        except BatchSubmissionError as exc:
            self._errors += 1
            if isinstance(exc.cause, DuplicateRecordError):
                raise EmailTakenError(email) from exc
            raise
        except Exception:
            self._errors += 1
            raise
        return user

    async def update_user(self, user_id: int, **fields: Any) -> User:
        """Update a user and invalidate its cache entry.

        Raises:
            RecordNotFoundError: If no such user exists.
            EmailTakenError: If the new email belongs to another user.
        """
        self._requests += 1
        try:
            user = await self._db_breaker.execute(
                self._query(lambda: self._store.update(user_id, fields))
            )
        except DuplicateRecordError as exc:
            self._errors += 1
            raise EmailTakenError(fields.get("email")) from exc
        except Exception:
            self._errors += 1
            raise

        if user is None:
            raise RecordNotFoundError(user_id)

        await self._invalidate(user_id)
        return user

    async def delete_user(self, user_id: int) -> None:
        """Delete a user and invalidate its cache entry.

        Raises:
            RecordNotFoundError: If no such user exists.
        """
        self._requests += 1
        try:
            found = await self._db_breaker.execute(
                self._query(lambda: self._store.delete(user_id))
            )
        except Exception:
            self._errors += 1
            raise

        if not found:
            raise RecordNotFoundError(user_id)

        await self._invalidate(user_id)

    def health(self) -> dict[str, str]:
        """Circuit states of the guarded dependencies, for health reporting."""
        return {
            self._db_breaker.name: self._db_breaker.state.value,
            self._cache_breaker.name: self._cache_breaker.state.value,
        }

    def get_metrics(self) -> ServiceMetrics:
        """Get current request counters."""
        return ServiceMetrics(
            requests=self._requests,
            cache_hits=self._cache_hits,
            cache_misses=self._cache_misses,
            db_queries=self._db_queries,
            errors=self._errors,
        )
