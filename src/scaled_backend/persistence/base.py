"""Base protocols for the storage and cache backends."""

from typing import Any, Protocol

from scaled_backend.models import User


class RecordNotFoundError(LookupError):
    """Raised when an update or delete targets a row that does not exist."""

    def __init__(self, record_id: int) -> None:
        super().__init__(f"Record {record_id} not found")
        self.record_id = record_id


class DuplicateRecordError(Exception):
    """Raised when a write violates a uniqueness constraint."""

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class UserStore(Protocol):
    """Protocol for relational storage backends holding user rows."""

    async def bulk_insert(self, rows: list[dict[str, Any]]) -> list[User]:
        """Insert rows in one operation. Output order matches input order."""
        ...

    async def get(self, user_id: int) -> User | None:
        """Fetch a single user, or None when absent."""
        ...

    async def update(self, user_id: int, fields: dict[str, Any]) -> User | None:
        """Update fields of a user. Returns None when absent."""
        ...

    async def delete(self, user_id: int) -> bool:
        """Delete a user. Returns False when absent."""
        ...

    async def close(self) -> None:
        """Close the store and release resources."""
        ...


class CacheBackend(Protocol):
    """Protocol for key/value caches sitting in front of the store."""

    async def get(self, key: str) -> Any | None:
        """Return the cached value, or None on a miss."""
        ...

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        """Store a value with a time-to-live."""
        ...

    async def delete(self, key: str) -> None:
        """Remove a key if present."""
        ...

    async def close(self) -> None:
        """Close the cache client and release resources."""
        ...
