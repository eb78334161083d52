"""SQLite user store with order-preserving bulk inserts using aiosqlite."""

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Self

import aiosqlite

from scaled_backend.models import User
from scaled_backend.persistence.base import DuplicateRecordError, UserStore

UPDATABLE_FIELDS = frozenset({"name", "email"})

logger = logging.getLogger(__name__)


def _is_unique_violation(exc: BaseException) -> bool:
    return isinstance(exc, aiosqlite.IntegrityError) and "UNIQUE constraint failed" in str(exc)


@dataclass
class SqliteUserStoreConfig:
    """Configuration for SqliteUserStore.

    Attributes:
        db_path: Path to the SQLite database file (":memory:" for a private database).
        table_name: Name of the users table.
    """

    db_path: Path | str
    table_name: str = "users"


class SqliteUserStore(UserStore):
    """User store backed by SQLite.

    `bulk_insert` runs every row of a batch inside a single transaction and
    returns the inserted records in input order, which is what the write
    queue's positional matching relies on.

    Example:
        ```python
        async with SqliteUserStore(SqliteUserStoreConfig("users.db")) as store:
            users = await store.bulk_insert([{"name": "Ada", "email": "ada@example.com"}])
        ```
    """

    def __init__(self, config: SqliteUserStoreConfig) -> None:
        """Initialize the store.

        Args:
            config: Store configuration.
        """
        self._config = config
        self._db: aiosqlite.Connection | None = None
        self._closed = False
        self._lock = asyncio.Lock()
        self._open_lock = asyncio.Lock()

    async def __aenter__(self) -> Self:
        """Enter async context manager and open the database.

        Returns:
            Self for context manager protocol.
        """
        await self._connection()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Exit async context manager and close the database."""
        await self.close()

    @property
    def _columns(self) -> str:
        return "id, name, email, created_at"

    async def _open(self) -> aiosqlite.Connection:
        """Open the SQLite database connection and prepare the schema."""
        db = await aiosqlite.connect(
            self._config.db_path,
            isolation_level=None,
        )
        try:
            db.row_factory = aiosqlite.Row
            await db.execute("PRAGMA journal_mode = WAL")
            await db.execute("PRAGMA synchronous = NORMAL")
            await self._ensure_schema(db)
        except BaseException:
            await db.close()
            raise
        return db

    async def _ensure_schema(self, db: aiosqlite.Connection) -> None:
        """Create the users table and indexes if they don't exist."""
        table_name = self._config.table_name
        await db.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {table_name} (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                email TEXT NOT NULL UNIQUE,
                created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                updated_at TEXT
            )
            """
        )
        await db.execute(
            f"CREATE INDEX IF NOT EXISTS idx_{table_name}_created_at ON {table_name}(created_at)"
        )

    async def _connection(self) -> aiosqlite.Connection:
        if self._closed:
            raise RuntimeError("Cannot use a closed store")
        if self._db is not None:
            return self._db

        async with self._open_lock:
            # Concurrent first callers share the connection opened by the first one
            if self._db is None:
                self._db = await self._open()
            return self._db

    async def _rollback(self, db: aiosqlite.Connection) -> None:
        # Shielded so a second cancellation cannot leave the transaction open.
        try:
            await asyncio.shield(db.execute("ROLLBACK"))
        except aiosqlite.OperationalError as exc:
            logger.warning(json.dumps({"event": "sqlite_rollback_failed", "error": repr(exc)}))

    async def bulk_insert(self, rows: list[dict[str, Any]]) -> list[User]:
        """Insert all rows in one transaction.

        Args:
            rows: Mappings with `name` and `email`.

        Returns:
            Inserted users, in the same order as `rows`.

        Raises:
            DuplicateRecordError: If a row violates a unique constraint.
            aiosqlite.IntegrityError: If a row violates any other constraint.

        On any error, cancellation included, the whole transaction is rolled back.
        """
        if not rows:
            return []

        db = await self._connection()
        table_name = self._config.table_name
        inserted: list[User] = []

        async with self._lock:
            try:
                await db.execute("BEGIN TRANSACTION")
                for row in rows:
                    result = await db.execute_fetchall(
                        f"""
                        INSERT INTO {table_name} (name, email)
                        VALUES (:name, :email)
                        RETURNING {self._columns}
                        """,
                        {"name": row.get("name"), "email": row.get("email")},
                    )
                    inserted.extend(User.from_dict(dict(r)) for r in result)
                await db.execute("COMMIT")
            except BaseException as exc:
                await self._rollback(db)
                if _is_unique_violation(exc):
                    raise DuplicateRecordError(str(exc)) from exc
                raise

        return inserted

    async def get(self, user_id: int) -> User | None:
        """Fetch a user by id."""
        db = await self._connection()
        async with self._lock:
            rows = await db.execute_fetchall(
                f"SELECT {self._columns} FROM {self._config.table_name} WHERE id = ?",
                (user_id,),
            )
        rows = list(rows)
        return User.from_dict(dict(rows[0])) if rows else None

    async def update(self, user_id: int, fields: dict[str, Any]) -> User | None:
        """Update `name` and/or `email` of a user.

        Raises:
            ValueError: If `fields` names a column that cannot be updated.
            DuplicateRecordError: If the new email belongs to another user.
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        if not fields:
            return await self.get(user_id)

        assignments = ", ".join(f"{name} = :{name}" for name in sorted(fields))
        db = await self._connection()
        async with self._lock:
            try:
                rows = await db.execute_fetchall(
                    f"""
                    UPDATE {self._config.table_name}
                    SET {assignments}, updated_at = CURRENT_TIMESTAMP
                    WHERE id = :id
                    RETURNING {self._columns}
                    """,
                    {**fields, "id": user_id},
                )
            except aiosqlite.IntegrityError as exc:
                if _is_unique_violation(exc):
                    raise DuplicateRecordError(str(exc)) from exc
                raise
        rows = list(rows)
        return User.from_dict(dict(rows[0])) if rows else None

    async def delete(self, user_id: int) -> bool:
        """Delete a user by id. Returns False when no row matched."""
        db = await self._connection()
        async with self._lock:
            cursor = await db.execute(
                f"DELETE FROM {self._config.table_name} WHERE id = ?",
                (user_id,),
            )
            deleted = cursor.rowcount > 0
            await cursor.close()
        return deleted

    async def count(self) -> int:
        """Number of stored users."""
        db = await self._connection()
        async with self._lock:
            rows = list(
                await db.execute_fetchall(f"SELECT COUNT(*) FROM {self._config.table_name}")
            )
        return int(rows[0][0])

    async def close(self) -> None:
        """Close the store and release resources."""
        if self._closed:
            return

        self._closed = True

        if self._db:
            await self._db.close()
            self._db = None
