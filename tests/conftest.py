"""Pytest configuration and fixtures for scaled-backend tests."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Any

import pytest

from scaled_backend.models import User


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeUserStore:
    """In-memory UserStore that records every bulk submission."""

    def __init__(self) -> None:
        self.users: dict[int, User] = {}
        self.bulk_calls: list[list[dict[str, Any]]] = []
        self.fail_with: Exception | None = None
        self.truncate_output = False
        self.gate: asyncio.Event | None = None
        self._next_id = 1

    @property
    def bulk_sizes(self) -> list[int]:
        return [len(rows) for rows in self.bulk_calls]

    async def bulk_insert(self, rows: list[dict[str, Any]]) -> list[User]:
        self.bulk_calls.append(list(rows))
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with

        inserted = []
        for row in rows:
            user = User(
                id=self._next_id,
                name=row["name"],
                email=row["email"],
                created_at="2026-01-01 00:00:00",
            )
            self.users[user.id] = user
            inserted.append(user)
            self._next_id += 1

        if self.truncate_output:
            return inserted[:-1]
        return inserted

    async def get(self, user_id: int) -> User | None:
        return self.users.get(user_id)

    async def update(self, user_id: int, fields: dict[str, Any]) -> User | None:
        user = self.users.get(user_id)
        if user is None:
            return None
        updated = User(
            id=user.id,
            name=fields.get("name", user.name),
            email=fields.get("email", user.email),
            created_at=user.created_at,
        )
        self.users[user_id] = updated
        return updated

    async def delete(self, user_id: int) -> bool:
        return self.users.pop(user_id, None) is not None

    async def close(self) -> None:
        pass


@pytest.fixture()
def fake_clock() -> FakeClock:
    """Provide a manually advanced clock starting at t=1000s."""
    return FakeClock()


@pytest.fixture()
def fake_store() -> FakeUserStore:
    """Provide an in-memory user store that records bulk calls."""
    return FakeUserStore()


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    """Provide a path for a temporary SQLite database."""
    return tmp_path / "users.db"


@pytest.fixture(autouse=True)
def _clear_breaker_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep CIRCUIT_BREAKER_* / WRITE_QUEUE_* settings from the host out of tests."""
    for key in list(os.environ):
        if key.startswith(("CIRCUIT_BREAKER_", "WRITE_QUEUE_")):
            monkeypatch.delenv(key, raising=False)
