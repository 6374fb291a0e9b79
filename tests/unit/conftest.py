"""Shared fixtures: an in-memory MongoDB and a controllable clock."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from mongomock_motor import AsyncMongoMockClient

from src.storage.mongo import ensure_indexes


class FakeClock:
    """Deterministic clock; whole seconds so BSON round-trips are exact."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def db():
    client = AsyncMongoMockClient()
    database = client["growth_test"]
    await ensure_indexes(database)
    return database
