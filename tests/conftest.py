"""
Shared test fixtures.

Each test gets its own SQLite file database (via aiosqlite) so the suite
runs without Docker / PostgreSQL / Redis.  Sessions opened by the
dispatcher and by the test share the file, which is what the ride locks
and conditional updates need to be exercised for real.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from ride_dispatch.config import Settings
from ride_dispatch.domain.enums import ActorRole
from ride_dispatch.infrastructure.database import (
    build_engine,
    build_session_factory,
    create_schema,
)
from ride_dispatch.infrastructure.models import UserModel
from ride_dispatch.services.dispatcher import RideDispatcher


# ── Geography used across tests (Dakar) ───────────────────────────────

ORIGIN = (14.6928, -17.4467)
DESTINATION = (14.7167, -17.4677)
NEAR = (14.7000, -17.4500)  # ~0.9 km from ORIGIN
MID = (14.7800, -17.4467)  # ~9.7 km from ORIGIN
FAR = (15.1500, -16.9000)  # ~78 km from ORIGIN


# ── Test doubles ──────────────────────────────────────────────────────


class RecordingConnection:
    """Stands in for a socket: records every event pushed to it."""

    def __init__(self, fail: bool = False):
        self.handle_id = uuid.uuid4().hex
        self.fail = fail
        self.events: list[tuple[str, dict]] = []

    async def send_event(self, event: str, data: dict) -> None:
        if self.fail:
            raise ConnectionError("socket closed")
        self.events.append((event, data))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]

    def of(self, event: str) -> list[dict]:
        return [data for name, data in self.events if name == event]


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


# ── Fixtures ──────────────────────────────────────────────────────────


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}"


@pytest.fixture
def test_settings(database_url) -> Settings:
    return Settings(
        database_url=database_url,
        create_schema_on_startup=False,
        ride_lock_backend="local",
        disconnect_grace_seconds=0.05,
        run_presence_monitor=False,
        rate_limit_enabled=False,
        min_proposal_price=100,
    )


@pytest_asyncio.fixture
async def engine(database_url) -> AsyncGenerator[AsyncEngine, None]:
    engine = build_engine(database_url)
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def users(session_factory) -> dict[str, int]:
    """Seed the user directory; returns ids by nickname."""
    rows = {
        "passenger": UserModel(
            name="Awa Diop", phone="+221700000001", role=ActorRole.PASSENGER, balance=10000
        ),
        "broke_passenger": UserModel(
            name="Ibrahima Fall", phone="+221700000002", role=ActorRole.PASSENGER, balance=0
        ),
        "driver": UserModel(
            name="Ousmane Sy",
            phone="+221710000001",
            role=ActorRole.DRIVER,
            vehicle_details={"model": "Toyota Corolla", "plate": "DK-1021-A"},
        ),
        "driver2": UserModel(name="Mamadou Kane", phone="+221710000002", role=ActorRole.DRIVER),
        "driver3": UserModel(name="Babacar Mbaye", phone="+221710000003", role=ActorRole.DRIVER),
        "blocked_driver": UserModel(
            name="Modou Sow", phone="+221710000008", role=ActorRole.DRIVER, is_blocked=True
        ),
        "admin": UserModel(name="Dispatch Admin", phone="+221799999999", role=ActorRole.ADMIN),
    }
    async with session_factory() as session:
        session.add_all(rows.values())
        await session.commit()
        return {key: user.id for key, user in rows.items()}


@pytest_asyncio.fixture
async def dispatcher(test_settings, session_factory) -> AsyncGenerator[RideDispatcher, None]:
    dispatcher = RideDispatcher(test_settings, session_factory)
    yield dispatcher
    await dispatcher.close()


@pytest.fixture
def make_connection():
    return RecordingConnection


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
