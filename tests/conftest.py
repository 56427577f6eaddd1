"""Global test fixtures and shared test infrastructure.

Provides:
- Environment variable defaults (must be set before any app import)
- FakeResult / FakeAsyncSession matching the SQLAlchemy interface the routers touch
- An in-memory SQLite engine (aiosqlite + StaticPool) so store code runs real SQL
- A file-backed SQLite session factory for tests that need separate connections
- Session token and envelope helpers
"""

from __future__ import annotations

import base64
import os

# Environment defaults. Must be set before importing the app, which validates
# keys and builds the engine on import.
TEST_MASTER_KEY = bytes(range(32))
TEST_INDEX_KEY = bytes(range(32, 64))
TEST_SESSION_SECRET = "test-session-secret-with-enough-entropy"

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("REDIS_URL", "memory://")
os.environ.setdefault("SESSION_JWT_SECRET", TEST_SESSION_SECRET)
os.environ.setdefault("ENCRYPTION_MASTER_KEY_B64", base64.b64encode(TEST_MASTER_KEY).decode())
os.environ.setdefault("ENCRYPTION_INDEX_KEY_B64", base64.b64encode(TEST_INDEX_KEY).decode())
os.environ.setdefault("TRUSTED_DEVICE_SECRET", "trusted-device-test-secret-0123456789abcdef")
os.environ.setdefault("COOKIE_SECURE", "false")

from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from uuid import uuid4

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from jose import jwt
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy import event
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool, StaticPool

from authgate import models  # noqa: F401  registers tables on Base.metadata
from authgate.core.limiter import limiter
from authgate.core.settings import settings
from authgate.db.base import Base
from authgate.db.session import get_db
from authgate.main import app
from authgate.services.envelope import DekCache, EnvelopeEncryptionService
from authgate.services.trusted_devices import DeviceCookieSigner, TrustedDeviceLedger


# ---------------------------------------------------------------------------
# Sentinel
# ---------------------------------------------------------------------------

_UNSET = object()


# ---------------------------------------------------------------------------
# FakeResult / FakeAsyncSession: mimics sqlalchemy for router tests
# ---------------------------------------------------------------------------


class FakeScalarResult:
    """Mimics the object returned by ``Result.scalars()``."""

    def __init__(self, items: list | None = None) -> None:
        self._items = list(items or [])

    def all(self) -> list:
        return list(self._items)

    def first(self):
        return self._items[0] if self._items else None


class FakeResult:
    def __init__(self, *, scalar: Any = _UNSET, rows: list | None = None, items: list | None = None) -> None:
        self._scalar = scalar
        self._rows = rows or []
        self._items = items or []

    def scalar_one_or_none(self):
        if self._scalar is _UNSET:
            return None
        return self._scalar

    def scalar(self):
        return self.scalar_one_or_none()

    def scalars(self) -> FakeScalarResult:
        return FakeScalarResult(self._items)

    def first(self):
        if self._rows:
            return self._rows[0]
        return None

    def all(self) -> list:
        return list(self._rows)


class FakeAsyncSession:
    """Fake ``AsyncSession`` implementing the methods production code calls.

    Configure responses via ``on_execute`` / ``on_execute_return``.
    """

    def __init__(self) -> None:
        self.added: list[Any] = []
        self.committed: bool = False
        self._execute_handlers: list[Callable] = []
        self._default_result = FakeResult()

    def on_execute(self, handler: Callable) -> FakeAsyncSession:
        """Register a handler: ``handler(stmt) -> FakeResult | None``."""
        self._execute_handlers.append(handler)
        return self

    def on_execute_return(self, result: FakeResult) -> FakeAsyncSession:
        self._execute_handlers.append(lambda _stmt: result)
        return self

    async def execute(self, stmt, *args, **kwargs):
        for handler in self._execute_handlers:
            result = handler(stmt)
            if result is not None:
                return result
        return self._default_result

    def add(self, obj: Any) -> None:
        self.added.append(obj)
        if hasattr(obj, "id") and getattr(obj, "id", None) is None:
            obj.id = uuid4()

    async def flush(self) -> None:
        pass

    async def commit(self) -> None:
        self.committed = True

    async def rollback(self) -> None:
        pass


# ---------------------------------------------------------------------------
# SQLite engines
# ---------------------------------------------------------------------------


def _enable_sqlite_savepoints(engine) -> None:
    """Let SQLAlchemy own BEGIN so SAVEPOINT/RELEASE behave as on PostgreSQL."""

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


@pytest_asyncio.fixture
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    _enable_sqlite_savepoints(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine):
    factory = async_sessionmaker(db_engine, expire_on_commit=False, autoflush=False)
    async with factory() as session:
        yield session


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """Separate connections per session, for tests that race two transactions."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'authgate.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 15},
    )
    _enable_sqlite_savepoints(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False, autoflush=False)
    await engine.dispose()


# ---------------------------------------------------------------------------
# Domain helpers
# ---------------------------------------------------------------------------


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def envelope(clock) -> EnvelopeEncryptionService:
    return EnvelopeEncryptionService(TEST_MASTER_KEY, TEST_INDEX_KEY, cache=DekCache(600, clock=clock))


@pytest.fixture
def ledger() -> TrustedDeviceLedger:
    return TrustedDeviceLedger(DeviceCookieSigner("current-device-secret-" + "x" * 20), trust_days=30)


def make_session_token(
    identity_id: str = "user-1",
    *,
    aal: str = "aal1",
    email: str | None = "user@example.com",
    expires_in: int = 3600,
    secret: str | None = None,
) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": identity_id,
        "aal": aal,
        "aud": settings.session_jwt_audience,
        "session_id": "session-1",
        "email": email,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=expires_in)).timestamp()),
    }
    return jwt.encode(payload, secret or settings.session_jwt_secret, algorithm=settings.session_jwt_algorithm)


def auth_headers(identity_id: str = "user-1", *, aal: str = "aal1") -> dict[str, str]:
    return {"Authorization": f"Bearer {make_session_token(identity_id, aal=aal)}"}


# ---------------------------------------------------------------------------
# Shared pytest fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _disable_rate_limiter():
    """Replace the shared limiter storage with a fresh in-memory one for every test."""
    original = app.state.limiter
    app.state.limiter = Limiter(
        key_func=get_remote_address,
        storage_uri="memory://",
    )
    limiter.reset()
    yield
    app.state.limiter = original


@pytest.fixture
def fake_db() -> FakeAsyncSession:
    return FakeAsyncSession()


@pytest.fixture
def override_db(fake_db):
    async def _get_db():
        yield fake_db

    app.dependency_overrides[get_db] = _get_db
    yield fake_db
    app.dependency_overrides.clear()


@pytest.fixture
def client(override_db) -> TestClient:
    return TestClient(app)
