"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import os

# ---------------------------------------------------------------------------
# Ensure a valid JWT_SECRET is always set for test runs.
# This must happen before any import of scorebank.api.deps which validates
# the secret at module-load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

from datetime import UTC, datetime, timedelta  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import Engine, create_engine  # noqa: E402

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite doesn't support JSONB natively, but SQLAlchemy's JSON type works.
# We register a custom type compiler so SQLite renders JSONB as TEXT.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

from scorebank.database.models import Base  # noqa: E402
from scorebank.database.seed import seed_default_settings  # noqa: E402
from scorebank.engine.cache import ConfigCache  # noqa: E402
from scorebank.engine.feed import ScoreFeed  # noqa: E402
from scorebank.engine.presence import PresenceTracker  # noqa: E402
from scorebank.services.context import ScoreContext  # noqa: E402

_jsonb_sqlite_registered = False

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


def _register_jsonb_sqlite_compat():
    """Register SQLite compilation for PG JSONB type (idempotent).

    Also maps BigInteger → INTEGER so autoincrement works on SQLite.
    """
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy import BigInteger
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    @compiles(BigInteger, "sqlite")
    def _compile_bigint_as_integer(type_, compiler, **kw):
        return "INTEGER"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()


class FakeClock:
    """Mutable clock shared by the context and the presence tracker."""

    def __init__(self, start: datetime = T0) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta: float) -> datetime:
        self.current += timedelta(**delta)
        return self.current

    def set(self, when: datetime) -> None:
        self.current = when


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all Scorebank tables and
    default settings.

    JSONB columns are transparently mapped to TEXT for SQLite compatibility.
    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` and the threaded transfer tests).
    """
    from sqlalchemy.pool import StaticPool

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    seed_default_settings(engine)
    return engine


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a transactional session that rolls back after each test."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ctx(db_engine: Engine, clock: FakeClock) -> ScoreContext:
    cache = ConfigCache(db_engine)
    cache.load_all()
    return ScoreContext(
        engine=db_engine,
        cache=cache,
        presence=PresenceTracker(heartbeat_timeout_seconds=90, clock=clock),
        feed=ScoreFeed(queue_size=16),
        clock=clock,
    )


@pytest.fixture
def collected(ctx: ScoreContext) -> list:
    """Every ScoreUpdate published on the context's feed."""
    updates: list = []
    ctx.feed.add_listener(updates.append)
    return updates


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------
def _token(payload: dict) -> str:
    import jwt

    from scorebank.api.deps import JWT_ALGORITHM, JWT_SECRET

    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def make_admin_token(sub: str = "admin-1") -> str:
    """Create an admin JWT.  Usable as both a fixture and a factory function."""
    return _token({"sub": sub, "is_admin": True})


def make_service_token(sub: str = "payments") -> str:
    return _token({"sub": sub, "is_service": True})


def make_user_token(sub: str = "u1") -> str:
    return _token({"sub": sub})


def auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_token():
    return make_admin_token()


@pytest.fixture
def service_token():
    return make_service_token()


@pytest.fixture
def client(ctx: ScoreContext):
    """FastAPI TestClient bound to the test context.

    Not entered as a context manager, so the lifespan (real engine,
    periodic tasks) never runs.
    """
    from fastapi.testclient import TestClient

    from scorebank.api.deps import get_context
    from scorebank.api.main import app

    app.dependency_overrides[get_context] = lambda: ctx
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()
