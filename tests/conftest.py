"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import os

# ---------------------------------------------------------------------------
# Ensure a valid JWT_SECRET is always set for test runs.
# This must happen before any import of pulse.api.deps which validates
# the secret at module-load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

from datetime import UTC, datetime, timedelta  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import Engine, create_engine  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

from pulse.database.models import Base  # noqa: E402

# A fixed Tuesday well in the past, so reset clamping never interferes
T0 = datetime(2026, 3, 10, 9, 0, tzinfo=UTC)


class FakeClock:
    """Mutable "now" for code that takes a ``clock`` callable."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def db_engine(tmp_path) -> Engine:
    """Create a temporary file-backed SQLite engine with all Pulse tables.

    A file database lets each ``asyncio.to_thread`` worker used by ``run_db``
    check out its own connection, instead of concurrent threads sharing one
    connection (which corrupts SQLite savepoint state).
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'pulse-test.db'}",
        echo=False,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


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
def counters(db_engine):
    from pulse.services.counter_store import CounterStore

    return CounterStore(db_engine)


@pytest.fixture
def session_store(db_engine):
    from pulse.services.session_store import SessionStore

    return SessionStore(db_engine)


@pytest.fixture
def manager(session_store, counters, clock):
    """SessionManager with a 10-minute grace window and a fake clock."""
    from pulse.engine.sessions import SessionManager

    return SessionManager(session_store, counters, grace=timedelta(minutes=10), clock=clock)


@pytest.fixture
def admin_token():
    """Generate a valid admin JWT for use in API integration tests."""
    return make_admin_token()


def make_admin_token(sub: str = "99999", username: str = "FixtureAdmin") -> str:
    """Create an admin JWT.  Usable as both a fixture and a factory function."""
    import jwt

    from pulse.api.deps import JWT_ALGORITHM, JWT_SECRET

    return jwt.encode(
        {"sub": sub, "username": username, "is_admin": True},
        JWT_SECRET,
        algorithm=JWT_ALGORITHM,
    )
