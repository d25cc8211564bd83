"""Root-level pytest fixtures for all tests.

Provides shared fixtures:
- In-memory SQLite sessions for unit tests
- File-based SQLite databases for concurrent-writer tests
- A controllable clock and service instances bound to it
"""

import os

# Keep module-level engine creation in lastmile.db.connection away from the
# user's data directory.
os.environ.setdefault("LASTMILE_DB_PATH", "sqlite:///:memory:")

from collections.abc import Generator  # noqa: E402
from datetime import UTC, datetime, timedelta  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from lastmile.db.connection import create_store_engine, init_db  # noqa: E402
from lastmile.db.models import Base  # noqa: E402
from lastmile.services.manual_task_service import ManualTaskService  # noqa: E402
from lastmile.services.snapshot_service import SnapshotService  # noqa: E402


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests that take a long time to run"
    )


class FrozenClock:
    """Clock callable that only moves when a test advances it."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
def db_session() -> Generator[Session, None, None]:
    """In-memory database session, fresh per test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    session = sessionmaker(bind=engine, autoflush=False)()
    yield session
    session.close()
    engine.dispose()


@pytest.fixture
def file_session_factory(tmp_path) -> Generator[sessionmaker, None, None]:
    """Session factory over a file-based SQLite database.

    Each session gets its own connection, so threads holding separate
    sessions contend for the store exactly as separate processes would.
    """
    engine = create_store_engine(
        f"sqlite:///{tmp_path / 'lastmile-test.db'}", busy_timeout_seconds=10
    )
    init_db(engine)
    yield sessionmaker(bind=engine, autoflush=False)
    engine.dispose()


# ============================================================================
# Service Fixtures
# ============================================================================


@pytest.fixture
def clock() -> FrozenClock:
    """Clock pinned to 2024-03-15 09:00 UTC."""
    return FrozenClock(datetime(2024, 3, 15, 9, 0, tzinfo=UTC))


@pytest.fixture
def snapshots(db_session: Session, clock: FrozenClock) -> SnapshotService:
    return SnapshotService(db_session, clock=clock)


@pytest.fixture
def tasks(db_session: Session, clock: FrozenClock) -> ManualTaskService:
    return ManualTaskService(db_session, clock=clock)
