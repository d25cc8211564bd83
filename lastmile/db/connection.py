"""Database connection management for the coordination store.

Provides synchronous database access using SQLAlchemy. Supports SQLite for
development and single-node deployments; any SQLAlchemy URL with
conditional UPDATE support (PostgreSQL, MySQL) works for production.

Usage:
    from lastmile.db.connection import get_db_context, init_db

    init_db()  # Create tables
    with get_db_context() as db:
        ...  # use db session
"""

import logging
import os
from collections.abc import Generator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy import Engine, create_engine, event, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from lastmile.db.models import Base

if TYPE_CHECKING:
    from lastmile.config import LastmileConfig

logger = logging.getLogger(__name__)


# Configuration
def get_database_url() -> str:
    """Get database URL from environment or use default SQLite.

    Precedence:
    1. DATABASE_URL (canonical)
    2. LASTMILE_DB_PATH (converted to sqlite URL)
    3. sqlite:///<platform data dir>/lastmile.db
    """
    database_url = os.environ.get("DATABASE_URL", "").strip()
    if database_url:
        return database_url

    db_path = os.environ.get("LASTMILE_DB_PATH", "").strip()
    if db_path:
        if db_path.startswith("sqlite:"):
            return db_path
        return f"sqlite:///{db_path}"

    from lastmile.utils.paths import ensure_dirs_exist, get_default_db_path

    ensure_dirs_exist()
    return f"sqlite:///{get_default_db_path()}"


def _busy_timeout_seconds() -> int:
    raw = os.environ.get("LASTMILE_DATABASE_BUSY_TIMEOUT_SECONDS", "30").strip()
    try:
        return max(1, int(raw))
    except ValueError:
        return 30


def create_store_engine(
    url: str,
    echo: bool = False,
    busy_timeout_seconds: int = 30,
) -> Engine:
    """Create an engine with the store's connection settings applied.

    For SQLite, enables:
    - foreign_keys=ON: Referential integrity (disabled by default in SQLite).
    - journal_mode=WAL: Concurrent readers plus a single writer, so HTTP
      handlers and the reminder sweeper can share one file.
    - synchronous=NORMAL: Durable after WAL fsync.
    - busy_timeout: Writers wait for the lock instead of failing fast.
    """
    is_sqlite = url.startswith("sqlite")
    connect_args: dict[str, Any] = {}
    if is_sqlite:
        connect_args = {
            "check_same_thread": False,
            "timeout": busy_timeout_seconds,
        }
    engine = create_engine(url, connect_args=connect_args, echo=echo)

    if is_sqlite:

        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            if ":memory:" not in url:
                cursor.execute("PRAGMA journal_mode=WAL;")
            cursor.execute("PRAGMA synchronous=NORMAL;")
            cursor.execute(f"PRAGMA busy_timeout={busy_timeout_seconds * 1000};")
            cursor.close()

    return engine


def engine_from_config(config: "LastmileConfig") -> Engine:
    """Create an engine from the `database` section of a LastmileConfig.

    An unset database.url falls back to get_database_url().
    """
    settings = config.database
    return create_store_engine(
        settings.url or get_database_url(),
        echo=settings.echo,
        busy_timeout_seconds=settings.busy_timeout_seconds,
    )


# Engine creation
DATABASE_URL = get_database_url()

engine = create_store_engine(
    DATABASE_URL,
    echo=os.environ.get("SQL_ECHO", "").lower() == "true",
    busy_timeout_seconds=_busy_timeout_seconds(),
)

# Session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)


def get_db() -> Generator[Session, None, None]:
    """Yield a database session for request-scoped use.

    Yields:
        Session: SQLAlchemy session that will be closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """Context manager for database sessions outside of request handlers.

    Usage:
        with get_db_context() as db:
            task = ManualTaskService(db).get_task(task_id)
    """
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


# Initialization functions

_INDEX_STATEMENTS = [
    "CREATE INDEX IF NOT EXISTS idx_delivery_snapshots_delivery_id "
    "ON delivery_snapshots (delivery_id)",
    "CREATE INDEX IF NOT EXISTS idx_delivery_snapshots_business_date "
    "ON delivery_snapshots (business_date)",
    "CREATE INDEX IF NOT EXISTS idx_delivery_snapshots_provider_code "
    "ON delivery_snapshots (provider_code)",
    "CREATE INDEX IF NOT EXISTS idx_manual_tasks_status "
    "ON manual_coordination_tasks (task_status)",
    "CREATE INDEX IF NOT EXISTS idx_manual_tasks_next_reminder "
    "ON manual_coordination_tasks (next_reminder_due)",
]


def _ensure_indexes(conn: Any) -> None:
    """Create the query indexes if an older schema lacks them.

    Idempotent, safe to call on every startup. Failures are logged and
    skipped so a partially migrated store still starts.
    """
    if conn.dialect.name != "sqlite":
        return
    for stmt in _INDEX_STATEMENTS:
        try:
            conn.execute(text(stmt))
        except OperationalError as e:
            logger.warning("Index creation skipped: %s", e)


def init_db(bind: Engine | None = None) -> None:
    """Create all database tables synchronously.

    Safe to call multiple times - will not recreate existing tables.

    Args:
        bind: Engine to initialize. Defaults to the module engine.
    """
    target = bind or engine
    Base.metadata.create_all(bind=target)
    with target.begin() as conn:
        _ensure_indexes(conn)


def close_db() -> None:
    """Close the sync engine and dispose of connection pool."""
    engine.dispose()
