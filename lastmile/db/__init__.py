"""Database module for delivery snapshot and manual task persistence."""

from lastmile.db.connection import (
    SessionLocal,
    create_store_engine,
    engine,
    engine_from_config,
    get_db,
    get_db_context,
    init_db,
)
from lastmile.db.models import (
    ACTIVE_STATUSES,
    BUSINESS_EVENT_TYPES,
    TERMINAL_STATUSES,
    DeliverySnapshot,
    ManualCoordinationTask,
    SnapshotType,
    TaskStatus,
    TaskType,
)

__all__ = [
    # Models
    "DeliverySnapshot",
    "ManualCoordinationTask",
    # Enums
    "SnapshotType",
    "TaskStatus",
    "TaskType",
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "BUSINESS_EVENT_TYPES",
    # Connection
    "engine",
    "SessionLocal",
    "create_store_engine",
    "engine_from_config",
    "get_db",
    "get_db_context",
    "init_db",
]
