"""Service layer for the delivery coordination core.

Provides the append-only delivery snapshot log, the manual coordination
task tracker and the workflow that ties them together.
"""

from lastmile.services.coordination import CoordinationService
from lastmile.services.manual_task_service import (
    TRANSITION_SOURCES,
    ManualTaskService,
    TaskQueryFilters,
)
from lastmile.services.snapshot_service import (
    ChainVerification,
    SnapshotQueryFilters,
    SnapshotService,
)
from lastmile.services.task_events import task_event_payload

__all__ = [
    "SnapshotService",
    "SnapshotQueryFilters",
    "ChainVerification",
    "ManualTaskService",
    "TaskQueryFilters",
    "TRANSITION_SOURCES",
    "CoordinationService",
    "task_event_payload",
]
