"""SQLAlchemy ORM models for the delivery coordination store.

This module defines the append-only delivery snapshot log and the manual
coordination task table. Uses SQLAlchemy 2.0 style with Mapped and
mapped_column.

Timestamps are stored as ISO8601 UTC strings with a fixed microsecond
width, so lexical ordering in the store equals chronological ordering.
"""

import json
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
)


def generate_uuid() -> str:
    """Generate a UUID4 string for primary keys."""
    return str(uuid4())


def to_iso(value: datetime) -> str:
    """Render a datetime as a fixed-width ISO8601 UTC string.

    Naive datetimes are assumed to already be in UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    """Parse a stored ISO8601 timestamp back into an aware datetime."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


def utc_now_iso() -> str:
    """Generate current UTC timestamp in ISO8601 format."""
    return to_iso(datetime.now(UTC))


# Enums matching the database schema constraints


class SnapshotType(str, Enum):
    """Kinds of delivery-affecting events recorded in the snapshot log."""

    created = "created"
    assigned = "assigned"
    picked_up = "picked_up"
    in_transit = "in_transit"
    delivered = "delivered"
    failed = "failed"
    cancelled = "cancelled"
    status_updated = "status_updated"
    provider_updated = "provider_updated"


BUSINESS_EVENT_TYPES: frozenset[SnapshotType] = frozenset(
    {
        SnapshotType.created,
        SnapshotType.assigned,
        SnapshotType.picked_up,
        SnapshotType.delivered,
        SnapshotType.failed,
        SnapshotType.cancelled,
    }
)
SUCCESSFUL_DELIVERY_TYPES: frozenset[SnapshotType] = frozenset(
    {SnapshotType.delivered}
)
FAILED_DELIVERY_TYPES: frozenset[SnapshotType] = frozenset(
    {SnapshotType.failed, SnapshotType.cancelled}
)


class TaskStatus(str, Enum):
    """Status values for manual coordination tasks.

    Lifecycle: pending -> in_progress -> completed/failed/cancelled
               pending -> completed/failed/cancelled
    """

    pending = "pending"
    in_progress = "in_progress"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


ACTIVE_STATUSES: frozenset[TaskStatus] = frozenset(
    {TaskStatus.pending, TaskStatus.in_progress}
)
TERMINAL_STATUSES: frozenset[TaskStatus] = frozenset(
    {TaskStatus.completed, TaskStatus.failed, TaskStatus.cancelled}
)


class TaskType(str, Enum):
    """Known manual coordination task tags.

    The task_type column is an open set; these are the tags the reminder
    policy knows intervals for.
    """

    pickup_call = "pickup_call"
    delivery_confirmation = "delivery_confirmation"
    cod_follow_up = "cod_follow_up"
    phone_coordination = "phone_coordination"
    app_booking = "app_booking"
    line_message = "line_message"
    email_coordination = "email_coordination"
    pickup_schedule = "pickup_schedule"


# SQLAlchemy Base


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def _decode_document(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        return {"raw": raw}
    return decoded if isinstance(decoded, dict) else {"value": decoded}


# Models


class DeliverySnapshot(Base):
    """Immutable record of one delivery-affecting event.

    Snapshots of one delivery form a chain: each row points at its
    immediate predecessor through previous_snapshot_id and carries a
    1-based sequence number that is unique per delivery. The pointer and
    chain_hash are tamper-evidence metadata; order is always materialized
    by sorting on (created_at, sequence).

    Attributes:
        id: UUID primary key
        delivery_id: Owning delivery (not modeled here)
        sequence: Position of the snapshot in the delivery's chain
        snapshot_type: Event kind (created, assigned, picked_up, ...)
        snapshot_data: JSON document with event-specific detail
        previous_snapshot_id: Immediate predecessor for the same delivery
        payload_hash: SHA-256 of the canonical snapshot_data JSON
        chain_hash: SHA-256 linking this record to its predecessor's hash
        triggered_by: Actor label (system name or role)
        triggered_by_user_id: Optional human actor identifier
        triggered_event: Short machine-readable event tag
        delivery_status .. provider_code: Denormalized query fields
        created_at: ISO8601 timestamp of the append
        business_date: YYYY-MM-DD bucket derived from created_at
        archived_at: ISO8601 timestamp set by retention archival
    """

    __tablename__ = "delivery_snapshots"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    delivery_id: Mapped[str] = mapped_column(String(64), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    snapshot_type: Mapped[str] = mapped_column(String(32), nullable=False)
    snapshot_data: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    previous_snapshot_id: Mapped[str | None] = mapped_column(
        String(36), nullable=True
    )
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    chain_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    # Audit information
    triggered_by: Mapped[str] = mapped_column(String(120), nullable=False)
    triggered_by_user_id: Mapped[str | None] = mapped_column(
        String(64), nullable=True
    )
    triggered_event: Mapped[str] = mapped_column(
        String(120), nullable=False, default=""
    )

    # Quick access fields (denormalized for reporting queries)
    delivery_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    customer_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    order_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    vehicle_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    driver_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    delivery_address_province: Mapped[str | None] = mapped_column(
        String(120), nullable=True
    )
    delivery_fee: Mapped[Decimal | None] = mapped_column(
        Numeric(12, 2, asdecimal=True), nullable=True
    )
    provider_code: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Timestamps
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    business_date: Mapped[str] = mapped_column(String(10), nullable=False)
    archived_at: Mapped[str | None] = mapped_column(String(50), nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "delivery_id", "sequence", name="uq_delivery_snapshots_delivery_seq"
        ),
        Index("idx_delivery_snapshots_delivery_id", "delivery_id"),
        Index("idx_delivery_snapshots_created_at", "delivery_id", "created_at"),
        Index("idx_delivery_snapshots_business_date", "business_date"),
        Index("idx_delivery_snapshots_provider_code", "provider_code"),
        Index("idx_delivery_snapshots_type", "snapshot_type"),
        Index("idx_delivery_snapshots_customer_id", "customer_id"),
        Index("idx_delivery_snapshots_order_id", "order_id"),
    )

    @property
    def data(self) -> dict[str, Any]:
        """Decoded snapshot_data document."""
        return _decode_document(self.snapshot_data)

    def data_value(self, key: str, default: Any = None) -> Any:
        """Look up one key of the decoded snapshot_data document."""
        return self.data.get(key, default)

    @property
    def is_business_event(self) -> bool:
        return SnapshotType(self.snapshot_type) in BUSINESS_EVENT_TYPES

    @property
    def is_successful_delivery(self) -> bool:
        return SnapshotType(self.snapshot_type) in SUCCESSFUL_DELIVERY_TYPES

    @property
    def is_failed_delivery(self) -> bool:
        return SnapshotType(self.snapshot_type) in FAILED_DELIVERY_TYPES

    @property
    def is_archived(self) -> bool:
        return self.archived_at is not None

    def __repr__(self) -> str:
        return (
            f"<DeliverySnapshot(id={self.id!r}, delivery_id={self.delivery_id!r}, "
            f"seq={self.sequence}, type={self.snapshot_type!r})>"
        )


class ManualCoordinationTask(Base):
    """Human follow-up work item for a provider without API integration.

    Tracks assignment, completion and reminder bookkeeping. Status changes
    go through ManualTaskService, which guards every transition with a
    conditional UPDATE.

    Attributes:
        id: UUID primary key
        delivery_id: Delivery the task belongs to
        provider_code: Provider the coordinator has to contact
        task_type: Open-set task tag (pickup_call, cod_follow_up, ...)
        task_status: Current status (pending, in_progress, completed, failed, cancelled)
        assigned_to_user_id: Coordinator owning the task, None when in backlog
        task_instructions: Free-text instructions for the coordinator
        contact_information: JSON document with contact channels
        completed_at: ISO8601 timestamp of the terminal transition
        completion_notes: Notes or failure/cancellation reason
        external_reference: Provider-side reference (e.g. tracking number)
        reminder_count: Number of reminders claimed so far
        last_reminder_sent: ISO8601 timestamp of the last claimed reminder
        next_reminder_due: ISO8601 timestamp of the next reminder, None once terminal
        created_at: ISO8601 timestamp of task creation
        updated_at: ISO8601 timestamp of last update
    """

    __tablename__ = "manual_coordination_tasks"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    delivery_id: Mapped[str] = mapped_column(String(64), nullable=False)
    provider_code: Mapped[str] = mapped_column(String(64), nullable=False)
    task_type: Mapped[str] = mapped_column(String(64), nullable=False)
    task_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TaskStatus.pending.value
    )

    # Task details
    assigned_to_user_id: Mapped[str | None] = mapped_column(
        String(64), nullable=True
    )
    task_instructions: Mapped[str] = mapped_column(Text, nullable=False)
    contact_information: Mapped[str] = mapped_column(
        Text, nullable=False, default="{}"
    )

    # Completion data
    completed_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    completion_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    external_reference: Mapped[str | None] = mapped_column(
        String(120), nullable=True
    )

    # Reminder bookkeeping
    reminder_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    last_reminder_sent: Mapped[str | None] = mapped_column(
        String(50), nullable=True
    )
    next_reminder_due: Mapped[str | None] = mapped_column(
        String(50), nullable=True
    )

    # Timestamps
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    __table_args__ = (
        Index("idx_manual_tasks_delivery_id", "delivery_id"),
        Index("idx_manual_tasks_status", "task_status"),
        Index("idx_manual_tasks_next_reminder", "next_reminder_due"),
        Index("idx_manual_tasks_provider_code", "provider_code"),
        Index("idx_manual_tasks_assigned_user", "assigned_to_user_id"),
        Index("idx_manual_tasks_type", "task_type"),
    )

    @property
    def contact_info(self) -> dict[str, Any]:
        """Decoded contact_information document."""
        return _decode_document(self.contact_information)

    @property
    def status(self) -> TaskStatus:
        return TaskStatus(self.task_status)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def needs_reminder(self, now: datetime | None = None) -> bool:
        """Return True when the task is active and its reminder is due."""
        if not self.is_active or self.next_reminder_due is None:
            return False
        return self.next_reminder_due <= to_iso(now or datetime.now(UTC))

    def duration(self, now: datetime | None = None) -> timedelta:
        """Time the task has been (or was) open."""
        created = from_iso(self.created_at)
        end = from_iso(self.completed_at) or (now or datetime.now(UTC))
        return end - created

    def __repr__(self) -> str:
        return (
            f"<ManualCoordinationTask(id={self.id!r}, delivery_id={self.delivery_id!r}, "
            f"type={self.task_type!r}, status={self.task_status!r})>"
        )
