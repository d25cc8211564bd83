"""Manual coordination task tracker.

Tasks are human follow-up work for providers without API integration:
a coordinator calls the courier, books a pickup in a partner app, or
chases a COD remittance. This module owns their lifecycle:

    pending -> in_progress -> completed | failed | cancelled
    pending -> completed | failed | cancelled

Every status change and every guarded mutation is a single conditional
UPDATE (WHERE id = ? AND task_status IN (...)). When it affects no row the
task is re-read to tell a missing task (NotFoundError) from a task whose
state no longer permits the operation (InvalidStateTransition). Two
coordinators racing on the same task therefore get exactly one success.
"""

import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from sqlalchemy import func
from sqlalchemy.orm import Query, Session

from lastmile.db.models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    ManualCoordinationTask,
    TaskStatus,
    from_iso,
    to_iso,
)
from lastmile.errors import (
    ConflictError,
    InvalidStateTransition,
    NotFoundError,
    ReminderClaimConflict,
    ValidationError,
)
from lastmile.services.reminder_policy import default_reminder_interval
from lastmile.services.snapshot_service import encode_payload

logger = logging.getLogger(__name__)


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


# Marks "read the current value from the store" for mark_reminder_sent
UNSET: Any = _Unset()


# Legal source statuses for each target status
TRANSITION_SOURCES: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.in_progress: frozenset({TaskStatus.pending}),
    TaskStatus.completed: ACTIVE_STATUSES,
    TaskStatus.failed: ACTIVE_STATUSES,
    TaskStatus.cancelled: ACTIVE_STATUSES,
}


def _status_values(statuses: frozenset[TaskStatus]) -> list[str]:
    return sorted(s.value for s in statuses)


def _tag(task_type: Any) -> str:
    return task_type.value if isinstance(task_type, Enum) else str(task_type)


def _require(value: str | None, field_name: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"Required field '{field_name}' is missing or empty.")
    return value


@dataclass
class TaskQueryFilters:
    """Composable filter object for search_tasks().

    created_after / created_before are inclusive bounds on created_at.
    """

    delivery_id: str | None = None
    provider_code: str | None = None
    task_type: str | None = None
    statuses: list[TaskStatus | str] | None = None
    assigned_to_user_id: str | None = None
    unassigned_only: bool = False
    created_after: datetime | None = None
    created_before: datetime | None = None
    limit: int | None = None
    offset: int = 0


class ManualTaskService:
    """Service for manual coordination task lifecycle and reporting.

    Attributes:
        db: SQLAlchemy session for database operations.
        schedule_initial_reminder: Schedule a first reminder on creation.
        default_page_size: Limit for paginated queries when none is given.
        default_provider_code: Provider used when create_task gets None.
    """

    def __init__(
        self,
        db: Session,
        schedule_initial_reminder: bool = True,
        default_page_size: int = 50,
        clock: Callable[[], datetime] | None = None,
        default_provider_code: str = "manual",
    ) -> None:
        """Initialize the task service.

        Args:
            db: SQLAlchemy session for database operations.
            schedule_initial_reminder: When True, create_task without an
                explicit reminder time schedules now + the type's interval.
            default_page_size: Limit for paginated queries when none is given.
            clock: Returns the current time; defaults to datetime.now(UTC).
            default_provider_code: Provider assigned to tasks created
                without one.
        """
        self.db = db
        self.schedule_initial_reminder = schedule_initial_reminder
        self.default_page_size = default_page_size
        self.default_provider_code = default_provider_code
        self._clock = clock or (lambda: datetime.now(UTC))

    @classmethod
    def from_config(cls, db: Session, config: Any) -> "ManualTaskService":
        """Build a service from a LastmileConfig."""
        return cls(
            db,
            schedule_initial_reminder=config.tasks.schedule_initial_reminder,
            default_page_size=config.tasks.default_page_size,
            default_provider_code=config.tasks.default_provider_code,
        )

    def _now(self) -> datetime:
        now = self._clock()
        return now if now.tzinfo is not None else now.replace(tzinfo=UTC)

    # =========================================================================
    # Creation
    # =========================================================================

    def create_task(
        self,
        delivery_id: str,
        provider_code: str | None,
        task_type: str,
        instructions: str,
        contact_info: dict[str, Any] | None = None,
        *,
        assigned_to_user_id: str | None = None,
        next_reminder_due: datetime | None = None,
    ) -> ManualCoordinationTask:
        """Create a new pending task.

        Args:
            delivery_id: Delivery the task belongs to.
            provider_code: Provider the coordinator has to contact. None
                uses default_provider_code.
            task_type: Open-set task tag (see TaskType for known tags).
            instructions: Free-text instructions for the coordinator.
            contact_info: JSON-compatible contact channels.
            assigned_to_user_id: Optional initial owner.
            next_reminder_due: Explicit first reminder time.

        Returns:
            The created task with status pending and reminder_count 0.

        Raises:
            ValidationError: If a required field is empty.
            SerializationError: If contact_info cannot be encoded.
        """
        if provider_code is None:
            provider_code = self.default_provider_code
        _require(delivery_id, "delivery_id")
        _require(provider_code, "provider_code")
        _require(task_type, "task_type")
        _require(instructions, "instructions")
        contact_json = encode_payload(contact_info)

        now = self._now()
        if next_reminder_due is None and self.schedule_initial_reminder:
            next_reminder_due = now + default_reminder_interval(task_type)

        task = ManualCoordinationTask(
            delivery_id=delivery_id,
            provider_code=provider_code,
            task_type=_tag(task_type),
            task_status=TaskStatus.pending.value,
            assigned_to_user_id=assigned_to_user_id,
            task_instructions=instructions,
            contact_information=contact_json,
            reminder_count=0,
            next_reminder_due=to_iso(next_reminder_due) if next_reminder_due else None,
            created_at=to_iso(now),
            updated_at=to_iso(now),
        )
        self.db.add(task)
        self.db.commit()
        self.db.refresh(task)
        logger.info(
            "Task created: id=%s delivery=%s provider=%s type=%s",
            task.id,
            task.delivery_id,
            task.provider_code,
            task.task_type,
        )
        return task

    # =========================================================================
    # Guarded mutations
    # =========================================================================

    def _reload(self, task_id: str) -> ManualCoordinationTask:
        task = self.db.get(ManualCoordinationTask, task_id, populate_existing=True)
        if task is None:
            raise NotFoundError("Task", task_id, code="E-2002")
        return task

    def _guarded_update(
        self,
        task_id: str,
        sources: frozenset[TaskStatus],
        values: dict[Any, Any],
        attempted: str,
    ) -> ManualCoordinationTask:
        """Apply `values` only while the task is in one of `sources`.

        Raises:
            NotFoundError: If the task does not exist.
            InvalidStateTransition: If its status is not in `sources`.
        """
        values = {**values, ManualCoordinationTask.updated_at: to_iso(self._now())}
        count = (
            self.db.query(ManualCoordinationTask)
            .filter(
                ManualCoordinationTask.id == task_id,
                ManualCoordinationTask.task_status.in_(_status_values(sources)),
            )
            .update(values, synchronize_session=False)
        )
        if count == 0:
            self.db.rollback()
            current = self._reload(task_id)
            logger.warning(
                "Rejected %s on task %s in status %s",
                attempted,
                task_id,
                current.task_status,
            )
            raise InvalidStateTransition(
                task_id, current.task_status, attempted, _status_values(sources)
            )
        self.db.commit()
        return self._reload(task_id)

    def _transition(
        self, task_id: str, target: TaskStatus, values: dict[Any, Any] | None = None
    ) -> ManualCoordinationTask:
        values = {**(values or {}), ManualCoordinationTask.task_status: target.value}
        if target in TERMINAL_STATUSES:
            # Terminal: the reminder schedule ends with the task.
            values[ManualCoordinationTask.completed_at] = to_iso(self._now())
            values[ManualCoordinationTask.next_reminder_due] = None
        task = self._guarded_update(
            task_id, TRANSITION_SOURCES[target], values, target.value
        )
        logger.info("Task %s -> %s", task_id, target.value)
        return task

    def start_task(self, task_id: str) -> ManualCoordinationTask:
        """Move a pending task to in_progress."""
        return self._transition(task_id, TaskStatus.in_progress)

    def complete_task(
        self,
        task_id: str,
        completion_notes: str = "",
        external_reference: str = "",
    ) -> ManualCoordinationTask:
        """Complete an active task.

        Args:
            task_id: Task to complete.
            completion_notes: Outcome notes from the coordinator.
            external_reference: Provider-side reference, e.g. tracking number.

        Returns:
            The completed task with completed_at set and no reminder scheduled.

        Raises:
            NotFoundError: If the task does not exist.
            InvalidStateTransition: If the task is already terminal.
        """
        return self._transition(
            task_id,
            TaskStatus.completed,
            {
                ManualCoordinationTask.completion_notes: completion_notes or None,
                ManualCoordinationTask.external_reference: external_reference or None,
            },
        )

    def fail_task(self, task_id: str, reason: str) -> ManualCoordinationTask:
        """Fail an active task, recording the reason as completion notes."""
        return self._transition(
            task_id,
            TaskStatus.failed,
            {ManualCoordinationTask.completion_notes: reason},
        )

    def cancel_task(self, task_id: str, reason: str = "") -> ManualCoordinationTask:
        """Cancel an active task."""
        return self._transition(
            task_id,
            TaskStatus.cancelled,
            {ManualCoordinationTask.completion_notes: reason or None},
        )

    def assign_to_user(self, task_id: str, user_id: str) -> ManualCoordinationTask:
        """Assign an active task to a coordinator. Status is unchanged."""
        _require(user_id, "user_id")
        task = self._guarded_update(
            task_id,
            ACTIVE_STATUSES,
            {ManualCoordinationTask.assigned_to_user_id: user_id},
            "assigned",
        )
        logger.info("Task %s assigned to %s", task_id, user_id)
        return task

    def unassign_task(self, task_id: str) -> ManualCoordinationTask:
        """Return an active task to the unassigned backlog."""
        task = self._guarded_update(
            task_id,
            ACTIVE_STATUSES,
            {ManualCoordinationTask.assigned_to_user_id: None},
            "unassigned",
        )
        logger.info("Task %s unassigned", task_id)
        return task

    def update_instructions(
        self, task_id: str, instructions: str
    ) -> ManualCoordinationTask:
        """Replace the instructions of an active task."""
        _require(instructions, "instructions")
        return self._guarded_update(
            task_id,
            ACTIVE_STATUSES,
            {ManualCoordinationTask.task_instructions: instructions},
            "instructions_updated",
        )

    def add_contact_info(
        self, task_id: str, key: str, value: Any
    ) -> ManualCoordinationTask:
        """Add or replace one contact channel on an active task.

        The document is swapped only if nobody else changed it since it was
        read.

        Raises:
            NotFoundError: If the task does not exist.
            InvalidStateTransition: If the task is terminal.
            ConflictError: If the contact document changed concurrently.
        """
        _require(key, "key")
        task = self.get_task(task_id)
        original = task.contact_information
        document = task.contact_info
        document[key] = value
        count = (
            self.db.query(ManualCoordinationTask)
            .filter(
                ManualCoordinationTask.id == task_id,
                ManualCoordinationTask.task_status.in_(_status_values(ACTIVE_STATUSES)),
                ManualCoordinationTask.contact_information == original,
            )
            .update(
                {
                    ManualCoordinationTask.contact_information: encode_payload(document),
                    ManualCoordinationTask.updated_at: to_iso(self._now()),
                },
                synchronize_session=False,
            )
        )
        if count == 0:
            self.db.rollback()
            current = self._reload(task_id)
            if not current.is_active:
                raise InvalidStateTransition(
                    task_id,
                    current.task_status,
                    "contact_updated",
                    _status_values(ACTIVE_STATUSES),
                )
            raise ConflictError(
                f"Contact information of task '{task_id}' changed concurrently"
            )
        self.db.commit()
        return self._reload(task_id)

    def set_next_reminder(
        self, task_id: str, when: datetime | None
    ) -> ManualCoordinationTask:
        """Schedule (or clear, with None) the next reminder of an active task."""
        return self._guarded_update(
            task_id,
            ACTIVE_STATUSES,
            {ManualCoordinationTask.next_reminder_due: to_iso(when) if when else None},
            "reminder_scheduled",
        )

    def mark_reminder_sent(
        self, task_id: str, expected_due: datetime | str | None = UNSET
    ) -> ManualCoordinationTask:
        """Claim the due reminder of a task.

        The claim succeeds only while the task is active and its
        next_reminder_due is set and still equals `expected_due`, the value
        the sweeper read when it selected the task. Concurrent sweepers
        holding the same value get exactly one winner. A task with no
        reminder scheduled can never be claimed.

        Args:
            task_id: Task whose reminder is being sent.
            expected_due: next_reminder_due as read by the caller. When
                omitted, the stored value is used and must already be due.

        Returns:
            The task with reminder_count incremented, last_reminder_sent set
            and next_reminder_due cleared.

        Raises:
            NotFoundError: If the task does not exist.
            InvalidStateTransition: If the task is terminal.
            ReminderClaimConflict: If another sweep claimed the reminder
                first, or no due reminder is scheduled.
        """
        now_iso = to_iso(self._now())
        due_clauses = [ManualCoordinationTask.next_reminder_due.isnot(None)]
        if expected_due is UNSET:
            expected_due = self.get_task(task_id).next_reminder_due
            # End the read transaction; the claim must start a fresh write.
            self.db.commit()
            due_clauses.append(ManualCoordinationTask.next_reminder_due <= now_iso)
        elif isinstance(expected_due, datetime):
            expected_due = to_iso(expected_due)

        count = 0
        if expected_due is not None:
            due_clauses.append(ManualCoordinationTask.next_reminder_due == expected_due)
            count = (
                self.db.query(ManualCoordinationTask)
                .filter(
                    ManualCoordinationTask.id == task_id,
                    ManualCoordinationTask.task_status.in_(
                        _status_values(ACTIVE_STATUSES)
                    ),
                    *due_clauses,
                )
                .update(
                    {
                        ManualCoordinationTask.reminder_count: ManualCoordinationTask.reminder_count
                        + 1,
                        ManualCoordinationTask.last_reminder_sent: now_iso,
                        ManualCoordinationTask.next_reminder_due: None,
                        ManualCoordinationTask.updated_at: now_iso,
                    },
                    synchronize_session=False,
                )
            )
        if count == 0:
            self.db.rollback()
            current = self._reload(task_id)
            if not current.is_active:
                raise InvalidStateTransition(
                    task_id,
                    current.task_status,
                    "reminder_sent",
                    _status_values(ACTIVE_STATUSES),
                )
            logger.warning("Reminder for task %s already claimed or not due", task_id)
            raise ReminderClaimConflict(task_id)
        self.db.commit()
        logger.info("Reminder claimed for task %s", task_id)
        return self._reload(task_id)

    def delete_task(self, task_id: str) -> None:
        """Hard-delete a task (administrative use).

        Raises:
            NotFoundError: If the task does not exist.
        """
        task = self.get_task(task_id)
        self.db.delete(task)
        self.db.commit()
        logger.info("Deleted task %s", task_id)

    # =========================================================================
    # Queries
    # =========================================================================

    def _query(self) -> Query:
        return self.db.query(ManualCoordinationTask)

    def _active(self) -> Query:
        return self._query().filter(
            ManualCoordinationTask.task_status.in_(_status_values(ACTIVE_STATUSES))
        )

    def _page(self, query: Query, limit: int | None, offset: int) -> Query:
        return (
            query.order_by(ManualCoordinationTask.created_at.asc())
            .limit(limit or self.default_page_size)
            .offset(offset)
        )

    def get_task(self, task_id: str) -> ManualCoordinationTask:
        """Get a task by ID.

        Raises:
            NotFoundError: If the task does not exist.
        """
        task = self.db.get(ManualCoordinationTask, task_id)
        if task is None:
            raise NotFoundError("Task", task_id, code="E-2002")
        return task

    def get_by_ids(self, task_ids: list[str]) -> list[ManualCoordinationTask]:
        if not task_ids:
            return []
        return (
            self._query()
            .filter(ManualCoordinationTask.id.in_(task_ids))
            .order_by(ManualCoordinationTask.created_at.asc())
            .all()
        )

    def get_by_delivery_id(self, delivery_id: str) -> list[ManualCoordinationTask]:
        """All tasks of a delivery, oldest first."""
        return (
            self._query()
            .filter(ManualCoordinationTask.delivery_id == delivery_id)
            .order_by(ManualCoordinationTask.created_at.asc())
            .all()
        )

    def get_tasks_for_reminder(
        self, max_time: datetime
    ) -> list[ManualCoordinationTask]:
        """Active tasks whose next reminder is due at or before max_time."""
        return (
            self._active()
            .filter(
                ManualCoordinationTask.next_reminder_due.isnot(None),
                ManualCoordinationTask.next_reminder_due <= to_iso(max_time),
            )
            .order_by(ManualCoordinationTask.next_reminder_due.asc())
            .all()
        )

    def get_tasks_due_for_reminder(
        self, now: datetime | None = None
    ) -> list[ManualCoordinationTask]:
        """Active tasks whose reminder is due now."""
        return self.get_tasks_for_reminder(now or self._now())

    def get_overdue_tasks(
        self, now: datetime | None = None
    ) -> list[ManualCoordinationTask]:
        """Active tasks whose scheduled reminder lies strictly in the past."""
        return (
            self._active()
            .filter(
                ManualCoordinationTask.next_reminder_due.isnot(None),
                ManualCoordinationTask.next_reminder_due < to_iso(now or self._now()),
            )
            .order_by(ManualCoordinationTask.next_reminder_due.asc())
            .all()
        )

    def get_pending_tasks(
        self, limit: int | None = None, offset: int = 0
    ) -> list[ManualCoordinationTask]:
        query = self._query().filter(
            ManualCoordinationTask.task_status == TaskStatus.pending.value
        )
        return self._page(query, limit, offset).all()

    def get_active_tasks(
        self, limit: int | None = None, offset: int = 0
    ) -> list[ManualCoordinationTask]:
        return self._page(self._active(), limit, offset).all()

    def get_unassigned_tasks(
        self, limit: int | None = None, offset: int = 0
    ) -> list[ManualCoordinationTask]:
        """Active tasks nobody owns yet, oldest first."""
        query = self._active().filter(ManualCoordinationTask.assigned_to_user_id.is_(None))
        return self._page(query, limit, offset).all()

    def get_by_assigned_user(
        self, user_id: str, limit: int | None = None, offset: int = 0
    ) -> list[ManualCoordinationTask]:
        query = self._query().filter(ManualCoordinationTask.assigned_to_user_id == user_id)
        return self._page(query, limit, offset).all()

    def get_by_provider_code(
        self, provider_code: str, limit: int | None = None, offset: int = 0
    ) -> list[ManualCoordinationTask]:
        query = self._query().filter(ManualCoordinationTask.provider_code == provider_code)
        return self._page(query, limit, offset).all()

    def get_by_task_type(
        self, task_type: str, limit: int | None = None, offset: int = 0
    ) -> list[ManualCoordinationTask]:
        query = self._query().filter(ManualCoordinationTask.task_type == _tag(task_type))
        return self._page(query, limit, offset).all()

    def get_by_status(
        self, status: TaskStatus | str, limit: int | None = None, offset: int = 0
    ) -> list[ManualCoordinationTask]:
        """Tasks in one status, oldest first, paginated."""
        try:
            status = TaskStatus(status)
        except ValueError as e:
            raise ValidationError(f"Unknown task status '{status}'") from e
        query = self._query().filter(ManualCoordinationTask.task_status == status.value)
        return self._page(query, limit, offset).all()

    def search_tasks(self, filters: TaskQueryFilters) -> list[ManualCoordinationTask]:
        """Search tasks with a composable filter object, oldest first."""
        query = self._query()
        if filters.delivery_id is not None:
            query = query.filter(ManualCoordinationTask.delivery_id == filters.delivery_id)
        if filters.provider_code is not None:
            query = query.filter(
                ManualCoordinationTask.provider_code == filters.provider_code
            )
        if filters.task_type is not None:
            query = query.filter(ManualCoordinationTask.task_type == _tag(filters.task_type))
        if filters.statuses:
            try:
                values = sorted({TaskStatus(s).value for s in filters.statuses})
            except ValueError as e:
                raise ValidationError(f"Unknown task status in {filters.statuses}") from e
            query = query.filter(ManualCoordinationTask.task_status.in_(values))
        if filters.unassigned_only:
            query = query.filter(ManualCoordinationTask.assigned_to_user_id.is_(None))
        elif filters.assigned_to_user_id is not None:
            query = query.filter(
                ManualCoordinationTask.assigned_to_user_id == filters.assigned_to_user_id
            )
        if filters.created_after is not None:
            query = query.filter(
                ManualCoordinationTask.created_at >= to_iso(filters.created_after)
            )
        if filters.created_before is not None:
            query = query.filter(
                ManualCoordinationTask.created_at <= to_iso(filters.created_before)
            )

        query = query.order_by(ManualCoordinationTask.created_at.asc())
        if filters.limit:
            query = query.limit(filters.limit)
        if filters.offset:
            query = query.offset(filters.offset)
        logger.debug("search_tasks filters=%s", filters)
        return query.all()

    # =========================================================================
    # Reporting
    # =========================================================================

    def _count_by_status(self, query: Query) -> dict[str, int]:
        rows = (
            query.with_entities(
                ManualCoordinationTask.task_status, func.count(ManualCoordinationTask.id)
            )
            .group_by(ManualCoordinationTask.task_status)
            .all()
        )
        counts = {status.value: 0 for status in TaskStatus}
        counts.update({status: count for status, count in rows})
        return counts

    def get_task_statistics(self, now: datetime | None = None) -> dict[str, int]:
        """Headline counts for the coordinator dashboard.

        Returns:
            Dict with total, pending, in_progress, active, overdue,
            unassigned, completed, failed and cancelled counts.
        """
        by_status = self._count_by_status(self._query())
        unassigned = (
            self._active()
            .filter(ManualCoordinationTask.assigned_to_user_id.is_(None))
            .count()
        )
        return {
            "total": sum(by_status.values()),
            **by_status,
            "active": sum(by_status[s.value] for s in ACTIVE_STATUSES),
            "overdue": len(self.get_overdue_tasks(now)),
            "unassigned": unassigned,
        }

    def get_task_backlog(self, now: datetime | None = None) -> dict[str, Any]:
        """Breakdown of open work by provider and task type."""
        active = self._active().all()
        by_provider: dict[str, int] = defaultdict(int)
        by_type: dict[str, int] = defaultdict(int)
        for task in active:
            by_provider[task.provider_code] += 1
            by_type[task.task_type] += 1
        return {
            "total_active": len(active),
            "by_provider": dict(by_provider),
            "by_type": dict(by_type),
            "overdue": len(self.get_overdue_tasks(now)),
            "unassigned": sum(1 for t in active if t.assigned_to_user_id is None),
        }

    def get_task_metrics(self, start: datetime, end: datetime) -> dict[str, Any]:
        """Performance metrics for tasks created within [start, end].

        Returns:
            Dict with total, by_status counts, completion_rate,
            total_reminders, average_reminders and average_completion_hours
            (None when no task completed).
        """
        tasks = (
            self._query()
            .filter(
                ManualCoordinationTask.created_at >= to_iso(start),
                ManualCoordinationTask.created_at <= to_iso(end),
            )
            .all()
        )
        by_status = {status.value: 0 for status in TaskStatus}
        completion_hours = []
        for task in tasks:
            by_status[task.task_status] += 1
            if task.task_status == TaskStatus.completed.value and task.completed_at:
                elapsed = from_iso(task.completed_at) - from_iso(task.created_at)
                completion_hours.append(elapsed.total_seconds() / 3600)

        total = len(tasks)
        total_reminders = sum(task.reminder_count or 0 for task in tasks)
        return {
            "total": total,
            "by_status": by_status,
            "completion_rate": by_status[TaskStatus.completed.value] / total if total else 0.0,
            "total_reminders": total_reminders,
            "average_reminders": total_reminders / total if total else 0.0,
            "average_completion_hours": (
                sum(completion_hours) / len(completion_hours) if completion_hours else None
            ),
        }

