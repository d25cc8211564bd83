"""Manual coordination workflow.

Ties the task tracker to the snapshot log: opening a task records an
`assigned` snapshot on the delivery, closing it records a
`status_updated` snapshot with the outcome, and both publish a task event.

Tasks and snapshots are correlated loosely through the shared delivery_id
and a task_id key inside snapshot_data; there is no foreign key.
"""

import logging
from typing import Any

from lastmile.db.models import DeliverySnapshot, ManualCoordinationTask, SnapshotType
from lastmile.errors import ValidationError
from lastmile.services.manual_task_service import ManualTaskService
from lastmile.services.snapshot_service import SnapshotService
from lastmile.services.task_events import (
    TASK_CANCELLED,
    TASK_COMPLETED,
    TASK_CREATED,
    TASK_FAILED,
    TaskEventPublisher,
    task_event_payload,
)

logger = logging.getLogger(__name__)

CLOSE_OUTCOMES = ("completed", "failed", "cancelled")

CLOSE_TOPICS = {
    "completed": TASK_COMPLETED,
    "failed": TASK_FAILED,
    "cancelled": TASK_CANCELLED,
}


class CoordinationService:
    """Open and close manual tasks with their audit snapshots and events.

    Attributes:
        tasks: Task tracker.
        snapshots: Snapshot log.
        publish: Optional event publisher; events are dropped when None.
    """

    def __init__(
        self,
        tasks: ManualTaskService,
        snapshots: SnapshotService,
        publish: TaskEventPublisher | None = None,
    ) -> None:
        self.tasks = tasks
        self.snapshots = snapshots
        self.publish = publish

    def _emit(self, topic: str, task: ManualCoordinationTask, actor: str | None) -> None:
        if self.publish is None:
            return
        self.publish(topic, task_event_payload(task, topic, actor=actor))
        logger.debug("Published %s for task %s", topic, task.id)

    def open_task(
        self,
        delivery_id: str,
        provider_code: str | None,
        task_type: str,
        instructions: str,
        contact_info: dict[str, Any] | None = None,
        *,
        triggered_by: str = "manual_coordination",
        triggered_by_user_id: str | None = None,
        assigned_to_user_id: str | None = None,
    ) -> ManualCoordinationTask:
        """Create a task and record it on the delivery's snapshot chain.

        A None provider_code takes the task tracker's default provider.

        Returns:
            The created task.

        Raises:
            ValidationError: If a required task field is empty.
            ConflictError: If the delivery's chain advanced concurrently
                (the task itself is already stored).
        """
        task = self.tasks.create_task(
            delivery_id,
            provider_code,
            task_type,
            instructions,
            contact_info,
            assigned_to_user_id=assigned_to_user_id,
        )
        self.snapshots.append(
            delivery_id,
            SnapshotType.assigned,
            {
                "task_id": task.id,
                "task_type": task.task_type,
                "provider_code": task.provider_code,
                "assigned_to": task.assigned_to_user_id,
            },
            triggered_by=triggered_by,
            triggered_by_user_id=triggered_by_user_id,
            triggered_event="manual_task_created",
            provider_code=task.provider_code,
        )
        self._emit(TASK_CREATED, task, triggered_by_user_id or triggered_by)
        return task

    def close_task(
        self,
        task_id: str,
        outcome: str,
        notes: str = "",
        *,
        external_reference: str = "",
        triggered_by: str = "manual_coordination",
        triggered_by_user_id: str | None = None,
    ) -> ManualCoordinationTask:
        """Move a task to a terminal state and record the outcome.

        Args:
            task_id: Task to close.
            outcome: One of "completed", "failed", "cancelled".
            notes: Completion notes or the failure/cancellation reason.
            external_reference: Provider reference, used for completion only.

        Raises:
            ValidationError: Unknown outcome.
            NotFoundError: Unknown task.
            InvalidStateTransition: The task is already terminal.
            ConflictError: If the delivery's chain advanced concurrently
                (the task is already terminal but no snapshot records
                the outcome).
        """
        if outcome not in CLOSE_OUTCOMES:
            raise ValidationError(
                f"Unknown outcome '{outcome}'. Expected one of: {', '.join(CLOSE_OUTCOMES)}"
            )

        if outcome == "completed":
            task = self.tasks.complete_task(task_id, notes, external_reference)
        elif outcome == "failed":
            task = self.tasks.fail_task(task_id, notes)
        else:
            task = self.tasks.cancel_task(task_id, notes)

        self.snapshots.append(
            task.delivery_id,
            SnapshotType.status_updated,
            {
                "task_id": task.id,
                "task_type": task.task_type,
                "outcome": outcome,
                "external_reference": task.external_reference,
            },
            triggered_by=triggered_by,
            triggered_by_user_id=triggered_by_user_id,
            triggered_event=f"manual_task_{outcome}",
            provider_code=task.provider_code,
        )
        self._emit(CLOSE_TOPICS[outcome], task, triggered_by_user_id or triggered_by)
        return task

    def tasks_for_snapshot(
        self, snapshot: DeliverySnapshot
    ) -> list[ManualCoordinationTask]:
        """Tasks a snapshot refers to.

        Snapshots written by this service name their task; for any other
        snapshot every task of the delivery is returned.
        """
        task_id = snapshot.data_value("task_id")
        if task_id:
            return self.tasks.get_by_ids([task_id])
        return self.tasks.get_by_delivery_id(snapshot.delivery_id)
