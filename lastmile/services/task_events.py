"""Outbound task event payloads.

The core does not publish anything itself. It renders task lifecycle
events as plain dictionaries and hands them to whatever publisher the
host application supplies (message bus, webhook fan-out, websocket).
"""

from typing import Any, Protocol

from lastmile.db.models import ManualCoordinationTask

TASK_CREATED = "manual_task.created"
TASK_COMPLETED = "manual_task.completed"
TASK_FAILED = "manual_task.failed"
TASK_CANCELLED = "manual_task.cancelled"


class TaskEventPublisher(Protocol):
    """Callable that delivers a task event to the outside world."""

    def __call__(self, topic: str, payload: dict[str, Any]) -> None:
        """Publish one event.

        Args:
            topic: Event name, e.g. "manual_task.created".
            payload: Result of task_event_payload().
        """
        ...


def task_event_payload(
    task: ManualCoordinationTask, event_name: str, actor: str | None = None
) -> dict[str, Any]:
    """Render a task as an outbound event.

    Contact information is not included; subscribers that need it read
    the task by id.

    Example:
        >>> task_event_payload(task, TASK_CREATED, actor="ops-bot")["event"]
        'manual_task.created'
    """
    return {
        "event": event_name,
        "task_id": task.id,
        "delivery_id": task.delivery_id,
        "provider_code": task.provider_code,
        "task_type": task.task_type,
        "task_status": task.task_status,
        "instructions": task.task_instructions,
        "assigned_to": task.assigned_to_user_id,
        "created_at": task.created_at,
        "updated_at": task.updated_at,
        "completed_at": task.completed_at,
        "actor": actor,
    }
