"""Reminder scheduling policy for manual coordination tasks.

Pure functions used by the external reminder sweeper: how long to wait
before nudging a coordinator, how that wait grows with each unanswered
reminder, and when an open task counts as escalated.
"""

from datetime import UTC, datetime, timedelta

from lastmile.db.models import ManualCoordinationTask, TaskType, from_iso

DEFAULT_REMINDER_INTERVAL = timedelta(hours=1)
DEFAULT_OVERDUE_THRESHOLD = timedelta(hours=8)
MAX_BACKOFF_MULTIPLIER = 8

REMINDER_INTERVALS: dict[str, timedelta] = {
    TaskType.pickup_call.value: timedelta(minutes=30),
    TaskType.phone_coordination.value: timedelta(minutes=30),
    TaskType.line_message.value: timedelta(hours=1),
    TaskType.app_booking.value: timedelta(hours=2),
    TaskType.delivery_confirmation.value: timedelta(hours=2),
    TaskType.email_coordination.value: timedelta(hours=4),
    TaskType.cod_follow_up.value: timedelta(hours=4),
    TaskType.pickup_schedule.value: timedelta(hours=6),
}

OVERDUE_THRESHOLDS: dict[str, timedelta] = {
    TaskType.pickup_call.value: timedelta(hours=4),
    TaskType.phone_coordination.value: timedelta(hours=4),
    TaskType.line_message.value: timedelta(hours=6),
    TaskType.app_booking.value: timedelta(hours=12),
    TaskType.delivery_confirmation.value: timedelta(hours=12),
    TaskType.email_coordination.value: timedelta(hours=24),
    TaskType.cod_follow_up.value: timedelta(hours=24),
    TaskType.pickup_schedule.value: timedelta(hours=24),
}


def default_reminder_interval(task_type: str) -> timedelta:
    """First-reminder delay for a task type; unknown tags get one hour."""
    return REMINDER_INTERVALS.get(task_type, DEFAULT_REMINDER_INTERVAL)


def reminder_interval(task_type: str, reminder_count: int) -> timedelta:
    """Delay before the next reminder after `reminder_count` were sent.

    The base interval doubles with every reminder, capped at 8x.

    Example:
        >>> reminder_interval("phone_coordination", 2)
        datetime.timedelta(seconds=7200)
    """
    multiplier = min(2 ** max(reminder_count, 0), MAX_BACKOFF_MULTIPLIER)
    return default_reminder_interval(task_type) * multiplier


def overdue_threshold(task_type: str) -> timedelta:
    """Age after which an open task of this type needs escalation."""
    return OVERDUE_THRESHOLDS.get(task_type, DEFAULT_OVERDUE_THRESHOLD)


def next_reminder_due(
    task: ManualCoordinationTask, now: datetime | None = None
) -> datetime | None:
    """When the sweeper should schedule the task's next reminder.

    Returns:
        now plus the backed-off interval, or None for terminal tasks.
    """
    if task.is_terminal:
        return None
    now = now or datetime.now(UTC)
    return now + reminder_interval(task.task_type, task.reminder_count or 0)


def is_escalated(task: ManualCoordinationTask, now: datetime | None = None) -> bool:
    """True when an active task has been open longer than its overdue threshold."""
    if not task.is_active:
        return False
    now = now or datetime.now(UTC)
    return now - from_iso(task.created_at) > overdue_threshold(task.task_type)
