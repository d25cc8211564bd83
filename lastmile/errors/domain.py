"""Typed domain exceptions for the coordination core.

These exceptions give the application layer a stable contract instead of
string matching. Callers catch specific types to decide on user-facing
behavior (e.g. NotFoundError -> 404, ConflictError -> "already handled").

Usage:
    # In service layer
    raise NotFoundError("Task", task_id, code="E-2002")

    # In application layer
    try:
        tasks.complete_task(task_id, "confirmed")
    except ConflictError as e:
        return {"error": to_error_dict(e)}

Store failures are not wrapped: StoreError is SQLAlchemy's base exception
and propagates unchanged.
"""

from typing import Any

from sqlalchemy.exc import SQLAlchemyError as StoreError

from lastmile.errors.registry import get_error


class DomainError(Exception):
    """Base exception for all domain errors."""

    code = "E-4000"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code


class ValidationError(DomainError):
    """Invalid input. Maps to HTTP 400."""

    code = "E-1001"


class NotFoundError(DomainError):
    """Resource was not found. Maps to HTTP 404."""

    code = "E-2001"

    def __init__(
        self, resource_type: str, identifier: str, code: str | None = None
    ) -> None:
        super().__init__(f"{resource_type} '{identifier}' not found", code=code)
        self.resource_type = resource_type
        self.identifier = identifier


class ConflictError(DomainError):
    """Current stored state does not permit the operation. Maps to HTTP 409."""

    code = "E-3002"


class InvalidStateTransition(ConflictError):
    """Raised when a guarded task transition finds an unexpected status.

    Attributes:
        task_id: The task the transition targeted.
        current_state: The status found in the store.
        attempted_state: The status (or operation) that was attempted.
        allowed_sources: Statuses from which the operation is legal.
    """

    code = "E-3001"

    def __init__(
        self,
        task_id: str,
        current_state: str,
        attempted_state: str,
        allowed_sources: list[str],
    ) -> None:
        self.task_id = task_id
        self.current_state = current_state
        self.attempted_state = attempted_state
        self.allowed_sources = allowed_sources
        allowed_str = ", ".join(allowed_sources) or "none"
        super().__init__(
            f"Task '{task_id}' cannot move from '{current_state}' to "
            f"'{attempted_state}'. Allowed from: {allowed_str}"
        )


class ReminderClaimConflict(ConflictError):
    """Another sweep already claimed the reminder for this task."""

    code = "E-3004"

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Reminder for task '{task_id}' was already claimed")
        self.task_id = task_id


class InvalidReferenceError(DomainError):
    """A snapshot pointer references a snapshot of another delivery."""

    code = "E-3003"

    def __init__(self, snapshot_id: str, expected_delivery_id: str, actual_delivery_id: str) -> None:
        super().__init__(
            f"Snapshot '{snapshot_id}' belongs to delivery '{actual_delivery_id}', "
            f"not '{expected_delivery_id}'"
        )
        self.snapshot_id = snapshot_id
        self.expected_delivery_id = expected_delivery_id
        self.actual_delivery_id = actual_delivery_id


class SerializationError(DomainError):
    """A payload could not be encoded or decoded."""

    code = "E-4001"


def to_error_dict(exc: DomainError) -> dict[str, Any]:
    """Render a domain error for the application layer.

    Args:
        exc: Any DomainError.

    Returns:
        Dict with code, title, message and retryable flag.
    """
    definition = get_error(exc.code)
    return {
        "code": exc.code,
        "title": definition.title if definition else type(exc).__name__,
        "message": str(exc),
        "retryable": definition.is_retryable if definition else False,
    }


__all__ = [
    "DomainError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "InvalidStateTransition",
    "ReminderClaimConflict",
    "InvalidReferenceError",
    "SerializationError",
    "StoreError",
    "to_error_dict",
]
