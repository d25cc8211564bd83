"""Error code registry with E-XXXX format codes.

This module defines the error code system for the coordination core,
organizing errors into categories:
- E-1xxx: Validation errors
- E-2xxx: Not found errors
- E-3xxx: Conflict and reference errors
- E-4xxx: System/serialization errors

Each error includes a code, title, message template, and remediation steps.
"""

from dataclasses import dataclass
from enum import Enum


class ErrorCategory(str, Enum):
    """Categories for error codes."""

    VALIDATION = "validation"  # E-1xxx
    NOT_FOUND = "not_found"  # E-2xxx
    CONFLICT = "conflict"  # E-3xxx
    SYSTEM = "system"  # E-4xxx


@dataclass
class ErrorCode:
    """Definition of an error code with metadata.

    Attributes:
        code: Error code in E-XXXX format.
        category: Error category for grouping.
        title: Short title for display.
        message_template: Message with {placeholders} for context.
        remediation: Action the caller should take to resolve.
        is_retryable: Whether the operation can be retried without changes.
    """

    code: str
    category: ErrorCategory
    title: str
    message_template: str
    remediation: str
    is_retryable: bool = False


ERROR_REGISTRY: dict[str, ErrorCode] = {
    # Validation errors (E-1xxx)
    "E-1001": ErrorCode(
        code="E-1001",
        category=ErrorCategory.VALIDATION,
        title="Missing Required Field",
        message_template="Required field '{field}' is missing or empty.",
        remediation="Supply a non-empty value and retry.",
    ),
    "E-1002": ErrorCode(
        code="E-1002",
        category=ErrorCategory.VALIDATION,
        title="Invalid Snapshot Type",
        message_template="Unknown snapshot type '{value}'.",
        remediation="Use one of the SnapshotType values.",
    ),
    # Not found errors (E-2xxx)
    "E-2001": ErrorCode(
        code="E-2001",
        category=ErrorCategory.NOT_FOUND,
        title="Snapshot Not Found",
        message_template="Snapshot '{identifier}' not found.",
        remediation="Check the snapshot id.",
    ),
    "E-2002": ErrorCode(
        code="E-2002",
        category=ErrorCategory.NOT_FOUND,
        title="Task Not Found",
        message_template="Manual task '{identifier}' not found.",
        remediation="Check the task id.",
    ),
    # Conflict errors (E-3xxx)
    "E-3001": ErrorCode(
        code="E-3001",
        category=ErrorCategory.CONFLICT,
        title="Invalid State Transition",
        message_template="Task cannot move from '{current}' to '{attempted}'.",
        remediation="The task was already handled by someone else. Reload it.",
    ),
    "E-3002": ErrorCode(
        code="E-3002",
        category=ErrorCategory.CONFLICT,
        title="Stale Snapshot Chain",
        message_template="Snapshot chain for delivery '{delivery_id}' advanced concurrently.",
        remediation="Re-read the latest snapshot and append again.",
        is_retryable=True,
    ),
    "E-3003": ErrorCode(
        code="E-3003",
        category=ErrorCategory.CONFLICT,
        title="Cross-Delivery Reference",
        message_template="Snapshot '{snapshot_id}' belongs to a different delivery.",
        remediation="Reference a snapshot of the same delivery.",
    ),
    "E-3004": ErrorCode(
        code="E-3004",
        category=ErrorCategory.CONFLICT,
        title="Reminder Already Claimed",
        message_template="Reminder for task '{task_id}' was already claimed.",
        remediation="Skip this task in the current sweep.",
    ),
    # System errors (E-4xxx)
    "E-4001": ErrorCode(
        code="E-4001",
        category=ErrorCategory.SYSTEM,
        title="Serialization Error",
        message_template="Payload could not be encoded: {details}",
        remediation="Only store JSON-compatible values in the payload.",
    ),
}


def get_error(code: str) -> ErrorCode | None:
    """Get error definition by code.

    Args:
        code: Error code in E-XXXX format.

    Returns:
        ErrorCode if found, None otherwise.
    """
    return ERROR_REGISTRY.get(code)


def get_errors_by_category(category: ErrorCategory) -> list[ErrorCode]:
    """Get all errors in a category."""
    return [e for e in ERROR_REGISTRY.values() if e.category == category]
