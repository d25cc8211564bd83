"""Error handling framework for the coordination core.

This package provides:
- Error code registry with E-XXXX format codes
- Typed domain exceptions raised by the services

Error categories:
- E-1xxx: Validation errors
- E-2xxx: Not found errors
- E-3xxx: Conflict and reference errors
- E-4xxx: System/serialization errors
"""

from lastmile.errors.domain import (
    ConflictError,
    DomainError,
    InvalidReferenceError,
    InvalidStateTransition,
    NotFoundError,
    ReminderClaimConflict,
    SerializationError,
    StoreError,
    ValidationError,
    to_error_dict,
)
from lastmile.errors.registry import (
    ERROR_REGISTRY,
    ErrorCategory,
    ErrorCode,
    get_error,
    get_errors_by_category,
)

__all__ = [
    # Registry
    "ErrorCode",
    "ErrorCategory",
    "ERROR_REGISTRY",
    "get_error",
    "get_errors_by_category",
    # Domain
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
