"""Tests for typed domain exceptions."""

from sqlalchemy.exc import SQLAlchemyError

from lastmile.errors import (
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


class TestDomainErrors:

    def test_not_found_carries_resource(self):
        exc = NotFoundError("Task", "t-1", code="E-2002")
        assert exc.resource_type == "Task"
        assert exc.identifier == "t-1"
        assert exc.code == "E-2002"
        assert "t-1" in str(exc)

    def test_invalid_state_transition_is_conflict(self):
        exc = InvalidStateTransition("t-1", "completed", "cancelled", ["in_progress", "pending"])
        assert isinstance(exc, ConflictError)
        assert exc.code == "E-3001"
        assert exc.allowed_sources == ["in_progress", "pending"]
        assert "completed" in str(exc) and "cancelled" in str(exc)

    def test_reminder_claim_is_conflict(self):
        exc = ReminderClaimConflict("t-1")
        assert isinstance(exc, ConflictError)
        assert exc.code == "E-3004"

    def test_invalid_reference_is_not_conflict(self):
        exc = InvalidReferenceError("s-1", "D-1", "D-2")
        assert not isinstance(exc, ConflictError)
        assert exc.actual_delivery_id == "D-2"

    def test_store_error_is_sqlalchemy_base(self):
        assert StoreError is SQLAlchemyError


class TestToErrorDict:

    def test_known_code(self):
        result = to_error_dict(ConflictError("chain advanced"))
        assert result == {
            "code": "E-3002",
            "title": "Stale Snapshot Chain",
            "message": "chain advanced",
            "retryable": True,
        }

    def test_validation_code(self):
        result = to_error_dict(ValidationError("missing delivery_id"))
        assert result["code"] == "E-1001"
        assert result["retryable"] is False

    def test_serialization_code(self):
        assert to_error_dict(SerializationError("bad"))["title"] == "Serialization Error"

    def test_unregistered_code_falls_back_to_class_name(self):
        result = to_error_dict(DomainError("boom"))
        assert result["title"] == "DomainError"
        assert result["retryable"] is False
