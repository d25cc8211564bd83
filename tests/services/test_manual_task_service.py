"""Tests for the manual coordination task tracker."""

from datetime import UTC, datetime

import pytest

from lastmile.db.models import TaskStatus, TaskType
from lastmile.errors import (
    ConflictError,
    InvalidStateTransition,
    NotFoundError,
    ReminderClaimConflict,
    SerializationError,
    ValidationError,
)
from lastmile.services.manual_task_service import (
    TRANSITION_SOURCES,
    UNSET,
    ManualTaskService,
    TaskQueryFilters,
)

NINE = datetime(2024, 3, 15, 9, 0, tzinfo=UTC)
TEN = datetime(2024, 3, 15, 10, 0, tzinfo=UTC)


def _create(
    tasks: ManualTaskService,
    delivery_id: str = "D-1",
    provider_code: str = "lalamove",
    task_type: str = "phone_coordination",
    instructions: str = "Call the driver to confirm pickup",
    contact_info: dict | None = None,
    **kwargs,
):
    return tasks.create_task(
        delivery_id, provider_code, task_type, instructions, contact_info, **kwargs
    )


class TestCreateTask:

    def test_creates_pending_task(self, tasks):
        task = _create(tasks, contact_info={"phone": "0812345678"})

        assert task.id
        assert task.task_status == TaskStatus.pending.value
        assert task.reminder_count == 0
        assert task.assigned_to_user_id is None
        assert task.completed_at is None
        assert task.contact_info == {"phone": "0812345678"}
        assert task.created_at == task.updated_at == "2024-03-15T09:00:00.000000+00:00"

    def test_schedules_first_reminder_from_task_type(self, tasks):
        phone = _create(tasks, task_type=TaskType.phone_coordination)
        email = _create(tasks, task_type="email_coordination")
        custom = _create(tasks, task_type="warehouse_walkin")

        assert phone.task_type == "phone_coordination"
        assert phone.next_reminder_due == "2024-03-15T09:30:00.000000+00:00"
        assert email.next_reminder_due == "2024-03-15T13:00:00.000000+00:00"
        assert custom.next_reminder_due == "2024-03-15T10:00:00.000000+00:00"

    def test_explicit_reminder_time_wins(self, tasks):
        task = _create(tasks, next_reminder_due=datetime(2024, 3, 15, 9, 5, tzinfo=UTC))
        assert task.next_reminder_due == "2024-03-15T09:05:00.000000+00:00"

    def test_initial_reminder_can_be_disabled(self, db_session, clock):
        service = ManualTaskService(db_session, schedule_initial_reminder=False, clock=clock)
        assert _create(service).next_reminder_due is None

    @pytest.mark.parametrize(
        "field", ["delivery_id", "provider_code", "task_type", "instructions"]
    )
    def test_required_fields(self, tasks, field):
        with pytest.raises(ValidationError):
            _create(tasks, **{field: "  "})

    def test_missing_provider_defaults_to_manual(self, tasks):
        task = _create(tasks, provider_code=None)
        assert task.provider_code == "manual"

    def test_unencodable_contact_info(self, tasks):
        with pytest.raises(SerializationError):
            _create(tasks, contact_info={"callback": object()})


class TestTransitions:
    """Every status change is a guarded single-row write."""

    def test_transition_table(self):
        assert TRANSITION_SOURCES[TaskStatus.in_progress] == {TaskStatus.pending}
        for terminal in (TaskStatus.completed, TaskStatus.failed, TaskStatus.cancelled):
            assert TRANSITION_SOURCES[terminal] == {TaskStatus.pending, TaskStatus.in_progress}

    def test_start_task(self, tasks, clock):
        task = _create(tasks)
        clock.advance(minutes=3)
        started = tasks.start_task(task.id)

        assert started.task_status == "in_progress"
        assert started.updated_at == "2024-03-15T09:03:00.000000+00:00"
        assert started.next_reminder_due == "2024-03-15T09:30:00.000000+00:00"

    def test_start_twice_rejected(self, tasks):
        task = _create(tasks)
        tasks.start_task(task.id)

        with pytest.raises(InvalidStateTransition) as exc_info:
            tasks.start_task(task.id)
        assert exc_info.value.current_state == "in_progress"
        assert exc_info.value.allowed_sources == ["pending"]

    @pytest.mark.parametrize("started", [False, True])
    def test_complete_from_active(self, tasks, clock, started):
        task = _create(tasks)
        if started:
            tasks.start_task(task.id)
        clock.advance(hours=1)

        done = tasks.complete_task(task.id, "Driver confirmed", "TRK-123")
        assert done.task_status == "completed"
        assert done.completed_at == "2024-03-15T10:00:00.000000+00:00"
        assert done.completion_notes == "Driver confirmed"
        assert done.external_reference == "TRK-123"
        assert done.next_reminder_due is None

    def test_fail_records_reason(self, tasks):
        task = _create(tasks)
        failed = tasks.fail_task(task.id, "Provider unreachable")
        assert failed.task_status == "failed"
        assert failed.completion_notes == "Provider unreachable"
        assert failed.completed_at is not None

    def test_cancel_records_reason(self, tasks):
        task = _create(tasks)
        cancelled = tasks.cancel_task(task.id, "Order cancelled by customer")
        assert cancelled.task_status == "cancelled"
        assert cancelled.completion_notes == "Order cancelled by customer"
        assert cancelled.completed_at is not None

    def test_cancel_after_complete_rejected(self, tasks):
        """The later of two conflicting closes loses."""
        task = _create(tasks)
        tasks.complete_task(task.id, "ok")

        with pytest.raises(InvalidStateTransition) as exc_info:
            tasks.cancel_task(task.id, "too late")

        assert isinstance(exc_info.value, ConflictError)
        assert exc_info.value.current_state == "completed"
        assert exc_info.value.attempted_state == "cancelled"
        stored = tasks.get_task(task.id)
        assert stored.task_status == "completed"
        assert stored.completion_notes == "ok"

    @pytest.mark.parametrize("close", ["complete_task", "fail_task", "cancel_task"])
    def test_nothing_leaves_terminal_state(self, tasks, close):
        task = _create(tasks)
        tasks.fail_task(task.id, "gave up")

        with pytest.raises(InvalidStateTransition):
            getattr(tasks, close)(task.id, "again")
        with pytest.raises(InvalidStateTransition):
            tasks.start_task(task.id)

    @pytest.mark.parametrize("close", ["complete_task", "fail_task", "cancel_task"])
    def test_terminal_transition_clears_reminder(self, tasks, close):
        task = _create(tasks)
        assert task.next_reminder_due is not None

        closed = getattr(tasks, close)(task.id, "done")
        assert closed.next_reminder_due is None

    def test_unknown_task(self, tasks):
        with pytest.raises(NotFoundError) as exc_info:
            tasks.complete_task("missing")
        assert exc_info.value.code == "E-2002"


class TestGuardedMutations:

    def test_assign_keeps_status(self, tasks):
        task = _create(tasks)
        assigned = tasks.assign_to_user(task.id, "coord-1")
        assert assigned.assigned_to_user_id == "coord-1"
        assert assigned.task_status == "pending"

        unassigned = tasks.unassign_task(task.id)
        assert unassigned.assigned_to_user_id is None

    def test_assign_requires_user(self, tasks):
        task = _create(tasks)
        with pytest.raises(ValidationError):
            tasks.assign_to_user(task.id, "")

    def test_terminal_task_cannot_be_reassigned(self, tasks):
        task = _create(tasks, assigned_to_user_id="coord-1")
        tasks.complete_task(task.id)

        with pytest.raises(InvalidStateTransition):
            tasks.assign_to_user(task.id, "coord-2")
        with pytest.raises(InvalidStateTransition):
            tasks.unassign_task(task.id)
        assert tasks.get_task(task.id).assigned_to_user_id == "coord-1"

    def test_update_instructions(self, tasks):
        task = _create(tasks)
        updated = tasks.update_instructions(task.id, "Call after 14:00")
        assert updated.task_instructions == "Call after 14:00"

        tasks.cancel_task(task.id)
        with pytest.raises(InvalidStateTransition):
            tasks.update_instructions(task.id, "Too late")

    def test_add_contact_info_merges(self, tasks):
        task = _create(tasks, contact_info={"phone": "0812345678"})
        updated = tasks.add_contact_info(task.id, "line_id", "@driver7")
        assert updated.contact_info == {"phone": "0812345678", "line_id": "@driver7"}

    def test_add_contact_info_on_terminal_task(self, tasks):
        task = _create(tasks)
        tasks.complete_task(task.id)
        with pytest.raises(InvalidStateTransition):
            tasks.add_contact_info(task.id, "phone", "0800000000")

    def test_set_next_reminder(self, tasks):
        task = _create(tasks)
        moved = tasks.set_next_reminder(task.id, datetime(2024, 3, 15, 15, 0, tzinfo=UTC))
        assert moved.next_reminder_due == "2024-03-15T15:00:00.000000+00:00"

        assert tasks.set_next_reminder(task.id, None).next_reminder_due is None

        tasks.complete_task(task.id)
        with pytest.raises(InvalidStateTransition):
            tasks.set_next_reminder(task.id, TEN)

    def test_delete_task(self, tasks):
        task = _create(tasks)
        tasks.delete_task(task.id)
        with pytest.raises(NotFoundError):
            tasks.get_task(task.id)
        with pytest.raises(NotFoundError):
            tasks.delete_task(task.id)


class TestReminderClaims:

    def test_claim_updates_bookkeeping(self, tasks, clock):
        task = _create(tasks)
        clock.advance(minutes=31)

        claimed = tasks.mark_reminder_sent(task.id)
        assert claimed.reminder_count == 1
        assert claimed.last_reminder_sent == "2024-03-15T09:31:00.000000+00:00"
        assert claimed.next_reminder_due is None

    def test_stale_claim_loses(self, tasks):
        task = _create(tasks)
        due = task.next_reminder_due

        tasks.mark_reminder_sent(task.id, expected_due=due)
        with pytest.raises(ReminderClaimConflict):
            tasks.mark_reminder_sent(task.id, expected_due=due)
        assert tasks.get_task(task.id).reminder_count == 1

    def test_claim_accepts_datetime(self, tasks):
        task = _create(tasks)
        claimed = tasks.mark_reminder_sent(
            task.id, expected_due=datetime(2024, 3, 15, 9, 30, tzinfo=UTC)
        )
        assert claimed.reminder_count == 1

    def test_rescheduled_reminder_can_be_claimed_again(self, tasks, clock):
        task = _create(tasks)
        clock.advance(minutes=30)
        tasks.mark_reminder_sent(task.id)
        tasks.set_next_reminder(task.id, clock.advance(hours=1))

        assert tasks.mark_reminder_sent(task.id).reminder_count == 2

    def test_claim_on_terminal_task_rejected(self, tasks):
        task = _create(tasks)
        due = task.next_reminder_due
        tasks.cancel_task(task.id)

        with pytest.raises(InvalidStateTransition):
            tasks.mark_reminder_sent(task.id, expected_due=due)

    def test_second_default_claim_loses(self, tasks, clock):
        task = _create(tasks, provider_code="grab", task_type="pickup_call")
        clock.advance(hours=1)
        assert [t.id for t in tasks.get_tasks_due_for_reminder()] == [task.id]

        tasks.mark_reminder_sent(task.id)
        with pytest.raises(ReminderClaimConflict):
            tasks.mark_reminder_sent(task.id)

        stored = tasks.get_task(task.id)
        assert stored.reminder_count == 1
        assert stored.last_reminder_sent == "2024-03-15T10:00:00.000000+00:00"

    def test_default_claim_before_due_loses(self, tasks, clock):
        task = _create(tasks)
        clock.advance(minutes=29)

        with pytest.raises(ReminderClaimConflict):
            tasks.mark_reminder_sent(task.id)
        assert tasks.get_task(task.id).reminder_count == 0

    @pytest.mark.parametrize("expected_due", [UNSET, None])
    def test_unscheduled_reminder_cannot_be_claimed(self, db_session, clock, expected_due):
        tasks = ManualTaskService(db_session, schedule_initial_reminder=False, clock=clock)
        task = _create(tasks)
        assert task.next_reminder_due is None
        clock.advance(hours=1)

        with pytest.raises(ReminderClaimConflict):
            tasks.mark_reminder_sent(task.id, expected_due=expected_due)
        stored = tasks.get_task(task.id)
        assert stored.reminder_count == 0
        assert stored.last_reminder_sent is None

    def test_default_claim_on_terminal_task_rejected(self, tasks, clock):
        task = _create(tasks)
        clock.advance(hours=1)
        tasks.complete_task(task.id)

        with pytest.raises(InvalidStateTransition):
            tasks.mark_reminder_sent(task.id)

    def test_default_claim_unknown_task(self, tasks):
        with pytest.raises(NotFoundError):
            tasks.mark_reminder_sent("missing")
            tasks.mark_reminder_sent(task.id, expected_due=due)


@pytest.fixture
def board(tasks, clock):
    """Four tasks created a minute apart; one in progress, one completed."""
    t1 = _create(tasks, delivery_id="D-1", task_type="phone_coordination")
    clock.advance(minutes=1)
    t2 = _create(
        tasks,
        delivery_id="D-2",
        provider_code="grab",
        task_type="line_message",
        assigned_to_user_id="coord-1",
    )
    tasks.start_task(t2.id)
    clock.advance(minutes=1)
    t3 = _create(tasks, delivery_id="D-1", task_type="app_booking")
    clock.advance(minutes=1)
    t4 = _create(tasks, delivery_id="D-3", task_type="phone_coordination")
    clock.advance(hours=2)
    tasks.complete_task(t4.id, "confirmed")
    tasks.mark_reminder_sent(t3.id)
    return {"t1": t1.id, "t2": t2.id, "t3": t3.id, "t4": t4.id}


class TestQueries:

    def test_get_task_unknown(self, tasks):
        with pytest.raises(NotFoundError):
            tasks.get_task("missing")

    def test_get_by_delivery_id_oldest_first(self, tasks, board):
        assert [t.id for t in tasks.get_by_delivery_id("D-1")] == [board["t1"], board["t3"]]

    def test_get_by_ids(self, tasks, board):
        result = tasks.get_by_ids([board["t4"], board["t1"], "missing"])
        assert [t.id for t in result] == [board["t1"], board["t4"]]
        assert tasks.get_by_ids([]) == []

    def test_due_for_reminder_is_inclusive(self, tasks, board):
        due = tasks.get_tasks_for_reminder(datetime(2024, 3, 15, 10, 1, tzinfo=UTC))
        assert [t.id for t in due] == [board["t1"], board["t2"]]

    def test_due_for_reminder_defaults_to_now(self, tasks, board):
        # Clock is at 11:03; t3's reminder was claimed and t4 is terminal.
        assert [t.id for t in tasks.get_tasks_due_for_reminder()] == [board["t1"], board["t2"]]
        assert [t.id for t in tasks.get_tasks_due_for_reminder(NINE)] == []

    def test_overdue_is_strict(self, tasks, board):
        overdue = tasks.get_overdue_tasks(datetime(2024, 3, 15, 10, 1, tzinfo=UTC))
        assert [t.id for t in overdue] == [board["t1"]]

    def test_status_queries(self, tasks, board):
        assert [t.id for t in tasks.get_pending_tasks()] == [board["t1"], board["t3"]]
        assert [t.id for t in tasks.get_active_tasks()] == [board["t1"], board["t2"], board["t3"]]
        assert [t.id for t in tasks.get_unassigned_tasks()] == [board["t1"], board["t3"]]
        assert [t.id for t in tasks.get_by_status("completed")] == [board["t4"]]
        assert [t.id for t in tasks.get_by_status(TaskStatus.in_progress)] == [board["t2"]]

    def test_pagination(self, tasks, board):
        assert [t.id for t in tasks.get_active_tasks(limit=1, offset=1)] == [board["t2"]]

    def test_unknown_status_rejected(self, tasks):
        with pytest.raises(ValidationError):
            tasks.get_by_status("lost")

    def test_dimension_queries(self, tasks, board):
        assert [t.id for t in tasks.get_by_assigned_user("coord-1")] == [board["t2"]]
        assert [t.id for t in tasks.get_by_provider_code("grab")] == [board["t2"]]
        assert [t.id for t in tasks.get_by_task_type(TaskType.phone_coordination)] == [
            board["t1"],
            board["t4"],
        ]

    def test_search_tasks(self, tasks, board):
        filters = TaskQueryFilters(
            provider_code="lalamove",
            statuses=["pending", TaskStatus.completed],
            created_after=datetime(2024, 3, 15, 9, 1, tzinfo=UTC),
        )
        assert [t.id for t in tasks.search_tasks(filters)] == [board["t3"], board["t4"]]

    def test_search_unassigned_with_limit(self, tasks, board):
        filters = TaskQueryFilters(unassigned_only=True, limit=2)
        assert [t.id for t in tasks.search_tasks(filters)] == [board["t1"], board["t3"]]

    def test_search_rejects_unknown_status(self, tasks):
        with pytest.raises(ValidationError):
            tasks.search_tasks(TaskQueryFilters(statuses=["lost"]))


class TestReporting:

    def test_task_statistics(self, tasks, board):
        stats = tasks.get_task_statistics(now=TEN)
        assert stats == {
            "total": 4,
            "pending": 2,
            "in_progress": 1,
            "completed": 1,
            "failed": 0,
            "cancelled": 0,
            "active": 3,
            "overdue": 1,
            "unassigned": 2,
        }

    def test_task_backlog(self, tasks, board):
        backlog = tasks.get_task_backlog(now=TEN)
        assert backlog["total_active"] == 3
        assert backlog["by_provider"] == {"lalamove": 2, "grab": 1}
        assert backlog["by_type"] == {
            "phone_coordination": 1,
            "line_message": 1,
            "app_booking": 1,
        }
        assert backlog["overdue"] == 1
        assert backlog["unassigned"] == 2

    def test_task_metrics(self, tasks, board):
        metrics = tasks.get_task_metrics(NINE, TEN)
        assert metrics["total"] == 4
        assert metrics["by_status"]["pending"] == 2
        assert metrics["completion_rate"] == pytest.approx(0.25)
        assert metrics["total_reminders"] == 1
        assert metrics["average_reminders"] == pytest.approx(0.25)
        assert metrics["average_completion_hours"] == pytest.approx(2.0)

    def test_task_metrics_empty_window(self, tasks):
        metrics = tasks.get_task_metrics(NINE, TEN)
        assert metrics["total"] == 0
        assert metrics["completion_rate"] == 0.0
        assert metrics["average_completion_hours"] is None


class TestAssignAndCompleteWorkflow:

    def test_assigned_task_completes_with_assignee_kept(self, tasks):
        task = tasks.create_task(
            "D1", "manual", "pickup_call", "call before 17:00"
        )
        tasks.assign_to_user(task.id, "U1")

        done = tasks.complete_task(task.id, "confirmed", "")

        assert done.task_status == "completed"
        assert done.completed_at is not None
        assert done.assigned_to_user_id == "U1"
        assert done.completion_notes == "confirmed"
        assert done.next_reminder_due is None
