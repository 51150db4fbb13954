"""
Unit tests for the task state machine.
"""
import pytest

from hollon_orchestrator.errors import AlreadyInMergedOrTerminalState, InvalidTransition
from hollon_orchestrator.orchestrator_types import Task, TaskStatus
from hollon_orchestrator.transitions import ALLOWED_TRANSITIONS, apply_transition, can_transition


class TestTransitionTable:

    def test_every_status_has_an_entry(self):
        """Every status appears in the table."""
        assert set(ALLOWED_TRANSITIONS) == set(TaskStatus)

    def test_terminal_states_have_no_exits(self):
        """Completed and cancelled have no ordinary exits."""
        assert ALLOWED_TRANSITIONS[TaskStatus.COMPLETED] == frozenset()
        assert ALLOWED_TRANSITIONS[TaskStatus.CANCELLED] == frozenset()

    def test_main_path(self):
        """The main lifecycle path is allowed step by step."""
        path = [
            TaskStatus.PENDING,
            TaskStatus.READY,
            TaskStatus.IN_PROGRESS,
            TaskStatus.READY_FOR_REVIEW,
            TaskStatus.IN_REVIEW,
            TaskStatus.COMPLETED,
        ]
        for current, new in zip(path, path[1:]):
            assert can_transition(current, new), f"{current} -> {new}"

    def test_dependency_side_cycle_and_retry_path(self):
        """Blocking, retries and repeat failures are allowed."""
        assert can_transition(TaskStatus.BLOCKED, TaskStatus.READY)
        assert can_transition(TaskStatus.READY, TaskStatus.BLOCKED)
        assert can_transition(TaskStatus.FAILED, TaskStatus.READY)
        assert can_transition(TaskStatus.READY, TaskStatus.FAILED)
        assert can_transition(TaskStatus.PENDING, TaskStatus.FAILED)

    def test_reopen_only_leaves_completed(self):
        """Only completed tasks can be reopened."""
        assert not can_transition(TaskStatus.COMPLETED, TaskStatus.READY)
        assert can_transition(TaskStatus.COMPLETED, TaskStatus.READY, reopen=True)
        assert not can_transition(TaskStatus.CANCELLED, TaskStatus.READY, reopen=True)


class TestApplyTransition:

    def test_sets_timestamps(self):
        """Starting and completing stamp the task."""
        task = Task(id="t1", title="t1", status=TaskStatus.READY)
        assert apply_transition(task, TaskStatus.IN_PROGRESS) is True
        assert task.started_at is not None
        apply_transition(task, TaskStatus.COMPLETED)
        assert task.completed_at is not None

    def test_same_status_is_noop(self):
        """Moving to the current status changes nothing."""
        task = Task(id="t1", title="t1", status=TaskStatus.BLOCKED)
        before = task.updated_at
        assert apply_transition(task, TaskStatus.BLOCKED) is False
        assert task.updated_at == before

    def test_forbidden_transition_raises_with_context(self):
        """Forbidden moves raise with the task and both states."""
        task = Task(id="t1", title="t1", status=TaskStatus.CANCELLED)
        with pytest.raises(InvalidTransition) as exc:
            apply_transition(task, TaskStatus.READY)
        assert exc.value.context == {"task_id": "t1", "current": "cancelled", "requested": "ready"}
        assert task.status == TaskStatus.CANCELLED

    def test_invalid_transition_is_a_state_error(self):
        """InvalidTransition can be caught as a terminal-state error."""
        task = Task(id="t1", title="t1", status=TaskStatus.COMPLETED)
        with pytest.raises(AlreadyInMergedOrTerminalState):
            apply_transition(task, TaskStatus.IN_PROGRESS)
