"""
Hollon Orchestrator - Task State Machine
========================================

Allowed status transitions. Every status write in the engine goes through
``apply_transition`` so that no other transition can be persisted.

    pending -> ready -> in_progress -> {ready_for_review | blocked | failed}
            -> in_review -> {completed | cancelled}

plus the dependency side-cycle ``blocked <-> ready``, the retry path
``failed -> ready -> failed``, and parent re-derivation edges driven by child status.
"""

import logging
from datetime import datetime
from typing import Dict, FrozenSet

from .errors import InvalidTransition
from .metrics import task_metrics
from .orchestrator_types import Task, TaskStatus

logger = logging.getLogger(__name__)

S = TaskStatus

ALLOWED_TRANSITIONS: Dict[TaskStatus, FrozenSet[TaskStatus]] = {
    S.PENDING: frozenset({S.READY, S.IN_PROGRESS, S.BLOCKED, S.READY_FOR_REVIEW, S.FAILED, S.CANCELLED}),
    # failed: a retried task that fails again is already past its auto-retries
    S.READY: frozenset({S.PENDING, S.IN_PROGRESS, S.BLOCKED, S.READY_FOR_REVIEW, S.FAILED, S.CANCELLED}),
    S.IN_PROGRESS: frozenset({
        S.READY,              # released back to the pool
        S.READY_FOR_REVIEW,
        S.BLOCKED,
        S.FAILED,
        S.COMPLETED,          # leaf work finished by its worker
        S.CANCELLED,
    }),
    S.READY_FOR_REVIEW: frozenset({S.IN_REVIEW, S.IN_PROGRESS, S.BLOCKED, S.COMPLETED, S.CANCELLED}),
    S.IN_REVIEW: frozenset({
        S.COMPLETED,
        S.IN_PROGRESS,        # rework / add_tasks
        S.READY,              # redirect
        S.READY_FOR_REVIEW,
        S.BLOCKED,
        S.CANCELLED,
    }),
    S.BLOCKED: frozenset({S.READY, S.IN_PROGRESS, S.READY_FOR_REVIEW, S.FAILED, S.CANCELLED}),
    S.FAILED: frozenset({S.READY, S.BLOCKED, S.CANCELLED}),
    S.COMPLETED: frozenset(),
    S.CANCELLED: frozenset(),
}

# Terminal states can only be left through an explicit reopen (review rework
# and redirect). Cancelled is never left.
REOPEN_TRANSITIONS: Dict[TaskStatus, FrozenSet[TaskStatus]] = {
    S.COMPLETED: frozenset({S.READY, S.CANCELLED}),
}


def can_transition(current: TaskStatus, new: TaskStatus, reopen: bool = False) -> bool:
    if new in ALLOWED_TRANSITIONS.get(current, frozenset()):
        return True
    if reopen and new in REOPEN_TRANSITIONS.get(current, frozenset()):
        return True
    return False


def assert_transition(task: Task, new: TaskStatus, reopen: bool = False) -> None:
    """Raise InvalidTransition unless ``task`` may move to ``new``."""
    if not can_transition(task.status, new, reopen=reopen):
        raise InvalidTransition(
            f"Task {task.id} cannot move from {task.status.value} to {new.value}",
            context={"task_id": task.id, "current": task.status.value, "requested": new.value},
        )


def apply_transition(task: Task, new: TaskStatus, reopen: bool = False) -> bool:
    """
    Move ``task`` to ``new`` in place.

    Returns False (and changes nothing) when the task is already in ``new``,
    so repeated events never double-apply a transition.

    Raises:
        InvalidTransition: If the state machine forbids the move
    """
    if task.status == new:
        return False

    assert_transition(task, new, reopen=reopen)

    previous = task.status
    task.status = new
    now = datetime.now()
    task.updated_at = now
    if new == S.IN_PROGRESS and task.started_at is None:
        task.started_at = now
    if new == S.COMPLETED:
        task.completed_at = now

    task_metrics.transitions_total.labels(from_status=previous.value, to_status=new.value).inc()
    logger.debug(f"Task {task.id}: {previous.value} -> {new.value}")
    return True
