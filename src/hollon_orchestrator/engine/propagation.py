"""
Engine Module - Status Propagation
==================================
Derives a parent task's status from the aggregate status of its children.

Precedence (first match wins):
    1. all children completed      -> ready_for_review (review gate, never completed)
    2. any child failed            -> blocked
    3. any child blocked           -> blocked
    4. any child in_progress       -> in_progress
    5. otherwise                   -> no change
"""

import logging
from typing import Iterable, Optional

from ..orchestrator_types import TaskStatus
from ..task_store import TaskStore
from ..transitions import apply_transition, can_transition

logger = logging.getLogger(__name__)


def derive_parent_status(child_statuses: Iterable[TaskStatus], current: TaskStatus) -> Optional[TaskStatus]:
    """
    Apply the precedence table to a set of child statuses.

    Returns:
        The new parent status, or None when nothing should change (no
        children, no rule matched, or the parent is already there)
    """
    statuses = list(child_statuses)
    if not statuses:
        return None

    if all(s == TaskStatus.COMPLETED for s in statuses):
        derived = TaskStatus.READY_FOR_REVIEW
    elif any(s == TaskStatus.FAILED for s in statuses):
        derived = TaskStatus.BLOCKED
    elif any(s == TaskStatus.BLOCKED for s in statuses):
        derived = TaskStatus.BLOCKED
    elif any(s == TaskStatus.IN_PROGRESS for s in statuses):
        derived = TaskStatus.IN_PROGRESS
    else:
        return None

    return None if derived == current else derived


class StatusPropagationEngine:
    """Best-effort parent re-derivation, scoped to one parent lock."""

    # Parents in these states are owned by another flow (review, terminal)
    FROZEN_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.CANCELLED, TaskStatus.IN_REVIEW})

    def __init__(self, store: TaskStore, log: Optional[logging.Logger] = None):
        self.store = store
        self.log = log or logger

    async def update_parent(self, parent_id: Optional[str]) -> Optional[TaskStatus]:
        """
        Re-derive and persist the status of ``parent_id``. Never raises.

        Returns:
            The new status if one was written, else None
        """
        if not parent_id:
            return None
        try:
            async with self.store.lock(parent_id):
                parent = await self.store.get(parent_id)
                if parent is None:
                    self.log.warning(f"Propagation skipped: parent {parent_id} not found")
                    return None
                if parent.status in self.FROZEN_STATUSES:
                    return None

                children = await self.store.get_children(parent_id)
                new_status = derive_parent_status((c.status for c in children), parent.status)
                if new_status is None:
                    return None

                if not can_transition(parent.status, new_status):
                    self.log.warning(
                        f"Propagation skipped for {parent_id}: "
                        f"{parent.status.value} -> {new_status.value} not permitted"
                    )
                    return None

                apply_transition(parent, new_status)
                if new_status == TaskStatus.BLOCKED:
                    parent.blocked_reason = "Waiting on blocked or failed subtasks"
                else:
                    parent.blocked_reason = None
                await self.store.save(parent)

            self.log.info(f"Parent {parent_id} -> {new_status.value} (derived from {len(children)} children)")
            return new_status
        except Exception as e:
            self.log.error(f"Propagation failed for parent {parent_id}: {e}", exc_info=True)
            return None
