"""
Engine Module - Cancellation
============================
Cascading cancellation of a task and its non-terminal descendants.
"""

import logging
from typing import List, Optional

from ..orchestrator_types import TaskStatus
from ..task_store import TaskStore
from ..transitions import apply_transition

logger = logging.getLogger(__name__)


async def cancel_tree(
    store: TaskStore,
    task_id: str,
    reason: str = "",
    reopen: bool = False,
    log: Optional[logging.Logger] = None,
) -> List[str]:
    """
    Cancel ``task_id`` and every descendant that is not already terminal.

    Descendants are cancelled before the root, one task lock at a time.
    With ``reopen`` completed tasks are cancelled as well (review redirect);
    cancelled tasks are always left untouched.

    Returns:
        Ids of the tasks this call cancelled
    """
    log = log or logger
    root = await store.require(task_id)
    descendants = await store.get_subtree(root.id)

    cancelled: List[str] = []
    for target_id in [d.id for d in reversed(descendants)] + [root.id]:
        async with store.lock(target_id):
            task = await store.get(target_id)
            if task is None or task.status == TaskStatus.CANCELLED:
                continue
            if task.is_terminal and not reopen:
                continue
            apply_transition(task, TaskStatus.CANCELLED, reopen=reopen)
            if reason:
                task.error_message = reason
            task.blocked_reason = None
            await store.save(task)
        cancelled.append(target_id)

    if cancelled:
        log.info(f"🛑 Cancelled {len(cancelled)} task(s) under {task_id}" + (f": {reason}" if reason else ""))
    return cancelled
