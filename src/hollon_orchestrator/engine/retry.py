"""
Engine Module - Retry / Backoff Governor
========================================
Failure bookkeeping with exponential backoff. Scheduling the resurfacing of
backed-off tasks is left to an external scheduler, which may call
``resurface_due`` periodically.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from ..config import BackoffConfig
from ..errors import AlreadyInMergedOrTerminalState
from ..metrics import task_metrics
from ..orchestrator_types import Task, TaskStatus
from ..task_store import TaskStore
from ..transitions import apply_transition
from .dependencies import is_backing_off

logger = logging.getLogger(__name__)


class RetryGovernor:
    """Tracks consecutive failures per task and decides blocked vs failed."""

    def __init__(self, store: TaskStore, backoff: Optional[BackoffConfig] = None, log: Optional[logging.Logger] = None):
        self.store = store
        self.backoff = backoff or BackoffConfig()
        self.log = log or logger

    def is_backing_off(self, task: Task, now: Optional[datetime] = None) -> bool:
        return is_backing_off(task, now)

    async def record_failure(self, task_id: str, error: str, now: Optional[datetime] = None) -> Task:
        """
        Record one failure of ``task_id``.

        The task is BLOCKED until ``now + delay(n)`` while automatic retries
        remain, and FAILED once they are exhausted.

        Raises:
            NotFound: Task does not exist
            AlreadyInMergedOrTerminalState: Task is completed or cancelled
        """
        now = now or datetime.now()
        async with self.store.lock(task_id):
            task = await self.store.require(task_id)
            if task.is_terminal:
                raise AlreadyInMergedOrTerminalState(
                    f"Cannot record failure for {task_id}: task is {task.status.value}",
                    context={"task_id": task_id, "status": task.status.value},
                )

            n = task.consecutive_failures + 1
            delay = self.backoff.delay_for(n)
            task.consecutive_failures = n
            task.last_failed_at = now
            task.error_message = error
            task.blocked_until = now + timedelta(seconds=delay)

            if n <= self.backoff.max_auto_retries:
                apply_transition(task, TaskStatus.BLOCKED)
                task.blocked_reason = f"Backing off after {n} consecutive failure(s)"
                outcome = "backoff"
            else:
                apply_transition(task, TaskStatus.FAILED)
                task.blocked_reason = None
                outcome = "failed"
            task.touch()
            await self.store.save(task)

        task_metrics.failures_total.labels(outcome=outcome).inc()
        task_metrics.backoff_seconds.observe(delay)
        self.log.warning(
            f"Task {task_id} failed (attempt {n}). "
            f"Blocked until {task.blocked_until.isoformat()} ({delay / 60:.0f} min) -> {task.status.value}. "
            f"Error: {error}"
        )
        return task

    def record_success(self, task: Task) -> Task:
        """Reset failure telemetry in place; callers persist the task."""
        task.consecutive_failures = 0
        task.blocked_until = None
        task.last_failed_at = None
        task.error_message = None
        return task

    async def retry(self, task_id: str) -> Task:
        """
        Manager-elected retry: ``retry_count + 1``, clear the error and the
        backoff window, status -> ready.

        Raises:
            AlreadyInMergedOrTerminalState: Task is not failed or blocked
        """
        async with self.store.lock(task_id):
            task = await self.store.require(task_id)
            if task.status not in (TaskStatus.FAILED, TaskStatus.BLOCKED):
                raise AlreadyInMergedOrTerminalState(
                    f"Cannot retry {task_id} from {task.status.value}",
                    context={"task_id": task_id, "status": task.status.value},
                )
            task.retry_count += 1
            task.error_message = None
            task.blocked_until = None
            task.blocked_reason = None
            apply_transition(task, TaskStatus.READY)
            await self.store.save(task)

        self.log.info(f"🔁 Task {task_id} retried (retry #{task.retry_count})")
        return task

    async def resurface_due(self, now: Optional[datetime] = None) -> List[str]:
        """
        Move blocked tasks whose backoff has expired and whose dependencies
        are all completed back to ready.
        """
        now = now or datetime.now()
        resurfaced: List[str] = []
        for candidate in await self.store.get_blocked():
            if candidate.blocked_until is None or candidate.blocked_until > now:
                continue
            try:
                async with self.store.lock(candidate.id):
                    hydrated = await self.store.with_dependencies(candidate.id)
                    task = hydrated.task
                    if task.status != TaskStatus.BLOCKED or self.is_backing_off(task, now):
                        continue
                    if not hydrated.all_dependencies_completed:
                        continue
                    task.blocked_until = None
                    task.blocked_reason = None
                    apply_transition(task, TaskStatus.READY)
                    await self.store.save(task)
                resurfaced.append(candidate.id)
            except Exception as e:
                self.log.error(f"Failed to resurface {candidate.id}: {e}", exc_info=True)

        if resurfaced:
            self.log.info(f"Resurfaced {len(resurfaced)} task(s) after backoff")
        return resurfaced
