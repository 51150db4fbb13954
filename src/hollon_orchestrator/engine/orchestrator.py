"""
Engine Module - Task Orchestrator
=================================
Wires the engine services together around one TaskStore and exposes the
task lifecycle entry points used by workers and schedulers:

    start_task -> complete_task | fail_task | submit_for_review
    retry_task, cancel_task

Completion paths are split in two: the task's own transition is atomic and
may raise, everything downstream (unblocking, parent propagation,
notifications) is best-effort and never fails the caller.
"""

import logging
from datetime import datetime
from typing import List, Optional

from ..config import OrchestratorConfig
from ..errors import AlreadyInMergedOrTerminalState
from ..metrics import update_task_state_gauges
from ..notifications import REVIEW_REQUESTED, LoggingNotifier, Notifier, send_notification
from ..orchestrator_types import Task, TaskStatus
from ..task_store import TaskStore
from ..transitions import apply_transition, assert_transition
from .cancellation import cancel_tree
from .dependencies import DependencyGraphEngine
from .distribution import TeamTaskDistributionService
from .manager import ManagerService
from .oracle import DecisionOracle, HeuristicPlanner
from .propagation import StatusPropagationEngine
from .retry import RetryGovernor
from .review import ReviewCycleController
from .subtasks import SubtaskCreationService

logger = logging.getLogger(__name__)


class TaskOrchestrator:
    """Facade over the task graph engine."""

    def __init__(
        self,
        store: TaskStore,
        config: Optional[OrchestratorConfig] = None,
        oracle: Optional[DecisionOracle] = None,
        notifier: Optional[Notifier] = None,
        log: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.config = config or OrchestratorConfig()
        self.log = log or logger
        self.notifier = notifier or LoggingNotifier(self.log)
        planner = HeuristicPlanner()

        self.propagation = StatusPropagationEngine(store, log=self.log)
        self.dependencies = DependencyGraphEngine(store, log=self.log)
        self.subtasks = SubtaskCreationService(store, self.propagation, self.config.limits, log=self.log)
        self.retry = RetryGovernor(store, self.config.backoff, log=self.log)
        self.distribution = TeamTaskDistributionService(
            store, self.subtasks, self.dependencies,
            oracle=oracle, planner=planner, oracle_config=self.config.oracle, log=self.log,
        )
        self.review = ReviewCycleController(
            store, self.subtasks, self.dependencies,
            oracle=oracle, planner=planner,
            review_config=self.config.review, oracle_config=self.config.oracle,
            notifier=self.notifier, log=self.log,
        )
        self.manager = ManagerService(
            store, self.retry,
            oracle=oracle, planner=planner, oracle_config=self.config.oracle,
            notifier=self.notifier, log=self.log,
        )

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    async def add_task(self, task: Task) -> Task:
        """
        Store a new task, wiring its dependencies through the cycle check.

        Raises:
            NotFound: A dependency does not exist
            CircularDependency: The dependencies would close a cycle
        """
        dependencies = list(task.dependencies)
        task.dependencies = []
        await self.store.save(task)
        if dependencies:
            try:
                task = await self.dependencies.add_dependencies(task.id, dependencies)
            except Exception:
                await self.store.delete(task.id)
                raise
        return task

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start_task(self, task_id: str) -> Task:
        """ready | pending -> in_progress."""
        async with self.store.lock(task_id):
            task = await self.store.require(task_id)
            if task.status not in (TaskStatus.READY, TaskStatus.PENDING):
                raise AlreadyInMergedOrTerminalState(
                    f"Task {task_id} cannot start from {task.status.value}",
                    context={"task_id": task_id, "status": task.status.value},
                )
            apply_transition(task, TaskStatus.IN_PROGRESS)
            await self.store.save(task)

        self.log.info(f"▶️ Task {task_id} started")
        await self.propagation.update_parent(task.parent_id)
        return task

    async def complete_task(self, task_id: str) -> Task:
        """
        Mark a task completed, then unblock its dependents and re-derive its
        parent. Completing an already completed task is a no-op.
        """
        async with self.store.lock(task_id):
            task = await self.store.require(task_id)
            if task.status == TaskStatus.COMPLETED:
                return task
            if task.status in (TaskStatus.READY, TaskStatus.PENDING):
                apply_transition(task, TaskStatus.IN_PROGRESS)
            assert_transition(task, TaskStatus.COMPLETED)
            apply_transition(task, TaskStatus.COMPLETED)
            self.retry.record_success(task)
            task.blocked_reason = None
            await self.store.save(task)

        self.log.info(f"✅ Task {task_id} completed")
        await self.dependencies.unblock_dependents(task_id)
        await self._propagate(task)
        return task

    async def fail_task(self, task_id: str, error: str, now: Optional[datetime] = None) -> Task:
        task = await self.retry.record_failure(task_id, error, now=now)
        await self._propagate(task)
        return task

    async def retry_task(self, task_id: str) -> Task:
        task = await self.retry.retry(task_id)
        await self._propagate(task)
        return task

    async def cancel_task(self, task_id: str, reason: str = "") -> List[str]:
        """Cancel a task and its non-terminal descendants, then re-derive its parent."""
        task = await self.store.require(task_id)
        cancelled = await cancel_tree(self.store, task_id, reason=reason, log=self.log)
        await self._propagate(task)
        return cancelled

    async def submit_for_review(self, task_id: str) -> Task:
        """Leaf work finished by its worker: in_progress -> ready_for_review."""
        async with self.store.lock(task_id):
            task = await self.store.require(task_id)
            if task.status != TaskStatus.IN_PROGRESS:
                raise AlreadyInMergedOrTerminalState(
                    f"Task {task_id} cannot be submitted for review from {task.status.value}",
                    context={"task_id": task_id, "status": task.status.value},
                )
            apply_transition(task, TaskStatus.READY_FOR_REVIEW)
            await self.store.save(task)

        await self._request_review(task)
        await self._propagate(task)
        return task

    # -------------------------------------------------------------------------
    # Team flows
    # -------------------------------------------------------------------------

    async def distribute_to_team(self, team_task_id: str):
        return await self.distribution.distribute_to_team(team_task_id)

    async def review_with_oracle(self, parent_id: str):
        return await self.review.review_with_oracle(parent_id)

    async def resurface_due(self, now: Optional[datetime] = None) -> List[str]:
        return await self.retry.resurface_due(now)

    async def refresh_metrics(self) -> None:
        if self.config.enable_metrics:
            update_task_state_gauges(await self.store.list_tasks())

    # -------------------------------------------------------------------------
    # Best-effort downstream effects
    # -------------------------------------------------------------------------

    async def _propagate(self, task: Task) -> None:
        new_status = await self.propagation.update_parent(task.parent_id)
        if new_status != TaskStatus.READY_FOR_REVIEW:
            return
        try:
            parent = await self.store.get(task.parent_id)
            if parent is not None:
                await self._request_review(parent)
        except Exception as e:
            self.log.error(f"Review request for {task.parent_id} failed: {e}", exc_info=True)

    async def _request_review(self, task: Task) -> None:
        recipient = task.reviewer_id
        if not recipient and task.assigned_team_id:
            team = await self.store.get_team(task.assigned_team_id)
            recipient = team.manager_id if team else None
        recipient = recipient or task.assigned_member_id
        await send_notification(
            self.notifier, recipient, REVIEW_REQUESTED,
            {"task_id": task.id, "title": task.title, "review_count": task.review_count},
            log=self.log,
        )
