"""
Engine Module - Subtask Creation
================================
Decomposes a parent task into children under the hierarchy limits.

Children inherit organization, project, working directory and team scope
from the parent, start READY and unassigned to any member, and default
their reviewer to the parent's assignee.
"""

import logging
from typing import Any, Dict, List, Optional

from ..config import HierarchyLimits
from ..errors import CountExceeded, DepthExceeded, NotFound
from ..metrics import task_metrics
from ..orchestrator_types import (
    CreationVerdict,
    SubtaskCreationResult,
    SubtaskDefinition,
    Task,
    TaskStatus,
    new_task_id,
)
from ..task_store import TaskStore
from .propagation import StatusPropagationEngine

logger = logging.getLogger(__name__)


class SubtaskCreationService:
    """Creates children of a task and keeps the parent's status derived."""

    def __init__(
        self,
        store: TaskStore,
        propagation: StatusPropagationEngine,
        limits: Optional[HierarchyLimits] = None,
        log: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.propagation = propagation
        self.limits = limits or store.limits
        self.log = log or logger

    def get_limits(self) -> HierarchyLimits:
        return self.limits

    # -------------------------------------------------------------------------
    # Depth / count
    # -------------------------------------------------------------------------

    async def calculate_depth(self, task_id: str) -> int:
        """
        Walk parent pointers to the root, counting hops (root = 0).

        Raises:
            NotFound: If the task does not exist
        """
        task = await self.store.require(task_id)
        depth = 0
        seen = {task.id}
        while task.parent_id:
            parent = await self.store.get(task.parent_id)
            if parent is None or parent.id in seen:
                break
            seen.add(parent.id)
            depth += 1
            task = parent
        return depth

    async def can_create_more(self, task_id: str, requested: int = 1) -> CreationVerdict:
        """Whether ``task_id`` may receive ``requested`` more children."""
        task = await self.store.get(task_id)
        if task is None:
            return CreationVerdict(
                can_create=False, current_depth=0, current_count=0,
                reason=f"Task {task_id} not found",
            )

        depth = await self.calculate_depth(task_id)
        count = await self.store.count_children(task_id)

        if depth >= self.limits.max_depth:
            return CreationVerdict(
                can_create=False, current_depth=depth, current_count=count,
                reason=f"Maximum depth ({self.limits.max_depth}) reached. Current depth: {depth}",
            )
        if count + requested > self.limits.max_subtasks_per_parent:
            return CreationVerdict(
                can_create=False, current_depth=depth, current_count=count,
                reason=(
                    f"Maximum subtasks ({self.limits.max_subtasks_per_parent}) reached. "
                    f"Current count: {count}"
                ),
            )
        return CreationVerdict(can_create=True, current_depth=depth, current_count=count)

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def _build_child(self, parent: Task, definition: SubtaskDefinition, creator_id: Optional[str]) -> Task:
        if not definition.title or not definition.title.strip():
            raise ValueError("Subtask title must not be empty")
        return Task(
            id=new_task_id(),
            title=definition.title.strip(),
            description=definition.description,
            type=definition.type,
            priority=definition.priority or parent.priority,
            status=TaskStatus.READY,
            parent_id=parent.id,
            depth=parent.depth + 1,
            organization_id=parent.organization_id,
            project_id=parent.project_id,
            working_directory=parent.working_directory,
            assigned_team_id=parent.assigned_team_id,
            reviewer_id=parent.assigned_member_id,
            creator_id=creator_id,
            acceptance_criteria=list(definition.acceptance_criteria),
            affected_files=list(definition.affected_files),
            estimated_complexity=definition.estimated_complexity,
        )

    async def create_subtasks(
        self,
        parent_id: str,
        definitions: List[SubtaskDefinition],
        validate_depth: bool = True,
        validate_count: bool = True,
        creator_id: Optional[str] = None,
    ) -> SubtaskCreationResult:
        """
        Create one child per definition.

        ``validate_depth`` selects how the parent's depth is established:
        walking the parent chain (True) or trusting the stored depth field
        (False). The depth limit itself is enforced either way.

        Args:
            parent_id: Task to decompose
            definitions: One entry per child
            validate_depth: Recompute depth from the parent chain
            validate_count: Enforce the per-parent child ceiling
            creator_id: Member recorded as the children's creator

        Returns:
            SubtaskCreationResult; per-item failures are collected, not raised

        Raises:
            NotFound: Parent does not exist
            DepthExceeded: Parent is already at the maximum depth
            CountExceeded: existing + requested children exceed the ceiling
        """
        result = SubtaskCreationResult(success=False, requested=len(definitions))

        async with self.store.lock(parent_id):
            parent = await self.store.get(parent_id)
            if parent is None:
                task_metrics.creation_rejections_total.labels(reason="not_found").inc()
                raise NotFound(f"Parent task {parent_id} not found", context={"parent_id": parent_id})

            depth = await self.calculate_depth(parent_id) if validate_depth else parent.depth
            depth = max(depth, parent.depth)
            if depth >= self.limits.max_depth:
                task_metrics.creation_rejections_total.labels(reason="depth").inc()
                raise DepthExceeded(
                    f"Maximum depth ({self.limits.max_depth}) reached. Current depth: {depth}",
                    context={"parent_id": parent_id, "depth": depth, "max_depth": self.limits.max_depth},
                )

            if validate_count:
                existing = await self.store.count_children(parent_id)
                if existing + len(definitions) > self.limits.max_subtasks_per_parent:
                    task_metrics.creation_rejections_total.labels(reason="count").inc()
                    raise CountExceeded(
                        f"Maximum subtasks ({self.limits.max_subtasks_per_parent}) exceeded: "
                        f"{existing} existing + {len(definitions)} requested",
                        context={
                            "parent_id": parent_id,
                            "current_count": existing,
                            "requested": len(definitions),
                            "max_subtasks": self.limits.max_subtasks_per_parent,
                        },
                    )

            parent.depth = depth
            for definition in definitions:
                try:
                    child = self._build_child(parent, definition, creator_id)
                    await self.store.save(child)
                    result.created.append(child)
                    task_metrics.subtasks_created_total.inc()
                except Exception as e:
                    task_metrics.subtask_creation_errors_total.inc()
                    result.errors.append(f"Failed to create subtask '{definition.title}': {e}")
                    self.log.warning(f"Subtask creation failed under {parent_id}: {e}")

        result.success = len(result.created) == result.requested
        self.log.info(
            f"Created {len(result.created)}/{result.requested} subtasks under {parent_id}"
            + (f" ({len(result.errors)} errors)" if result.errors else "")
        )

        if result.created:
            await self.propagation.update_parent(parent_id)
        return result

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_subtasks(self, parent_id: str) -> List[Task]:
        return await self.store.get_children(parent_id)

    async def get_subtask_tree(self, task_id: str) -> Dict[str, Any]:
        """Nested ``{"task": Task, "children": [...]}`` view of a subtree."""
        task = await self.store.require(task_id)
        children = await self.store.get_children(task_id)
        return {
            "task": task,
            "children": [await self.get_subtask_tree(c.id) for c in children],
        }
