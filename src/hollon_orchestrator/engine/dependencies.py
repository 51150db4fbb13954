"""
Engine Module - Dependency Graph
================================
Dependency-edge writes with global acyclicity checks, and unblocking of
tasks whose dependencies have all completed.
"""

import asyncio
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional

from ..errors import CircularDependency, NotFound
from ..metrics import task_metrics
from ..orchestrator_types import Task, TaskStatus
from ..task_store import TaskStore
from ..transitions import apply_transition
from .graph_utils import find_cycle, merge_edges

logger = logging.getLogger(__name__)


def is_backing_off(task: Task, now: Optional[datetime] = None) -> bool:
    """True while a failed task is still inside its backoff window."""
    if task.blocked_until is None:
        return False
    return task.blocked_until > (now or datetime.now())


class DependencyGraphEngine:
    """
    Owns every dependency-edge write.

    Edge writes are serialized through ``_edge_lock`` so two concurrent
    insertions cannot each pass the cycle check and jointly close a cycle.
    Status transitions never take this lock.
    """

    def __init__(self, store: TaskStore, log: Optional[logging.Logger] = None):
        self.store = store
        self.log = log or logger
        self._edge_lock = asyncio.Lock()

    # -------------------------------------------------------------------------
    # Edge validation and writes
    # -------------------------------------------------------------------------

    async def check_acyclic(self, new_edges: Mapping[str, Iterable[str]]) -> None:
        """
        Raise CircularDependency if ``new_edges`` added to the stored graph
        would form a cycle. Nodes in ``new_edges`` need not exist yet.
        """
        graph = merge_edges(await self.store.dependency_graph(), new_edges)
        cycle = find_cycle(graph)
        if cycle:
            raise CircularDependency(
                f"Dependency cycle detected: {' -> '.join(cycle)}",
                context={"cycle": cycle},
            )

    async def add_dependencies(self, task_id: str, dependency_ids: List[str]) -> Task:
        """
        Add dependency edges ``task_id -> dependency_ids``.

        Raises:
            NotFound: task or a dependency does not exist
            CircularDependency: the edges would close a cycle (self-loops included)
        """
        async with self._edge_lock:
            task = await self.store.require(task_id)
            found = {t.id for t in await self.store.get_many(dependency_ids)}
            missing = [d for d in dependency_ids if d not in found]
            if missing:
                raise NotFound(
                    f"Dependencies not found for {task_id}: {missing}",
                    context={"task_id": task_id, "missing": missing},
                )

            new = [d for d in dependency_ids if d not in task.dependencies]
            if not new:
                return task
            await self.check_acyclic({task_id: new})

            async with self.store.lock(task_id):
                task = await self.store.require(task_id)
                for dep in new:
                    if dep not in task.dependencies:
                        task.dependencies.append(dep)
                task.touch()
                await self.store.save(task)

        self.log.info(f"Task {task_id} now depends on {new}")
        return task

    async def write_edges(self, edges: Dict[str, List[str]]) -> None:
        """
        Persist a batch of edges between existing tasks after one acyclicity
        check over the whole batch.
        """
        edges = {tid: deps for tid, deps in edges.items() if deps}
        if not edges:
            return
        async with self._edge_lock:
            await self.check_acyclic(edges)
            async with self.store.lock(*edges.keys()):
                tasks = await self.store.get_many(edges.keys())
                for task in tasks:
                    for dep in edges[task.id]:
                        if dep not in task.dependencies:
                            task.dependencies.append(dep)
                    task.touch()
                await self.store.save_many(tasks)

    async def remove_dependency(self, task_id: str, dependency_id: str) -> Task:
        async with self.store.lock(task_id):
            task = await self.store.require(task_id)
            if dependency_id in task.dependencies:
                task.dependencies.remove(dependency_id)
                task.touch()
                await self.store.save(task)
        return task

    # -------------------------------------------------------------------------
    # Unblocking
    # -------------------------------------------------------------------------

    async def _candidates(self, completed_task_id: str) -> List[Task]:
        """Blocked dependents of the completed task plus dependency-free blocked tasks."""
        candidates = {t.id: t for t in await self.store.get_blocked_dependents(completed_task_id)}
        for task in await self.store.get_blocked():
            if task.dependencies or task.id in candidates:
                continue
            # A blocked parent is governed by propagation, not by dependencies
            if await self.store.count_children(task.id) > 0:
                continue
            candidates[task.id] = task
        return list(candidates.values())

    async def _try_unblock(self, task_id: str, now: datetime) -> bool:
        async with self.store.lock(task_id):
            hydrated = await self.store.with_dependencies(task_id)
            task = hydrated.task
            # Re-check under the lock: a duplicate event may have got here first
            if task.status != TaskStatus.BLOCKED:
                return False
            if is_backing_off(task, now):
                return False
            if not hydrated.all_dependencies_completed:
                return False

            apply_transition(task, TaskStatus.READY)
            task.blocked_reason = None
            await self.store.save(task)
        return True

    async def unblock_dependents(self, completed_task_id: str, now: Optional[datetime] = None) -> List[str]:
        """
        Move every blocked task whose dependencies are now all completed to
        ready. Best-effort and idempotent: never raises.

        Returns:
            Ids of the tasks unblocked by this call
        """
        now = now or datetime.now()
        unblocked: List[str] = []
        try:
            candidates = await self._candidates(completed_task_id)
        except Exception as e:
            self.log.error(f"Could not load unblock candidates for {completed_task_id}: {e}", exc_info=True)
            return unblocked

        for candidate in candidates:
            try:
                if await self._try_unblock(candidate.id, now):
                    unblocked.append(candidate.id)
                    task_metrics.unblocked_total.inc()
                    self.log.info(f"🔓 Unblocked {candidate.id} after {completed_task_id} completed")
            except Exception as e:
                self.log.error(f"Failed to evaluate blocked task {candidate.id}: {e}", exc_info=True)

        return unblocked
