"""
Hollon Orchestrator - Task Store
================================

Repository contract for Task records, their dependency edges and teams, plus
an in-memory implementation. Records are held in an id-indexed arena:
parent/child and dependency relations are resolved by id lookups, never by
embedded object references.

Atomicity: ``lock(*task_ids)`` scopes a read-modify-write to the named tasks
only. Locks are per task and always acquired in sorted id order, so two
callers locking overlapping sets cannot deadlock and unrelated parts of the
graph never contend.
"""

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, Iterable, List, Optional

from .config import HierarchyLimits
from .errors import CircularDependency, DepthExceeded, InvariantViolation, NotFound
from .orchestrator_types import Task, TaskStatus, Team

logger = logging.getLogger(__name__)


@dataclass
class Workload:
    """Load snapshot for one member, consumed when building oracle context."""
    member_id: str
    active_task_count: int = 0
    completion_rate: float = 0.0  # 0-100


@dataclass
class TaskWithDependencies:
    """A task together with the Task records it depends on."""
    task: Task
    dependencies: List[Task] = field(default_factory=list)

    @property
    def all_dependencies_completed(self) -> bool:
        return all(d.status == TaskStatus.COMPLETED for d in self.dependencies)


def validate_record(task: Task, limits: HierarchyLimits) -> None:
    """
    Structural invariants checked on every write, independent of any
    service-level validation flags.

    Raises:
        DepthExceeded: depth is beyond the hierarchy limit
        InvariantViolation: both a team and a member are assigned
        CircularDependency: the task depends on itself
    """
    if task.depth > limits.max_depth:
        raise DepthExceeded(
            f"Task {task.id} has depth {task.depth}, maximum is {limits.max_depth}",
            context={"task_id": task.id, "depth": task.depth, "max_depth": limits.max_depth},
        )
    if task.assigned_team_id and task.assigned_member_id:
        raise InvariantViolation(
            f"Task {task.id} is assigned to both team {task.assigned_team_id} "
            f"and member {task.assigned_member_id}",
            context={
                "task_id": task.id,
                "assigned_team_id": task.assigned_team_id,
                "assigned_member_id": task.assigned_member_id,
            },
        )
    if task.id in task.dependencies:
        raise CircularDependency(
            f"Task {task.id} cannot depend on itself",
            context={"task_id": task.id, "cycle": [task.id, task.id]},
        )


class TaskStore(ABC):
    """Abstract persistence for tasks, dependency edges and teams."""

    def __init__(self, limits: Optional[HierarchyLimits] = None):
        self.limits = limits or HierarchyLimits()
        self._locks: Dict[str, asyncio.Lock] = {}
        # holders + waiters per id; the lock is dropped when this reaches zero
        self._lock_users: Dict[str, int] = {}

    # -------------------------------------------------------------------------
    # Atomicity
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def lock(self, *task_ids: str) -> AsyncIterator[None]:
        """Hold the per-task locks for ``task_ids`` for the duration of the block."""
        ordered = sorted(set(task_ids))
        locks: List[asyncio.Lock] = []
        for tid in ordered:
            locks.append(self._locks.setdefault(tid, asyncio.Lock()))
            self._lock_users[tid] = self._lock_users.get(tid, 0) + 1
        acquired: List[asyncio.Lock] = []
        try:
            for lk in locks:
                await lk.acquire()
                acquired.append(lk)
            yield
        finally:
            for lk in reversed(acquired):
                lk.release()
            for tid in ordered:
                self._lock_users[tid] -= 1
                if not self._lock_users[tid]:
                    del self._lock_users[tid]
                    del self._locks[tid]

    # -------------------------------------------------------------------------
    # Task CRUD
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get(self, task_id: str) -> Optional[Task]:
        ...

    @abstractmethod
    async def get_many(self, task_ids: Iterable[str]) -> List[Task]:
        ...

    @abstractmethod
    async def list_tasks(self, status: Optional[TaskStatus] = None) -> List[Task]:
        ...

    @abstractmethod
    async def _write(self, tasks: List[Task]) -> None:
        """Persist already-validated tasks as one unit."""

    @abstractmethod
    async def delete(self, task_id: str) -> None:
        ...

    async def save(self, task: Task) -> Task:
        validate_record(task, self.limits)
        await self._write([task])
        return task

    async def save_many(self, tasks: List[Task]) -> List[Task]:
        for task in tasks:
            validate_record(task, self.limits)
        if tasks:
            await self._write(tasks)
        return tasks

    async def require(self, task_id: str) -> Task:
        task = await self.get(task_id)
        if task is None:
            raise NotFound(f"Task {task_id} not found", context={"task_id": task_id})
        return task

    # -------------------------------------------------------------------------
    # Graph-shaped queries
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_children(self, parent_id: str) -> List[Task]:
        """Direct children, oldest first."""

    async def count_children(self, parent_id: str) -> int:
        return len(await self.get_children(parent_id))

    @abstractmethod
    async def get_blocked(self, parent_id: Optional[str] = None) -> List[Task]:
        """Blocked tasks, optionally only the direct children of ``parent_id``."""

    @abstractmethod
    async def get_dependents(self, task_id: str) -> List[Task]:
        """Tasks that list ``task_id`` among their dependencies."""

    async def get_blocked_dependents(self, task_id: str) -> List[Task]:
        return [t for t in await self.get_dependents(task_id) if t.status == TaskStatus.BLOCKED]

    @abstractmethod
    async def dependency_graph(self) -> Dict[str, List[str]]:
        """Adjacency map of every task id to its dependency ids."""

    async def with_dependencies(self, task_id: str) -> TaskWithDependencies:
        task = await self.require(task_id)
        deps = await self.get_many(task.dependencies)
        return TaskWithDependencies(task=task, dependencies=deps)

    async def get_subtree(self, task_id: str) -> List[Task]:
        """All descendants of ``task_id``, breadth-first."""
        descendants: List[Task] = []
        queue = deque([task_id])
        while queue:
            current = queue.popleft()
            children = await self.get_children(current)
            descendants.extend(children)
            queue.extend(c.id for c in children)
        return descendants

    @abstractmethod
    async def tasks_assigned_to(self, member_id: str) -> List[Task]:
        ...

    async def workload(self, member_ids: Iterable[str]) -> Dict[str, Workload]:
        """Active task count and completion rate per member."""
        result: Dict[str, Workload] = {}
        for member_id in member_ids:
            tasks = await self.tasks_assigned_to(member_id)
            active = [t for t in tasks if not t.is_terminal]
            completed = [t for t in tasks if t.status == TaskStatus.COMPLETED]
            rate = (len(completed) / len(tasks)) * 100 if tasks else 0.0
            result[member_id] = Workload(
                member_id=member_id,
                active_task_count=len(active),
                completion_rate=rate,
            )
        return result

    # -------------------------------------------------------------------------
    # Teams
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_team(self, team_id: str) -> Optional[Team]:
        ...

    @abstractmethod
    async def save_team(self, team: Team) -> Team:
        ...


class InMemoryTaskStore(TaskStore):
    """
    Dict-backed store. Reads return deep copies so callers can only change
    stored state through ``save``/``save_many``.
    """

    def __init__(self, limits: Optional[HierarchyLimits] = None):
        super().__init__(limits)
        self._tasks: Dict[str, Task] = {}
        self._teams: Dict[str, Team] = {}

    async def get(self, task_id: str) -> Optional[Task]:
        task = self._tasks.get(task_id)
        return copy.deepcopy(task) if task else None

    async def get_many(self, task_ids: Iterable[str]) -> List[Task]:
        return [copy.deepcopy(self._tasks[tid]) for tid in task_ids if tid in self._tasks]

    async def list_tasks(self, status: Optional[TaskStatus] = None) -> List[Task]:
        return [
            copy.deepcopy(t) for t in self._tasks.values()
            if status is None or t.status == status
        ]

    async def _write(self, tasks: List[Task]) -> None:
        for task in tasks:
            self._tasks[task.id] = copy.deepcopy(task)

    async def delete(self, task_id: str) -> None:
        self._tasks.pop(task_id, None)

    async def get_children(self, parent_id: str) -> List[Task]:
        children = [t for t in self._tasks.values() if t.parent_id == parent_id]
        children.sort(key=lambda t: t.created_at)
        return [copy.deepcopy(t) for t in children]

    async def get_blocked(self, parent_id: Optional[str] = None) -> List[Task]:
        return [
            copy.deepcopy(t) for t in self._tasks.values()
            if t.status == TaskStatus.BLOCKED and (parent_id is None or t.parent_id == parent_id)
        ]

    async def get_dependents(self, task_id: str) -> List[Task]:
        return [copy.deepcopy(t) for t in self._tasks.values() if task_id in t.dependencies]

    async def dependency_graph(self) -> Dict[str, List[str]]:
        return {tid: list(t.dependencies) for tid, t in self._tasks.items()}

    async def tasks_assigned_to(self, member_id: str) -> List[Task]:
        return [copy.deepcopy(t) for t in self._tasks.values() if t.assigned_member_id == member_id]

    async def get_team(self, team_id: str) -> Optional[Team]:
        team = self._teams.get(team_id)
        return copy.deepcopy(team) if team else None

    async def save_team(self, team: Team) -> Team:
        self._teams[team.id] = copy.deepcopy(team)
        return team
