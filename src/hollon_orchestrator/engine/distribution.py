"""
Engine Module - Team Task Distribution
======================================
Validates a distribution plan against the team and the dependency graph,
then commits it: create children, assign members, wire dependencies.

Validation is fail-closed and happens before any write. Apply follows
"create then wire": children are created first, then assignment and edges
are written together, so an interrupted batch leaves unassigned but valid
children rather than dangling edges.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..config import OracleConfig
from ..errors import (
    AlreadyInMergedOrTerminalState,
    CircularDependency,
    InvalidAssignee,
    InvalidDecision,
    NotFound,
)
from ..metrics import plan_metrics
from ..orchestrator_types import Member, SubtaskDefinition, Task, TaskStatus, Team
from ..task_store import TaskStore
from ..transitions import apply_transition, can_transition
from .context import build_oracle_context
from .dependencies import DependencyGraphEngine
from .graph_utils import find_cycle
from .oracle import DecisionOracle, DistributionPlan, HeuristicPlanner, consult
from .subtasks import SubtaskCreationService

logger = logging.getLogger(__name__)


@dataclass
class DistributionResult:
    """Outcome of applying a distribution plan to a team task."""
    team_task_id: str
    subtasks: List[Task] = field(default_factory=list)
    reasoning: str = ""
    errors: List[str] = field(default_factory=list)


def resolve_member(team: Team, name: str) -> Optional[Member]:
    """Find a member by name, falling back to a case-insensitive match."""
    member = team.member_by_name(name)
    if member is not None:
        return member
    wanted = name.strip().lower()
    return next((m for m in team.members if m.name.lower() == wanted), None)


# =============================================================================
# VALIDATION
# =============================================================================

def validate_plan(plan: DistributionPlan, team: Team, log: Optional[logging.Logger] = None) -> Dict[str, str]:
    """
    Check a plan before anything is written.

    Returns:
        Mapping of subtask title -> resolved member id

    Raises:
        InvalidDecision: Duplicate subtask titles
        InvalidAssignee: An assignee is not a current team member
        CircularDependency: Title dependencies form a cycle
    """
    log = log or logger
    titles = [s.title for s in plan.subtasks]
    duplicates = sorted({t for t in titles if titles.count(t) > 1})
    if duplicates:
        plan_metrics.plan_rejections_total.labels(reason="duplicate_title").inc()
        raise InvalidDecision(
            f"Distribution plan has duplicate subtask titles: {duplicates}",
            context={"duplicates": duplicates},
        )

    assignees: Dict[str, str] = {}
    for subtask in plan.subtasks:
        member = resolve_member(team, subtask.assigned_to)
        if member is None:
            plan_metrics.plan_rejections_total.labels(reason="invalid_assignee").inc()
            raise InvalidAssignee(
                f"Assignee '{subtask.assigned_to}' for '{subtask.title}' is not a member of team {team.id}",
                context={
                    "team_id": team.id,
                    "assignee": subtask.assigned_to,
                    "subtask": subtask.title,
                    "members": [m.name for m in team.members],
                },
            )
        assignees[subtask.title] = member.id

    known = set(titles)
    graph: Dict[str, List[str]] = {}
    for subtask in plan.subtasks:
        unknown = [d for d in subtask.dependencies if d not in known]
        if unknown:
            log.warning(f"Ignoring dependencies outside the plan for '{subtask.title}': {unknown}")
        graph[subtask.title] = [d for d in subtask.dependencies if d in known]

    cycle = find_cycle(graph)
    if cycle:
        plan_metrics.plan_rejections_total.labels(reason="circular_dependency").inc()
        raise CircularDependency(
            f"Distribution plan has a dependency cycle: {' -> '.join(cycle)}",
            context={"cycle": cycle},
        )
    return assignees


# =============================================================================
# SERVICE
# =============================================================================

class TeamTaskDistributionService:
    """Turns a team-assigned task into member-assigned, dependency-wired children."""

    def __init__(
        self,
        store: TaskStore,
        subtasks: SubtaskCreationService,
        dependencies: DependencyGraphEngine,
        oracle: Optional[DecisionOracle] = None,
        planner: Optional[HeuristicPlanner] = None,
        oracle_config: Optional[OracleConfig] = None,
        log: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.subtasks = subtasks
        self.dependencies = dependencies
        self.oracle = oracle
        self.planner = planner or HeuristicPlanner()
        self.oracle_config = oracle_config or OracleConfig()
        self.log = log or logger

    async def _load_team_task(self, team_task_id: str):
        task = await self.store.require(team_task_id)
        if task.is_terminal:
            raise AlreadyInMergedOrTerminalState(
                f"Team task {team_task_id} is {task.status.value}",
                context={"task_id": team_task_id, "status": task.status.value},
            )
        if not task.assigned_team_id:
            raise NotFound(
                f"Task {team_task_id} is not assigned to a team",
                context={"task_id": team_task_id},
            )
        team = await self.store.get_team(task.assigned_team_id)
        if team is None:
            raise NotFound(
                f"Team {task.assigned_team_id} not found",
                context={"task_id": team_task_id, "team_id": task.assigned_team_id},
            )
        if not team.manager_id:
            raise NotFound(
                f"Team {team.id} has no manager",
                context={"task_id": team_task_id, "team_id": team.id},
            )
        return task, team

    async def plan(self, task: Task, team: Team) -> DistributionPlan:
        """Ask the oracle for a plan, falling back to the heuristic planner."""
        context = await build_oracle_context(self.store, task, team)
        if self.oracle is None:
            return self.planner.distribution(context)
        return await consult(
            "distribution",
            lambda: self.oracle.plan_distribution(context),
            DistributionPlan,
            lambda: self.planner.distribution(context),
            timeout=self.oracle_config.timeout_seconds,
            log=self.log,
        )

    async def distribute_to_team(self, team_task_id: str) -> DistributionResult:
        """
        Plan, validate and apply the distribution of a team task.

        Raises:
            NotFound: Task, team or manager missing
            InvalidAssignee / CircularDependency / InvalidDecision: plan rejected
            CountExceeded / DepthExceeded: plan does not fit under the task
        """
        task, team = await self._load_team_task(team_task_id)
        plan = await self.plan(task, team)
        self.log.info(f"Distributing {team_task_id} to team {team.name}: {len(plan.subtasks)} subtasks")
        return await self.apply_plan(task, team, plan)

    async def apply_plan(self, task: Task, team: Team, plan: DistributionPlan) -> DistributionResult:
        """Validate ``plan`` and commit it under ``task``."""
        assignees = validate_plan(plan, team, log=self.log)

        definitions = [
            SubtaskDefinition(
                title=s.title,
                description=s.description,
                type=s.type,
                priority=s.priority,
                estimated_complexity=s.estimated_complexity,
            )
            for s in plan.subtasks
        ]
        creation = await self.subtasks.create_subtasks(task.id, definitions, creator_id=team.manager_id)
        result = DistributionResult(team_task_id=task.id, reasoning=plan.reasoning, errors=list(creation.errors))
        if not creation.created:
            return result

        by_title = {c.title: c.id for c in creation.created}
        edges: Dict[str, List[str]] = {}
        for s in plan.subtasks:
            if s.title not in by_title:
                continue
            dep_ids = [by_title[d] for d in s.dependencies if d in by_title]
            missing = [d for d in s.dependencies if d in assignees and d not in by_title]
            if missing:
                result.errors.append(f"Dependencies of '{s.title}' were not created: {missing}")
            edges[by_title[s.title]] = dep_ids

        # New children have no dependents yet, so nothing can race this check
        await self.dependencies.check_acyclic({k: v for k, v in edges.items() if v})

        child_ids = list(by_title.values())
        async with self.store.lock(*child_ids):
            children = await self.store.get_many(child_ids)
            for child in children:
                child.assigned_member_id = assignees.get(child.title)
                child.assigned_team_id = None
                child.reviewer_id = team.manager_id
                child.dependencies = edges.get(child.id, [])
                if child.dependencies:
                    apply_transition(child, TaskStatus.BLOCKED)
                    child.blocked_reason = "Waiting on dependencies"
                child.touch()
            await self.store.save_many(children)
        result.subtasks = children

        async with self.store.lock(task.id):
            parent = await self.store.require(task.id)
            if can_transition(parent.status, TaskStatus.IN_PROGRESS) or parent.status == TaskStatus.IN_PROGRESS:
                apply_transition(parent, TaskStatus.IN_PROGRESS)
                await self.store.save(parent)
            else:
                self.log.warning(f"Team task {task.id} left in {parent.status.value} after distribution")

        plan_metrics.plans_applied_total.inc()
        self.log.info(
            f"✅ Distributed {task.id}: {len(children)} subtasks, "
            f"{sum(1 for c in children if c.dependencies)} waiting on dependencies"
        )
        return result
