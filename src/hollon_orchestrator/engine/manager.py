"""
Engine Module - Team Manager
============================
Monitors distributed team tasks and rebalances stuck subtasks.

    >= 2 blocked subtasks -> ask the oracle for a redistribution plan
    >= 3 failed subtasks  -> manager-elected retry of each failed subtask
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..config import OracleConfig
from ..errors import NotFound
from ..metrics import plan_metrics
from ..notifications import REASSIGNMENT, Notifier, send_notification
from ..orchestrator_types import Task, TaskStatus, TaskType, Team
from ..task_store import TaskStore
from ..transitions import apply_transition, can_transition
from .context import build_oracle_context
from .distribution import resolve_member
from .oracle import DecisionOracle, HeuristicPlanner, RedistributionPlan, consult
from .retry import RetryGovernor

logger = logging.getLogger(__name__)

BLOCKED_THRESHOLD = 2
FAILED_THRESHOLD = 3


@dataclass
class TeamTaskStats:
    """Subtask counts for one team task."""
    total: int = 0
    by_status: Dict[str, int] = field(default_factory=dict)
    progress: float = 0.0  # 0-100

    def count(self, status: TaskStatus) -> int:
        return self.by_status.get(status.value, 0)


@dataclass
class MonitorReport:
    team_task_id: str
    stats: TeamTaskStats
    reassigned: List[str] = field(default_factory=list)
    retried: List[str] = field(default_factory=list)


class ManagerService:
    """Team-manager duties over the subtasks of team tasks."""

    def __init__(
        self,
        store: TaskStore,
        retry: RetryGovernor,
        oracle: Optional[DecisionOracle] = None,
        planner: Optional[HeuristicPlanner] = None,
        oracle_config: Optional[OracleConfig] = None,
        notifier: Optional[Notifier] = None,
        log: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.retry = retry
        self.oracle = oracle
        self.planner = planner or HeuristicPlanner()
        self.oracle_config = oracle_config or OracleConfig()
        self.notifier = notifier
        self.log = log or logger

    async def _team_for(self, team_task_id: str):
        task = await self.store.require(team_task_id)
        if not task.assigned_team_id:
            raise NotFound(f"Task {team_task_id} is not assigned to a team", context={"task_id": team_task_id})
        team = await self.store.get_team(task.assigned_team_id)
        if team is None:
            raise NotFound(
                f"Team {task.assigned_team_id} not found",
                context={"task_id": team_task_id, "team_id": task.assigned_team_id},
            )
        return task, team

    async def team_task_stats(self, team_task_id: str) -> TeamTaskStats:
        children = await self.store.get_children(team_task_id)
        stats = TeamTaskStats(total=len(children))
        for child in children:
            stats.by_status[child.status.value] = stats.by_status.get(child.status.value, 0) + 1
        if stats.total:
            stats.progress = stats.count(TaskStatus.COMPLETED) / stats.total * 100
        return stats

    async def monitor_team_task(self, team_task_id: str) -> MonitorReport:
        """Check one team task and act on blocked / failed subtasks."""
        stats = await self.team_task_stats(team_task_id)
        report = MonitorReport(team_task_id=team_task_id, stats=stats)
        if stats.total == 0:
            self.log.debug(f"Team task {team_task_id} has no subtasks yet (may not be distributed)")
            return report

        self.log.info(
            f"Team task {team_task_id}: {stats.count(TaskStatus.COMPLETED)}/{stats.total} completed "
            f"({stats.progress:.1f}%), {stats.count(TaskStatus.BLOCKED)} blocked, "
            f"{stats.count(TaskStatus.FAILED)} failed"
        )

        if stats.count(TaskStatus.BLOCKED) >= BLOCKED_THRESHOLD:
            report.reassigned = await self.redistribute(
                team_task_id, reason=f"{stats.count(TaskStatus.BLOCKED)} subtasks are blocked",
            )

        if stats.count(TaskStatus.FAILED) >= FAILED_THRESHOLD:
            for child in await self.store.get_children(team_task_id):
                if child.status != TaskStatus.FAILED:
                    continue
                try:
                    await self.retry.retry(child.id)
                    report.retried.append(child.id)
                except Exception as e:
                    self.log.error(f"Retry of failed subtask {child.id} failed: {e}")

        return report

    async def monitor_active_team_tasks(self) -> List[MonitorReport]:
        """Monitor every non-terminal team epic in the store."""
        reports = []
        for task in await self.store.list_tasks():
            if task.type != TaskType.TEAM_EPIC or not task.assigned_team_id or task.is_terminal:
                continue
            try:
                reports.append(await self.monitor_team_task(task.id))
            except Exception as e:
                self.log.error(f"Monitoring team task {task.id} failed: {e}", exc_info=True)
        return reports

    async def redistribute(self, team_task_id: str, reason: str) -> List[str]:
        """
        Ask for a redistribution plan and execute its reassignments.

        Returns:
            Ids of the subtasks that were reassigned
        """
        task, team = await self._team_for(team_task_id)
        context = await build_oracle_context(self.store, task, team, reason=reason)
        if self.oracle is None:
            plan = self.planner.redistribution(context)
        else:
            plan = await consult(
                "redistribution",
                lambda: self.oracle.plan_redistribution(context),
                RedistributionPlan,
                lambda: self.planner.redistribution(context),
                timeout=self.oracle_config.timeout_seconds,
                log=self.log,
            )
        self.log.info(f"Redistribution for {team_task_id} ({reason}): {len(plan.reassignments)} reassignment(s)")
        return await self.execute_reassignments(task, team, plan)

    async def execute_reassignments(self, team_task: Task, team: Team, plan: RedistributionPlan) -> List[str]:
        children = await self.store.get_children(team_task.id)
        by_ref: Dict[str, Task] = {}
        for child in children:
            by_ref[child.title] = child
            by_ref[child.id] = child

        reassigned: List[str] = []
        for item in plan.reassignments:
            ref = item.task_id or item.task_title
            target = by_ref.get(item.task_id) if item.task_id else None
            target = target or (by_ref.get(item.task_title) if item.task_title else None)
            if target is None:
                self.log.warning(f"Task not found for reassignment: {ref}")
                continue
            member = resolve_member(team, item.to_member)
            if member is None:
                self.log.warning(f"Member '{item.to_member}' not found in team {team.name}")
                continue

            async with self.store.lock(target.id):
                hydrated = await self.store.with_dependencies(target.id)
                child = hydrated.task
                if child.is_terminal:
                    self.log.warning(f"Skipping reassignment of {child.id}: task is {child.status.value}")
                    continue
                child.assigned_member_id = member.id
                child.assigned_team_id = None
                # A task still waiting on dependencies keeps waiting under its new assignee
                if hydrated.all_dependencies_completed and child.status != TaskStatus.READY:
                    if can_transition(child.status, TaskStatus.READY):
                        apply_transition(child, TaskStatus.READY)
                        child.blocked_reason = None
                    else:
                        self.log.warning(f"Reassigned {child.id} but kept status {child.status.value}")
                child.touch()
                await self.store.save(child)

            reassigned.append(child.id)
            plan_metrics.reassignments_total.inc()
            self.log.info(f"Reassigned task \"{child.title}\" from {item.from_member} to {member.name}: {item.reason}")
            await send_notification(
                self.notifier, member.id, REASSIGNMENT,
                {"task_id": child.id, "title": child.title, "reason": item.reason},
                log=self.log,
            )

        return reassigned
