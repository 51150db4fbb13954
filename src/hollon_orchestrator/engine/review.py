"""
Engine Module - Review Cycle
============================
Bounded review of a parent whose children have all completed.

Each round moves the parent ``ready_for_review -> in_review`` and applies
exactly one decision: complete, rework, add_tasks or redirect. Rounds are
capped (3 by default). The final round is a hard deadline: only decisions
that resolve the task (complete, redirect) are accepted.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Union

from ..config import OracleConfig, ReviewConfig
from ..errors import (
    AlreadyInMergedOrTerminalState,
    CircularDependency,
    CountExceeded,
    DepthExceeded,
    InvalidDecision,
    NotFound,
)
from ..metrics import plan_metrics
from ..notifications import REVIEW_RESULT, Notifier, send_notification
from ..orchestrator_types import SubtaskDefinition, Task, TaskStatus
from ..task_store import TaskStore
from ..transitions import apply_transition
from .cancellation import cancel_tree
from .context import build_oracle_context
from .dependencies import DependencyGraphEngine
from .oracle import (
    AddTasksDecision,
    CompleteDecision,
    DecisionOracle,
    HeuristicPlanner,
    RedirectDecision,
    ReviewDecision,
    ReworkDecision,
    consult,
)
from .subtasks import SubtaskCreationService

logger = logging.getLogger(__name__)

Decision = Union[CompleteDecision, ReworkDecision, AddTasksDecision, RedirectDecision]

FINAL_ROUND_ACTIONS = frozenset({"complete", "redirect"})


@dataclass
class ReviewSession:
    """One review round. ``is_final`` means the decision must resolve the task."""
    parent_id: str
    round: int
    max_rounds: int
    is_final: bool


@dataclass
class ReviewOutcome:
    session: ReviewSession
    decision: Decision
    task: Task
    used_fallback: bool = False


class ReviewCycleController:
    """Runs review rounds and applies their decisions to the task graph."""

    def __init__(
        self,
        store: TaskStore,
        subtasks: SubtaskCreationService,
        dependencies: DependencyGraphEngine,
        oracle: Optional[DecisionOracle] = None,
        planner: Optional[HeuristicPlanner] = None,
        review_config: Optional[ReviewConfig] = None,
        oracle_config: Optional[OracleConfig] = None,
        notifier: Optional[Notifier] = None,
        log: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.subtasks = subtasks
        self.dependencies = dependencies
        self.oracle = oracle
        self.planner = planner or HeuristicPlanner()
        self.review_config = review_config or ReviewConfig()
        self.oracle_config = oracle_config or OracleConfig()
        self.notifier = notifier
        self.log = log or logger

    @property
    def max_rounds(self) -> int:
        return self.review_config.max_review_cycles

    # -------------------------------------------------------------------------
    # Rounds
    # -------------------------------------------------------------------------

    async def begin_review(self, parent_id: str, now: Optional[datetime] = None) -> ReviewSession:
        """
        Open a review round for ``parent_id``.

        Raises:
            NotFound: Parent does not exist
            AlreadyInMergedOrTerminalState: Parent is not ready_for_review, or
                not every child is completed
        """
        async with self.store.lock(parent_id):
            parent = await self.store.require(parent_id)
            if parent.status != TaskStatus.READY_FOR_REVIEW:
                raise AlreadyInMergedOrTerminalState(
                    f"Task {parent_id} is {parent.status.value}, not ready_for_review",
                    context={"task_id": parent_id, "status": parent.status.value},
                )
            children = await self.store.get_children(parent_id)
            pending = [c.id for c in children if c.status != TaskStatus.COMPLETED]
            if not children or pending:
                raise AlreadyInMergedOrTerminalState(
                    f"Task {parent_id} has subtasks that are not completed",
                    context={"task_id": parent_id, "incomplete": pending},
                )

            parent.review_count = min(parent.review_count + 1, self.max_rounds)
            parent.last_reviewed_at = now or datetime.now()
            apply_transition(parent, TaskStatus.IN_REVIEW)
            await self.store.save(parent)

        session = ReviewSession(
            parent_id=parent_id,
            round=parent.review_count,
            max_rounds=self.max_rounds,
            is_final=parent.review_count >= self.max_rounds,
        )
        self.log.info(
            f"Review round {session.round}/{session.max_rounds} for {parent_id}"
            + (" (final - a decision is required)" if session.is_final else "")
        )
        return session

    async def apply_decision(self, session: ReviewSession, decision: Decision) -> Task:
        """
        Apply one review decision.

        Raises:
            InvalidDecision: rework / add_tasks on the final round, or a
                decision naming tasks that are not children of the parent
            AlreadyInMergedOrTerminalState: Parent is no longer in_review
        """
        if session.is_final and decision.action not in FINAL_ROUND_ACTIONS:
            raise InvalidDecision(
                f"Final review round {session.round}/{session.max_rounds} for {session.parent_id} "
                f"must complete or redirect, got '{decision.action}'",
                context={"task_id": session.parent_id, "round": session.round, "action": decision.action},
            )

        parent = await self.store.require(session.parent_id)
        if parent.status != TaskStatus.IN_REVIEW:
            raise AlreadyInMergedOrTerminalState(
                f"Task {parent.id} is {parent.status.value}, not in_review",
                context={"task_id": parent.id, "status": parent.status.value},
            )

        if isinstance(decision, CompleteDecision):
            task = await self._complete(parent.id)
        elif isinstance(decision, ReworkDecision):
            task = await self._rework(parent.id, decision)
        elif isinstance(decision, AddTasksDecision):
            task = await self._add_tasks(parent.id, decision)
        elif isinstance(decision, RedirectDecision):
            task = await self._redirect(parent.id, decision)
        else:
            raise InvalidDecision(f"Unknown review action: {decision!r}")

        plan_metrics.review_decisions_total.labels(action=decision.action, final=str(session.is_final).lower()).inc()
        self.log.info(f"Review of {parent.id} -> {decision.action}: {decision.reasoning}")
        return task

    async def review_with_oracle(self, parent_id: str) -> ReviewOutcome:
        """
        Begin a round, ask the oracle for a decision, and apply it.

        If the round cannot be finished the parent goes back to
        ready_for_review and the error is re-raised.
        """
        session = await self.begin_review(parent_id)
        try:
            outcome = await self._run_round(session)
        except Exception as e:
            self.log.error(f"❌ Review of {parent_id} aborted: {e}")
            await self._reopen_round(parent_id)
            raise

        task, decision = outcome.task, outcome.decision
        parent = await self.store.require(parent_id)
        team = await self.store.get_team(parent.assigned_team_id) if parent.assigned_team_id else None
        recipient = task.assigned_member_id or (team.manager_id if team else None)
        await send_notification(
            self.notifier, recipient, REVIEW_RESULT,
            {"task_id": task.id, "action": decision.action, "round": session.round, "reasoning": decision.reasoning},
            log=self.log,
        )
        return outcome

    async def _run_round(self, session: ReviewSession) -> ReviewOutcome:
        parent_id = session.parent_id
        parent = await self.store.require(parent_id)
        team = await self.store.get_team(parent.assigned_team_id) if parent.assigned_team_id else None
        context = await build_oracle_context(
            self.store, parent, team, review_round=session.round, max_review_rounds=session.max_rounds,
        )

        if self.oracle is None:
            decision = self.planner.review(context)
        else:
            decision = await consult(
                "review",
                lambda: self.oracle.review(context),
                ReviewDecision,
                lambda: self.planner.review(context),
                timeout=self.oracle_config.timeout_seconds,
                log=self.log,
            )

        if session.is_final and decision.action not in FINAL_ROUND_ACTIONS:
            self.log.warning(
                f"Final review round for {parent_id}: '{decision.action}' not allowed, completing instead"
            )
            decision = CompleteDecision(reasoning=f"Final review round reached; overriding '{decision.action}'")

        try:
            return ReviewOutcome(session=session, decision=decision, task=await self.apply_decision(session, decision))
        except (InvalidDecision, NotFound, CountExceeded, DepthExceeded, CircularDependency) as e:
            self.log.warning(f"Review decision for {parent_id} could not be applied ({e}), approving instead")
            decision = self.planner.review(context)
            task = await self.apply_decision(session, decision)
            return ReviewOutcome(session=session, decision=decision, task=task, used_fallback=True)

    async def _reopen_round(self, parent_id: str) -> None:
        """Put a parent stuck in in_review back to ready_for_review so the round can be retried."""
        async with self.store.lock(parent_id):
            parent = await self.store.get(parent_id)
            if parent is None or parent.status != TaskStatus.IN_REVIEW:
                return
            apply_transition(parent, TaskStatus.READY_FOR_REVIEW)
            await self.store.save(parent)
        self.log.warning(f"Review round for {parent_id} abandoned; task is ready_for_review again")

    # -------------------------------------------------------------------------
    # Actions
    # -------------------------------------------------------------------------

    async def _set_parent_status(self, parent_id: str, status: TaskStatus, description_suffix: str = "") -> Task:
        async with self.store.lock(parent_id):
            parent = await self.store.require(parent_id)
            if parent.status != TaskStatus.IN_REVIEW:
                raise AlreadyInMergedOrTerminalState(
                    f"Task {parent_id} left in_review while the decision was applied",
                    context={"task_id": parent_id, "status": parent.status.value},
                )
            apply_transition(parent, status)
            if description_suffix:
                parent.description = f"{parent.description}{description_suffix}"
            await self.store.save(parent)
        return parent

    async def _children_by_id(self, parent_id: str) -> Dict[str, Task]:
        return {c.id: c for c in await self.store.get_children(parent_id)}

    async def _complete(self, parent_id: str) -> Task:
        return await self._set_parent_status(parent_id, TaskStatus.COMPLETED)

    async def _rework(self, parent_id: str, decision: ReworkDecision) -> Task:
        children = await self._children_by_id(parent_id)
        unknown = [sid for sid in decision.subtask_ids if sid not in children]
        if unknown:
            raise InvalidDecision(
                f"Rework names tasks that are not subtasks of {parent_id}: {unknown}",
                context={"task_id": parent_id, "unknown": unknown},
            )
        not_done = [sid for sid in decision.subtask_ids if children[sid].status != TaskStatus.COMPLETED]
        if not_done:
            raise InvalidDecision(
                f"Rework names subtasks that are not completed: {not_done}",
                context={"task_id": parent_id, "not_completed": not_done},
            )

        targets = list(dict.fromkeys(decision.subtask_ids))
        async with self.store.lock(*targets):
            reworked = await self.store.get_many(targets)
            for child in reworked:
                apply_transition(child, TaskStatus.READY, reopen=True)
                child.description = f"{child.description}\n\n**Rework Instructions**: {decision.rework_instructions}"
                child.retry_count += 1
                child.completed_at = None
            await self.store.save_many(reworked)

        self.log.info(f"🔄 {len(targets)} subtask(s) of {parent_id} sent back for rework")
        return await self._set_parent_status(parent_id, TaskStatus.IN_PROGRESS)

    async def _add_tasks(self, parent_id: str, decision: AddTasksDecision) -> Task:
        children = await self._children_by_id(parent_id)
        existing_by_title = {c.title: c.id for c in children.values()}
        new_titles = [s.title for s in decision.new_subtasks]
        if len(set(new_titles)) != len(new_titles):
            raise InvalidDecision(
                "add_tasks has duplicate subtask titles",
                context={"task_id": parent_id, "titles": new_titles},
            )

        def placeholder(title: str) -> str:
            return f"new::{title}"

        # Resolve each dependency to an existing child id or a placeholder for a new subtask
        resolved: Dict[str, List[str]] = {}
        for spec in decision.new_subtasks:
            deps: List[str] = []
            for dep in spec.dependencies:
                if dep in new_titles:
                    deps.append(placeholder(dep))
                elif dep in children:
                    deps.append(dep)
                elif dep in existing_by_title:
                    deps.append(existing_by_title[dep])
                else:
                    self.log.warning(f"add_tasks: ignoring unknown dependency '{dep}' for '{spec.title}'")
            resolved[placeholder(spec.title)] = deps

        await self.dependencies.check_acyclic(resolved)

        definitions = [
            SubtaskDefinition(
                title=s.title,
                description=s.description,
                type=s.type,
                priority=s.priority,
                acceptance_criteria=list(s.acceptance_criteria),
            )
            for s in decision.new_subtasks
        ]
        creation = await self.subtasks.create_subtasks(parent_id, definitions)
        ids = {placeholder(c.title): c.id for c in creation.created}

        edges: Dict[str, List[str]] = {}
        for key, deps in resolved.items():
            if key in ids:
                edges[ids[key]] = [ids.get(d, d) for d in deps if not d.startswith("new::") or d in ids]
        await self.dependencies.write_edges(edges)

        waiting = [tid for tid, deps in edges.items() if deps]
        if waiting:
            async with self.store.lock(*waiting):
                for hydrated in [await self.store.with_dependencies(tid) for tid in waiting]:
                    if hydrated.all_dependencies_completed:
                        continue
                    task = hydrated.task
                    apply_transition(task, TaskStatus.BLOCKED)
                    task.blocked_reason = "Waiting on dependencies"
                    await self.store.save(task)

        self.log.info(f"➕ Added {len(creation.created)} follow-up subtask(s) to {parent_id}")
        return await self._set_parent_status(parent_id, TaskStatus.IN_PROGRESS)

    async def _redirect(self, parent_id: str, decision: RedirectDecision) -> Task:
        children = await self._children_by_id(parent_id)
        for sid in decision.cancel_subtask_ids:
            if sid not in children:
                self.log.warning(f"redirect: {sid} is not a subtask of {parent_id}, skipping")
                continue
            await cancel_tree(
                self.store, sid, reason=f"Redirected: {decision.new_direction}", reopen=True, log=self.log,
            )

        self.log.info(f"🔀 Task {parent_id} redirected: {decision.new_direction}")
        return await self._set_parent_status(
            parent_id, TaskStatus.READY, description_suffix=f"\n\n**New Direction**: {decision.new_direction}",
        )
