"""
Unit tests for team task distribution: plan validation and apply.
"""
import json

import pytest
from conftest import ScriptedOracle, make_task

from hollon_orchestrator.config import OrchestratorConfig
from hollon_orchestrator.engine import DistributionPlan, SubtaskPlan, TaskOrchestrator, validate_plan
from hollon_orchestrator.errors import (
    AlreadyInMergedOrTerminalState,
    CircularDependency,
    InvalidAssignee,
    InvalidDecision,
    NotFound,
)
from hollon_orchestrator.orchestrator_types import Team, TaskStatus


def plan_of(*entries):
    """entries: (title, assignee, [dependency titles])"""
    return DistributionPlan(
        subtasks=[
            SubtaskPlan(title=title, assigned_to=who, dependencies=list(deps))
            for title, who, deps in entries
        ],
        reasoning="test plan",
    )


def oracle_with(plan: dict) -> ScriptedOracle:
    return ScriptedOracle(distribution=f"```json\n{json.dumps(plan)}\n```")


class TestValidatePlan:

    def test_resolves_assignees(self, team):
        """Member names resolve to ids, case-insensitively."""
        assignees = validate_plan(plan_of(("API", "Alice", []), ("UI", "bob", ["API"])), team)
        assert assignees == {"API": "m_alice", "UI": "m_bob"}

    def test_unknown_assignee(self, team):
        """An assignee outside the team is rejected with context."""
        with pytest.raises(InvalidAssignee) as exc:
            validate_plan(plan_of(("API", "Mallory", [])), team)
        assert exc.value.context["assignee"] == "Mallory"

    def test_duplicate_titles(self, team):
        """Titles must be unique within a plan."""
        with pytest.raises(InvalidDecision):
            validate_plan(plan_of(("API", "Alice", []), ("API", "Bob", [])), team)

    def test_cycle(self, team):
        """Dependencies between plan titles must not loop."""
        with pytest.raises(CircularDependency):
            validate_plan(plan_of(("A", "Alice", ["B"]), ("B", "Bob", ["A"])), team)

    def test_unknown_dependency_titles_are_ignored(self, team):
        """Dependencies naming no plan entry are dropped."""
        assert validate_plan(plan_of(("A", "Alice", ["does not exist"])), team) == {"A": "m_alice"}

    def test_padded_titles_count_as_duplicates(self, team):
        """Whitespace around a title does not make it a different subtask."""
        with pytest.raises(InvalidDecision):
            validate_plan(plan_of(("API", "Alice", []), ("API ", "Bob", [])), team)


class TestApplyPlan:

    async def test_happy_path(self, store, team, team_task, orchestrator):
        """Children are assigned, scoped, wired and blocked on their dependencies."""
        plan = plan_of(("API", "Alice", []), ("UI", "Bob", ["API"]), ("QA", "Carol", ["API", "UI"]))
        result = await orchestrator.distribution.apply_plan(team_task, team, plan)

        assert result.errors == []
        children = {c.title: c for c in await store.get_children("epic_1")}
        assert set(children) == {"API", "UI", "QA"}

        api, ui, qa = children["API"], children["UI"], children["QA"]
        assert api.assigned_member_id == "m_alice"
        assert api.assigned_team_id is None
        assert api.reviewer_id == "m_lead"
        assert api.creator_id == "m_lead"
        assert api.status == TaskStatus.READY
        assert api.organization_id == "org_1"
        assert api.project_id == "proj_1"

        assert ui.dependencies == [api.id]
        assert ui.status == TaskStatus.BLOCKED
        assert sorted(qa.dependencies) == sorted([api.id, ui.id])
        assert qa.status == TaskStatus.BLOCKED

        assert (await store.get("epic_1")).status == TaskStatus.IN_PROGRESS

    async def test_cycle_creates_nothing(self, store, team, team_task, orchestrator):
        """A cyclic plan is rejected before any child is created."""
        plan = plan_of(("A", "Alice", ["C"]), ("B", "Bob", ["A"]), ("C", "Carol", ["B"]))
        with pytest.raises(CircularDependency):
            await orchestrator.distribution.apply_plan(team_task, team, plan)
        assert await store.get_children("epic_1") == []
        assert (await store.get("epic_1")).status == TaskStatus.READY

    async def test_invalid_assignee_creates_nothing(self, store, team, team_task, orchestrator):
        """A bad assignee is rejected before any child is created."""
        with pytest.raises(InvalidAssignee):
            await orchestrator.distribution.apply_plan(team_task, team, plan_of(("A", "Nobody", [])))
        assert await store.get_children("epic_1") == []

    async def test_padded_titles_are_matched(self, store, team, team_task, orchestrator):
        """Titles and dependency names are stripped before assignees and edges are resolved."""
        plan = plan_of((" Build API", "Alice", []), ("Wire UI", "Bob", ["Build API  "]))
        result = await orchestrator.distribution.apply_plan(team_task, team, plan)

        assert result.errors == []
        children = {c.title: c for c in await store.get_children("epic_1")}
        api, ui = children["Build API"], children["Wire UI"]
        assert api.assigned_member_id == "m_alice"
        assert ui.assigned_member_id == "m_bob"
        assert ui.dependencies == [api.id]
        assert ui.status == TaskStatus.BLOCKED
        assert (await store.get("epic_1")).status == TaskStatus.IN_PROGRESS


class TestDistributeToTeam:

    async def test_heuristic_three_phase_plan(self, store, team_task, orchestrator):
        """Without an oracle the task is split into three sequential phases."""
        result = await orchestrator.distribute_to_team("epic_1")

        titles = [c.title for c in result.subtasks]
        assert titles == [
            "Build billing - Phase 1: Setup & Research",
            "Build billing - Phase 2: Implementation",
            "Build billing - Phase 3: Testing & Documentation",
        ]
        assert [c.status for c in result.subtasks] == [TaskStatus.READY, TaskStatus.BLOCKED, TaskStatus.BLOCKED]
        assert len({c.assigned_member_id for c in result.subtasks}) == 3

    async def test_oracle_plan_is_used(self, store, team_task, notifier):
        """The oracle's plan is applied as given."""
        oracle = oracle_with({
            "subtasks": [
                {"title": "Schema", "assignedTo": "Alice"},
                {"title": "Endpoints", "assignedTo": "Alice", "dependencies": ["Schema"]},
            ],
            "reasoning": "backend first",
        })
        orch = TaskOrchestrator(store, OrchestratorConfig(), oracle=oracle, notifier=notifier)
        result = await orch.distribute_to_team("epic_1")

        assert result.reasoning == "backend first"
        assert [c.title for c in result.subtasks] == ["Schema", "Endpoints"]
        kind, context = oracle.contexts[0]
        assert kind == "distribution"
        assert [m.name for m in context.roster] == ["Lead", "Alice", "Bob", "Carol"]

    async def test_malformed_oracle_output_falls_back(self, store, team_task, notifier):
        """Unparseable oracle output falls back to the heuristic plan."""
        oracle = ScriptedOracle(distribution="I'd split it into three parts.")
        orch = TaskOrchestrator(store, OrchestratorConfig(), oracle=oracle, notifier=notifier)
        result = await orch.distribute_to_team("epic_1")
        assert len(result.subtasks) == 3

    async def test_oracle_plan_with_cycle_is_rejected(self, store, team_task, notifier):
        """A cyclic oracle plan is rejected, not applied."""
        oracle = oracle_with({
            "subtasks": [
                {"title": "A", "assignedTo": "Alice", "dependencies": ["B"]},
                {"title": "B", "assignedTo": "Bob", "dependencies": ["A"]},
            ],
        })
        orch = TaskOrchestrator(store, OrchestratorConfig(), oracle=oracle, notifier=notifier)
        with pytest.raises(CircularDependency):
            await orch.distribute_to_team("epic_1")
        assert await store.get_children("epic_1") == []

    async def test_team_without_manager(self, store, orchestrator):
        """A team needs a manager to distribute work."""
        await store.save_team(Team(id="leaderless", name="Leaderless"))
        await store.save(make_task("epic_2", assigned_team_id="leaderless", status=TaskStatus.READY))
        with pytest.raises(NotFound):
            await orchestrator.distribute_to_team("epic_2")

    async def test_task_without_team(self, store, orchestrator):
        """Only team tasks can be distributed."""
        await store.save(make_task("solo", status=TaskStatus.READY))
        with pytest.raises(NotFound):
            await orchestrator.distribute_to_team("solo")

    async def test_terminal_task(self, store, team, orchestrator):
        """Finished tasks cannot be distributed."""
        await store.save(make_task("done", assigned_team_id=team.id, status=TaskStatus.COMPLETED))
        with pytest.raises(AlreadyInMergedOrTerminalState):
            await orchestrator.distribute_to_team("done")
