"""
Shared fixtures: an in-memory store, a seeded team and a wired orchestrator.
"""
import pytest
from typing import Any, Dict, List, Tuple

from hollon_orchestrator.config import OrchestratorConfig
from hollon_orchestrator.engine import DecisionOracle, OracleContext, TaskOrchestrator
from hollon_orchestrator.notifications import Notifier
from hollon_orchestrator.orchestrator_types import Member, Task, TaskStatus, TaskType, Team
from hollon_orchestrator.task_store import InMemoryTaskStore


class RecordingNotifier(Notifier):
    """Captures notifications instead of delivering them."""

    def __init__(self):
        self.sent: List[Tuple[str, str, Dict[str, Any]]] = []

    async def notify(self, recipient_id: str, kind: str, payload: Dict[str, Any]) -> None:
        self.sent.append((recipient_id, kind, payload))

    def kinds(self) -> List[str]:
        return [kind for _, kind, _ in self.sent]


class ScriptedOracle(DecisionOracle):
    """Returns canned raw responses and records the contexts it was shown."""

    def __init__(self, distribution: str = "", review: str = "", redistribution: str = ""):
        self.responses = {"distribution": distribution, "review": review, "redistribution": redistribution}
        self.contexts: List[Tuple[str, OracleContext]] = []

    async def _answer(self, kind: str, context: OracleContext) -> str:
        self.contexts.append((kind, context))
        response = self.responses[kind]
        if isinstance(response, Exception):
            raise response
        return response

    async def plan_distribution(self, context: OracleContext) -> str:
        return await self._answer("distribution", context)

    async def review(self, context: OracleContext) -> str:
        return await self._answer("review", context)

    async def plan_redistribution(self, context: OracleContext) -> str:
        return await self._answer("redistribution", context)


def make_task(task_id: str, **kwargs) -> Task:
    kwargs.setdefault("title", task_id)
    return Task(id=task_id, **kwargs)


@pytest.fixture
def store():
    return InMemoryTaskStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
async def team(store):
    team = Team(
        id="team_core",
        name="Core",
        organization_id="org_1",
        manager_id="m_lead",
        members=[
            Member(id="m_lead", name="Lead", role="manager"),
            Member(id="m_alice", name="Alice", role="backend", capabilities=["python", "sql"]),
            Member(id="m_bob", name="Bob", role="frontend", capabilities=["typescript"]),
            Member(id="m_carol", name="Carol", role="qa", capabilities=["testing"]),
        ],
    )
    await store.save_team(team)
    return team


@pytest.fixture
def orchestrator(store, notifier):
    return TaskOrchestrator(store, OrchestratorConfig(), notifier=notifier)


@pytest.fixture
async def team_task(store, team):
    task = make_task(
        "epic_1",
        title="Build billing",
        description="Add invoices and payments",
        type=TaskType.TEAM_EPIC,
        status=TaskStatus.READY,
        organization_id="org_1",
        project_id="proj_1",
        assigned_team_id=team.id,
    )
    await store.save(task)
    return task
