"""
Engine Module - Decision Oracle Boundary
========================================
Structured decisions from an external planner / reviewer / redistributor.

The oracle returns raw text. It is validated against a strict schema right
here, and any failure (timeout, error, malformed output) falls back to the
deterministic HeuristicPlanner so a task is never left waiting on it.
"""

import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Annotated, Any, Awaitable, Callable, Dict, List, Literal, Optional, Union

from langchain_core.prompts import ChatPromptTemplate
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator, model_validator

from ..config import ModelConfig
from ..errors import InvalidDecision
from ..llm_client import get_llm
from ..metrics import oracle_metrics
from ..orchestrator_types import TaskPriority, TaskType

logger = logging.getLogger(__name__)


# =============================================================================
# PYDANTIC SCHEMAS
# =============================================================================

class _OracleModel(BaseModel):
    """Accepts both snake_case names and the camelCase aliases models tend to emit."""
    model_config = ConfigDict(populate_by_name=True)


def _coerce_type(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().lower().replace("-", "_").replace(" ", "_")
    return value


def _coerce_priority(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().upper()
    return value


# Titles are matched against stored (stripped) titles, so plans are stripped too
def _strip(value: Any) -> Any:
    return value.strip() if isinstance(value, str) else value


def _strip_all(value: Any) -> Any:
    if isinstance(value, list):
        return [_strip(v) for v in value]
    return value


class SubtaskPlan(_OracleModel):
    """One entry of a distribution plan."""
    title: str = Field(min_length=1)
    description: str = ""
    assigned_to: str = Field(alias="assignedTo", description="Team member name")
    type: TaskType = TaskType.IMPLEMENTATION
    priority: TaskPriority = TaskPriority.P3
    estimated_complexity: Optional[str] = Field(default=None, alias="estimatedComplexity")
    dependencies: List[str] = Field(default_factory=list, description="Titles of other subtasks in this plan")

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, value: Any) -> Any:
        return _coerce_type(value)

    @field_validator("priority", mode="before")
    @classmethod
    def normalize_priority(cls, value: Any) -> Any:
        return _coerce_priority(value)

    @field_validator("title", mode="before")
    @classmethod
    def strip_title(cls, value: Any) -> Any:
        return _strip(value)

    @field_validator("dependencies", mode="before")
    @classmethod
    def strip_dependencies(cls, value: Any) -> Any:
        return _strip_all(value)


class DistributionPlan(_OracleModel):
    """Planner output: how a team task is split across members."""
    subtasks: List[SubtaskPlan] = Field(min_length=1)
    reasoning: str = ""


class NewSubtaskSpec(_OracleModel):
    """A follow-up subtask requested by a review."""
    title: str = Field(min_length=1)
    description: str = ""
    type: TaskType = TaskType.IMPLEMENTATION
    priority: Optional[TaskPriority] = None
    acceptance_criteria: List[str] = Field(default_factory=list, alias="acceptanceCriteria")
    dependencies: List[str] = Field(default_factory=list, description="Existing subtask ids/titles or new subtask titles")

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, value: Any) -> Any:
        return _coerce_type(value)

    @field_validator("priority", mode="before")
    @classmethod
    def normalize_priority(cls, value: Any) -> Any:
        return _coerce_priority(value)

    @field_validator("title", mode="before")
    @classmethod
    def strip_title(cls, value: Any) -> Any:
        return _strip(value)

    @field_validator("dependencies", mode="before")
    @classmethod
    def strip_dependencies(cls, value: Any) -> Any:
        return _strip_all(value)


class CompleteDecision(_OracleModel):
    action: Literal["complete"] = "complete"
    reasoning: str = ""


class ReworkDecision(_OracleModel):
    action: Literal["rework"] = "rework"
    subtask_ids: List[str] = Field(alias="subtaskIds", min_length=1)
    rework_instructions: str = Field(alias="reworkInstructions", min_length=1)
    reasoning: str = ""


class AddTasksDecision(_OracleModel):
    action: Literal["add_tasks"] = "add_tasks"
    new_subtasks: List[NewSubtaskSpec] = Field(alias="newSubtasks", min_length=1)
    reasoning: str = ""


class RedirectDecision(_OracleModel):
    action: Literal["redirect"] = "redirect"
    cancel_subtask_ids: List[str] = Field(default_factory=list, alias="cancelSubtaskIds")
    new_direction: str = Field(alias="newDirection", min_length=1)
    reasoning: str = ""


ReviewDecision = Annotated[
    Union[CompleteDecision, ReworkDecision, AddTasksDecision, RedirectDecision],
    Field(discriminator="action"),
]


class Reassignment(_OracleModel):
    """Move one subtask to another member; the task is named by id or title."""
    task_id: Optional[str] = Field(default=None, alias="taskId")
    task_title: Optional[str] = Field(default=None, alias="taskTitle")
    from_member: Optional[str] = Field(default=None, alias="from")
    to_member: str = Field(alias="to", min_length=1)
    reason: str = ""

    @model_validator(mode="after")
    def requires_task_reference(self) -> "Reassignment":
        if not self.task_id and not self.task_title:
            raise ValueError("reassignment needs taskId or taskTitle")
        return self


class RedistributionPlan(_OracleModel):
    reassignments: List[Reassignment] = Field(default_factory=list)
    reasoning: str = ""


# =============================================================================
# CONTEXT MODELS
# =============================================================================

class MemberContext(BaseModel):
    name: str
    role: str = ""
    skills: List[str] = Field(default_factory=list)
    active_tasks: int = 0
    completion_rate: float = 0.0


class SubtaskContext(BaseModel):
    id: str
    title: str
    status: str
    assignee: Optional[str] = None
    description: str = ""
    error_message: Optional[str] = None


class OracleContext(BaseModel):
    """Everything the oracle is shown about a task and its team."""
    task_id: str
    title: str
    description: str = ""
    task_type: TaskType = TaskType.IMPLEMENTATION
    priority: TaskPriority = TaskPriority.P3
    acceptance_criteria: List[str] = Field(default_factory=list)
    affected_files: List[str] = Field(default_factory=list)
    roster: List[MemberContext] = Field(default_factory=list)
    subtasks: List[SubtaskContext] = Field(default_factory=list)
    review_round: Optional[int] = None
    max_review_rounds: Optional[int] = None
    is_final_round: bool = False
    reason: Optional[str] = None


# =============================================================================
# PARSING
# =============================================================================

_FENCE_RE = re.compile(r"```[a-zA-Z]*\s*\n?(.*?)```", re.DOTALL)


def strip_code_fences(text: str) -> str:
    """Return the body of the first markdown code fence, or the text itself."""
    match = _FENCE_RE.search(text)
    if match:
        return match.group(1).strip()
    return text.strip()


def parse_oracle_response(text: Optional[str], schema: Any) -> Any:
    """
    Decode oracle text into ``schema`` (a model class or annotated union).

    Raises:
        InvalidDecision: On empty output, undecodable JSON or schema mismatch
    """
    if not text or not text.strip():
        raise InvalidDecision("Oracle returned an empty response")

    body = strip_code_fences(text)
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        # Prose around a bare JSON object
        start, end = body.find("{"), body.rfind("}")
        if start == -1 or end <= start:
            raise InvalidDecision("Oracle response is not JSON", context={"response": text[:500]})
        try:
            data = json.loads(body[start:end + 1])
        except json.JSONDecodeError as e:
            raise InvalidDecision(f"Oracle response is not JSON: {e}", context={"response": text[:500]})

    try:
        return TypeAdapter(schema).validate_python(data)
    except ValidationError as e:
        raise InvalidDecision(
            f"Oracle response failed validation: {e.error_count()} error(s)",
            context={"errors": e.errors(include_url=False), "response": text[:500]},
        )


# =============================================================================
# ORACLES
# =============================================================================

class DecisionOracle(ABC):
    """Planner / reviewer / redistributor returning raw (possibly fenced) JSON text."""

    @abstractmethod
    async def plan_distribution(self, context: OracleContext) -> str:
        ...

    @abstractmethod
    async def review(self, context: OracleContext) -> str:
        ...

    @abstractmethod
    async def plan_redistribution(self, context: OracleContext) -> str:
        ...


DISTRIBUTION_SYSTEM = """You are a team manager distributing a team task among your members.
Respond with JSON only, in this shape:
{{"subtasks": [{{"title": "...", "description": "...", "assignedTo": "<member name>",
  "type": "implementation", "priority": "P3", "estimatedComplexity": "low|medium|high",
  "dependencies": ["<title of another subtask>"]}}], "reasoning": "..."}}
Titles must be unique. Use at most 10 subtasks."""

REVIEW_SYSTEM = """You are reviewing the completed subtasks of a task.
Respond with JSON only, choosing exactly one action:
{{"action": "complete", "reasoning": "..."}}
{{"action": "rework", "subtaskIds": ["..."], "reworkInstructions": "...", "reasoning": "..."}}
{{"action": "add_tasks", "newSubtasks": [{{"title": "...", "description": "...", "type": "implementation", "dependencies": []}}], "reasoning": "..."}}
{{"action": "redirect", "cancelSubtaskIds": ["..."], "newDirection": "...", "reasoning": "..."}}
When is_final_round is true only "complete" or "redirect" are accepted."""

REDISTRIBUTION_SYSTEM = """You are a team manager rebalancing stuck subtasks.
Respond with JSON only, in this shape:
{{"reassignments": [{{"taskId": "...", "taskTitle": "...", "from": "<member name>",
  "to": "<member name>", "reason": "..."}}], "reasoning": "..."}}"""


class LLMDecisionOracle(DecisionOracle):
    """DecisionOracle backed by a LangChain chat model."""

    def __init__(self, model_config: Optional[ModelConfig] = None, llm: Any = None, timeout: float = 60.0):
        self.llm = llm or get_llm(model_config, timeout=timeout)

    async def _ask(self, system: str, context: OracleContext) -> str:
        prompt = ChatPromptTemplate.from_messages([
            ("system", system),
            ("user", "Context:\n{context}"),
        ])
        messages = prompt.format_messages(context=context.model_dump_json(indent=2))
        response = await self.llm.ainvoke(messages)
        content = response.content
        if isinstance(content, list):
            # Anthropic returns content blocks
            content = "".join(
                block.get("text", "") if isinstance(block, dict) else str(block) for block in content
            )
        return content

    async def plan_distribution(self, context: OracleContext) -> str:
        return await self._ask(DISTRIBUTION_SYSTEM, context)

    async def review(self, context: OracleContext) -> str:
        return await self._ask(REVIEW_SYSTEM, context)

    async def plan_redistribution(self, context: OracleContext) -> str:
        return await self._ask(REDISTRIBUTION_SYSTEM, context)


# =============================================================================
# HEURISTIC FALLBACK
# =============================================================================

def group_files_by_directory(files: List[str]) -> Dict[str, List[str]]:
    groups: Dict[str, List[str]] = defaultdict(list)
    for path in files:
        parts = path.replace("\\", "/").split("/")
        directory = "/".join(parts[:-1]) if len(parts) > 1 else "root"
        groups[directory].append(path)
    return dict(groups)


class HeuristicPlanner:
    """Deterministic decisions used whenever the oracle cannot be relied on."""

    def _assignees(self, roster: List[MemberContext]) -> Callable[[], str]:
        """Returns a picker handing out the least-loaded member each call."""
        if not roster:
            raise InvalidDecision("Cannot plan a distribution for a team without members")
        load = {m.name: m.active_tasks for m in roster}

        def pick() -> str:
            name = min(load, key=lambda n: (load[n], n))
            load[name] += 1
            return name

        return pick

    def distribution(self, context: OracleContext) -> DistributionPlan:
        pick = self._assignees(context.roster)
        title = context.title
        subtasks: List[SubtaskPlan] = []

        if len(context.acceptance_criteria) > 1:
            previous: Optional[str] = None
            for index, criterion in enumerate(context.acceptance_criteria, start=1):
                sub_title = f"{title} - Part {index}"
                subtasks.append(SubtaskPlan(
                    title=sub_title,
                    description=f"Implement: {criterion}",
                    assigned_to=pick(),
                    type=context.task_type,
                    priority=context.priority,
                    dependencies=[previous] if previous else [],
                ))
                previous = sub_title
            return DistributionPlan(
                subtasks=subtasks,
                reasoning="Split by acceptance criteria - each subtask addresses one criterion",
            )

        if len(context.affected_files) > 3:
            for directory, files in group_files_by_directory(context.affected_files).items():
                subtasks.append(SubtaskPlan(
                    title=f"{title} - {directory}",
                    description=f"Handle changes in {directory} ({', '.join(files)}): {context.description}",
                    assigned_to=pick(),
                    type=context.task_type,
                    priority=context.priority,
                ))
            return DistributionPlan(
                subtasks=subtasks,
                reasoning="Split by file directories - subtasks can be executed in parallel",
            )

        phases = [
            (f"{title} - Phase 1: Setup & Research", f"Research and prepare for: {context.description}", TaskType.RESEARCH),
            (f"{title} - Phase 2: Implementation", f"Core implementation of: {context.description}", context.task_type),
            (f"{title} - Phase 3: Testing & Documentation", f"Test and document: {context.description}", TaskType.DOCUMENTATION),
        ]
        previous = None
        for sub_title, description, task_type in phases:
            subtasks.append(SubtaskPlan(
                title=sub_title,
                description=description,
                assigned_to=pick(),
                type=task_type,
                priority=context.priority,
                dependencies=[previous] if previous else [],
            ))
            previous = sub_title
        return DistributionPlan(
            subtasks=subtasks,
            reasoning="Generic 3-phase breakdown: research -> implementation -> testing",
        )

    def review(self, context: OracleContext) -> CompleteDecision:
        return CompleteDecision(reasoning="Automated review: all subtasks completed, approving by default")

    def redistribution(self, context: OracleContext) -> RedistributionPlan:
        return RedistributionPlan(reasoning="No oracle available; leaving assignments unchanged")


async def consult(
    kind: str,
    call: Callable[[], Awaitable[str]],
    schema: Any,
    fallback: Callable[[], Any],
    timeout: float,
    log: Optional[logging.Logger] = None,
) -> Any:
    """
    Ask the oracle and validate its answer, falling back on any failure.

    Args:
        kind: Metric / log label ("distribution", "review", "redistribution")
        call: Zero-argument coroutine factory producing the raw response
        schema: Model class or annotated union to validate against
        fallback: Deterministic replacement decision; its errors propagate
        timeout: Seconds to wait for the oracle

    Returns:
        The validated decision or the fallback decision
    """
    log = log or logger
    with oracle_metrics.track_call(kind) as call_info:
        try:
            raw = await asyncio.wait_for(call(), timeout=timeout)
            decision = parse_oracle_response(raw, schema)
            call_info["result"] = "success"
            return decision
        except asyncio.TimeoutError:
            call_info["result"] = "timeout"
            log.warning(f"Oracle {kind} timed out after {timeout}s, using heuristic fallback")
        except InvalidDecision as e:
            call_info["result"] = "invalid"
            log.warning(f"Oracle {kind} returned an invalid decision ({e}), using heuristic fallback")
        except Exception as e:
            call_info["result"] = "error"
            log.error(f"Oracle {kind} failed: {e}, using heuristic fallback", exc_info=True)

    oracle_metrics.fallbacks_total.labels(kind=kind).inc()
    return fallback()
