"""
Hollon Orchestrator - Type Definitions
======================================

Core data structures for the task orchestration engine: the Task record,
teams and their members, and the serialization helpers used by the stores.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


# =============================================================================
# ENUMS
# =============================================================================

class TaskStatus(str, Enum):
    """All possible states a task can be in."""
    PENDING = "pending"                    # Created, not yet actionable
    READY = "ready"                        # Can be picked up by a worker
    IN_PROGRESS = "in_progress"            # Worker executing, or children underway
    READY_FOR_REVIEW = "ready_for_review"  # All children completed, awaiting review
    IN_REVIEW = "in_review"                # Review cycle running
    BLOCKED = "blocked"                    # Waiting on dependencies, children or backoff
    COMPLETED = "completed"
    FAILED = "failed"                      # Automatic retries exhausted
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.CANCELLED})


class TaskType(str, Enum):
    """Kind of work a task represents."""
    TEAM_EPIC = "team_epic"  # Team-level task, distributed by the team manager
    PLANNING = "planning"
    IMPLEMENTATION = "implementation"
    REVIEW = "review"
    RESEARCH = "research"
    BUG_FIX = "bug_fix"
    DOCUMENTATION = "documentation"
    DISCUSSION = "discussion"


class TaskPriority(str, Enum):
    """Four-level ordinal priority. P1 is the most urgent."""
    P1 = "P1"
    P2 = "P2"
    P3 = "P3"
    P4 = "P4"


# =============================================================================
# TEAMS
# =============================================================================

@dataclass
class Member:
    """An individual worker (agent or human) that can be assigned tasks."""
    id: str
    name: str
    role: str = ""
    capabilities: List[str] = field(default_factory=list)


@dataclass
class Team:
    """A group of members led by a manager who distributes team tasks."""
    id: str
    name: str
    organization_id: Optional[str] = None
    manager_id: Optional[str] = None
    members: List[Member] = field(default_factory=list)

    def member_by_name(self, name: str) -> Optional[Member]:
        return next((m for m in self.members if m.name == name), None)

    def member_by_id(self, member_id: str) -> Optional[Member]:
        return next((m for m in self.members if m.id == member_id), None)


# =============================================================================
# TASK
# =============================================================================

def new_task_id() -> str:
    return f"task_{uuid.uuid4().hex[:12]}"


@dataclass
class Task:
    """A single unit of work in the task graph."""
    # Identity
    id: str
    title: str
    description: str = ""

    # Classification
    type: TaskType = TaskType.IMPLEMENTATION
    priority: TaskPriority = TaskPriority.P3

    # State
    status: TaskStatus = TaskStatus.PENDING

    # Hierarchy
    parent_id: Optional[str] = None
    depth: int = 0

    # Scoping (inherited by children at creation time)
    organization_id: Optional[str] = None
    project_id: Optional[str] = None
    working_directory: Optional[str] = None

    # Assignment: at most one of team / member
    assigned_team_id: Optional[str] = None
    assigned_member_id: Optional[str] = None
    reviewer_id: Optional[str] = None
    creator_id: Optional[str] = None

    # Dependencies: ids that must be COMPLETED before this task leaves BLOCKED
    dependencies: List[str] = field(default_factory=list)

    # Work description
    acceptance_criteria: List[str] = field(default_factory=list)
    affected_files: List[str] = field(default_factory=list)
    estimated_complexity: Optional[str] = None  # low / medium / high

    # Failure telemetry
    retry_count: int = 0
    consecutive_failures: int = 0
    last_failed_at: Optional[datetime] = None
    blocked_until: Optional[datetime] = None
    error_message: Optional[str] = None
    blocked_reason: Optional[str] = None

    # Review telemetry
    review_count: int = 0
    last_reviewed_at: Optional[datetime] = None

    # Timestamps
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def touch(self) -> None:
        self.updated_at = datetime.now()


# =============================================================================
# SUBTASK CREATION STRUCTURES
# =============================================================================

@dataclass
class SubtaskDefinition:
    """Input for creating one child task."""
    title: str
    description: str = ""
    type: TaskType = TaskType.IMPLEMENTATION
    priority: Optional[TaskPriority] = None  # Defaults to the parent's priority
    acceptance_criteria: List[str] = field(default_factory=list)
    affected_files: List[str] = field(default_factory=list)
    estimated_complexity: Optional[str] = None


@dataclass
class SubtaskCreationResult:
    """
    Outcome of a batch creation.

    ``success`` is True only when every requested child was created; per-item
    failures are reported in ``errors`` alongside the children that were made.
    """
    success: bool
    created: List[Task] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    requested: int = 0


@dataclass
class CreationVerdict:
    """Whether a task may receive more children, and why not."""
    can_create: bool
    current_depth: int
    current_count: int
    reason: Optional[str] = None


# =============================================================================
# SERIALIZATION HELPERS
# =============================================================================

def _dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def task_to_dict(t: Task) -> Dict[str, Any]:
    return {
        "id": t.id,
        "title": t.title,
        "description": t.description,
        "type": t.type.value,
        "priority": t.priority.value,
        "status": t.status.value,
        "parent_id": t.parent_id,
        "depth": t.depth,
        "organization_id": t.organization_id,
        "project_id": t.project_id,
        "working_directory": t.working_directory,
        "assigned_team_id": t.assigned_team_id,
        "assigned_member_id": t.assigned_member_id,
        "reviewer_id": t.reviewer_id,
        "creator_id": t.creator_id,
        "dependencies": list(t.dependencies),
        "acceptance_criteria": list(t.acceptance_criteria),
        "affected_files": list(t.affected_files),
        "estimated_complexity": t.estimated_complexity,
        "retry_count": t.retry_count,
        "consecutive_failures": t.consecutive_failures,
        "last_failed_at": _dt(t.last_failed_at),
        "blocked_until": _dt(t.blocked_until),
        "error_message": t.error_message,
        "blocked_reason": t.blocked_reason,
        "review_count": t.review_count,
        "last_reviewed_at": _dt(t.last_reviewed_at),
        "created_at": t.created_at.isoformat(),
        "updated_at": t.updated_at.isoformat(),
        "started_at": _dt(t.started_at),
        "completed_at": _dt(t.completed_at),
    }


def dict_to_task(data: Dict[str, Any]) -> Task:
    return Task(
        id=data["id"],
        title=data.get("title", "Untitled"),
        description=data.get("description", ""),
        type=TaskType(data.get("type", "implementation")),
        priority=TaskPriority(data.get("priority", "P3")),
        status=TaskStatus(data.get("status", "pending")),
        parent_id=data.get("parent_id"),
        depth=data.get("depth", 0),
        organization_id=data.get("organization_id"),
        project_id=data.get("project_id"),
        working_directory=data.get("working_directory"),
        assigned_team_id=data.get("assigned_team_id"),
        assigned_member_id=data.get("assigned_member_id"),
        reviewer_id=data.get("reviewer_id"),
        creator_id=data.get("creator_id"),
        dependencies=list(data.get("dependencies", [])),
        acceptance_criteria=list(data.get("acceptance_criteria", [])),
        affected_files=list(data.get("affected_files", [])),
        estimated_complexity=data.get("estimated_complexity"),
        retry_count=data.get("retry_count", 0),
        consecutive_failures=data.get("consecutive_failures", 0),
        last_failed_at=_parse_dt(data.get("last_failed_at")),
        blocked_until=_parse_dt(data.get("blocked_until")),
        error_message=data.get("error_message"),
        blocked_reason=data.get("blocked_reason"),
        review_count=data.get("review_count", 0),
        last_reviewed_at=_parse_dt(data.get("last_reviewed_at")),
        created_at=_parse_dt(data.get("created_at")) or datetime.now(),
        updated_at=_parse_dt(data.get("updated_at")) or datetime.now(),
        started_at=_parse_dt(data.get("started_at")),
        completed_at=_parse_dt(data.get("completed_at")),
    )


def team_to_dict(team: Team) -> Dict[str, Any]:
    return {
        "id": team.id,
        "name": team.name,
        "organization_id": team.organization_id,
        "manager_id": team.manager_id,
        "members": [
            {"id": m.id, "name": m.name, "role": m.role, "capabilities": list(m.capabilities)}
            for m in team.members
        ],
    }


def dict_to_team(data: Dict[str, Any]) -> Team:
    return Team(
        id=data["id"],
        name=data["name"],
        organization_id=data.get("organization_id"),
        manager_id=data.get("manager_id"),
        members=[
            Member(
                id=m["id"],
                name=m["name"],
                role=m.get("role", ""),
                capabilities=list(m.get("capabilities", [])),
            )
            for m in data.get("members", [])
        ],
    )
