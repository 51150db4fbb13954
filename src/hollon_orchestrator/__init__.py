"""
Hollon Orchestrator
===================
Task orchestration and dependency engine: hierarchical decomposition,
DAG dependency resolution, parent status derivation, team distribution and
a bounded review cycle.
"""

from .config import (
    BackoffConfig,
    HierarchyLimits,
    ModelConfig,
    OracleConfig,
    OrchestratorConfig,
    ReviewConfig,
)
from .errors import (
    AlreadyInMergedOrTerminalState,
    CircularDependency,
    CountExceeded,
    DepthExceeded,
    InvalidAssignee,
    InvalidDecision,
    InvalidTransition,
    InvariantViolation,
    NotFound,
    OrchestrationError,
)
from .orchestrator_types import (
    Member,
    SubtaskDefinition,
    Task,
    TaskPriority,
    TaskStatus,
    TaskType,
    Team,
    new_task_id,
)
from .task_store import InMemoryTaskStore, TaskStore
from .sqlite_store import SqliteTaskStore
from .engine import TaskOrchestrator

__version__ = "0.1.0"

__all__ = [
    # Config
    "BackoffConfig",
    "HierarchyLimits",
    "ModelConfig",
    "OracleConfig",
    "OrchestratorConfig",
    "ReviewConfig",
    # Errors
    "AlreadyInMergedOrTerminalState",
    "CircularDependency",
    "CountExceeded",
    "DepthExceeded",
    "InvalidAssignee",
    "InvalidDecision",
    "InvalidTransition",
    "InvariantViolation",
    "NotFound",
    "OrchestrationError",
    # Types
    "Member",
    "SubtaskDefinition",
    "Task",
    "TaskPriority",
    "TaskStatus",
    "TaskType",
    "Team",
    "new_task_id",
    # Storage
    "InMemoryTaskStore",
    "SqliteTaskStore",
    "TaskStore",
    # Facade
    "TaskOrchestrator",
]
