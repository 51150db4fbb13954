"""
Engine Module - Task Graph Orchestration
========================================
Decomposition, dependency resolution, status propagation, distribution,
review and retry services over a TaskStore.
"""

# Re-export all services for clean imports
from .graph_utils import find_cycle, has_cycle, merge_edges
from .propagation import StatusPropagationEngine, derive_parent_status
from .dependencies import DependencyGraphEngine, is_backing_off
from .subtasks import SubtaskCreationService
from .retry import RetryGovernor
from .cancellation import cancel_tree
from .oracle import (
    AddTasksDecision,
    CompleteDecision,
    DecisionOracle,
    DistributionPlan,
    HeuristicPlanner,
    LLMDecisionOracle,
    MemberContext,
    NewSubtaskSpec,
    OracleContext,
    Reassignment,
    RedirectDecision,
    RedistributionPlan,
    ReviewDecision,
    ReworkDecision,
    SubtaskContext,
    SubtaskPlan,
    consult,
    parse_oracle_response,
    strip_code_fences,
)
from .context import build_oracle_context
from .distribution import DistributionResult, TeamTaskDistributionService, validate_plan
from .review import ReviewCycleController, ReviewOutcome, ReviewSession
from .manager import ManagerService, MonitorReport, TeamTaskStats
from .orchestrator import TaskOrchestrator

__all__ = [
    # Graph utils
    "find_cycle",
    "has_cycle",
    "merge_edges",
    # Propagation
    "StatusPropagationEngine",
    "derive_parent_status",
    # Dependencies
    "DependencyGraphEngine",
    "is_backing_off",
    # Subtasks
    "SubtaskCreationService",
    # Retry
    "RetryGovernor",
    # Cancellation
    "cancel_tree",
    # Oracle
    "AddTasksDecision",
    "CompleteDecision",
    "DecisionOracle",
    "DistributionPlan",
    "HeuristicPlanner",
    "LLMDecisionOracle",
    "MemberContext",
    "NewSubtaskSpec",
    "OracleContext",
    "Reassignment",
    "RedirectDecision",
    "RedistributionPlan",
    "ReviewDecision",
    "ReworkDecision",
    "SubtaskContext",
    "SubtaskPlan",
    "consult",
    "parse_oracle_response",
    "strip_code_fences",
    "build_oracle_context",
    # Distribution
    "DistributionResult",
    "TeamTaskDistributionService",
    "validate_plan",
    # Review
    "ReviewCycleController",
    "ReviewOutcome",
    "ReviewSession",
    # Manager
    "ManagerService",
    "MonitorReport",
    "TeamTaskStats",
    # Facade
    "TaskOrchestrator",
]
