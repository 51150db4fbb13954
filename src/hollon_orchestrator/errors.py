"""
Hollon Orchestrator - Errors
============================

Typed errors raised by validation-class operations. Every error carries a
``context`` dict with the ids, limits and current values a caller needs to act.
"""

from typing import Any, Dict, Optional


class OrchestrationError(Exception):
    """Base class for all engine errors."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        return self.message


class NotFound(OrchestrationError):
    """Referenced task, parent, team or member is absent."""


class DepthExceeded(OrchestrationError):
    """Decomposition would exceed the maximum hierarchy depth."""


class CountExceeded(OrchestrationError):
    """Decomposition would exceed the per-parent child ceiling."""


class InvalidAssignee(OrchestrationError):
    """Assignee does not resolve to a current member of the team."""


class CircularDependency(OrchestrationError):
    """Proposed dependency edges would introduce a cycle."""


class InvalidDecision(OrchestrationError):
    """Oracle output failed schema validation or is not allowed right now."""


class AlreadyInMergedOrTerminalState(OrchestrationError):
    """Operation is not valid for the task's current status."""


class InvalidTransition(AlreadyInMergedOrTerminalState):
    """Status transition not permitted by the task state machine."""


class InvariantViolation(OrchestrationError):
    """A task record breaks a structural invariant on write."""
