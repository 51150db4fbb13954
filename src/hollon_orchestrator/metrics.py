"""
Hollon Orchestrator - Metrics Collection
========================================
Prometheus metrics for observability.

Usage:
    from hollon_orchestrator.metrics import task_metrics, oracle_metrics

    # Count a status change
    task_metrics.transitions_total.labels(from_status="ready", to_status="in_progress").inc()

    # Time an oracle call
    with oracle_metrics.track_call("review") as call:
        raw = await oracle.review(context)
        call["result"] = "success"
"""

import time
from collections import Counter as _Counter
from contextlib import contextmanager

from prometheus_client import Counter, Gauge, Histogram


# =============================================================================
# TASK METRICS
# =============================================================================

class TaskMetrics:
    """Metrics for the task graph"""

    def __init__(self):
        self.transitions_total = Counter(
            'hollon_task_transitions_total',
            'Task status transitions',
            ['from_status', 'to_status']
        )

        self.unblocked_total = Counter(
            'hollon_tasks_unblocked_total',
            'Tasks moved from blocked to ready after dependency completion'
        )

        self.subtasks_created_total = Counter(
            'hollon_subtasks_created_total',
            'Child tasks created by decomposition'
        )

        self.subtask_creation_errors_total = Counter(
            'hollon_subtask_creation_errors_total',
            'Per-item failures during batch subtask creation'
        )

        self.creation_rejections_total = Counter(
            'hollon_subtask_creation_rejections_total',
            'Decompositions rejected before any child was created',
            ['reason']  # depth, count, not_found
        )

        self.failures_total = Counter(
            'hollon_task_failures_total',
            'Recorded task failures',
            ['outcome']  # backoff, failed
        )

        self.backoff_seconds = Histogram(
            'hollon_task_backoff_seconds',
            'Backoff applied after a task failure',
            buckets=[60, 300, 600, 900, 1800, 3600, 7200]
        )

        self.tasks_by_state = Gauge(
            'hollon_tasks_by_state',
            'Current number of tasks in each state',
            ['status']
        )


# =============================================================================
# PLAN / REVIEW METRICS
# =============================================================================

class PlanMetrics:
    """Metrics for distribution plans and review cycles"""

    def __init__(self):
        self.plan_rejections_total = Counter(
            'hollon_plan_rejections_total',
            'Distribution plans rejected during validation',
            ['reason']  # invalid_assignee, circular_dependency, duplicate_title
        )

        self.plans_applied_total = Counter(
            'hollon_plans_applied_total',
            'Distribution plans committed to the task graph'
        )

        self.review_decisions_total = Counter(
            'hollon_review_decisions_total',
            'Review decisions applied',
            ['action', 'final']
        )

        self.reassignments_total = Counter(
            'hollon_reassignments_total',
            'Subtask reassignments executed by managers'
        )


# =============================================================================
# ORACLE METRICS
# =============================================================================

class OracleMetrics:
    """Metrics for decision oracle calls"""

    def __init__(self):
        self.calls_total = Counter(
            'hollon_oracle_calls_total',
            'Decision oracle calls',
            ['kind', 'result']  # result: success, invalid, timeout, error
        )

        self.call_duration = Histogram(
            'hollon_oracle_call_duration_seconds',
            'Decision oracle call duration',
            ['kind'],
            buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 20.0, 30.0, 60.0]
        )

        self.fallbacks_total = Counter(
            'hollon_oracle_fallbacks_total',
            'Deterministic fallbacks taken after oracle failure',
            ['kind']
        )

    @contextmanager
    def track_call(self, kind: str):
        """Context manager to track an oracle call"""
        start = time.time()
        metadata = {"result": "error"}
        try:
            yield metadata
        finally:
            self.call_duration.labels(kind=kind).observe(time.time() - start)
            self.calls_total.labels(kind=kind, result=metadata.get("result", "error")).inc()


# =============================================================================
# GLOBAL INSTANCES
# =============================================================================

task_metrics = TaskMetrics()
plan_metrics = PlanMetrics()
oracle_metrics = OracleMetrics()


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def update_task_state_gauges(tasks: list):
    """Update task state gauges from a list of Task records"""
    from .orchestrator_types import TaskStatus

    status_counts = _Counter(t.status for t in tasks)
    for status in TaskStatus:
        task_metrics.tasks_by_state.labels(status=status.value).set(status_counts.get(status, 0))
