"""
Engine Module - Oracle Context
==============================
Builds the OracleContext shown to the decision oracle from store state.
"""

from typing import Dict, Optional

from ..orchestrator_types import Task, Team
from ..task_store import TaskStore
from .oracle import MemberContext, OracleContext, SubtaskContext


async def build_oracle_context(
    store: TaskStore,
    task: Task,
    team: Optional[Team] = None,
    review_round: Optional[int] = None,
    max_review_rounds: Optional[int] = None,
    reason: Optional[str] = None,
) -> OracleContext:
    """
    Summarize ``task``, its team roster with workload, and its current children.
    """
    roster = []
    names: Dict[str, str] = {}
    if team is not None:
        workload = await store.workload([m.id for m in team.members])
        for member in team.members:
            names[member.id] = member.name
            load = workload.get(member.id)
            roster.append(MemberContext(
                name=member.name,
                role=member.role,
                skills=list(member.capabilities),
                active_tasks=load.active_task_count if load else 0,
                completion_rate=load.completion_rate if load else 0.0,
            ))

    children = await store.get_children(task.id)
    subtasks = [
        SubtaskContext(
            id=child.id,
            title=child.title,
            status=child.status.value,
            assignee=names.get(child.assigned_member_id, child.assigned_member_id),
            description=child.description,
            error_message=child.error_message,
        )
        for child in children
    ]

    return OracleContext(
        task_id=task.id,
        title=task.title,
        description=task.description,
        task_type=task.type,
        priority=task.priority,
        acceptance_criteria=list(task.acceptance_criteria),
        affected_files=list(task.affected_files),
        roster=roster,
        subtasks=subtasks,
        review_round=review_round,
        max_review_rounds=max_review_rounds,
        is_final_round=bool(review_round and max_review_rounds and review_round >= max_review_rounds),
        reason=reason,
    )
