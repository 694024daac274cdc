"""Plan/Build work modes and the plan model edited by plan tools."""

from codeloop.plan.model import Phase, Plan, Task, TaskStatus

__all__ = [
    "Phase",
    "Plan",
    "Task",
    "TaskStatus",
]
