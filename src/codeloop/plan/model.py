"""Plan structure: phases of tasks plus a dependency index.

Tasks form a tree (phase -> task -> subtask). Dependencies are kept apart
from the tree in an adjacency map ``task id -> ids it waits on`` so the
graph can be checked for cycles in a single pass.
"""

from __future__ import annotations

import copy
import uuid
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from codeloop.errors import CycleError, PlanError


class TaskStatus(Enum):
    PENDING = "pending"
    ACTIVE = "active"
    DONE = "done"
    BLOCKED = "blocked"


@dataclass
class Task:
    id: str  # Dotted position, e.g. "2.1" or "2.1.3" for a subtask
    description: str
    status: TaskStatus = TaskStatus.PENDING
    context: str | None = None
    result: str | None = None
    subtasks: list[Task] = field(default_factory=list)

    def walk(self) -> Iterator[Task]:
        yield self
        for sub in self.subtasks:
            yield from sub.walk()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "status": self.status.value,
            "context": self.context,
            "result": self.result,
            "subtasks": [s.to_dict() for s in self.subtasks],
        }


@dataclass
class Phase:
    number: int
    name: str
    tasks: list[Task] = field(default_factory=list)

    def walk(self) -> Iterator[Task]:
        for task in self.tasks:
            yield from task.walk()


@dataclass
class Plan:
    title: str
    phases: list[Phase] = field(default_factory=list)
    dependencies: dict[str, set[str]] = field(default_factory=dict)
    id: str = field(default_factory=lambda: f"plan_{uuid.uuid4().hex[:10]}")

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def iter_tasks(self) -> Iterator[Task]:
        for phase in self.phases:
            yield from phase.walk()

    def get_task(self, task_id: str) -> Task | None:
        for task in self.iter_tasks():
            if task.id == task_id:
                return task
        return None

    def require_task(self, task_id: str) -> Task:
        task = self.get_task(task_id)
        if task is None:
            raise PlanError(f"Task '{task_id}' not found in plan")
        return task

    def progress(self) -> tuple[int, int]:
        tasks = list(self.iter_tasks())
        return sum(1 for t in tasks if t.status is TaskStatus.DONE), len(tasks)

    @property
    def is_complete(self) -> bool:
        done, total = self.progress()
        return total > 0 and done == total

    def unfinished_blockers(self, task_id: str) -> list[str]:
        blockers = []
        for dep_id in sorted(self.dependencies.get(task_id, ())):
            dep = self.get_task(dep_id)
            if dep is not None and dep.status is not TaskStatus.DONE:
                blockers.append(dep_id)
        return blockers

    def ready_tasks(self) -> list[Task]:
        """Pending tasks whose dependencies are all done."""
        return [
            t
            for t in self.iter_tasks()
            if t.status is TaskStatus.PENDING and not self.unfinished_blockers(t.id)
        ]

    def blocked_tasks(self) -> list[Task]:
        return [t for t in self.iter_tasks() if t.status is TaskStatus.BLOCKED]

    def active_tasks(self) -> list[Task]:
        return [t for t in self.iter_tasks() if t.status is TaskStatus.ACTIVE]

    # -------------------------------------------------------------------------
    # Dependency graph
    # -------------------------------------------------------------------------

    def check_acyclic(self) -> None:
        """Verify the dependency graph in one DFS pass; raise CycleError."""
        WHITE, GREY, BLACK = 0, 1, 2
        color: dict[str, int] = {}
        stack: list[str] = []

        def visit(node: str) -> None:
            color[node] = GREY
            stack.append(node)
            for nxt in sorted(self.dependencies.get(node, ())):
                state = color.get(nxt, WHITE)
                if state == GREY:
                    raise CycleError(stack[stack.index(nxt):] + [nxt])
                if state == WHITE:
                    visit(nxt)
            stack.pop()
            color[node] = BLACK

        for node in sorted(self.dependencies):
            if color.get(node, WHITE) == WHITE:
                visit(node)

    def _path(self, start: str, goal: str) -> list[str] | None:
        """Dependency path from ``start`` to ``goal``, if any."""
        seen: set[str] = set()
        stack: list[tuple[str, list[str]]] = [(start, [start])]
        while stack:
            node, path = stack.pop()
            if node == goal:
                return path
            if node in seen:
                continue
            seen.add(node)
            for nxt in self.dependencies.get(node, ()):
                stack.append((nxt, path + [nxt]))
        return None

    def add_dependency(self, task_id: str, blocked_by: str) -> None:
        """Record that ``task_id`` cannot start before ``blocked_by`` is done."""
        self.require_task(task_id)
        self.require_task(blocked_by)
        if task_id == blocked_by:
            raise PlanError(f"Task '{task_id}' cannot depend on itself")
        back = self._path(blocked_by, task_id)
        if back is not None:
            raise CycleError([task_id] + back)
        self.dependencies.setdefault(task_id, set()).add(blocked_by)
        self.refresh_blocked()

    def refresh_blocked(self) -> None:
        """Move tasks between PENDING and BLOCKED according to dependencies."""
        for task in self.iter_tasks():
            blocked = bool(self.unfinished_blockers(task.id))
            if task.status is TaskStatus.PENDING and blocked:
                task.status = TaskStatus.BLOCKED
            elif task.status is TaskStatus.BLOCKED and not blocked:
                task.status = TaskStatus.PENDING

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def start_task(self, task_id: str) -> Task:
        task = self.require_task(task_id)
        if task.status is TaskStatus.DONE:
            raise PlanError(f"Task '{task_id}' is already complete")
        if task.status is TaskStatus.ACTIVE:
            raise PlanError(f"Task '{task_id}' is already in progress")
        blockers = self.unfinished_blockers(task_id)
        if blockers:
            raise PlanError(
                f"Task '{task_id}' is blocked by unfinished tasks: {', '.join(blockers)}"
            )
        task.status = TaskStatus.ACTIVE
        return task

    def complete_task(self, task_id: str, result: str) -> list[Task]:
        """Mark an active task done; return tasks that became ready."""
        task = self.require_task(task_id)
        if task.status is not TaskStatus.ACTIVE:
            raise PlanError(
                f"Task '{task_id}' is {task.status.value}; call task_start before task_complete"
            )
        before = {t.id for t in self.ready_tasks()}
        task.status = TaskStatus.DONE
        task.result = result
        self.refresh_blocked()
        return [t for t in self.ready_tasks() if t.id not in before]

    def add_subtask(self, parent_id: str, description: str, context: str | None = None) -> Task:
        parent = self.require_task(parent_id)
        sub = Task(
            id=f"{parent.id}.{len(parent.subtasks) + 1}",
            description=description,
            context=context,
        )
        parent.subtasks.append(sub)
        return sub

    def copy(self) -> Plan:
        """Deep copy that keeps the plan identity."""
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        """Structured read model for external rendering."""
        done, total = self.progress()
        return {
            "id": self.id,
            "title": self.title,
            "progress": {"done": done, "total": total},
            "phases": [
                {
                    "number": p.number,
                    "name": p.name,
                    "tasks": [t.to_dict() for t in p.tasks],
                }
                for p in self.phases
            ],
            "dependencies": {k: sorted(v) for k, v in sorted(self.dependencies.items())},
        }
