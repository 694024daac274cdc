"""Plan <-> structured markdown.

Format::

    # Plan: Add retry support
    <!-- plan-id: plan_3f2a9c01bd -->

    ## Phase 1: Research

    - [x] 1.1 Read the client module
      > Result: Retries are handled nowhere
    - [~] 1.2 Sketch the policy
      > Context: exponential backoff with jitter
    - [ ] 1.3 Write tests
      > Blocked by: 1.2

Checkboxes: ``[ ]`` pending, ``[~]`` active, ``[x]`` done, ``[!]`` blocked.
Subtasks are indented two spaces per level.
"""

from __future__ import annotations

import re

from codeloop.errors import PlanError
from codeloop.logging import get_logger
from codeloop.plan.model import Phase, Plan, Task, TaskStatus

log = get_logger("plan")

_TITLE_RE = re.compile(r"^#\s+Plan:\s*(?P<title>.+?)\s*$")
_ID_RE = re.compile(r"^<!--\s*plan-id:\s*(?P<id>\S+)\s*-->\s*$")
_PHASE_RE = re.compile(r"^##\s+Phase\s+(?P<num>\d+)\s*[:.-]?\s*(?P<name>.*?)\s*$", re.IGNORECASE)
_TASK_RE = re.compile(
    r"^(?P<indent>\s*)[-*]\s+\[(?P<mark>[ xX~!])\]\s+"
    r"(?:(?:Task\s+)?(?P<id>\d+(?:\.\d+)+)[:.)]?\s+)?(?P<desc>.+?)\s*$"
)
_NOTE_RE = re.compile(r"^\s*>\s*(?P<key>Context|Blocked by|Result)\s*:\s*(?P<value>.*?)\s*$", re.IGNORECASE)

_MARK_TO_STATUS = {
    " ": TaskStatus.PENDING,
    "~": TaskStatus.ACTIVE,
    "x": TaskStatus.DONE,
    "X": TaskStatus.DONE,
    "!": TaskStatus.BLOCKED,
}
_STATUS_TO_MARK = {
    TaskStatus.PENDING: " ",
    TaskStatus.ACTIVE: "~",
    TaskStatus.DONE: "x",
    TaskStatus.BLOCKED: "!",
}


def _serialize_task(plan: Plan, task: Task, depth: int, lines: list[str]) -> None:
    pad = "  " * depth
    lines.append(f"{pad}- [{_STATUS_TO_MARK[task.status]}] {task.id} {task.description}")
    if task.context:
        lines.append(f"{pad}  > Context: {task.context}")
    deps = sorted(plan.dependencies.get(task.id, ()))
    if deps:
        lines.append(f"{pad}  > Blocked by: {', '.join(deps)}")
    if task.result:
        lines.append(f"{pad}  > Result: {task.result}")
    for sub in task.subtasks:
        _serialize_task(plan, sub, depth + 1, lines)


def serialize(plan: Plan) -> str:
    lines = [f"# Plan: {plan.title}", f"<!-- plan-id: {plan.id} -->"]
    for phase in plan.phases:
        lines.extend(["", f"## Phase {phase.number}: {phase.name}", ""])
        for task in phase.tasks:
            _serialize_task(plan, task, 0, lines)
    return "\n".join(lines) + "\n"


def to_context(plan: Plan) -> str:
    """Markdown without the identity comment, for prompts."""
    return "\n".join(line for line in serialize(plan).splitlines() if not _ID_RE.match(line))


def parse(text: str) -> Plan:
    """Parse structured plan text. Raises PlanError when no title is found."""
    title: str | None = None
    plan_id: str | None = None
    phases: list[Phase] = []
    # (depth, task) chain of the most recent task at each depth
    chain: list[tuple[int, Task]] = []
    deps: list[tuple[str, list[str]]] = []
    last: Task | None = None

    for raw in text.splitlines():
        line = raw.rstrip()
        if not line.strip() or line.strip().startswith("```"):
            continue

        if title is None:
            m = _TITLE_RE.match(line.strip())
            if m:
                title = m.group("title")
            continue

        m = _ID_RE.match(line)
        if m:
            plan_id = m.group("id")
            continue

        m = _PHASE_RE.match(line)
        if m:
            phases.append(Phase(number=int(m.group("num")), name=m.group("name") or f"Phase {m.group('num')}"))
            chain = []
            continue

        m = _TASK_RE.match(line)
        if m:
            if not phases:
                phases.append(Phase(number=1, name="Tasks"))
            phase = phases[-1]
            depth = len(m.group("indent").expandtabs(2)) // 2
            while chain and chain[-1][0] >= depth:
                chain.pop()
            siblings = chain[-1][1].subtasks if chain else phase.tasks
            parent_id = chain[-1][1].id if chain else str(phase.number)
            task = Task(
                id=m.group("id") or f"{parent_id}.{len(siblings) + 1}",
                description=m.group("desc"),
                status=_MARK_TO_STATUS[m.group("mark")],
            )
            siblings.append(task)
            chain.append((depth, task))
            last = task
            continue

        m = _NOTE_RE.match(line)
        if m and last is not None:
            key = m.group("key").lower()
            value = m.group("value")
            if key == "context":
                last.context = value
            elif key == "result":
                last.result = value
            else:
                deps.append((last.id, [d.strip() for d in value.split(",") if d.strip()]))

    if title is None:
        raise PlanError("No '# Plan:' header found")

    plan = Plan(title=title, phases=phases)
    if plan_id:
        plan.id = plan_id
    known = {t.id for t in plan.iter_tasks()}
    for task_id, blockers in deps:
        for blocker in blockers:
            if blocker in known and blocker != task_id:
                plan.dependencies.setdefault(task_id, set()).add(blocker)
    plan.check_acyclic()
    plan.refresh_blocked()
    return plan


def detect_plan(text: str) -> Plan | None:
    """Find a plan in a model response.

    Requires a ``# Plan:`` header followed by at least one checkbox task.
    """
    lines = text.splitlines()
    start = next((i for i, line in enumerate(lines) if _TITLE_RE.match(line.strip())), None)
    if start is None:
        return None
    try:
        plan = parse("\n".join(lines[start:]))
    except PlanError as e:
        log.debug("Ignoring malformed plan in response: %s", e)
        return None
    if next(plan.iter_tasks(), None) is None:
        return None
    return plan
