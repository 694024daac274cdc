"""Provider context: system messages plus the replayed conversation.

Before every provider call the loop rebuilds the message list from the
session. Injected system messages come first (base prompt, project
instructions, plan context), then the turns in conversational order.
"""

from __future__ import annotations

from pathlib import Path

from codeloop.core.llm.provider import Message, Role, ToolCallRequest
from codeloop.logging import get_logger
from codeloop.plan import markdown as plan_markdown
from codeloop.plan.model import Plan
from codeloop.prompts import SYSTEM_PROMPT
from codeloop.session.model import Session, ToolCallBlock, Turn, TurnStatus, WorkMode

log = get_logger("context")

# Instruction files searched in the working directory, first match wins
PROJECT_FILES = (
    "AGENTS.md",
    "agents.md",
    "CLAUDE.md",
    "claude.md",
    ".cursorrules",
    ".windsurfrules",
    ".clinerules",
    ".github/copilot-instructions.md",
    "GEMINI.md",
    "gemini.md",
)

PLAN_MODE_BANNER = """[PLAN MODE ACTIVE]

You are in PLAN MODE. The user wants a plan before implementing.
- You can READ files, search code, and explore the codebase
- You CANNOT write, edit, or create files

When creating a plan, use this format:
```
# Plan: [Title]

## Phase 1: [Phase Name]

- [ ] 1.1 Task description
  > Context: Implementation details
```"""

TASK_WORKFLOW = """## Task Workflow Protocol

1. PICK ONE ready task
2. `task_start(task_id)` - marks as in-progress
3. DO THE WORK
4. `task_complete(task_id, result)` - with specific result
5. Move to next task

Rules: One task at a time. Always start before completing. Use `add_subtask` for complex tasks. Check Ready list for unblocked tasks."""


def read_project_instructions(cwd: str | Path) -> tuple[str, str] | None:
    """First readable instruction file in ``cwd`` as ``(name, content)``."""
    root = Path(cwd)
    for name in PROJECT_FILES:
        path = root / name
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            continue
        log.debug("Loaded project instructions from %s", path)
        return name, content
    return None


def build_project_context(cwd: str | Path) -> str:
    found = read_project_instructions(cwd)
    if found is None:
        return ""
    name, content = found
    return f"[PROJECT INSTRUCTIONS - {name}]\n\n{content}\n\n[END PROJECT INSTRUCTIONS]"


def build_plan_context(plan: Plan | None, work_mode: WorkMode) -> str:
    if plan is None:
        return PLAN_MODE_BANNER if work_mode is WorkMode.PLAN else ""

    done, total = plan.progress()
    title = plan.title.replace("`", "'").replace('"', "'")
    body = plan_markdown.to_context(plan)

    if work_mode is WorkMode.PLAN:
        return (
            f'[PLAN MODE ACTIVE - Plan: "{title}"]\n\n'
            f"Progress: {done}/{total} tasks completed\n\n"
            f"## Current Plan\n\n{body}\n\n---\n\n"
            "In plan mode you can READ but CANNOT write/edit files."
        )

    active = plan.active_tasks()
    in_progress = ""
    if active:
        in_progress = "## In Progress\n" + "\n".join(f"  - Task {t.id}: {t.description}" for t in active) + "\n\n"
    ready = plan.ready_tasks()
    blocked = plan.blocked_tasks()
    ready_list = "\n".join(f"  - Task {t.id}: {t.description}" for t in ready) or "  (none)"
    blocked_list = (
        "\n".join(
            f"  - Task {t.id}: {t.description} (waiting on: {', '.join(plan.unfinished_blockers(t.id))})"
            for t in blocked
        )
        or "  (none)"
    )
    return (
        f'[ACTIVE PLAN - "{title}"]\n\n'
        f"Progress: {done}/{total} tasks completed\n\n"
        f"{in_progress}"
        f"## Ready to Work\n{ready_list}\n\n"
        f"## Blocked Tasks\n{blocked_list}\n\n"
        f"## Current Plan\n\n{body}\n\n---\n\n"
        f"{TASK_WORKFLOW}"
    )


def system_messages(session: Session, base_prompt: str | None = None) -> list[Message]:
    prompt = base_prompt if base_prompt is not None else SYSTEM_PROMPT
    if session.system_prompt:
        prompt = f"{prompt}\n\n{session.system_prompt}" if prompt else session.system_prompt
    messages = [Message(Role.SYSTEM, prompt)] if prompt else []
    for extra in (build_project_context(session.cwd), build_plan_context(session.plan, session.work_mode)):
        if extra:
            messages.append(Message(Role.SYSTEM, extra))
    return messages


def _assistant_messages(turn: Turn) -> list[Message]:
    results = {r.call_id: r for r in turn.tool_results()}
    answered: list[ToolCallBlock] = [c for c in turn.tool_calls() if c.id in results]
    text = turn.text()
    if not text and not answered:
        return []
    messages = [
        Message(
            Role.ASSISTANT,
            text,
            tool_calls=tuple(ToolCallRequest(c.id, c.tool_name, c.arguments) for c in answered),
            thinking=turn.thinking() or None,
        )
    ]
    for call in answered:
        messages.append(Message(Role.TOOL, results[call.id].to_content(), tool_call_id=call.id))
    return messages


def turn_messages(turn: Turn) -> list[Message]:
    """Messages replayed for one stored turn."""
    if turn.role is Role.ASSISTANT:
        if turn.status is TurnStatus.FAILED and not turn.blocks:
            return []
        return _assistant_messages(turn)
    text = turn.text()
    if not text:
        return []
    return [Message(turn.role, text)]


def build_messages(session: Session, base_prompt: str | None = None) -> list[Message]:
    messages = system_messages(session, base_prompt)
    for turn in session.turns:
        messages.extend(turn_messages(turn))
    return messages
