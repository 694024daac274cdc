"""Plan and mode tools.

These tools only edit session state (work mode, active plan). They are
classified CONTROL: they never need approval and stay available in Plan
mode, which is how the model leaves it.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from codeloop.errors import PlanError, ToolError
from codeloop.logging import get_logger
from codeloop.plan.model import Plan
from codeloop.session.model import WorkMode
from codeloop.session.render import RenderKind
from codeloop.tools.registry import ToolClass, ToolContext, ToolSpec
from codeloop.tools.result import ToolResult

log = get_logger("plan")

NO_PLAN = "Error: No active plan. Create a plan first."


def _require_plan(ctx: ToolContext) -> Plan:
    if ctx.session.plan is None:
        raise ToolError(NO_PLAN, code="no_plan")
    return ctx.session.plan


def _plan_updated(ctx: ToolContext) -> None:
    plan = ctx.session.plan
    if plan is None:
        return
    ctx.emit(RenderKind.PLAN_UPDATE, plan=plan.to_dict())
    if plan.is_complete:
        ctx.emit(RenderKind.PLAN_COMPLETE, plan_id=plan.id, title=plan.title)


# =============================================================================
# Mode switching
# =============================================================================


class SetWorkModeArgs(BaseModel):
    mode: Literal["build", "plan"] = Field(description="Target work mode")
    reason: str | None = Field(None, description="Why the mode is changing")
    clear_existing: bool = Field(False, description="Drop the active plan when entering Plan mode")


class EnterPlanModeArgs(BaseModel):
    reason: str | None = Field(None, description="Why planning is needed")
    clear_existing: bool = Field(False, description="Drop the active plan before planning")


def switch_work_mode(
    ctx: ToolContext, target: WorkMode, reason: str | None, clear_existing: bool = False
) -> ToolResult:
    session = ctx.session
    previous = session.work_mode
    if reason is None:
        reason = "Starting planning phase" if target is WorkMode.PLAN else "Starting implementation phase"

    note = ""
    if clear_existing and target is WorkMode.PLAN and session.plan is not None:
        log.info("Clearing plan %s of session %s", session.plan.id, session.id)
        session.plan = None
        note = "\n\nCleared any existing active plan."
        ctx.emit(RenderKind.PLAN_UPDATE, plan=None)

    if target is not previous:
        session.work_mode = target
        log.info("Session %s: %s -> %s (%s)", session.id, previous.value, target.value, reason)
        ctx.emit(RenderKind.MODE_CHANGE, mode=target.value, previous=previous.value, reason=reason)

    if target is WorkMode.PLAN:
        message = f"Now in Plan mode. {reason}\n\nCreate a phase-based checkbox plan before making changes.{note}"
    else:
        message = f"Now in Build mode. {reason}\n\nProceed with implementation and keep plan task status updated.{note}"
    return ToolResult.success(message, mode=target.value, changed=target is not previous)


async def set_work_mode(args: SetWorkModeArgs, ctx: ToolContext) -> ToolResult:
    return switch_work_mode(ctx, WorkMode(args.mode), args.reason, args.clear_existing)


async def enter_plan_mode(args: EnterPlanModeArgs, ctx: ToolContext) -> ToolResult:
    return switch_work_mode(ctx, WorkMode.PLAN, args.reason, args.clear_existing)


# =============================================================================
# Task tools
# =============================================================================


class TaskStartArgs(BaseModel):
    task_id: str = Field(description="Id of the task to start, e.g. '1.2'")


class TaskCompleteArgs(BaseModel):
    task_id: str | None = Field(None, description="Id of the task that was finished")
    result: str | None = Field(None, description="What was accomplished for this task")
    task_ids: list[str] | None = Field(None, description="Not supported; complete one task at a time")


class AddSubtaskArgs(BaseModel):
    parent_id: str = Field(description="Task to break down")
    description: str = Field(min_length=1)
    context: str | None = Field(None, description="Implementation details")


class SetDependencyArgs(BaseModel):
    task_id: str = Field(description="Task that has to wait")
    blocked_by: str = Field(description="Task that must be done first")


async def task_start(args: TaskStartArgs, ctx: ToolContext) -> ToolResult:
    plan = _require_plan(ctx)
    try:
        task = plan.start_task(args.task_id)
    except PlanError as e:
        raise ToolError(f"Error: {e}", code="plan_error") from e
    _plan_updated(ctx)
    return ToolResult.success(f"Started task {task.id}. Status: in_progress", task_id=task.id)


async def task_complete(args: TaskCompleteArgs, ctx: ToolContext) -> ToolResult:
    plan = _require_plan(ctx)
    if not args.result or not args.result.strip():
        raise ToolError(
            "Error: 'result' parameter is required. Describe what you accomplished for this specific task.",
            code="invalid_parameters",
        )
    if args.task_ids:
        raise ToolError(
            "Error: Batch completion (task_ids) is not allowed. Complete ONE task at a time with task_id.",
            code="invalid_parameters",
        )
    if not args.task_id:
        raise ToolError("Error: task_id required. Specify which task you're completing.", code="invalid_parameters")

    try:
        plan.complete_task(args.task_id, args.result.strip())
    except PlanError as e:
        raise ToolError(f"Error: {e}", code="plan_error") from e

    done, total = plan.progress()
    message = f"Completed task {args.task_id}. Progress: {done}/{total}"
    if done == total:
        message += "\n\nAll tasks complete. Plan finished."
    else:
        ready = plan.ready_tasks()
        if ready:
            lines = "\n".join(f"  -> Task {t.id}: {t.description}" for t in ready)
            message += f"\n\nReady to work on next:\n{lines}\n\nPick one and call task_start immediately."
        else:
            message += "\n\nNo tasks currently unblocked. Check dependencies."
    _plan_updated(ctx)
    return ToolResult.success(message, task_id=args.task_id, done=done, total=total)


async def add_subtask(args: AddSubtaskArgs, ctx: ToolContext) -> ToolResult:
    plan = _require_plan(ctx)
    try:
        sub = plan.add_subtask(args.parent_id, args.description, args.context)
    except PlanError as e:
        raise ToolError(f"Error: {e}", code="plan_error") from e
    plan.refresh_blocked()
    _plan_updated(ctx)
    return ToolResult.success(f"Created subtask {sub.id} under {args.parent_id}", task_id=sub.id)


async def set_dependency(args: SetDependencyArgs, ctx: ToolContext) -> ToolResult:
    plan = _require_plan(ctx)
    try:
        plan.add_dependency(args.task_id, args.blocked_by)
    except PlanError as e:
        raise ToolError(f"Error: {e}", code="plan_error") from e
    _plan_updated(ctx)
    return ToolResult.success(f"Task {args.task_id} is now blocked by {args.blocked_by}")


def _control(name: str, description: str, args_model: type[BaseModel], executor) -> ToolSpec:
    return ToolSpec(
        name=name,
        description=description,
        args_model=args_model,
        classification=ToolClass.CONTROL,
        executor=executor,
    )


PLAN_TOOLS = [
    _control(
        "set_work_mode",
        "Switch between Plan mode (read-only, produce a plan) and Build mode (make changes).",
        SetWorkModeArgs,
        set_work_mode,
    ),
    _control(
        "enter_plan_mode",
        "Enter Plan mode to design a phase-based plan before changing anything.",
        EnterPlanModeArgs,
        enter_plan_mode,
    ),
    _control("task_start", "Mark a ready plan task as in progress.", TaskStartArgs, task_start),
    _control(
        "task_complete",
        "Mark the in-progress task as done, with a concrete description of the result.",
        TaskCompleteArgs,
        task_complete,
    ),
    _control("add_subtask", "Break a plan task down into a subtask.", AddSubtaskArgs, add_subtask),
    _control(
        "set_dependency",
        "Record that a task cannot start until another task is done.",
        SetDependencyArgs,
        set_dependency,
    ),
]
