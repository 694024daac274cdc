"""explore / build: delegate sub-tasks to parallel sub-agents."""

from __future__ import annotations

from pydantic import BaseModel, Field

from codeloop.agents.schema import SubAgentTask
from codeloop.errors import ToolError
from codeloop.tools.registry import ToolClass, ToolContext, ToolSpec
from codeloop.tools.result import ToolResult

MAX_TASKS = 12


class TaskArgs(BaseModel):
    prompt: str = Field(min_length=1, description="Self-contained instructions for the sub-agent")
    name: str | None = Field(None, description="Short label shown to the user")
    model: str | None = Field(None, description="Model override for this sub-agent")


class DelegateArgs(BaseModel):
    tasks: list[str | TaskArgs] = Field(
        min_length=1,
        max_length=MAX_TASKS,
        description="Independent tasks, one sub-agent each. A plain string is used as the prompt.",
    )


def _to_tasks(args: DelegateArgs) -> list[SubAgentTask]:
    tasks = []
    for item in args.tasks:
        if isinstance(item, str):
            if not item.strip():
                raise ToolError("Invalid parameters: tasks must not be empty", code="invalid_parameters")
            tasks.append(SubAgentTask(prompt=item))
        else:
            tasks.append(SubAgentTask(prompt=item.prompt, name=item.name, model=item.model))
    return tasks


async def _delegate(agent_type: str, args: DelegateArgs, ctx: ToolContext) -> ToolResult:
    if ctx.orchestrator is None:
        raise ToolError("Sub-agents are not available in this session")
    return await ctx.orchestrator.run(
        _to_tasks(args),
        ctx.call_id,
        ctx.token,
        parent=ctx.session,
        agent_type=agent_type,
        sink=ctx.sink,
    )


async def explore(args: DelegateArgs, ctx: ToolContext) -> ToolResult:
    return await _delegate("explore", args, ctx)


async def build(args: DelegateArgs, ctx: ToolContext) -> ToolResult:
    return await _delegate("build", args, ctx)


AGENT_TOOLS = [
    ToolSpec(
        name="explore",
        description=(
            "Investigate several independent questions in parallel. Each task runs in a "
            "read-only sub-agent and returns a report."
        ),
        args_model=DelegateArgs,
        classification=ToolClass.READ_ONLY,
        executor=explore,
    ),
    ToolSpec(
        name="build",
        description=(
            "Implement several independent changes in parallel. Each task runs in a sub-agent "
            "that can edit files and run commands; give each task its own files."
        ),
        args_model=DelegateArgs,
        classification=ToolClass.MUTATING,
        executor=build,
    ),
]
