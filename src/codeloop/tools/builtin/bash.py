"""The bash tool: run a command line in the session's working directory."""

from __future__ import annotations

from pydantic import BaseModel, Field

from codeloop.errors import Cancelled, ToolTimeoutError
from codeloop.logging import get_logger
from codeloop.terminal import SubprocessTerminalExecutor
from codeloop.tools.registry import ToolClass, ToolContext, ToolSpec
from codeloop.tools.result import ToolResult

log = get_logger("tools.bash")


class BashArgs(BaseModel):
    command: str = Field(min_length=1, description="Command line to run through the shell")
    timeout_ms: int | None = Field(None, ge=1, description="Timeout in milliseconds")
    description: str | None = Field(None, description="Short description shown to the user")


async def run_bash(args: BashArgs, ctx: ToolContext) -> ToolResult:
    timeout_ms = min(args.timeout_ms or ctx.config.bash_timeout_ms, ctx.config.bash_max_timeout_ms)
    executor = SubprocessTerminalExecutor(
        default_cwd=str(ctx.cwd), kill_grace_period=ctx.config.kill_grace_period
    )
    log.debug("Running %r in %s (timeout %dms)", args.command, ctx.cwd, timeout_ms)

    shell = await executor.execute(
        args.command,
        timeout=timeout_ms / 1000,
        output_limit=ctx.config.max_output_chars * 2,
        on_output=ctx.emit_output,
        token=ctx.token,
    )

    metadata = shell.metadata()
    if shell.status == "cancelled":
        raise Cancelled(ctx.token.reason or "cancelled")
    if shell.status == "timeout":
        raise ToolTimeoutError("bash", timeout_ms / 1000)

    output = shell.output or "(no output)"
    if shell.success:
        return ToolResult(ok=True, data=output, metadata=metadata)
    return ToolResult(
        ok=False,
        data=output,
        error=f"Command exited with code {shell.exit_code}:\n{output}",
        code="tool_error",
        metadata=metadata,
    )


BASH_TOOL = ToolSpec(
    name="bash",
    description=(
        "Run a shell command in the working directory. Output is streamed; "
        "long-running commands are terminated after the timeout."
    ),
    args_model=BashArgs,
    classification=ToolClass.MUTATING,
    executor=run_bash,
)
