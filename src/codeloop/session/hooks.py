"""Hooks run around tool execution.

Pre hooks run once a call has passed validation and the permission gate,
right before the tool executes, and may block it. Post hooks see the
result. Built in are ``SafetyHook``, which refuses known-destructive shell
commands, and ``LoggingHook``. ``CommandHook`` runs a user-configured shell
command with the call as JSON on stdin.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from codeloop.config.schema import CommandHookConfig, HooksConfig
from codeloop.logging import get_logger
from codeloop.session.model import Session
from codeloop.tools.result import ToolResult

log = get_logger("hooks")

BLOCK_EXIT_CODE = 2
SHELL_TOOLS = frozenset({"bash"})

# (label, pattern) pairs searched case-insensitively in shell commands
DANGEROUS_COMMANDS: list[tuple[str, str]] = [
    ("rm -rf /", r"\brm\s+-[a-z]*(?:rf|fr)[a-z]*\s+(?:/\*?|~/?)(?=$|[\s;&|])"),
    ("download piped to a shell", r"\b(?:curl|wget)\b[^|;&]*\|\s*(?:sudo\s+)?(?:ba|z|da)?sh\b"),
    ("sudo", r"(?:^|[\s;&|(`])sudo\s"),
    ("chmod 777", r"\bchmod\s+(?:-[a-z]+\s+)*0?777\b"),
    ("write to a raw disk", r">\s*/dev/(?:sd|hd|nvme|disk)"),
    ("dd if=", r"\bdd\s+if="),
    ("mkfs", r"\bmkfs(?:\.\w+)?\s"),
    ("fork bomb", r":\s*\(\s*\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:"),
]


class HookStage(Enum):
    PRE_TOOL = "PreToolUse"
    POST_TOOL = "PostToolUse"


@dataclass
class HookResult:
    blocked: bool = False
    reason: str | None = None
    warnings: list[str] = field(default_factory=list)

    @classmethod
    def block(cls, reason: str) -> HookResult:
        return cls(blocked=True, reason=reason)

    @classmethod
    def warn(cls, message: str) -> HookResult:
        return cls(warnings=[message])


@runtime_checkable
class PreToolHook(Protocol):
    async def before_execute(self, session: Session, tool_name: str, arguments: dict[str, Any]) -> HookResult: ...


@runtime_checkable
class PostToolHook(Protocol):
    async def after_execute(
        self,
        session: Session,
        tool_name: str,
        arguments: dict[str, Any],
        result: ToolResult,
        duration_ms: float,
    ) -> HookResult: ...


# =============================================================================
# Built-in hooks
# =============================================================================


class SafetyHook:
    """Blocks shell commands matching ``DANGEROUS_COMMANDS``.

    Runs after approval, so it also applies in Autonomous sessions and to
    commands a user allowed by pattern.
    """

    def __init__(self, patterns: Iterable[tuple[str, str]] = DANGEROUS_COMMANDS) -> None:
        self.patterns = [(label, re.compile(pattern, re.IGNORECASE)) for label, pattern in patterns]

    def check(self, command: str) -> str | None:
        """Label of the first dangerous pattern in ``command``, or None."""
        for label, pattern in self.patterns:
            if pattern.search(command):
                return label
        return None

    async def before_execute(self, session: Session, tool_name: str, arguments: dict[str, Any]) -> HookResult:
        if tool_name not in SHELL_TOOLS:
            return HookResult()
        command = arguments.get("command")
        if not isinstance(command, str):
            return HookResult()
        label = self.check(command)
        if label is None:
            return HookResult()
        log.warning("Blocked dangerous command in session %s (%s): %s", session.id, label, command)
        return HookResult.block(f"Blocked dangerous command pattern: {label}")


class LoggingHook:
    async def after_execute(
        self,
        session: Session,
        tool_name: str,
        arguments: dict[str, Any],
        result: ToolResult,
        duration_ms: float,
    ) -> HookResult:
        log.debug("Tool %s finished in %.1fms (ok=%s)", tool_name, duration_ms, result.ok)
        return HookResult()


# =============================================================================
# User command hooks
# =============================================================================


class CommandHook:
    """Runs ``command`` through the shell for tools whose name matches.

    The call arrives as JSON on stdin. Exit code 0 continues. Exit code 2
    blocks a pre hook with stderr as the reason. Any other code, a timeout
    or a failure to start only adds a warning.
    """

    def __init__(
        self,
        command: str,
        *,
        matcher: str = ".*",
        timeout: float = 30.0,
        stage: HookStage = HookStage.PRE_TOOL,
    ) -> None:
        self.command = command
        self.matcher = re.compile(matcher)
        self.timeout = timeout
        self.stage = stage

    @classmethod
    def from_config(cls, config: CommandHookConfig, stage: HookStage) -> CommandHook:
        return cls(config.command, matcher=config.matcher, timeout=config.timeout, stage=stage)

    def matches(self, tool_name: str) -> bool:
        return self.matcher.search(tool_name) is not None

    async def run(self, session: Session, payload: dict[str, Any]) -> HookResult:
        body = json.dumps({"hook_type": self.stage.value, "session_id": session.id, **payload}, default=str)
        try:
            process = await asyncio.create_subprocess_shell(
                self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=session.cwd,
            )
        except OSError as e:
            log.warning("Hook %r failed to start: %s", self.command, e)
            return HookResult.warn(f"Hook failed to start: {e}")

        try:
            _, stderr = await asyncio.wait_for(process.communicate(body.encode("utf-8")), self.timeout)
        except asyncio.TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
            log.warning("Hook %r timed out after %gs", self.command, self.timeout)
            return HookResult.warn(f"Hook timed out after {self.timeout:g}s")

        message = stderr.decode("utf-8", errors="replace").strip()
        code = process.returncode
        log.debug("Hook %r exited with %s", self.command, code)
        if code == 0:
            return HookResult()
        if code == BLOCK_EXIT_CODE and self.stage is HookStage.PRE_TOOL:
            return HookResult.block(message or "Hook blocked execution")
        return HookResult.warn(message or f"Hook exited with code {code}")

    async def before_execute(self, session: Session, tool_name: str, arguments: dict[str, Any]) -> HookResult:
        if not self.matches(tool_name):
            return HookResult()
        return await self.run(session, {"tool_name": tool_name, "tool_input": arguments})

    async def after_execute(
        self,
        session: Session,
        tool_name: str,
        arguments: dict[str, Any],
        result: ToolResult,
        duration_ms: float,
    ) -> HookResult:
        if not self.matches(tool_name):
            return HookResult()
        payload = {
            "tool_name": tool_name,
            "tool_input": arguments,
            "tool_response": result.envelope(),
            "duration_ms": round(duration_ms, 1),
        }
        return await self.run(session, payload)


# =============================================================================
# Chain
# =============================================================================


class ToolHooks:
    """Ordered pre and post hooks for one dispatcher.

    Pre hooks run in order until one blocks. Warnings from every hook that
    ran are collected for the tool result.
    """

    def __init__(
        self,
        pre: Iterable[PreToolHook] = (),
        post: Iterable[PostToolHook] = (),
    ) -> None:
        self.pre = list(pre)
        self.post = list(post)

    @classmethod
    def from_config(cls, config: HooksConfig) -> ToolHooks:
        pre: list[PreToolHook] = [SafetyHook()] if config.safety else []
        post: list[PostToolHook] = [LoggingHook()]
        for stage, entries, target in (
            (HookStage.PRE_TOOL, config.pre_tool, pre),
            (HookStage.POST_TOOL, config.post_tool, post),
        ):
            for entry in entries:
                try:
                    target.append(CommandHook.from_config(entry, stage))
                except re.error as e:
                    log.warning("Skipping %s hook %r: bad matcher %r: %s", stage.value, entry.command, entry.matcher, e)
        return cls(pre, post)

    async def before_execute(self, session: Session, tool_name: str, arguments: dict[str, Any]) -> HookResult:
        outcome = HookResult()
        for hook in self.pre:
            result = await hook.before_execute(session, tool_name, arguments)
            outcome.warnings.extend(result.warnings)
            if result.blocked:
                outcome.blocked = True
                outcome.reason = result.reason
                break
        return outcome

    async def after_execute(
        self,
        session: Session,
        tool_name: str,
        arguments: dict[str, Any],
        result: ToolResult,
        duration_ms: float,
    ) -> list[str]:
        warnings: list[str] = []
        for hook in self.post:
            outcome = await hook.after_execute(session, tool_name, arguments, result, duration_ms)
            warnings.extend(outcome.warnings)
        return warnings
