"""Permission gate and approval channels.

The gate answers two questions for every tool call:

- Is this tool allowed at all in the session's work mode?
- Does it need an explicit approval from the user first?

Approvals are requested through an ``ApprovalChannel`` supplied by the
attached front end. The channel is awaited with no timeout; only
cancellation of the session ends the wait.
"""

from __future__ import annotations

import asyncio
import fnmatch
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from codeloop.config.schema import SandboxConfig
from codeloop.logging import get_logger
from codeloop.session.model import PermissionMode, Session, ToolCallBlock, WorkMode
from codeloop.tools.registry import ToolClass, ToolSpec

log = get_logger("permissions")

SHELL_TOOLS = frozenset({"bash"})


@dataclass(frozen=True)
class Approval:
    """A user's answer to an approval request.

    ``remember`` grants the tool for the rest of the session.
    """

    approved: bool
    reason: str | None = None
    remember: bool = False


@runtime_checkable
class ApprovalChannel(Protocol):
    async def request_approval(self, session_id: str, call: ToolCallBlock) -> Approval:
        ...


# =============================================================================
# Channels
# =============================================================================


class StaticApprovalChannel:
    """Answers every request the same way. Records what was asked."""

    def __init__(self, approve: bool, reason: str | None = None) -> None:
        self._approve = approve
        self._reason = reason
        self.requests: list[tuple[str, ToolCallBlock]] = []

    async def request_approval(self, session_id: str, call: ToolCallBlock) -> Approval:
        self.requests.append((session_id, call))
        return Approval(approved=self._approve, reason=self._reason)


@dataclass
class PendingApproval:
    session_id: str
    call: ToolCallBlock
    future: asyncio.Future[Approval]


class QueueApprovalChannel:
    """Holds requests until a front end answers them with ``respond``.

    ``on_request`` (optional) is called with each new pending request so a
    front end can prompt the user.
    """

    def __init__(self, on_request: Any = None) -> None:
        self._pending: dict[str, PendingApproval] = {}
        self._on_request = on_request
        self._arrived = asyncio.Event()

    async def request_approval(self, session_id: str, call: ToolCallBlock) -> Approval:
        future: asyncio.Future[Approval] = asyncio.get_running_loop().create_future()
        pending = PendingApproval(session_id, call, future)
        self._pending[call.id] = pending
        self._arrived.set()
        if self._on_request is not None:
            self._on_request(pending)
        try:
            return await future
        finally:
            self._pending.pop(call.id, None)

    def pending(self) -> list[PendingApproval]:
        return list(self._pending.values())

    async def wait_for_request(self) -> PendingApproval:
        """Wait until at least one request is pending and return the oldest."""
        while not self._pending:
            self._arrived.clear()
            await self._arrived.wait()
        return next(iter(self._pending.values()))

    def respond(self, call_id: str, approved: bool, *, reason: str | None = None, remember: bool = False) -> bool:
        """Answer a pending request. Returns False if nothing was waiting."""
        pending = self._pending.get(call_id)
        if pending is None or pending.future.done():
            return False
        pending.future.set_result(Approval(approved=approved, reason=reason, remember=remember))
        return True


# =============================================================================
# Gate
# =============================================================================


@dataclass
class ShellPermissionRule:
    """A resolved shell rule; pattern is matched against the full command line."""

    pattern: str
    allow: bool


@dataclass
class PermissionGate:
    """Decides whether a tool call is allowed and whether it needs approval.

    Shell rules come from config; the first matching rule wins. Temporary
    grants (``grant_temporary``) last until cleared and are never persisted.
    """

    shell_rules: list[ShellPermissionRule] = field(default_factory=list)
    auto_approve_tools: set[str] = field(default_factory=set)
    _temporary_grants: set[str] = field(default_factory=set)

    @classmethod
    def from_config(cls, config: SandboxConfig | None) -> PermissionGate:
        if config is None:
            return cls()
        return cls(
            shell_rules=[ShellPermissionRule(p.pattern, p.allow) for p in config.shell_permissions],
            auto_approve_tools=set(config.auto_approve_tools),
        )

    def reload(self, config: SandboxConfig | None) -> None:
        fresh = PermissionGate.from_config(config)
        self.shell_rules = fresh.shell_rules
        self.auto_approve_tools = fresh.auto_approve_tools
        log.debug("Permission rules reloaded: %d shell rules", len(self.shell_rules))

    @staticmethod
    def plan_mode_denial(session: Session, spec: ToolSpec) -> str | None:
        """Error message if the tool may not run in the session's work mode."""
        if session.work_mode is WorkMode.PLAN and spec.classification is ToolClass.MUTATING:
            return (
                f"Tool '{spec.name}' is disabled in Plan mode. Only read-only and plan tools "
                "are available; switch to Build mode with set_work_mode to make changes."
            )
        return None

    def check_shell(self, command: str) -> bool | None:
        """Result of the first matching shell rule, or None if none match."""
        for rule in self.shell_rules:
            if fnmatch.fnmatch(command, rule.pattern):
                return rule.allow
        return None

    def needs_approval(self, session: Session, spec: ToolSpec, arguments: dict[str, Any]) -> bool:
        if spec.classification is not ToolClass.MUTATING:
            return False
        if session.permission_mode is PermissionMode.AUTONOMOUS:
            return False
        if spec.name in self.auto_approve_tools or spec.name in self._temporary_grants:
            return False
        if spec.name in SHELL_TOOLS:
            command = str(arguments.get("command", "")).strip()
            if command in self._temporary_grants:
                return False
            return self.check_shell(command) is not True
        return True

    def grant_temporary(self, tool_name: str, command: str | None = None) -> None:
        """Skip approval for this tool (or this exact shell command) from now on."""
        grant = command.strip() if tool_name in SHELL_TOOLS and command else tool_name
        self._temporary_grants.add(grant)
        log.debug("Temporary grant added: %s", grant)

    def clear_temporary_grants(self) -> None:
        self._temporary_grants.clear()
        log.debug("Temporary grants cleared")

    def list_permissions(self) -> list[dict[str, Any]]:
        return [{"pattern": r.pattern, "allow": r.allow} for r in self.shell_rules]
