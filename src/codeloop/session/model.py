"""Session data model: sessions, turns and blocks."""

from __future__ import annotations

import uuid
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union

from codeloop.core.llm.provider import Role
from codeloop.errors import InvalidTransitionError
from codeloop.plan.model import Plan
from codeloop.tools.result import ToolResult


class PermissionMode(Enum):
    """Whether mutating tools need user approval."""

    SUPERVISED = "supervised"
    AUTONOMOUS = "autonomous"


class WorkMode(Enum):
    """Planning-only or full execution."""

    PLAN = "plan"
    BUILD = "build"


class TurnStatus(Enum):
    """Terminal status of a turn. Cancellation is a status, not an error."""

    COMPLETE = "complete"
    INTERRUPTED = "interrupted"
    FAILED = "failed"


class ToolCallStatus(Enum):
    PROPOSED = "proposed"
    AWAITING_APPROVAL = "awaiting_approval"
    APPROVED = "approved"
    DENIED = "denied"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


_TRANSITIONS: dict[ToolCallStatus, frozenset[ToolCallStatus]] = {
    ToolCallStatus.PROPOSED: frozenset(
        {
            ToolCallStatus.AWAITING_APPROVAL,
            ToolCallStatus.APPROVED,
            ToolCallStatus.DENIED,
            ToolCallStatus.CANCELLED,
        }
    ),
    ToolCallStatus.AWAITING_APPROVAL: frozenset({ToolCallStatus.APPROVED, ToolCallStatus.DENIED}),
    ToolCallStatus.APPROVED: frozenset({ToolCallStatus.RUNNING, ToolCallStatus.CANCELLED}),
    ToolCallStatus.RUNNING: frozenset(
        {ToolCallStatus.COMPLETED, ToolCallStatus.FAILED, ToolCallStatus.CANCELLED}
    ),
}

TERMINAL_CALL_STATUSES = frozenset(
    {
        ToolCallStatus.DENIED,
        ToolCallStatus.COMPLETED,
        ToolCallStatus.FAILED,
        ToolCallStatus.CANCELLED,
    }
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str = "") -> str:
    return f"{prefix}{uuid.uuid4().hex[:12]}"


# =============================================================================
# Blocks
# =============================================================================


@dataclass
class TextBlock:
    text: str = ""
    kind: str = field(default="text", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "text": self.text}


@dataclass
class ThinkingBlock:
    text: str = ""
    kind: str = field(default="thinking", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "text": self.text}


@dataclass
class ToolCallBlock:
    """A tool call proposed by the model.

    ``status`` only moves along the transitions in ``_TRANSITIONS``; use
    ``transition`` rather than assigning it.
    """

    id: str
    tool_name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    status: ToolCallStatus = ToolCallStatus.PROPOSED
    denial_reason: str | None = None
    kind: str = field(default="tool_call", init=False)

    def transition(self, target: ToolCallStatus) -> None:
        if target not in _TRANSITIONS.get(self.status, frozenset()):
            raise InvalidTransitionError(self.id, self.status.value, target.value)
        self.status = target

    def deny(self, reason: str) -> None:
        self.transition(ToolCallStatus.DENIED)
        self.denial_reason = reason

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_CALL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "kind": self.kind,
            "id": self.id,
            "tool_name": self.tool_name,
            "arguments": self.arguments,
            "status": self.status.value,
        }
        if self.denial_reason:
            data["denial_reason"] = self.denial_reason
        return data


@dataclass
class ToolResultBlock:
    call_id: str
    ok: bool
    data: Any = None
    error: str | None = None
    code: str | None = None
    warnings: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    kind: str = field(default="tool_result", init=False)

    @classmethod
    def from_result(cls, call_id: str, result: ToolResult) -> ToolResultBlock:
        return cls(
            call_id=call_id,
            ok=result.ok,
            data=result.data,
            error=result.error,
            code=result.code,
            warnings=list(result.warnings),
            metadata=dict(result.metadata),
        )

    def as_result(self) -> ToolResult:
        return ToolResult(
            ok=self.ok,
            data=self.data,
            error=self.error,
            code=self.code,
            warnings=list(self.warnings),
            metadata=dict(self.metadata),
        )

    def to_content(self) -> str:
        """Serialized envelope fed back to the model."""
        return self.as_result().to_content()

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "call_id": self.call_id,
            "ok": self.ok,
            "data": self.data,
            "error": self.error,
            "code": self.code,
            "warnings": self.warnings,
            "metadata": self.metadata,
        }


Block = Union[TextBlock, ThinkingBlock, ToolCallBlock, ToolResultBlock]


def block_from_dict(data: dict[str, Any]) -> Block:
    kind = data.get("kind")
    if kind == "text":
        return TextBlock(text=data.get("text", ""))
    if kind == "thinking":
        return ThinkingBlock(text=data.get("text", ""))
    if kind == "tool_call":
        return ToolCallBlock(
            id=data["id"],
            tool_name=data["tool_name"],
            arguments=data.get("arguments") or {},
            status=ToolCallStatus(data.get("status", "proposed")),
            denial_reason=data.get("denial_reason"),
        )
    if kind == "tool_result":
        return ToolResultBlock(
            call_id=data["call_id"],
            ok=bool(data.get("ok")),
            data=data.get("data"),
            error=data.get("error"),
            code=data.get("code"),
            warnings=list(data.get("warnings") or []),
            metadata=dict(data.get("metadata") or {}),
        )
    raise ValueError(f"Unknown block kind: {kind!r}")


# =============================================================================
# Turn
# =============================================================================


@dataclass
class Turn:
    """One exchange unit: a user message or one assistant response cycle.

    An assistant turn holds the model's blocks followed by the results of
    the tool calls it proposed, so every result sits in the same turn as
    its call.
    """

    role: Role
    blocks: list[Block] = field(default_factory=list)
    seq: int = 0
    status: TurnStatus | None = None
    error: str | None = None
    stop_reason: str | None = None
    usage: dict[str, int] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def user(cls, text: str) -> Turn:
        return cls(role=Role.USER, blocks=[TextBlock(text)], status=TurnStatus.COMPLETE)

    @property
    def is_final(self) -> bool:
        return self.status is not None

    def finalize(self, status: TurnStatus, error: str | None = None) -> None:
        """Set the terminal status.

        A finalized turn only changes afterwards when cancellation turns it
        into INTERRUPTED.
        """
        if self.status is not None and not (
            status is TurnStatus.INTERRUPTED and self.status is TurnStatus.COMPLETE
        ):
            if self.status is status:
                return
            raise ValueError(f"Turn {self.seq} already finalized as {self.status.value}")
        self.status = status
        if error:
            self.error = error

    def fail(self, error: str) -> None:
        """Force FAILED regardless of the current status (e.g. it could not be stored)."""
        self.status = TurnStatus.FAILED
        self.error = error

    def text(self) -> str:
        return "".join(b.text for b in self.blocks if isinstance(b, TextBlock))

    def thinking(self) -> str:
        return "".join(b.text for b in self.blocks if isinstance(b, ThinkingBlock))

    def tool_calls(self) -> list[ToolCallBlock]:
        return [b for b in self.blocks if isinstance(b, ToolCallBlock)]

    def tool_results(self) -> list[ToolResultBlock]:
        return [b for b in self.blocks if isinstance(b, ToolResultBlock)]

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role.value,
            "seq": self.seq,
            "status": self.status.value if self.status else None,
            "error": self.error,
            "stop_reason": self.stop_reason,
            "usage": self.usage,
            "created_at": self.created_at.isoformat(),
            "blocks": [b.to_dict() for b in self.blocks],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Turn:
        status = data.get("status")
        return cls(
            role=Role(data["role"]),
            blocks=[block_from_dict(b) for b in data.get("blocks", [])],
            seq=int(data.get("seq", 0)),
            status=TurnStatus(status) if status else None,
            error=data.get("error"),
            stop_reason=data.get("stop_reason"),
            usage=dict(data.get("usage") or {}),
            created_at=(
                datetime.fromisoformat(data["created_at"]) if data.get("created_at") else _utcnow()
            ),
        )


# =============================================================================
# Session
# =============================================================================


@dataclass
class Session:
    """A conversation between a user and the model.

    Turn order is conversational order and is exactly what is replayed to
    the provider. Only the loop that owns the session mutates it.
    """

    id: str
    cwd: str
    model: str
    permission_mode: PermissionMode = PermissionMode.SUPERVISED
    work_mode: WorkMode = WorkMode.BUILD
    thinking_effort: str | None = None
    title: str | None = None
    system_prompt: str | None = None
    parent_id: str | None = None
    turns: list[Turn] = field(default_factory=list)
    plan: Plan | None = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(cls, cwd: str, model: str, **kwargs: Any) -> Session:
        return cls(id=new_id(), cwd=cwd, model=model, **kwargs)

    @property
    def next_seq(self) -> int:
        return self.turns[-1].seq + 1 if self.turns else 1

    def append_turn(self, turn: Turn) -> Turn:
        """Assign the next sequence number and append."""
        turn.seq = self.next_seq
        self.turns.append(turn)
        self.updated_at = _utcnow()
        return turn

    def iter_tool_calls(self) -> Iterator[ToolCallBlock]:
        for turn in self.turns:
            yield from turn.tool_calls()

    def iter_tool_results(self) -> Iterator[ToolResultBlock]:
        for turn in self.turns:
            yield from turn.tool_results()

    def last_assistant_text(self) -> str:
        for turn in reversed(self.turns):
            if turn.role is Role.ASSISTANT and turn.text():
                return turn.text()
        return ""

    def meta_dict(self) -> dict[str, Any]:
        """Everything except turns and plan, which are stored separately."""
        return {
            "id": self.id,
            "cwd": self.cwd,
            "model": self.model,
            "permission_mode": self.permission_mode.value,
            "work_mode": self.work_mode.value,
            "thinking_effort": self.thinking_effort,
            "title": self.title,
            "system_prompt": self.system_prompt,
            "parent_id": self.parent_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_meta_dict(cls, data: dict[str, Any]) -> Session:
        return cls(
            id=data["id"],
            cwd=data["cwd"],
            model=data["model"],
            permission_mode=PermissionMode(data.get("permission_mode", "supervised")),
            work_mode=WorkMode(data.get("work_mode", "build")),
            thinking_effort=data.get("thinking_effort"),
            title=data.get("title"),
            system_prompt=data.get("system_prompt"),
            parent_id=data.get("parent_id"),
            created_at=datetime.fromisoformat(data["created_at"]) if data.get("created_at") else _utcnow(),
            updated_at=datetime.fromisoformat(data["updated_at"]) if data.get("updated_at") else _utcnow(),
        )
