"""Data schemas for sub-agents."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class AgentState(Enum):
    """Lifecycle state of a sub-agent."""

    SPAWNED = "spawned"  # Created, waiting for a concurrency slot
    RUNNING = "running"  # Its session loop is active
    DONE = "done"  # Finished with a final answer
    FAILED = "failed"  # Error, timeout or no answer
    CANCELLED = "cancelled"  # Parent call was cancelled

    @property
    def is_terminal(self) -> bool:
        return self in (AgentState.DONE, AgentState.FAILED, AgentState.CANCELLED)


@dataclass
class AgentType:
    """Definition of a sub-agent type."""

    id: str  # e.g., "explore", "build"
    name: str  # Human-readable name
    system_prompt: str  # Appended to the base prompt of every child session
    tools: list[str] = field(default_factory=list)  # Tool names the child may use
    max_iterations: int | None = None  # Overrides agent.subagent_max_iterations

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "system_prompt": self.system_prompt,
            "tools": self.tools,
            "max_iterations": self.max_iterations,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentType:
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            system_prompt=data["system_prompt"],
            tools=list(data.get("tools", [])),
            max_iterations=data.get("max_iterations"),
        )


@dataclass
class SubAgentTask:
    """One unit of delegated work."""

    prompt: str
    name: str | None = None
    model: str | None = None  # Defaults to the parent session's model

    @property
    def label(self) -> str:
        if self.name:
            return self.name
        first_line = self.prompt.strip().splitlines()[0] if self.prompt.strip() else "task"
        return first_line if len(first_line) <= 60 else first_line[:57] + "..."


@dataclass
class SubAgentResult:
    """Outcome of one child, in the order it was spawned."""

    index: int
    name: str
    ok: bool
    summary: str = ""
    error: str | None = None
    session_id: str | None = None
    attempts: int = 1
    iterations: int = 0
    duration_ms: float = 0.0
    finished_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "name": self.name,
            "ok": self.ok,
            "summary": self.summary,
            "error": self.error,
            "session_id": self.session_id,
            "attempts": self.attempts,
            "iterations": self.iterations,
            "duration_ms": round(self.duration_ms, 1),
            "finished_at": self.finished_at.isoformat(),
        }
