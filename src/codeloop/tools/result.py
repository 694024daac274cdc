"""Result envelope returned by tool executors."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True)
class ToolResult:
    """Outcome of a single tool execution.

    Attributes:
        ok: Whether the tool succeeded
        data: Payload handed back to the model (usually text)
        error: Human-readable error message when ok is False
        code: Structured error code (tool_error, timeout, permission_denied, ...)
        warnings: Non-fatal notes appended to the envelope
        metadata: Extra facts for front ends (exit code, paths, timings)
    """

    ok: bool
    data: Any = None
    error: str | None = None
    code: str | None = None
    warnings: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, data: Any = None, **metadata: Any) -> ToolResult:
        return cls(ok=True, data=data, metadata=dict(metadata))

    @classmethod
    def failure(cls, error: str, code: str = "tool_error", **metadata: Any) -> ToolResult:
        return cls(ok=False, error=error, code=code, metadata=dict(metadata))

    def envelope(self) -> dict[str, Any]:
        """The JSON-compatible shape the model sees."""
        if self.ok:
            body: dict[str, Any] = {"ok": True, "data": self.data}
        else:
            body = {"ok": False, "error": {"code": self.code or "tool_error", "message": self.error}}
        if self.warnings:
            body["warnings"] = list(self.warnings)
        return body

    def to_content(self) -> str:
        return json.dumps(self.envelope(), default=str, ensure_ascii=False)
