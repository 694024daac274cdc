"""Outcome of one shell command."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class ShellResult:
    command: str
    exit_code: int | None  # None when the process was stopped by us
    output: str  # stdout and stderr interleaved, possibly truncated
    truncated: bool
    status: str  # ok | error | timeout | cancelled
    signal: str | None  # Last signal sent while stopping the process
    duration_ms: float

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def metadata(self) -> dict[str, Any]:
        """Fields reported alongside a tool result."""
        return {
            "exit_code": self.exit_code,
            "duration_ms": round(self.duration_ms, 1),
            "signal": self.signal,
        }

    def __repr__(self) -> str:
        if not self.success:
            return f"<ShellResult {self.status}, exit={self.exit_code}>"
        return f"<ShellResult ok, {len(self.output.splitlines())} lines>"
