"""Loop guards: repeated identical tool failures and runaway exploration."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any

from codeloop.config.schema import AgentConfig
from codeloop.errors import classify_error_code
from codeloop.logging import get_logger
from codeloop.tools.registry import ToolClass
from codeloop.tools.result import ToolResult

log = get_logger("failure")

FINGERPRINT_CHARS = 160


def error_fingerprint(message: str) -> str:
    compact = " ".join(message.split()).lower()
    return compact[:FINGERPRINT_CHARS] if compact else "unknown"


def arguments_hash(arguments: dict[str, Any]) -> str:
    encoded = json.dumps(arguments, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha1(encoded).hexdigest()[:16]


def failure_signature(tool_name: str, arguments: dict[str, Any], result: ToolResult) -> tuple[str, str]:
    """Return ``(signature, code)`` for a failed result."""
    message = result.error or ""
    code = (result.code or "").lower() or classify_error_code(message)
    signature = f"{tool_name}|{code}|{error_fingerprint(message)}|{arguments_hash(arguments)}"
    return signature, code


@dataclass
class RepeatedFailureTracker:
    """Counts identical failures; any success clears the counters."""

    threshold: int = 2
    counters: dict[str, int] = field(default_factory=dict)

    def observe(self, tool_name: str, arguments: dict[str, Any], result: ToolResult) -> str | None:
        """Record a result. Returns a diagnostic once the threshold is reached."""
        if result.ok:
            self.counters.clear()
            return None
        signature, code = failure_signature(tool_name, arguments, result)
        count = self.counters.get(signature, 0) + 1
        self.counters[signature] = count
        if count >= self.threshold:
            log.warning("Repeated failure of %s (%s) x%d", tool_name, code, count)
            return (
                f"Stopping tool loop: '{tool_name}' failed {count} times with the same "
                f"'{code}' error. A different strategy is required."
            )
        return None


@dataclass
class ExplorationBudget:
    """Counts consecutive read-only calls. Any other call resets the count."""

    soft_limit: int = 15
    hard_limit: int = 30
    count: int = 0

    def observe(self, classification: ToolClass | None) -> tuple[str | None, str | None]:
        """Returns ``(warning, stop_diagnostic)``."""
        if classification is not ToolClass.READ_ONLY:
            self.count = 0
            return None, None
        self.count += 1
        if self.count >= self.hard_limit:
            log.warning("Exploration budget hard threshold reached (%d)", self.count)
            return None, (
                f"Stopping tool loop: {self.count} consecutive read-only tool calls without "
                "making progress. Summarize what you found and act on it."
            )
        if self.count >= self.soft_limit:
            log.info("Exploration budget soft threshold reached (%d)", self.count)
            return (
                f"{self.count} consecutive read-only calls. Start acting on what you have found.",
                None,
            )
        return None, None


@dataclass
class LoopGuards:
    """Per-run guard state shared across dispatch rounds."""

    failures: RepeatedFailureTracker
    exploration: ExplorationBudget

    @classmethod
    def from_config(cls, config: AgentConfig) -> LoopGuards:
        return cls(
            failures=RepeatedFailureTracker(threshold=config.repeated_failure_threshold),
            exploration=ExplorationBudget(
                soft_limit=config.exploration_soft_limit,
                hard_limit=config.exploration_hard_limit,
            ),
        )

    def observe(
        self,
        tool_name: str,
        classification: ToolClass | None,
        arguments: dict[str, Any],
        result: ToolResult,
    ) -> str | None:
        """Feed one result through both guards; may add a warning to it."""
        warning, stop = self.exploration.observe(classification)
        if warning:
            result.warnings.append(warning)
        diagnostic = self.failures.observe(tool_name, arguments, result)
        return diagnostic or stop
