"""Exception hierarchy for the orchestration core.

Tool-level failures never escape the dispatcher: executors raise
``ToolError`` and the dispatcher turns it into an ``ok=False`` result.
Infrastructure and fatal failures propagate to the session loop, which
decides between retrying, failing the turn, or aborting.
"""

from __future__ import annotations


class CodeloopError(Exception):
    """Base exception for all codeloop errors."""


# =============================================================================
# Tool-level
# =============================================================================


class ToolError(CodeloopError):
    """Raised by a tool executor when the tool itself fails.

    ``code`` is one of the structured error codes placed in the result
    envelope (``tool_error``, ``timeout``, ``access_denied``, ...).
    """

    def __init__(self, message: str, code: str = "tool_error", warnings: list[str] | None = None):
        self.code = code
        self.warnings = list(warnings or [])
        super().__init__(message)


class ToolTimeoutError(ToolError):
    """A tool call exceeded its time budget."""

    def __init__(self, tool_name: str, timeout_seconds: float):
        self.tool_name = tool_name
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Tool '{tool_name}' timed out after {timeout_seconds}s", code="timeout"
        )


class InvalidTransitionError(CodeloopError):
    """Illegal tool-call status transition."""

    def __init__(self, call_id: str, current: str, target: str):
        self.call_id = call_id
        self.current = current
        self.target = target
        super().__init__(f"Tool call {call_id}: cannot move from {current} to {target}")


# =============================================================================
# Plan
# =============================================================================


class PlanError(CodeloopError):
    """Invalid plan mutation."""


class CycleError(PlanError):
    """A dependency edge would make the task graph cyclic."""

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(f"Dependency cycle detected: {' -> '.join(cycle)}")


# =============================================================================
# Infrastructure
# =============================================================================


class InfrastructureError(CodeloopError):
    """Failure of a collaborator the loop depends on (provider, storage)."""


class ProviderError(InfrastructureError):
    """Provider call failed.

    ``retryable`` marks transient failures (rate limits, 5xx, network) that
    the session loop may retry with backoff.
    """

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = False,
        status_code: int | None = None,
    ):
        self.retryable = retryable
        self.status_code = status_code
        super().__init__(message)


class StorageError(InfrastructureError):
    """Persisting or loading session state failed."""

    def __init__(self, session_id: str, reason: str):
        self.session_id = session_id
        self.reason = reason
        super().__init__(f"Storage failure for session {session_id}: {reason}")


# =============================================================================
# Session
# =============================================================================


class FatalSessionError(CodeloopError):
    """Unrecoverable failure for the current turn (corrupt state, auth)."""


class SessionNotFoundError(CodeloopError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class SessionBusyError(CodeloopError):
    """A second loop tried to drive a session that is already running."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} is already running a turn")


class MaxIterationsError(CodeloopError):
    """A run hit the provider-call limit without a final answer."""

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"Stopped after {limit} iterations without a final answer")


class Cancelled(Exception):
    """Cooperative cancellation signal raised at a suspension point.

    Not a ``CodeloopError``: cancellation is a terminal status, not a failure.
    """

    def __init__(self, reason: str = "cancelled"):
        self.reason = reason
        super().__init__(reason)


# =============================================================================
# Classification helpers
# =============================================================================

_RETRYABLE_STATUS = {408, 409, 425, 429, 500, 502, 503, 504, 529}
_RETRYABLE_MARKERS = ("timeout", "timed out", "connection", "network", "overloaded", "rate limit")


def is_retryable_status(status_code: int | None) -> bool:
    if status_code is None:
        return False
    return status_code in _RETRYABLE_STATUS or 500 <= status_code < 600


def is_retryable_message(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in _RETRYABLE_MARKERS)


def classify_error_code(message: str) -> str:
    """Map a free-form tool error message to a structured error code."""
    lowered = message.lower()
    if "invalid parameters" in lowered or "missing required" in lowered:
        return "invalid_parameters"
    if "access denied" in lowered or "outside workspace" in lowered:
        return "access_denied"
    if "timed out" in lowered or "timeout" in lowered:
        return "timeout"
    if "permission denied" in lowered or "denied by user" in lowered:
        return "permission_denied"
    if "unknown tool" in lowered:
        return "unknown_tool"
    return "tool_error"
