"""Handle for one live sub-agent."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from codeloop.agents.schema import AgentState, AgentType, SubAgentResult, SubAgentTask
from codeloop.session.cancellation import CancellationToken

if TYPE_CHECKING:
    from codeloop.session.model import Session


class SubAgentHandle:
    """A child session owned by one parent tool call.

    The orchestrator holds the handle by value; the child only sees its
    derived cancellation token. ``close()`` fires that token, which stops
    the child's loop and kills any subprocess it is running.
    """

    def __init__(
        self,
        index: int,
        task: SubAgentTask,
        agent_type: AgentType,
        parent_call_id: str,
        token: CancellationToken,
    ) -> None:
        self.index = index
        self.task = task
        self.agent_type = agent_type
        self.parent_call_id = parent_call_id
        self.token = token
        self.state = AgentState.SPAWNED
        self.session: Session | None = None
        self.result: SubAgentResult | None = None
        self.attempts = 0
        self._started: float | None = None

    @property
    def name(self) -> str:
        return self.task.label

    @property
    def session_id(self) -> str | None:
        return self.session.id if self.session is not None else None

    @property
    def elapsed_ms(self) -> float:
        if self._started is None:
            return 0.0
        return (time.perf_counter() - self._started) * 1000

    def start(self, session: Session) -> None:
        self.session = session
        self.attempts += 1
        self.state = AgentState.RUNNING
        if self._started is None:
            self._started = time.perf_counter()

    def finish(self, ok: bool, summary: str = "", error: str | None = None, iterations: int = 0) -> SubAgentResult:
        if ok:
            self.state = AgentState.DONE
        elif self.state is not AgentState.CANCELLED:
            self.state = AgentState.FAILED
        self.result = SubAgentResult(
            index=self.index,
            name=self.name,
            ok=ok,
            summary=summary,
            error=error,
            session_id=self.session_id,
            attempts=max(self.attempts, 1),
            iterations=iterations,
            duration_ms=self.elapsed_ms,
        )
        return self.result

    def mark_cancelled(self, reason: str) -> SubAgentResult:
        self.state = AgentState.CANCELLED
        return self.finish(False, error=f"Cancelled: {reason}")

    def close(self) -> None:
        """Stop the child if it is still running."""
        if not self.state.is_terminal:
            self.token.cancel("parent call ended")

    def __repr__(self) -> str:
        return f"SubAgentHandle(index={self.index}, type={self.agent_type.id!r}, state={self.state.value})"
