"""Sub-agent orchestrator: bounded fan-out of nested session loops.

Each task runs in its own child session with isolated history, a
restricted tool registry and a cancellation token derived from the parent
call. At most ``subagent_max_concurrency`` children are live at once.
Results come back in spawn order no matter which child finished first.
"""

from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path

from codeloop.agents.handle import SubAgentHandle
from codeloop.agents.registry import AgentTypeRegistry
from codeloop.agents.schema import AgentType, SubAgentResult, SubAgentTask
from codeloop.config.schema import Config
from codeloop.core.llm.provider import ProviderClient
from codeloop.errors import Cancelled
from codeloop.logging import get_logger
from codeloop.session.cancellation import CancellationToken
from codeloop.session.loop import RunResult, SessionLoop
from codeloop.session.model import PermissionMode, Session, TurnStatus, WorkMode
from codeloop.session.render import ForwardingSink, NullSink, RenderSink
from codeloop.session.storage import InMemoryStorage
from codeloop.tools.registry import ToolRegistry
from codeloop.tools.result import ToolResult

log = get_logger("agents")

TIMEOUT_REASON = "sub-agent timeout"


@dataclasses.dataclass
class _FanOut:
    """Live-child counter for one ``run``."""

    live: int = 0
    peak: int = 0

    @contextmanager
    def child(self) -> Iterator[None]:
        self.live += 1
        self.peak = max(self.peak, self.live)
        try:
            yield
        finally:
            self.live -= 1


class SubAgentOrchestrator:
    """Runs sub-agent tasks for ``explore`` and ``build`` tool calls.

    One orchestrator may serve several sessions at once; each ``run`` keeps
    its own concurrency bookkeeping.

    Attributes:
        peak_concurrency: Highest number of simultaneously live children
            seen by the most recently finished ``run``.
    """

    def __init__(
        self,
        provider: ProviderClient,
        registry: ToolRegistry,
        *,
        config: Config | None = None,
        agent_types: AgentTypeRegistry | None = None,
    ) -> None:
        self.provider = provider
        self.registry = registry
        self.config = config or Config()
        self.agent_types = agent_types or AgentTypeRegistry()
        self.peak_concurrency = 0
        self._project_types: dict[str, AgentTypeRegistry] = {}

    def load_project_types(self, cwd: str) -> AgentTypeRegistry:
        """Agent types for sessions in ``cwd``: the shared ones plus the
        project's own ``.codeloop/agents`` files, which win on id clashes.

        Loaded once per directory.
        """
        registry = self._project_types.get(cwd)
        if registry is None:
            registry = AgentTypeRegistry(self.agent_types.list_types())
            loaded = registry.load_project_types(Path(cwd))
            if loaded:
                log.info("Loaded %d project agent type(s) from %s", loaded, cwd)
            self._project_types[cwd] = registry
        return registry

    def types_for(self, session: Session) -> AgentTypeRegistry:
        return self._project_types.get(session.cwd, self.agent_types)

    async def run(
        self,
        tasks: Sequence[SubAgentTask],
        parent_call_id: str,
        token: CancellationToken,
        *,
        parent: Session,
        agent_type: str = "explore",
        sink: RenderSink | None = None,
    ) -> ToolResult:
        """Run every task and aggregate the outcomes.

        Raises:
            Cancelled: The parent call was cancelled. Children are stopped
                before this is raised.
        """
        kind = self.types_for(parent).require(agent_type)
        agent = self.config.agent
        semaphore = asyncio.Semaphore(max(1, agent.subagent_max_concurrency))
        handles = [
            SubAgentHandle(i, task, kind, parent_call_id, token.child()) for i, task in enumerate(tasks)
        ]
        fan_out = _FanOut()
        log.info(
            "Spawning %d %s sub-agent(s) for call %s (max %d concurrent)",
            len(handles),
            kind.id,
            parent_call_id,
            agent.subagent_max_concurrency,
        )

        async def run_one(handle: SubAgentHandle) -> SubAgentResult:
            async with semaphore:
                if handle.token.cancelled:
                    return handle.mark_cancelled(handle.token.reason or "cancelled")
                with fan_out.child():
                    return await self._run_child(handle, parent, sink)

        try:
            results = await asyncio.gather(*(run_one(h) for h in handles))
        finally:
            for handle in handles:
                handle.close()

        if token.cancelled:
            raise Cancelled(token.reason or "cancelled")
        self.peak_concurrency = fan_out.peak
        return self._aggregate(kind, results, fan_out.peak)

    async def _run_child(
        self, handle: SubAgentHandle, parent: Session, sink: RenderSink | None
    ) -> SubAgentResult:
        agent = self.config.agent
        max_attempts = 1 + max(0, agent.subagent_retries)
        child_sink: RenderSink = (
            ForwardingSink(sink, subagent=handle.index, parent_call_id=handle.parent_call_id)
            if sink is not None
            else NullSink()
        )
        timer: asyncio.TimerHandle | None = None
        if agent.subagent_timeout is not None:
            timer = asyncio.get_running_loop().call_later(
                agent.subagent_timeout, handle.token.cancel, TIMEOUT_REASON
            )

        try:
            while True:
                session = self._child_session(handle, parent)
                handle.start(session)
                loop = self._child_loop(handle.agent_type)
                log.debug("Sub-agent %d (%s) attempt %d", handle.index, handle.name, handle.attempts)
                outcome: RunResult = await loop.run_turn(session, handle.task.prompt, child_sink, handle.token)

                if outcome.status is TurnStatus.INTERRUPTED:
                    if handle.token.reason == TIMEOUT_REASON:
                        return handle.finish(
                            False,
                            error=f"timed out after {agent.subagent_timeout:g}s",
                            iterations=outcome.iterations,
                        )
                    return handle.mark_cancelled(handle.token.reason or "cancelled")

                if outcome.ok:
                    summary = outcome.text.strip() or session.last_assistant_text().strip()
                    if summary:
                        return handle.finish(True, summary=summary, iterations=outcome.iterations)
                    return handle.finish(False, error="finished without a report", iterations=outcome.iterations)

                if outcome.retryable and handle.attempts < max_attempts:
                    log.info("Sub-agent %d failed transiently, retrying: %s", handle.index, outcome.error)
                    continue
                return handle.finish(False, error=outcome.error or "failed", iterations=outcome.iterations)
        finally:
            if timer is not None:
                timer.cancel()

    def _child_session(self, handle: SubAgentHandle, parent: Session) -> Session:
        return Session.new(
            cwd=parent.cwd,
            model=handle.task.model or parent.model,
            permission_mode=PermissionMode.AUTONOMOUS,
            work_mode=WorkMode.BUILD,
            thinking_effort=parent.thinking_effort,
            title=handle.name,
            system_prompt=handle.agent_type.system_prompt,
            parent_id=parent.id,
        )

    def _child_loop(self, kind: AgentType) -> SessionLoop:
        agent = self.config.agent
        child_config = dataclasses.replace(
            self.config,
            agent=dataclasses.replace(
                agent, max_iterations=kind.max_iterations or agent.subagent_max_iterations
            ),
        )
        return SessionLoop(
            self.provider,
            self.registry.subset(kind.tools),
            InMemoryStorage(),
            config=child_config,
            base_prompt="",
        )

    def _aggregate(self, kind: AgentType, results: list[SubAgentResult], peak: int) -> ToolResult:
        succeeded = [r for r in results if r.ok]
        sections = []
        for r in results:
            if r.ok:
                sections.append(f"## Task {r.index + 1}: {r.name}\n\n{r.summary}")
            else:
                sections.append(f"## Task {r.index + 1}: {r.name} [FAILED]\n\nError: {r.error}")
        text = "\n\n".join(sections)

        metadata = {
            "agent_type": kind.id,
            "succeeded": len(succeeded),
            "failed": len(results) - len(succeeded),
            "peak_concurrency": peak,
            "subagents": [r.to_dict() for r in results],
        }
        warnings = [f"Task {r.index + 1} ({r.name}) failed: {r.error}" for r in results if not r.ok]
        if succeeded:
            return ToolResult(ok=True, data=text, warnings=warnings, metadata=metadata)
        return ToolResult(
            ok=False,
            data=text,
            error=f"All {len(results)} sub-agent task(s) failed",
            code="tool_error",
            warnings=warnings,
            metadata=metadata,
        )
