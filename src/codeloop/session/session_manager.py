"""Session manager: the entry point front ends talk to.

Owns the live sessions, guarantees that at most one loop drives a session
at a time, and turns each ``run_turn`` into a stream of render events.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from typing import Any

from codeloop.agents.orchestrator import SubAgentOrchestrator
from codeloop.agents.registry import AgentTypeRegistry
from codeloop.compression.compressor import ContextCompressor
from codeloop.config.loader import on_config_reload
from codeloop.config.schema import Config
from codeloop.core.llm.provider import ProviderClient
from codeloop.errors import SessionBusyError, StorageError
from codeloop.logging import get_logger
from codeloop.session.cancellation import CancellationToken
from codeloop.session.loop import RunResult, SessionLoop
from codeloop.session.model import PermissionMode, Session, WorkMode
from codeloop.session.permissions import ApprovalChannel, PermissionGate
from codeloop.session.render import NullSink, QueueRenderSink, RenderEvent, RenderKind, RenderSink
from codeloop.session.storage import SessionMetadata, Storage
from codeloop.tools.registry import ToolRegistry

log = get_logger("session")

TITLE_MAX_CHARS = 60


def title_from_input(user_input: str) -> str:
    """First non-empty line of the first message, shortened."""
    for line in user_input.splitlines():
        line = line.strip()
        if line:
            if len(line) > TITLE_MAX_CHARS:
                return line[: TITLE_MAX_CHARS - 3].rstrip() + "..."
            return line
    return "Untitled"


class SessionManager:
    """Creates, loads and runs sessions.

    Each session gets its own permission gate unless one is passed in, so
    "remember" approvals never leak between sessions. Gates follow config
    reloads.
    """

    def __init__(
        self,
        provider: ProviderClient,
        storage: Storage,
        registry: ToolRegistry | None = None,
        *,
        config: Config | None = None,
        approvals: ApprovalChannel | None = None,
        gate: PermissionGate | None = None,
        agent_types: AgentTypeRegistry | None = None,
        base_prompt: str | None = None,
    ) -> None:
        if registry is None:
            from codeloop.tools.builtin import default_registry

            registry = default_registry()
        self.provider = provider
        self.storage = storage
        self.registry = registry
        self.config = config or Config()
        self.approvals = approvals
        self.base_prompt = base_prompt
        self.orchestrator = SubAgentOrchestrator(
            provider, registry, config=self.config, agent_types=agent_types
        )
        self.compressor = ContextCompressor(provider, self.config)
        self._shared_gate = gate
        self._gates: dict[str, PermissionGate] = {}
        self._sessions: dict[str, Session] = {}
        self._running: dict[str, CancellationToken] = {}
        self._unregister_reload: Callable[[], None] = on_config_reload(self._on_config_reload)

    def _on_config_reload(self, new_config: Config) -> None:
        for session_id, gate in self._gates.items():
            gate.reload(new_config.sandbox)
            log.debug("Permissions reloaded for session %s: %d rules", session_id, len(gate.shell_rules))

    def gate_for(self, session_id: str) -> PermissionGate:
        if self._shared_gate is not None:
            return self._shared_gate
        if session_id not in self._gates:
            self._gates[session_id] = PermissionGate.from_config(self.config.sandbox)
        return self._gates[session_id]

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def create_session(
        self,
        cwd: str,
        *,
        model: str | None = None,
        permission_mode: PermissionMode = PermissionMode.SUPERVISED,
        work_mode: WorkMode = WorkMode.BUILD,
        thinking_effort: str | None = None,
        title: str | None = None,
        system_prompt: str | None = None,
    ) -> Session:
        session = Session.new(
            cwd=cwd,
            model=model or self.provider.model,
            permission_mode=permission_mode,
            work_mode=work_mode,
            thinking_effort=thinking_effort or self.config.llm.thinking_effort,
            title=title,
            system_prompt=system_prompt,
        )
        self.orchestrator.load_project_types(cwd)
        await self.storage.save_session_meta(session)
        self._sessions[session.id] = session
        log.info("Created session %s in %s", session.id, cwd)
        return session

    async def load_session(self, session_id: str) -> Session:
        """Load from storage, replacing any cached copy.

        Raises:
            SessionNotFoundError: No such session.
            SessionBusyError: The cached copy is being driven by a loop.
        """
        if session_id in self._running:
            raise SessionBusyError(session_id)
        session = await self.storage.load_session(session_id)
        self.orchestrator.load_project_types(session.cwd)
        self._sessions[session_id] = session
        log.debug("Loaded session %s (%d turns)", session_id, len(session.turns))
        return session

    async def get_session(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            session = await self.load_session(session_id)
        return session

    async def list_sessions(self) -> list[SessionMetadata]:
        return await self.storage.list_sessions()

    async def delete_session(self, session_id: str) -> bool:
        if session_id in self._running:
            raise SessionBusyError(session_id)
        self._sessions.pop(session_id, None)
        self._gates.pop(session_id, None)
        return await self.storage.delete_session(session_id)

    async def close(self) -> None:
        """Cancel every running turn and stop following config reloads."""
        for token in list(self._running.values()):
            token.cancel("session manager closed")
        self._unregister_reload()

    # -------------------------------------------------------------------------
    # Running turns
    # -------------------------------------------------------------------------

    def is_running(self, session_id: str) -> bool:
        return session_id in self._running

    def _acquire(self, session_id: str) -> CancellationToken:
        if session_id in self._running:
            raise SessionBusyError(session_id)
        token = CancellationToken()
        self._running[session_id] = token
        return token

    def _release(self, session_id: str, token: CancellationToken) -> None:
        if self._running.get(session_id) is token:
            del self._running[session_id]

    def _loop_for(self, session: Session) -> SessionLoop:
        return SessionLoop(
            self.provider,
            self.registry,
            self.storage,
            config=self.config,
            gate=self.gate_for(session.id),
            approvals=self.approvals,
            orchestrator=self.orchestrator,
            base_prompt=self.base_prompt,
        )

    async def _run_owned(
        self, session: Session, user_input: str, sink: RenderSink, token: CancellationToken
    ) -> RunResult:
        try:
            if session.title is None:
                session.title = title_from_input(user_input)
                try:
                    await self.storage.save_session_meta(session)
                except StorageError as e:
                    log.warning("Could not store title of %s: %s", session.id, e)
            return await self._loop_for(session).run_turn(session, user_input, sink, token)
        finally:
            self._release(session.id, token)

    async def prompt(self, session_id: str, user_input: str, sink: RenderSink | None = None) -> RunResult:
        """Run one user message to completion and return how it ended.

        Raises:
            SessionBusyError: Another turn of this session is running.
        """
        session = await self.get_session(session_id)
        token = self._acquire(session_id)
        return await self._run_owned(session, user_input, sink or NullSink(), token)

    async def run_turn(self, session_id: str, user_input: str) -> AsyncIterator[RenderEvent]:
        """Run one user message, yielding render events as they happen.

        The last event is always ``TURN_COMPLETE`` with ``has_more=False``.
        Closing the iterator early cancels the turn.

        Raises:
            SessionBusyError: Another turn of this session is running.
            SessionNotFoundError: No such session.
        """
        session = await self.get_session(session_id)
        token = self._acquire(session_id)
        sink = QueueRenderSink(self.config.agent.render_buffer_size)

        async def drive() -> RunResult:
            try:
                return await self._run_owned(session, user_input, sink, token)
            except Exception as e:
                log.exception("Turn of session %s crashed", session_id)
                sink.emit(RenderEvent(RenderKind.ERROR, session_id, {"message": str(e), "kind": "internal"}))
                raise
            finally:
                sink.close()

        task = asyncio.create_task(drive())
        try:
            async for event in sink:
                yield event
            await task
        finally:
            if not task.done():
                token.cancel("render consumer closed")
                await asyncio.wait({task})

    def cancel(self, session_id: str, reason: str = "cancelled by user") -> bool:
        """Cancel the running turn of a session. False if nothing was running."""
        token = self._running.get(session_id)
        if token is None:
            return False
        log.info("Cancelling session %s: %s", session_id, reason)
        token.cancel(reason)
        return True

    # -------------------------------------------------------------------------
    # Session state
    # -------------------------------------------------------------------------

    async def _update(self, session_id: str, **changes: Any) -> Session:
        if session_id in self._running:
            raise SessionBusyError(session_id)
        session = await self.get_session(session_id)
        for name, value in changes.items():
            setattr(session, name, value)
        await self.storage.save_session_meta(session)
        return session

    async def set_permission_mode(self, session_id: str, mode: PermissionMode) -> Session:
        session = await self._update(session_id, permission_mode=mode)
        if mode is PermissionMode.SUPERVISED:
            self.gate_for(session_id).clear_temporary_grants()
        log.info("Session %s: permission mode %s", session_id, mode.value)
        return session

    async def set_work_mode(self, session_id: str, mode: WorkMode) -> Session:
        session = await self._update(session_id, work_mode=mode)
        log.info("Session %s: work mode %s", session_id, mode.value)
        return session

    async def get_plan(self, session_id: str) -> dict[str, Any] | None:
        """Read model of the active plan, or None."""
        session = await self.get_session(session_id)
        return session.plan.to_dict() if session.plan is not None else None

    async def compress(
        self, session_id: str, *, hints: str | None = None, direction: str | None = None
    ) -> Session:
        """Summarize a session into a new seed session and store it.

        The source session is kept as it is. ``hints`` tells the summary
        what to preserve and ``direction`` what the seed should focus on.
        """
        if session_id in self._running:
            raise SessionBusyError(session_id)
        source = await self.get_session(session_id)
        seed = await self.compressor.compress(source, hints=hints, direction=direction)
        await self.storage.save_session_meta(seed)
        for turn in seed.turns:
            await self.storage.append_turn(seed.id, turn)
        self._sessions[seed.id] = seed
        return seed
