"""The session loop: provider call -> assembled turn -> tool dispatch -> repeat.

One ``run_turn`` handles one user message. It keeps calling the provider
until the model answers without tool calls, a guard stops it, the token is
cancelled, or an unrecoverable error ends the run. Every assistant turn is
committed to storage once its tool results are in place.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from typing import Any

from codeloop.config.schema import Config
from codeloop.core.llm.provider import ProviderClient, Role, StreamConfig
from codeloop.errors import (
    Cancelled,
    FatalSessionError,
    InfrastructureError,
    MaxIterationsError,
    ProviderError,
    StorageError,
    is_retryable_message,
)
from codeloop.logging import get_logger
from codeloop.plan.markdown import detect_plan
from codeloop.session.assembler import StreamingAssembler
from codeloop.session.cancellation import CancellationToken, race
from codeloop.session.context import build_messages
from codeloop.session.dispatcher import ToolDispatcher
from codeloop.session.failure import LoopGuards
from codeloop.session.hooks import ToolHooks
from codeloop.session.model import Session, Turn, TurnStatus, WorkMode
from codeloop.session.permissions import ApprovalChannel, PermissionGate
from codeloop.session.render import RenderEvent, RenderKind, RenderSink
from codeloop.session.storage import Storage
from codeloop.tools.registry import ToolRegistry

log = get_logger("loop")


@dataclass
class RunResult:
    """How a ``run_turn`` ended."""

    status: TurnStatus
    text: str = ""
    error: str | None = None
    retryable: bool = False  # The failure came from a transient provider error
    fatal: bool = False
    iterations: int = 0
    turns: list[Turn] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status is TurnStatus.COMPLETE and self.error is None


class SessionLoop:
    def __init__(
        self,
        provider: ProviderClient,
        registry: ToolRegistry,
        storage: Storage,
        *,
        config: Config | None = None,
        gate: PermissionGate | None = None,
        approvals: ApprovalChannel | None = None,
        orchestrator: Any = None,
        base_prompt: str | None = None,
        hooks: ToolHooks | None = None,
    ) -> None:
        self.provider = provider
        self.registry = registry
        self.storage = storage
        self.config = config or Config()
        self.base_prompt = base_prompt
        self.dispatcher = ToolDispatcher(
            registry,
            gate=gate,
            approvals=approvals,
            config=self.config.agent,
            orchestrator=orchestrator,
            hooks=hooks if hooks is not None else ToolHooks.from_config(self.config.hooks),
        )

    async def run_turn(
        self,
        session: Session,
        user_input: str,
        sink: RenderSink,
        token: CancellationToken,
    ) -> RunResult:
        result = RunResult(TurnStatus.COMPLETE)
        guards = LoopGuards.from_config(self.config.agent)
        current: Turn | None = None
        try:
            user_turn = session.append_turn(Turn.user(user_input))
            result.turns.append(user_turn)
            if not await self._commit(session, user_turn, sink):
                return self._finish(session, sink, result, user_turn, TurnStatus.FAILED, user_turn.error)

            while True:
                result.iterations += 1
                current = None
                current, error = await self._stream(session, sink, token)
                session.append_turn(current)
                result.turns.append(current)

                if current.status is TurnStatus.INTERRUPTED:
                    await self._commit(session, current, sink)
                    return self._finish(session, sink, result, current, TurnStatus.INTERRUPTED)

                if current.status is TurnStatus.FAILED:
                    await self._commit(session, current, sink)
                    self._emit(sink, session, RenderKind.ERROR, message=current.error, kind="provider")
                    result.retryable = bool(error and error.retryable)
                    return self._finish(session, sink, result, current, TurnStatus.FAILED, current.error)

                if not current.tool_calls():
                    plan_ready = await self._detect_plan(session, current, sink)
                    if not await self._commit(session, current, sink):
                        return self._finish(session, sink, result, current, TurnStatus.FAILED, current.error)
                    if plan_ready:
                        self._emit(sink, session, RenderKind.FINISHED, reason="plan_ready")
                    return self._finish(session, sink, result, current, TurnStatus.COMPLETE)

                outcome = await self.dispatcher.dispatch(session, current, sink, token, guards=guards)
                if outcome.cancelled or token.cancelled:
                    current.finalize(TurnStatus.INTERRUPTED)
                    await self._commit(session, current, sink)
                    await self._save_meta(session, sink)
                    return self._finish(session, sink, result, current, TurnStatus.INTERRUPTED)

                if not await self._commit(session, current, sink) or not await self._save_meta(session, sink):
                    return self._finish(session, sink, result, current, TurnStatus.FAILED, current.error)

                if outcome.stop_reason is not None:
                    self._emit(sink, session, RenderKind.ERROR, message=outcome.stop_reason, kind="loop_guard")
                    return self._finish(session, sink, result, current, TurnStatus.FAILED, outcome.stop_reason)

                if result.iterations >= self.config.agent.max_iterations:
                    message = str(MaxIterationsError(self.config.agent.max_iterations))
                    log.warning("Session %s: %s", session.id, message)
                    self._emit(sink, session, RenderKind.ERROR, message=message, kind="max_iterations")
                    return self._finish(session, sink, result, current, TurnStatus.FAILED, message)

                self._emit_turn_complete(sink, session, current, has_more=True)

        except InfrastructureError as e:
            log.error("Session %s: %s", session.id, e)
            if current is None:
                current = session.append_turn(Turn(role=Role.ASSISTANT))
                result.turns.append(current)
            current.fail(str(e))
            self._emit(sink, session, RenderKind.ERROR, message=str(e), kind="infrastructure")
            return self._finish(session, sink, result, current, TurnStatus.FAILED, str(e))
        except FatalSessionError as e:
            log.error("Session %s: fatal error: %s", session.id, e)
            if current is None:
                current = session.append_turn(Turn(role=Role.ASSISTANT))
                result.turns.append(current)
            current.fail(str(e))
            self._emit(sink, session, RenderKind.ERROR, message=str(e), kind="fatal", fatal=True)
            result.fatal = True
            return self._finish(session, sink, result, current, TurnStatus.FAILED, str(e))
        except Cancelled:
            if current is None:
                current = session.append_turn(Turn(role=Role.ASSISTANT))
                result.turns.append(current)
            if current.status is not TurnStatus.FAILED:
                current.finalize(TurnStatus.INTERRUPTED)
            return self._finish(session, sink, result, current, TurnStatus.INTERRUPTED)

    # -------------------------------------------------------------------------
    # Provider
    # -------------------------------------------------------------------------

    def _stream_config(self, session: Session) -> StreamConfig:
        llm = self.config.llm
        return StreamConfig(
            max_tokens=llm.max_tokens,
            temperature=llm.temperature,
            thinking_effort=session.thinking_effort or llm.thinking_effort,
            tools=self.registry.definitions(),
            model=session.model,
        )

    def _backoff(self, attempt: int) -> float:
        retry = self.config.agent.retry
        delay = min(retry.max_delay, retry.base_delay * (2 ** (attempt - 1)))
        return delay + delay * retry.jitter * random.random()

    async def _stream(
        self, session: Session, sink: RenderSink, token: CancellationToken
    ) -> tuple[Turn, ProviderError | None]:
        """One finalized assistant turn, retrying transient provider errors."""
        max_attempts = max(1, self.config.agent.retry.max_attempts)
        attempt = 0
        while True:
            attempt += 1
            turn = Turn(role=Role.ASSISTANT)
            assembler = StreamingAssembler(
                session.id,
                stream_timeout=self.config.llm.stream_timeout,
                existing_ids=(c.id for c in session.iter_tool_calls()),
            )
            messages = build_messages(session, self.base_prompt)
            try:
                events = self.provider.stream(messages, self._stream_config(session))
                return await assembler.assemble(events, sink, token, turn), None
            except ProviderError as e:
                error = e
            except (FatalSessionError, Cancelled):
                raise
            except Exception as e:
                log.exception("Provider %s raised", self.provider.model)
                message = f"{type(e).__name__}: {e}"
                error = ProviderError(message, retryable=is_retryable_message(message))

            if not turn.is_final:
                turn.finalize(TurnStatus.FAILED, error=str(error))
            if not error.retryable or attempt >= max_attempts:
                log.warning("Provider call failed after %d attempt(s): %s", attempt, error)
                return turn, error

            delay = self._backoff(attempt)
            log.info("Retrying provider call in %.1fs (attempt %d/%d): %s", delay, attempt + 1, max_attempts, error)
            self._emit(
                sink,
                session,
                RenderKind.RETRY,
                attempt=attempt + 1,
                max_attempts=max_attempts,
                delay=delay,
                error=str(error),
            )
            try:
                await race(asyncio.sleep(delay), token)
            except Cancelled:
                interrupted = Turn(role=Role.ASSISTANT, blocks=turn.blocks, stop_reason="cancelled")
                interrupted.finalize(TurnStatus.INTERRUPTED)
                return interrupted, None

    async def _detect_plan(self, session: Session, turn: Turn, sink: RenderSink) -> bool:
        if session.work_mode is not WorkMode.PLAN:
            return False
        plan = detect_plan(turn.text())
        if plan is None:
            return False
        if session.plan is not None:
            plan.id = session.plan.id
        session.plan = plan
        log.info("Session %s: plan detected: %s", session.id, plan.title)
        self._emit(sink, session, RenderKind.PLAN_UPDATE, plan=plan.to_dict())
        return await self._save_meta(session, sink)

    # -------------------------------------------------------------------------
    # Storage
    # -------------------------------------------------------------------------

    async def _commit(self, session: Session, turn: Turn, sink: RenderSink) -> bool:
        try:
            await self.storage.append_turn(session.id, turn)
        except StorageError as e:
            log.error("Could not store turn %d of %s: %s", turn.seq, session.id, e)
            turn.fail(str(e))
            self._emit(sink, session, RenderKind.ERROR, message=str(e), kind="storage")
            return False
        return True

    async def _save_meta(self, session: Session, sink: RenderSink) -> bool:
        try:
            await self.storage.save_session_meta(session)
        except StorageError as e:
            log.error("Could not store metadata of %s: %s", session.id, e)
            self._emit(sink, session, RenderKind.ERROR, message=str(e), kind="storage")
            return False
        return True

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def _emit(self, sink: RenderSink, session: Session, event_kind: RenderKind, /, **payload: Any) -> None:
        sink.emit(RenderEvent(event_kind, session.id, payload))

    def _emit_turn_complete(self, sink: RenderSink, session: Session, turn: Turn | None, has_more: bool) -> None:
        self._emit(
            sink,
            session,
            RenderKind.TURN_COMPLETE,
            turn=turn,
            seq=turn.seq if turn else None,
            status=turn.status.value if turn and turn.status else None,
            has_more=has_more,
        )

    def _finish(
        self,
        session: Session,
        sink: RenderSink,
        result: RunResult,
        turn: Turn | None,
        status: TurnStatus,
        error: str | None = None,
    ) -> RunResult:
        result.status = status
        result.error = error
        result.text = turn.text() if turn is not None and turn.role is Role.ASSISTANT else ""
        log.debug(
            "Session %s: run finished %s after %d iteration(s)", session.id, status.value, result.iterations
        )
        self._emit_turn_complete(sink, session, turn, has_more=False)
        return result
