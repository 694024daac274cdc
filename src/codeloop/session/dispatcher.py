"""Tool dispatcher: validate, gate, execute, record.

Calls are handled in proposal order. A run of consecutive calls to
parallel-capable read-only tools executes concurrently, and the results are
still appended in proposal order. Tool failures become ``ok=False`` results
here; only infrastructure and fatal errors propagate to the loop.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from codeloop.config.schema import AgentConfig
from codeloop.errors import (
    Cancelled,
    FatalSessionError,
    InfrastructureError,
    InvalidTransitionError,
    ToolError,
    classify_error_code,
)
from codeloop.logging import get_logger
from codeloop.session.cancellation import CancellationToken, race
from codeloop.session.failure import LoopGuards
from codeloop.session.hooks import ToolHooks
from codeloop.session.model import Session, ToolCallBlock, ToolCallStatus, ToolResultBlock, Turn
from codeloop.session.permissions import ApprovalChannel, PermissionGate
from codeloop.session.render import RenderEvent, RenderKind, RenderSink
from codeloop.session.truncation import truncate_data
from codeloop.tools.registry import ToolClass, ToolContext, ToolRegistry, ToolSpec, format_validation_error
from codeloop.tools.result import ToolResult

log = get_logger("dispatcher")

DENIED_BY_USER = "Tool execution denied by user"


@dataclass
class DispatchOutcome:
    results: list[ToolResultBlock] = field(default_factory=list)
    stop_reason: str | None = None  # Diagnostic when a loop guard tripped
    cancelled: bool = False


class ToolDispatcher:
    def __init__(
        self,
        registry: ToolRegistry,
        *,
        gate: PermissionGate | None = None,
        approvals: ApprovalChannel | None = None,
        config: AgentConfig | None = None,
        orchestrator: Any = None,
        hooks: ToolHooks | None = None,
    ) -> None:
        self.registry = registry
        self.gate = gate or PermissionGate()
        self.approvals = approvals
        self.config = config or AgentConfig()
        self.orchestrator = orchestrator
        self.hooks = hooks or ToolHooks()
        self._running: set[str] = set()

    async def dispatch(
        self,
        session: Session,
        turn: Turn,
        sink: RenderSink,
        token: CancellationToken,
        *,
        guards: LoopGuards | None = None,
    ) -> DispatchOutcome:
        """Resolve every unanswered tool call in ``turn``.

        Results are appended to ``turn`` so each result lives next to its
        call. Every call ends with exactly one result, including calls
        skipped after cancellation or after a loop guard stopped the round.
        """
        guards = guards or LoopGuards.from_config(self.config)
        outcome = DispatchOutcome()
        answered = {r.call_id for r in turn.tool_results()}
        pending = [c for c in turn.tool_calls() if c.id not in answered]

        index = 0
        while index < len(pending):
            if token.cancelled:
                outcome.cancelled = True
                for call in pending[index:]:
                    self._record(session, turn, sink, call, self._cancel_unstarted(call), outcome)
                break
            if outcome.stop_reason is not None:
                for call in pending[index:]:
                    call.deny("skipped")
                    skipped = ToolResult.failure("Skipped: the tool loop was stopped", "skipped")
                    self._record(session, turn, sink, call, skipped, outcome)
                break

            group = self._parallel_group(pending, index)
            if len(group) > 1:
                log.debug("Running %d calls in parallel", len(group))
                results = await asyncio.gather(
                    *(self._run_one(session, call, sink, token) for call in group)
                )
            else:
                results = [await self._run_one(session, group[0], sink, token)]

            for call, result in zip(group, results):
                spec = self.registry.lookup(call.tool_name)
                stop = guards.observe(
                    call.tool_name, spec.classification if spec else None, call.arguments, result
                )
                if stop and outcome.stop_reason is None:
                    outcome.stop_reason = stop
                self._record(session, turn, sink, call, result, outcome)
            index += len(group)

        if token.cancelled:
            outcome.cancelled = True
        return outcome

    def _parallel_group(self, calls: list[ToolCallBlock], start: int) -> list[ToolCallBlock]:
        group = [calls[start]]
        if not self._is_parallel(calls[start]):
            return group
        for call in calls[start + 1 :]:
            if not self._is_parallel(call):
                break
            group.append(call)
        return group

    def _is_parallel(self, call: ToolCallBlock) -> bool:
        spec = self.registry.lookup(call.tool_name)
        return (
            call.status is ToolCallStatus.PROPOSED
            and spec is not None
            and spec.parallel
            and spec.classification is ToolClass.READ_ONLY
        )

    def _record(
        self,
        session: Session,
        turn: Turn,
        sink: RenderSink,
        call: ToolCallBlock,
        result: ToolResult,
        outcome: DispatchOutcome,
    ) -> None:
        data, truncated = truncate_data(result.data, self.config.max_output_chars)
        if truncated:
            result.data = data
            result.metadata["truncated"] = True
        block = ToolResultBlock.from_result(call.id, result)
        turn.blocks.append(block)
        outcome.results.append(block)
        _emit(
            sink,
            session,
            RenderKind.TOOL_RESULT,
            call_id=call.id,
            name=call.tool_name,
            status=call.status.value,
            ok=result.ok,
            error=result.error,
            code=result.code,
        )

    @staticmethod
    def _cancel_unstarted(call: ToolCallBlock) -> ToolResult:
        if call.status is ToolCallStatus.AWAITING_APPROVAL:
            call.deny("cancelled")
        elif not call.is_terminal:
            call.transition(ToolCallStatus.CANCELLED)
        return ToolResult.failure("Tool call cancelled", "cancelled")

    # -------------------------------------------------------------------------
    # Single call
    # -------------------------------------------------------------------------

    async def _run_one(
        self,
        session: Session,
        call: ToolCallBlock,
        sink: RenderSink,
        token: CancellationToken,
    ) -> ToolResult:
        if call.is_terminal:
            # Denied during assembly (malformed arguments)
            return ToolResult.failure(call.denial_reason or "Tool call rejected", "invalid_parameters")

        spec = self.registry.lookup(call.tool_name)
        if spec is None:
            call.deny("unknown tool")
            _emit(sink, session, RenderKind.TOOL_DENIED, call_id=call.id, name=call.tool_name, reason="unknown tool")
            return ToolResult.failure(f"Unknown tool: {call.tool_name}", "unknown_tool")

        try:
            args = spec.validate(call.arguments)
        except ValidationError as e:
            message = format_validation_error(e)
            call.deny("invalid parameters")
            _emit(sink, session, RenderKind.TOOL_DENIED, call_id=call.id, name=spec.name, reason=message)
            return ToolResult.failure(message, "invalid_parameters")

        denial = self.gate.plan_mode_denial(session, spec)
        if denial is not None:
            call.deny("plan mode")
            _emit(sink, session, RenderKind.TOOL_DENIED, call_id=call.id, name=spec.name, reason=denial)
            return ToolResult.failure(denial, "plan_mode")

        if self.gate.needs_approval(session, spec, call.arguments):
            refused = await self._request_approval(session, spec, call, sink, token)
            if refused is not None:
                return refused
        else:
            call.transition(ToolCallStatus.APPROVED)

        if token.cancelled:
            call.transition(ToolCallStatus.CANCELLED)
            return ToolResult.failure("Tool call cancelled", "cancelled")

        return await self._execute(session, spec, call, args, sink, token)

    async def _request_approval(
        self,
        session: Session,
        spec: ToolSpec,
        call: ToolCallBlock,
        sink: RenderSink,
        token: CancellationToken,
    ) -> ToolResult | None:
        """Ask the user. Returns a failure result unless approved."""
        call.transition(ToolCallStatus.AWAITING_APPROVAL)
        _emit(
            sink,
            session,
            RenderKind.TOOL_APPROVAL_REQUIRED,
            call_id=call.id,
            name=spec.name,
            arguments=call.arguments,
        )
        if self.approvals is None:
            call.deny("no approval channel")
            _emit(sink, session, RenderKind.TOOL_DENIED, call_id=call.id, name=spec.name, reason="no approval channel")
            return ToolResult.failure(f"{DENIED_BY_USER} (no approval channel attached)", "permission_denied")

        try:
            approval = await race(self.approvals.request_approval(session.id, call), token)
        except Cancelled:
            call.deny("cancelled")
            _emit(sink, session, RenderKind.TOOL_DENIED, call_id=call.id, name=spec.name, reason="cancelled")
            return ToolResult.failure("Tool call cancelled while awaiting approval", "cancelled")

        if not approval.approved:
            call.deny(approval.reason or "denied by user")
            _emit(sink, session, RenderKind.TOOL_DENIED, call_id=call.id, name=spec.name, reason=call.denial_reason)
            return ToolResult.failure(DENIED_BY_USER, "permission_denied")

        call.transition(ToolCallStatus.APPROVED)
        if approval.remember:
            self.gate.grant_temporary(spec.name, call.arguments.get("command"))
        _emit(sink, session, RenderKind.TOOL_APPROVED, call_id=call.id, name=spec.name)
        return None

    async def _execute(
        self,
        session: Session,
        spec: ToolSpec,
        call: ToolCallBlock,
        args: Any,
        sink: RenderSink,
        token: CancellationToken,
    ) -> ToolResult:
        if call.id in self._running:
            raise InvalidTransitionError(call.id, call.status.value, ToolCallStatus.RUNNING.value)
        call.transition(ToolCallStatus.RUNNING)
        self._running.add(call.id)
        try:
            verdict = await self.hooks.before_execute(session, spec.name, call.arguments)
            if verdict.blocked:
                log.info("Hook blocked %s (%s): %s", spec.name, call.id, verdict.reason)
                _emit(sink, session, RenderKind.TOOL_DENIED, call_id=call.id, name=spec.name, reason=verdict.reason)
                call.transition(ToolCallStatus.FAILED)
                return ToolResult(ok=False, error=verdict.reason, code="blocked", warnings=verdict.warnings)
            _emit(sink, session, RenderKind.TOOL_EXECUTING, call_id=call.id, name=spec.name)
            started = time.monotonic()
            result = await self._invoke(session, spec, call, args, sink, token)
        finally:
            self._running.discard(call.id)

        if call.status is ToolCallStatus.CANCELLED:
            return result
        elapsed_ms = (time.monotonic() - started) * 1000
        result.warnings[:0] = verdict.warnings
        result.warnings.extend(await self.hooks.after_execute(session, spec.name, call.arguments, result, elapsed_ms))
        call.transition(ToolCallStatus.COMPLETED if result.ok else ToolCallStatus.FAILED)
        return result

    async def _invoke(
        self,
        session: Session,
        spec: ToolSpec,
        call: ToolCallBlock,
        args: Any,
        sink: RenderSink,
        token: CancellationToken,
    ) -> ToolResult:
        ctx = ToolContext(
            session=session,
            call_id=call.id,
            token=token.child(),
            config=self.config,
            sink=sink,
            orchestrator=self.orchestrator,
        )
        try:
            return await spec.executor(args, ctx)
        except Cancelled as e:
            log.debug("Tool %s (%s) cancelled: %s", spec.name, call.id, e.reason)
            call.transition(ToolCallStatus.CANCELLED)
            return ToolResult.failure("Tool call cancelled", "cancelled")
        except ToolError as e:
            return ToolResult(ok=False, error=str(e), code=e.code, warnings=list(e.warnings))
        except (InfrastructureError, FatalSessionError):
            call.transition(ToolCallStatus.FAILED)
            raise
        except Exception as e:
            log.exception("Tool %s raised", spec.name)
            message = f"{type(e).__name__}: {e}"
            return ToolResult.failure(message, classify_error_code(message))


def _emit(sink: RenderSink, session: Session, event_kind: RenderKind, /, **payload: Any) -> None:
    sink.emit(RenderEvent(event_kind, session.id, payload))
