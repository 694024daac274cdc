"""Streaming assembler: provider events -> one assistant Turn.

Deltas are forwarded to the render sink as they arrive and accumulated into
blocks. Tool-call arguments arrive as JSON fragments keyed by the provider's
call index; they are parsed only once the stream stops.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass, field
from typing import Any

from codeloop.core.llm.provider import (
    ProviderEvent,
    Role,
    Stop,
    StreamError,
    TextDelta,
    ThinkingDelta,
    ToolCallDelta,
    Usage,
)
from codeloop.errors import Cancelled, ProviderError
from codeloop.logging import get_logger
from codeloop.session.cancellation import CancellationToken, race
from codeloop.session.model import (
    TextBlock,
    ThinkingBlock,
    ToolCallBlock,
    ToolCallStatus,
    ToolResultBlock,
    Turn,
    TurnStatus,
    new_id,
)
from codeloop.session.render import RenderEvent, RenderKind, RenderSink

log = get_logger("assembler")

_END = object()


@dataclass
class _PartialCall:
    block: ToolCallBlock
    fragments: list[str] = field(default_factory=list)


async def _next_event(iterator: AsyncIterator[ProviderEvent]) -> Any:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _END


class StreamingAssembler:
    """Builds one assistant turn from one provider stream.

    Not reusable: create one per provider call.
    """

    def __init__(
        self,
        session_id: str,
        *,
        stream_timeout: float | None = None,
        existing_ids: Iterable[str] = (),
    ) -> None:
        self.session_id = session_id
        self.stream_timeout = stream_timeout
        self._used_ids = set(existing_ids)
        self._calls: dict[int, _PartialCall] = {}

    async def assemble(
        self,
        events: AsyncIterator[ProviderEvent],
        sink: RenderSink,
        token: CancellationToken,
        turn: Turn | None = None,
    ) -> Turn:
        """Consume ``events`` until Stop, end of stream, error or cancellation.

        The returned turn is always finalized. On a provider error the turn
        passed in is finalized as FAILED (partial blocks kept) and
        ``ProviderError`` is raised.
        """
        turn = turn if turn is not None else Turn(role=Role.ASSISTANT)
        iterator = events.__aiter__()
        try:
            while True:
                try:
                    event = await asyncio.wait_for(
                        race(_next_event(iterator), token), timeout=self.stream_timeout
                    )
                except Cancelled:
                    self._finish_calls(turn, sink, cancelled=True)
                    turn.stop_reason = "cancelled"
                    turn.finalize(TurnStatus.INTERRUPTED)
                    log.debug("Stream interrupted after %d blocks", len(turn.blocks))
                    return turn
                except asyncio.TimeoutError as e:
                    self._finish_calls(turn, sink, cancelled=True)
                    message = f"Provider stream stalled for {self.stream_timeout}s"
                    turn.finalize(TurnStatus.FAILED, error=message)
                    raise ProviderError(message, retryable=True) from e

                if event is _END:
                    self._finish_calls(turn, sink)
                    turn.stop_reason = turn.stop_reason or "end_of_stream"
                    turn.finalize(TurnStatus.COMPLETE)
                    return turn

                if isinstance(event, Stop):
                    self._finish_calls(turn, sink)
                    turn.stop_reason = event.reason
                    turn.finalize(TurnStatus.COMPLETE)
                    return turn

                if isinstance(event, StreamError):
                    self._finish_calls(turn, sink, cancelled=True)
                    turn.finalize(TurnStatus.FAILED, error=event.message)
                    raise ProviderError(
                        event.message, retryable=event.retryable, status_code=event.status_code
                    )

                self._apply(turn, event, sink)
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

    # -------------------------------------------------------------------------
    # Accumulation
    # -------------------------------------------------------------------------

    def _apply(self, turn: Turn, event: ProviderEvent, sink: RenderSink) -> None:
        if isinstance(event, TextDelta):
            if not event.text:
                return
            last = turn.blocks[-1] if turn.blocks else None
            if isinstance(last, TextBlock):
                last.text += event.text
            else:
                turn.blocks.append(TextBlock(event.text))
            self._emit(sink, RenderKind.TEXT_DELTA, text=event.text)
        elif isinstance(event, ThinkingDelta):
            if not event.text:
                return
            last = turn.blocks[-1] if turn.blocks else None
            if isinstance(last, ThinkingBlock):
                last.text += event.text
            else:
                turn.blocks.append(ThinkingBlock(event.text))
            self._emit(sink, RenderKind.THINKING_DELTA, text=event.text)
        elif isinstance(event, ToolCallDelta):
            self._apply_call_delta(turn, event, sink)
        elif isinstance(event, Usage):
            turn.usage = {
                "prompt_tokens": event.prompt_tokens,
                "completion_tokens": event.completion_tokens,
            }
            self._emit(sink, RenderKind.USAGE, **turn.usage)
        else:
            log.debug("Ignoring unknown provider event %r", event)

    def _apply_call_delta(self, turn: Turn, event: ToolCallDelta, sink: RenderSink) -> None:
        partial = self._calls.get(event.index)
        if partial is None:
            block = ToolCallBlock(id=self._claim_id(event.id), tool_name=event.name or "")
            partial = _PartialCall(block)
            self._calls[event.index] = partial
            turn.blocks.append(block)
            if block.tool_name:
                self._emit(sink, RenderKind.TOOL_CALL_START, call_id=block.id, name=block.tool_name)
        elif event.name and not partial.block.tool_name:
            partial.block.tool_name = event.name
            self._emit(sink, RenderKind.TOOL_CALL_START, call_id=partial.block.id, name=event.name)
        if event.partial_json:
            partial.fragments.append(event.partial_json)

    def _claim_id(self, provided: str | None) -> str:
        call_id = provided or new_id("call_")
        if call_id in self._used_ids:
            call_id = f"{call_id}_{new_id()[:6]}"
        self._used_ids.add(call_id)
        return call_id

    def _finish_calls(self, turn: Turn, sink: RenderSink, cancelled: bool = False) -> None:
        """Parse accumulated arguments; give rejected calls their result."""
        for partial in self._calls.values():
            block = partial.block
            if cancelled:
                block.transition(ToolCallStatus.CANCELLED)
                turn.blocks.append(
                    ToolResultBlock(call_id=block.id, ok=False, error="Tool call cancelled", code="cancelled")
                )
                continue

            raw = "".join(partial.fragments).strip()
            try:
                arguments = json.loads(raw) if raw else {}
                if not isinstance(arguments, dict):
                    raise ValueError(f"expected a JSON object, got {type(arguments).__name__}")
            except ValueError as e:
                reason = f"malformed arguments: {e}"
                log.debug("Tool call %s (%s): %s", block.id, block.tool_name, reason)
                block.deny(reason)
                turn.blocks.append(
                    ToolResultBlock(
                        call_id=block.id,
                        ok=False,
                        error=reason,
                        code="invalid_parameters",
                        metadata={"raw_arguments": raw[:500]},
                    )
                )
                self._emit(sink, RenderKind.TOOL_DENIED, call_id=block.id, name=block.tool_name, reason=reason)
                continue

            block.arguments = arguments
            self._emit(
                sink,
                RenderKind.TOOL_CALL_COMPLETE,
                call_id=block.id,
                name=block.tool_name,
                arguments=arguments,
            )
        self._calls.clear()

    def _emit(self, sink: RenderSink, event_kind: RenderKind, /, **payload: Any) -> None:
        sink.emit(RenderEvent(event_kind, self.session_id, payload))
