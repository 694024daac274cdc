"""Render events and sinks.

The sink is a view of the session, never its source of truth: emitting is
non-blocking, and a slow consumer loses the oldest pending events rather
than stalling the loop.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from codeloop.logging import get_logger

log = get_logger("render")


class RenderKind(Enum):
    """Types of render events emitted while a turn runs."""

    TEXT_DELTA = "text_delta"
    THINKING_DELTA = "thinking_delta"
    TOOL_CALL_START = "tool_call_start"
    TOOL_CALL_COMPLETE = "tool_call_complete"
    TOOL_APPROVAL_REQUIRED = "tool_approval_required"
    TOOL_APPROVED = "tool_approved"
    TOOL_DENIED = "tool_denied"
    TOOL_EXECUTING = "tool_executing"
    TOOL_OUTPUT_DELTA = "tool_output_delta"
    TOOL_RESULT = "tool_result"
    MODE_CHANGE = "mode_change"
    PLAN_UPDATE = "plan_update"
    PLAN_COMPLETE = "plan_complete"
    USAGE = "usage"
    RETRY = "retry"
    TURN_COMPLETE = "turn_complete"
    FINISHED = "finished"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class RenderEvent:
    """Transport-agnostic update for whatever front end is attached."""

    kind: RenderKind
    session_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


@runtime_checkable
class RenderSink(Protocol):
    def emit(self, event: RenderEvent) -> None:
        """Queue an event. Must not block."""
        ...


class NullSink:
    """Discards everything. Used for sub-agents nobody watches."""

    def emit(self, event: RenderEvent) -> None:
        pass


class QueueRenderSink:
    """Bounded drop-oldest buffer consumed with ``async for``.

    Iteration ends once ``close()`` has been called and the buffer is
    drained.
    """

    def __init__(self, maxsize: int = 1024) -> None:
        self._buffer: deque[RenderEvent] = deque()
        self._maxsize = max(1, maxsize)
        self._ready = asyncio.Event()
        self._closed = False
        self.dropped = 0

    def emit(self, event: RenderEvent) -> None:
        if self._closed:
            return
        if len(self._buffer) >= self._maxsize:
            self._buffer.popleft()
            self.dropped += 1
            if self.dropped == 1 or self.dropped % 100 == 0:
                log.debug("Render buffer full, %d events dropped so far", self.dropped)
        self._buffer.append(event)
        self._ready.set()

    def close(self) -> None:
        self._closed = True
        self._ready.set()

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._buffer)

    async def __aiter__(self) -> AsyncIterator[RenderEvent]:
        while True:
            while self._buffer:
                yield self._buffer.popleft()
            if self._closed:
                return
            self._ready.clear()
            await self._ready.wait()


class ForwardingSink:
    """Tags events from a nested session and forwards them to a parent sink."""

    def __init__(self, parent: RenderSink, **tags: Any) -> None:
        self._parent = parent
        self._tags = tags

    def emit(self, event: RenderEvent) -> None:
        self._parent.emit(
            RenderEvent(
                kind=event.kind,
                session_id=event.session_id,
                payload={**event.payload, **self._tags},
                timestamp=event.timestamp,
            )
        )
