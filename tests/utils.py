"""Shared test utilities for codeloop tests."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Callable, Iterable
from dataclasses import dataclass
from typing import Any

from codeloop.core.llm.provider import (
    CompletionResult,
    Message,
    ProviderEvent,
    Role,
    Stop,
    StreamConfig,
    TextDelta,
    ToolCallDelta,
)
from codeloop.session.render import RenderEvent, RenderKind


@dataclass(frozen=True)
class Pause:
    """Script step: sleep before the next event."""

    seconds: float


@dataclass(frozen=True)
class Block:
    """Script step: wait for an event that may never be set."""

    event: asyncio.Event


@dataclass(frozen=True)
class Raise:
    """Script step: raise from inside the stream."""

    error: BaseException


Script = list[Any]


def text_script(text: str, *, chunks: int = 1) -> Script:
    """A plain text answer, optionally split into several deltas."""
    if chunks <= 1:
        return [TextDelta(text), Stop("stop")]
    size = max(1, len(text) // chunks)
    parts = [text[i : i + size] for i in range(0, len(text), size)]
    return [*(TextDelta(p) for p in parts), Stop("stop")]


def call(name: str, call_id: str | None = None, **arguments: Any) -> tuple[str, str | None, dict[str, Any]]:
    return name, call_id, arguments


def tool_script(*calls: tuple[str, str | None, dict[str, Any]], text: str = "") -> Script:
    """An assistant response proposing the given tool calls.

    Arguments are split in two fragments to exercise reassembly.
    """
    events: Script = [TextDelta(text)] if text else []
    for index, (name, call_id, arguments) in enumerate(calls):
        raw = json.dumps(arguments)
        half = len(raw) // 2
        events.append(ToolCallDelta(index=index, id=call_id, name=name, partial_json=raw[:half]))
        events.append(ToolCallDelta(index=index, partial_json=raw[half:]))
    events.append(Stop("tool_calls"))
    return events


class ScriptedProvider:
    """Fake provider replaying one script per ``stream`` call.

    Either pass scripts in the order the calls will happen, or a
    ``responder`` that picks a script from the messages (for concurrent
    callers such as sub-agents). Once the scripts run out every call
    answers "done".

    Attributes:
        calls: Messages passed to each ``stream`` call.
        live: Streams currently being consumed.
        peak: Highest value ``live`` reached.
    """

    def __init__(
        self,
        *scripts: Script,
        responder: Callable[[list[Message]], Script] | None = None,
        completion: str = "## Goal\nSummary of the work so far.",
        model: str = "test-model",
    ) -> None:
        self.scripts = list(scripts)
        self.responder = responder
        self.completion = completion
        self._model = model
        self.calls: list[list[Message]] = []
        self.configs: list[StreamConfig] = []
        self.complete_calls: list[list[Message]] = []
        self.complete_configs: list[StreamConfig] = []
        self.live = 0
        self.peak = 0
        self.closed = 0

    @property
    def model(self) -> str:
        return self._model

    def stream(self, messages: list[Message], config: StreamConfig) -> AsyncIterator[ProviderEvent]:
        self.calls.append(list(messages))
        self.configs.append(config)
        if self.responder is not None:
            script = self.responder(list(messages))
        elif self.scripts:
            script = self.scripts.pop(0)
        else:
            script = text_script("done")
        return self._play(script)

    async def _play(self, script: Iterable[Any]) -> AsyncIterator[ProviderEvent]:
        self.live += 1
        self.peak = max(self.peak, self.live)
        try:
            for step in script:
                if isinstance(step, Pause):
                    await asyncio.sleep(step.seconds)
                elif isinstance(step, Block):
                    await step.event.wait()
                elif isinstance(step, Raise):
                    raise step.error
                else:
                    yield step
        finally:
            self.live -= 1
            self.closed += 1

    async def complete(self, messages: list[Message], config: StreamConfig) -> CompletionResult:
        self.complete_calls.append(list(messages))
        self.complete_configs.append(config)
        return CompletionResult(content=self.completion, finish_reason="stop")

    def last_tool_messages(self) -> list[Message]:
        """TOOL messages of the most recent ``stream`` call."""
        return [m for m in self.calls[-1] if m.role is Role.TOOL]


class CollectingSink:
    """Render sink that keeps every event."""

    def __init__(self) -> None:
        self.events: list[RenderEvent] = []

    def emit(self, event: RenderEvent) -> None:
        self.events.append(event)

    def kinds(self) -> list[RenderKind]:
        return [e.kind for e in self.events]

    def of(self, kind: RenderKind) -> list[RenderEvent]:
        return [e for e in self.events if e.kind is kind]


async def wait_for_async(coro, timeout: float = 1.0):
    """Wait for an async coroutine with a timeout.

    Raises:
        asyncio.TimeoutError: If timeout is exceeded
    """
    return await asyncio.wait_for(coro, timeout=timeout)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll until ``predicate()`` is true."""

    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(interval)

    await asyncio.wait_for(poll(), timeout=timeout)
