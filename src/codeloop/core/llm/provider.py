"""Provider client protocol, conversation messages and stream events."""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, Union, runtime_checkable


class Role(Enum):
    """Message role in a provider conversation."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True, slots=True)
class ToolCallRequest:
    """A tool call as replayed to the provider in history."""

    id: str
    name: str
    arguments: dict[str, Any]


@dataclass(frozen=True, slots=True)
class Message:
    """A message in a provider conversation.

    Attributes:
        role: The role (system, user, assistant, tool)
        content: Text content
        tool_calls: Tool calls proposed by an assistant message
        tool_call_id: For TOOL messages, the call this result answers
        thinking: Reasoning text of an assistant message, if any
    """

    role: Role
    content: str
    tool_calls: tuple[ToolCallRequest, ...] = ()
    tool_call_id: str | None = None
    thinking: str | None = None


# =============================================================================
# Stream events
# =============================================================================


@dataclass(frozen=True, slots=True)
class TextDelta:
    text: str


@dataclass(frozen=True, slots=True)
class ThinkingDelta:
    text: str


@dataclass(frozen=True, slots=True)
class ToolCallDelta:
    """A fragment of a tool call.

    ``index`` identifies the call within the response; ``id`` and ``name``
    normally arrive only on the first fragment.
    """

    index: int
    partial_json: str = ""
    id: str | None = None
    name: str | None = None


@dataclass(frozen=True, slots=True)
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0


@dataclass(frozen=True, slots=True)
class Stop:
    reason: str = "stop"


@dataclass(frozen=True, slots=True)
class StreamError:
    """Provider-side failure reported in-band."""

    message: str
    retryable: bool = False
    status_code: int | None = None


ProviderEvent = Union[TextDelta, ThinkingDelta, ToolCallDelta, Usage, Stop, StreamError]


@dataclass(slots=True)
class StreamConfig:
    """Per-call options passed to the provider."""

    max_tokens: int = 8192
    temperature: float | None = None
    thinking_effort: str | None = None
    tools: list[dict[str, Any]] = field(default_factory=list)  # JSON-schema tool definitions
    model: str | None = None  # Overrides the client default for this call


@dataclass(slots=True)
class CompletionResult:
    """Result from a non-streaming completion."""

    content: str
    finish_reason: str | None = None
    usage: dict[str, int] = field(default_factory=dict)


@runtime_checkable
class ProviderClient(Protocol):
    """Protocol for AI providers.

    ``stream`` returns a lazy, finite, non-restartable event sequence. The
    consumer may stop iterating at any time (and call ``aclose``); the
    implementation must release its connection when that happens.
    """

    @property
    def model(self) -> str:
        """The model identifier being used."""
        ...

    def stream(self, messages: list[Message], config: StreamConfig) -> AsyncIterator[ProviderEvent]:
        ...

    async def complete(self, messages: list[Message], config: StreamConfig) -> CompletionResult:
        ...
