"""LiteLLM provider implementation.

Supports 100+ LLM providers through litellm:
- Anthropic: "claude-sonnet-4-20250514"
- OpenAI: "gpt-4o"
- Local: "ollama/qwen2.5-coder"

litellm normalizes every backend to OpenAI-style chunks; this module maps
those chunks onto codeloop's provider events.
"""

from __future__ import annotations

import inspect
import json
from collections.abc import AsyncIterator
from typing import Any

import litellm

from codeloop.core.llm.provider import (
    CompletionResult,
    Message,
    ProviderEvent,
    Role,
    Stop,
    StreamConfig,
    StreamError,
    TextDelta,
    ThinkingDelta,
    ToolCallDelta,
    Usage,
)
from codeloop.core.llm.providers import get_api_key_for_model, get_model_config
from codeloop.errors import FatalSessionError, is_retryable_message, is_retryable_status
from codeloop.logging import get_logger

log = get_logger("llm")


async def _close_response(response: Any) -> None:
    """Release a streaming response's connection."""
    close = getattr(response, "aclose", None) or getattr(response, "close", None)
    if close is None:
        return
    try:
        result = close()
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        log.debug("Closing provider stream failed: %s", e)


def message_to_dict(message: Message) -> dict[str, Any]:
    """Convert a Message into the OpenAI chat format litellm expects."""
    if message.role is Role.TOOL:
        return {
            "role": "tool",
            "tool_call_id": message.tool_call_id,
            "content": message.content,
        }

    data: dict[str, Any] = {"role": message.role.value, "content": message.content}
    if message.tool_calls:
        data["content"] = message.content or None
        data["tool_calls"] = [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
            }
            for call in message.tool_calls
        ]
    return data


class LiteLLMProvider:
    """Provider client using litellm for multi-provider support.

    Usage:
        provider = LiteLLMProvider("claude-sonnet-4-20250514")
        provider = LiteLLMProvider("gpt-4o", api_base="http://localhost:8000/v1")
    """

    def __init__(
        self,
        model: str,
        *,
        api_key: str | None = None,
        api_base: str | None = None,
        timeout: float | None = 120.0,
        **kwargs: Any,
    ) -> None:
        self._model = model
        self._api_key = api_key or get_api_key_for_model(model)
        self._api_base = api_base
        self._timeout = timeout
        self._kwargs = kwargs

    @property
    def model(self) -> str:
        return self._model

    def _build_kwargs(
        self, messages: list[Message], config: StreamConfig, *, stream: bool
    ) -> dict[str, Any]:
        model = config.model or self._model
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": [message_to_dict(m) for m in messages],
            "max_tokens": config.max_tokens,
            "stream": stream,
            **self._kwargs,
        }
        if stream:
            kwargs["stream_options"] = {"include_usage": True}
        if config.tools:
            kwargs["tools"] = config.tools

        model_config = get_model_config(model)
        if config.temperature is not None:
            kwargs["temperature"] = config.temperature
        elif model_config and model_config.temperature is not None:
            kwargs["temperature"] = model_config.temperature

        if config.thinking_effort and (
            model_config is None or "thinking" in model_config.capabilities
        ):
            kwargs["reasoning_effort"] = config.thinking_effort

        api_key = self._api_key if model == self._model else get_api_key_for_model(model) or self._api_key
        if api_key:
            kwargs["api_key"] = api_key
        if self._api_base:
            kwargs["api_base"] = self._api_base
        if self._timeout is not None:
            kwargs["timeout"] = self._timeout
        return kwargs

    async def complete(self, messages: list[Message], config: StreamConfig) -> CompletionResult:
        """Generate a completion (non-streaming)."""
        kwargs = self._build_kwargs(messages, config, stream=False)
        try:
            response = await litellm.acompletion(**kwargs)
        except litellm.AuthenticationError as e:
            raise FatalSessionError(f"Authentication failed for {kwargs['model']}: {e}") from e

        usage = {}
        if response.usage:
            usage = {
                "prompt_tokens": response.usage.prompt_tokens,
                "completion_tokens": response.usage.completion_tokens,
                "total_tokens": response.usage.total_tokens,
            }

        return CompletionResult(
            content=response.choices[0].message.content or "",
            finish_reason=response.choices[0].finish_reason,
            usage=usage,
        )

    async def stream(self, messages: list[Message], config: StreamConfig) -> AsyncIterator[ProviderEvent]:
        """Generate a streaming completion as provider events.

        Transport failures are reported in-band as ``StreamError``;
        authentication failures raise ``FatalSessionError``. The underlying
        response is closed however iteration ends, including when the
        consumer stops early.
        """
        kwargs = self._build_kwargs(messages, config, stream=True)
        model = kwargs["model"]
        finish_reason: str | None = None
        response: Any = None

        try:
            response = await litellm.acompletion(**kwargs)
            async for chunk in response:
                usage = getattr(chunk, "usage", None)
                if usage and getattr(usage, "prompt_tokens", None) is not None:
                    yield Usage(
                        prompt_tokens=usage.prompt_tokens or 0,
                        completion_tokens=usage.completion_tokens or 0,
                    )

                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                delta = choice.delta
                if delta is not None:
                    reasoning = getattr(delta, "reasoning_content", None)
                    if reasoning:
                        yield ThinkingDelta(reasoning)
                    if delta.content:
                        yield TextDelta(delta.content)
                    for call in getattr(delta, "tool_calls", None) or []:
                        function = call.function
                        yield ToolCallDelta(
                            index=call.index or 0,
                            partial_json=(function.arguments or "") if function else "",
                            id=call.id,
                            name=function.name if function else None,
                        )
                if choice.finish_reason:
                    finish_reason = choice.finish_reason
        except litellm.AuthenticationError as e:
            raise FatalSessionError(f"Authentication failed for {model}: {e}") from e
        except Exception as e:
            status_code = getattr(e, "status_code", None)
            message = f"{type(e).__name__}: {e}"
            log.warning("Provider stream failed (%s): %s", model, message)
            yield StreamError(
                message=message,
                retryable=is_retryable_status(status_code) or is_retryable_message(message),
                status_code=status_code,
            )
            return
        finally:
            if response is not None:
                await _close_response(response)

        yield Stop(finish_reason or "stop")


def create_provider(model: str = "claude-sonnet-4-20250514", **kwargs: Any) -> LiteLLMProvider:
    """Create a provider with sensible defaults."""
    return LiteLLMProvider(model, **kwargs)
