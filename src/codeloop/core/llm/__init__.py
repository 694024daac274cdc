"""Provider client abstraction."""

from codeloop.core.llm.litellm_provider import LiteLLMProvider, create_provider
from codeloop.core.llm.provider import (
    CompletionResult,
    Message,
    ProviderClient,
    ProviderEvent,
    Role,
    Stop,
    StreamConfig,
    StreamError,
    TextDelta,
    ThinkingDelta,
    ToolCallDelta,
    ToolCallRequest,
    Usage,
)
from codeloop.core.llm.providers import (
    ModelConfig,
    ProviderConfig,
    get_available_providers,
    get_context_length,
    get_default_model,
    get_model_config,
)

__all__ = [
    # Protocol and implementation
    "ProviderClient",
    "LiteLLMProvider",
    "create_provider",
    # Messages
    "Message",
    "Role",
    "ToolCallRequest",
    "StreamConfig",
    "CompletionResult",
    # Events
    "ProviderEvent",
    "TextDelta",
    "ThinkingDelta",
    "ToolCallDelta",
    "Usage",
    "Stop",
    "StreamError",
    # Catalog
    "ModelConfig",
    "ProviderConfig",
    "get_available_providers",
    "get_context_length",
    "get_default_model",
    "get_model_config",
]
