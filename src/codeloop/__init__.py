"""codeloop: agent orchestration core for interactive AI coding sessions."""

__version__ = "0.1.0"

# Public API
from codeloop.agents import AgentType, AgentTypeRegistry, SubAgentOrchestrator, SubAgentTask
from codeloop.compression import ContextCompressor
from codeloop.config import Config, get_config, load_config
from codeloop.core.llm import LiteLLMProvider, Message, ProviderClient, Role, create_provider
from codeloop.logging import get_logger, reset_logging, setup_logging
from codeloop.plan import Plan, Task, TaskStatus
from codeloop.session.cancellation import CancellationToken
from codeloop.session.hooks import CommandHook, HookResult, SafetyHook, ToolHooks
from codeloop.session.loop import RunResult, SessionLoop
from codeloop.session.model import PermissionMode, Session, Turn, TurnStatus, WorkMode
from codeloop.session.permissions import (
    Approval,
    ApprovalChannel,
    PermissionGate,
    QueueApprovalChannel,
    StaticApprovalChannel,
)
from codeloop.session.render import NullSink, QueueRenderSink, RenderEvent, RenderKind, RenderSink
from codeloop.session.session_manager import SessionManager
from codeloop.session.storage import InMemoryStorage, Storage, YamlSessionStorage
from codeloop.tools.builtin import default_registry
from codeloop.tools.registry import ToolClass, ToolRegistry, ToolSpec
from codeloop.tools.result import ToolResult

__all__ = [
    # Main entry points
    "SessionManager",
    "SessionLoop",
    "RunResult",
    # Config
    "Config",
    "load_config",
    "get_config",
    # Logging
    "setup_logging",
    "reset_logging",
    "get_logger",
    # Provider
    "ProviderClient",
    "LiteLLMProvider",
    "create_provider",
    "Message",
    "Role",
    # Session
    "Session",
    "Turn",
    "TurnStatus",
    "PermissionMode",
    "WorkMode",
    "CancellationToken",
    # Storage
    "Storage",
    "YamlSessionStorage",
    "InMemoryStorage",
    # Rendering
    "RenderEvent",
    "RenderKind",
    "RenderSink",
    "QueueRenderSink",
    "NullSink",
    # Approvals
    "Approval",
    "ApprovalChannel",
    "PermissionGate",
    "QueueApprovalChannel",
    "StaticApprovalChannel",
    # Hooks
    "ToolHooks",
    "HookResult",
    "SafetyHook",
    "CommandHook",
    # Tools
    "ToolClass",
    "ToolRegistry",
    "ToolResult",
    "ToolSpec",
    "default_registry",
    # Plan
    "Plan",
    "Task",
    "TaskStatus",
    # Sub-agents and compression
    "AgentType",
    "AgentTypeRegistry",
    "SubAgentOrchestrator",
    "SubAgentTask",
    "ContextCompressor",
]
