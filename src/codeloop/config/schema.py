"""Configuration schema dataclasses for codeloop.

Defines the structure of configuration at all levels (system, user, project).
All fields have defaults to support partial configs that merge together.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class LLMConfig:
    """LLM provider configuration."""

    model: str | None = None  # e.g., "claude-sonnet-4-20250514", "gpt-4o"
    summary_model: str | None = None  # Model for compression; defaults to `model`
    api_base: str | None = None  # Custom endpoint
    max_tokens: int = 8192
    temperature: float | None = None
    thinking_effort: str | None = None  # "low", "medium", "high"
    stream_timeout: float = 120.0  # Seconds without a chunk before giving up


@dataclass
class RetryConfig:
    """Backoff policy for transient provider failures.

    Example config.yaml:
        agent:
          retry:
            max_attempts: 5
            base_delay: 0.5
    """

    max_attempts: int = 3  # Total attempts including the first
    base_delay: float = 1.0  # Seconds before the first retry
    max_delay: float = 30.0  # Upper bound for a single backoff
    jitter: float = 0.1  # Fraction of the delay added at random


@dataclass
class AgentConfig:
    """Agent loop configuration."""

    max_iterations: int = 50  # Provider calls per run_turn
    max_output_chars: int = 30_000  # Tool output truncation threshold
    repeated_failure_threshold: int = 2
    exploration_soft_limit: int = 15  # Consecutive read-only calls before a warning
    exploration_hard_limit: int = 30  # Consecutive read-only calls before stopping
    render_buffer_size: int = 1024  # Pending render events before drop-oldest
    subagent_max_concurrency: int = 4  # N_max live children per tool call
    subagent_timeout: float | None = 600.0  # Seconds per child, None = unbounded
    subagent_retries: int = 1  # Extra attempts for a child that failed transiently
    subagent_max_iterations: int = 25
    bash_timeout_ms: int = 30_000
    bash_max_timeout_ms: int = 600_000
    kill_grace_period: float = 2.0  # Seconds between SIGTERM and SIGKILL
    summary_max_tokens: int = 2048
    retry: RetryConfig = field(default_factory=RetryConfig)


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str | None = None  # DEBUG, INFO, WARNING, ERROR
    verbose: int | None = None  # 0-4, overrides level
    file: str | None = None  # Log file path


@dataclass
class ShellPermissionConfig:
    """A shell permission rule.

    Pattern is matched against the full command line. An allow rule lets a
    Supervised session run the command without prompting; a deny rule
    always prompts.
    """

    pattern: str  # Glob pattern (e.g., "git status*", "pytest *")
    allow: bool = True


@dataclass
class SandboxConfig:
    """Approval shortcuts for Supervised sessions."""

    shell_permissions: list[ShellPermissionConfig] = field(default_factory=list)
    auto_approve_tools: list[str] = field(default_factory=list)  # Tool names never prompted


@dataclass
class CommandHookConfig:
    """A user hook: a shell command run around matching tool calls.

    The command reads the call as JSON on stdin. Exit code 0 continues,
    2 blocks the call with stderr as the reason (pre_tool hooks only) and
    any other code turns stderr into a warning on the result.

    Example config.yaml:
        hooks:
          pre_tool:
            - matcher: "bash|write"
              command: ./scripts/check-tool.sh
    """

    command: str
    matcher: str = ".*"  # Regex searched in the tool name
    timeout: float = 30.0


@dataclass
class HooksConfig:
    """Hooks run around tool execution."""

    safety: bool = True  # Refuse known-destructive shell commands
    pre_tool: list[CommandHookConfig] = field(default_factory=list)
    post_tool: list[CommandHookConfig] = field(default_factory=list)


@dataclass
class StorageConfig:
    """Session persistence configuration."""

    root: str | None = None  # Defaults to <user data dir>/sessions


@dataclass
class Config:
    """Root configuration object; every section has defaults, so any layer may be partial."""

    llm: LLMConfig = field(default_factory=LLMConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    sandbox: SandboxConfig = field(default_factory=SandboxConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    hooks: HooksConfig = field(default_factory=HooksConfig)

    # Top-level keys codeloop does not know, kept for embedding hosts
    extra: dict[str, Any] = field(default_factory=dict)
