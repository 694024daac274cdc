"""Configuration management for codeloop.

Provides hierarchical YAML-based configuration with:
- System-level config (/etc/codeloop/ or %PROGRAMDATA%)
- User-level config (~/.config/codeloop/ or %APPDATA%)
- Project-level config ($cwd/.codeloop/)
- Environment variable overrides (highest priority)

Example usage:
    from codeloop.config import load_config

    config = load_config(cwd="/path/to/project")
    print(config.agent.subagent_max_concurrency)
"""

from codeloop.config.loader import (
    dict_to_config,
    get_config,
    load_config,
    on_config_reload,
    reload_config,
    reset_config,
)
from codeloop.config.merge import deep_merge, merge_configs
from codeloop.config.paths import (
    get_config_paths,
    get_default_storage_root,
    get_project_config_path,
    get_system_config_path,
    get_user_config_path,
)
from codeloop.config.schema import (
    AgentConfig,
    CommandHookConfig,
    Config,
    HooksConfig,
    LLMConfig,
    LoggingConfig,
    RetryConfig,
    SandboxConfig,
    ShellPermissionConfig,
    StorageConfig,
)
from codeloop.config.secrets import clear_secret_cache, fetch_secret

__all__ = [
    # Main API
    "Config",
    "load_config",
    "get_config",
    "reload_config",
    "reset_config",
    "on_config_reload",
    "dict_to_config",
    "deep_merge",
    "merge_configs",
    # Schema types
    "AgentConfig",
    "CommandHookConfig",
    "HooksConfig",
    "LLMConfig",
    "LoggingConfig",
    "RetryConfig",
    "SandboxConfig",
    "ShellPermissionConfig",
    "StorageConfig",
    # Secrets
    "fetch_secret",
    "clear_secret_cache",
    # Paths
    "get_config_paths",
    "get_default_storage_root",
    "get_system_config_path",
    "get_user_config_path",
    "get_project_config_path",
]
