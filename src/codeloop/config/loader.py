"""Reading, layering and caching configuration.

``load_config`` reads every YAML layer returned by ``get_config_paths``, puts
the environment on top, merges the lot and converts the result into the typed
``Config`` tree. The global (project-less) config is cached; ``reload_config``
rereads it and tells registered listeners.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

import yaml

from codeloop.config.merge import merge_configs
from codeloop.config.paths import get_config_paths
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

# Config is read before setup_logging runs, so handlers may not exist yet
_log = logging.getLogger("codeloop.config")

# Environment variable -> (section, key)
ENV_OVERRIDES = {
    "CODELOOP_LOG": ("logging", "file"),
    "CODELOOP_MODEL": ("llm", "model"),
}

_SECTIONS = ("llm", "agent", "logging", "sandbox", "storage", "hooks")

_cached_config: Config | None = None
_listeners: list[Callable[[Config], None]] = []


# =============================================================================
# Sources
# =============================================================================


def read_layer(path: Path) -> dict[str, Any]:
    """Mapping stored in the YAML file at ``path``.

    A missing, unreadable or malformed file contributes nothing. Problems
    other than a missing file are logged.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except OSError as e:
        _log.warning("Cannot read %s: %s", path, e)
        return {}
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        _log.warning("Invalid YAML in %s: %s", path, e)
        return {}
    if data is not None and not isinstance(data, dict):
        _log.warning("Ignoring %s: top level is not a mapping", path)
        return {}
    return data or {}


def environment_layer() -> dict[str, Any]:
    """Settings taken from ``ENV_OVERRIDES``. API keys are read by ``fetch_secret``."""
    layer: dict[str, Any] = {}
    for var, (section, key) in ENV_OVERRIDES.items():
        value = os.environ.get(var)
        if value:
            layer.setdefault(section, {})[key] = value
    return layer


# =============================================================================
# Conversion
# =============================================================================


def _fields_of(cls: type, data: Any, *skip: str) -> dict[str, Any]:
    """Keyword arguments for dataclass ``cls`` out of ``data``; unknown keys are dropped."""
    if not isinstance(data, dict):
        return {}
    known = cls.__dataclass_fields__
    return {k: v for k, v in data.items() if k in known and k not in skip}


def _sandbox(data: Any) -> SandboxConfig:
    data = data if isinstance(data, dict) else {}
    rules = [
        ShellPermissionConfig(pattern=rule["pattern"], allow=rule.get("allow", True))
        for rule in data.get("shell_permissions") or []
        if isinstance(rule, dict) and rule.get("pattern")
    ]
    tools = [name for name in data.get("auto_approve_tools") or [] if isinstance(name, str)]
    return SandboxConfig(shell_permissions=rules, auto_approve_tools=tools)


def _command_hooks(entries: Any) -> list[CommandHookConfig]:
    if not isinstance(entries, list):
        return []
    return [
        CommandHookConfig(**_fields_of(CommandHookConfig, entry))
        for entry in entries
        if isinstance(entry, dict) and entry.get("command")
    ]


def _hooks(data: Any) -> HooksConfig:
    data = data if isinstance(data, dict) else {}
    return HooksConfig(
        safety=bool(data.get("safety", True)),
        pre_tool=_command_hooks(data.get("pre_tool")),
        post_tool=_command_hooks(data.get("post_tool")),
    )


def dict_to_config(data: dict[str, Any]) -> Config:
    """Typed ``Config`` for a merged mapping; unknown top-level keys land in ``extra``."""
    agent_data = data.get("agent")
    retry = RetryConfig(**_fields_of(RetryConfig, (agent_data or {}).get("retry")))
    return Config(
        llm=LLMConfig(**_fields_of(LLMConfig, data.get("llm"))),
        agent=AgentConfig(**_fields_of(AgentConfig, agent_data, "retry"), retry=retry),
        logging=LoggingConfig(**_fields_of(LoggingConfig, data.get("logging"))),
        sandbox=_sandbox(data.get("sandbox")),
        storage=StorageConfig(**_fields_of(StorageConfig, data.get("storage"))),
        hooks=_hooks(data.get("hooks")),
        extra={k: v for k, v in data.items() if k not in _SECTIONS},
    )


# =============================================================================
# Loading and caching
# =============================================================================


def load_config(cwd: str | Path | None = None, reload: bool = False) -> Config:
    """Merged configuration, most specific source last.

    Sources from lowest to highest precedence: system file, user file, project
    file (``<cwd>/.codeloop/config.yaml``, only when ``cwd`` is given) and the
    environment. Only the project-less result is cached.
    """
    global _cached_config
    if cwd is None and _cached_config is not None and not reload:
        return _cached_config

    layers = []
    for path in get_config_paths(cwd):
        layer = read_layer(path)
        if layer:
            _log.debug("Loaded config layer %s", path)
            layers.append(layer)
    layers.append(environment_layer())

    config = dict_to_config(merge_configs(*layers))
    if cwd is None:
        _cached_config = config
    return config


def get_config() -> Config:
    return _cached_config if _cached_config is not None else load_config()


def reset_config() -> None:
    """Drop the cached global config."""
    global _cached_config
    _cached_config = None


def reload_config(cwd: str | Path | None = None) -> Config:
    """Reread configuration and pass it to every reload listener.

    A failing listener is logged and does not stop the others.
    """
    config = load_config(cwd=cwd, reload=True)
    for listener in list(_listeners):
        try:
            listener(config)
        except Exception:
            _log.exception("Config reload listener %r failed", listener)
    return config


def on_config_reload(callback: Callable[[Config], None]) -> Callable[[], None]:
    """Register ``callback`` for ``reload_config``; returns the unregister function."""
    _listeners.append(callback)

    def unregister() -> None:
        if callback in _listeners:
            _listeners.remove(callback)

    return unregister
