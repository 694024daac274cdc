"""Where codeloop looks for configuration and keeps its data.

=========  =================================  ==================================
layer      Windows                            elsewhere
=========  =================================  ==================================
system     %PROGRAMDATA%/codeloop             /etc/codeloop
user       %APPDATA%/codeloop                 $XDG_CONFIG_HOME/codeloop,
                                              ~/.config/codeloop or ~/.codeloop
project    <cwd>/.codeloop                    <cwd>/.codeloop
=========  =================================  ==================================
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

APP_NAME = "codeloop"
SHORT_NAME = ".codeloop"
CONFIG_FILENAME = "config.yaml"


def _windows() -> bool:
    return sys.platform == "win32"


def _env_dir(var: str) -> Path | None:
    value = os.environ.get(var)
    return Path(value) / APP_NAME if value else None


def get_system_config_path() -> Path | None:
    """System-wide config file; None on Windows without %PROGRAMDATA%."""
    if _windows():
        base = _env_dir("PROGRAMDATA")
        return base / CONFIG_FILENAME if base else None
    return Path("/etc") / APP_NAME / CONFIG_FILENAME


def get_user_config_dir() -> Path | None:
    if _windows():
        return _env_dir("APPDATA")
    xdg = _env_dir("XDG_CONFIG_HOME")
    if xdg is not None:
        return xdg
    dot_config = Path.home() / ".config"
    return dot_config / APP_NAME if dot_config.is_dir() else Path.home() / SHORT_NAME


def get_user_config_path() -> Path | None:
    user_dir = get_user_config_dir()
    return user_dir / CONFIG_FILENAME if user_dir is not None else None


def get_project_config_path(cwd: str | Path) -> Path:
    return Path(cwd) / SHORT_NAME / CONFIG_FILENAME


def get_config_paths(cwd: str | Path | None = None) -> list[Path]:
    """Config files from least to most specific; none of them need exist."""
    candidates = [get_system_config_path(), get_user_config_path()]
    if cwd:
        candidates.append(get_project_config_path(cwd))
    return [path for path in candidates if path is not None]


def get_default_storage_root() -> Path:
    """Directory holding persisted sessions when none is configured."""
    data_home = None if _windows() else _env_dir("XDG_DATA_HOME")
    if data_home is not None:
        return data_home / "sessions"
    return (get_user_config_dir() or Path.home() / SHORT_NAME) / "sessions"
