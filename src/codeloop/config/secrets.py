"""Provider API keys.

A key is looked up in the process environment first, then in dotenv files:
``.env.secrets`` in the working directory, then ``.env.secrets`` in the user
config directory, so one set of keys can serve every project.
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from dotenv import dotenv_values

from codeloop.config.paths import get_user_config_dir

SECRETS_FILE = ".env.secrets"


def secrets_files() -> list[Path]:
    """Candidate dotenv files, most specific first."""
    files = [Path(SECRETS_FILE)]
    user_dir = get_user_config_dir()
    if user_dir is not None:
        files.append(user_dir / SECRETS_FILE)
    return files


@lru_cache(maxsize=8)
def _read(path: Path) -> dict[str, str | None]:
    return dotenv_values(path) if path.is_file() else {}


def fetch_secret(key: str, default: str | None = None, secrets_path: Path | None = None) -> str | None:
    """Value of ``key``, or ``default`` when no source defines it.

    ``secrets_path`` replaces the file search with a single file.
    """
    value = os.environ.get(key)
    if value is not None:
        return value
    for path in [secrets_path] if secrets_path else secrets_files():
        found = _read(path.resolve()).get(key)
        if found is not None:
            return found
    return default


def clear_secret_cache() -> None:
    """Forget parsed dotenv files, e.g. after one was edited."""
    _read.cache_clear()
