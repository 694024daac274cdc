"""Root pytest configuration for all tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from codeloop.config import reset_config
from codeloop.config.schema import AgentConfig, Config, RetryConfig
from codeloop.session.model import Session

# Configure pytest-asyncio to use auto mode
# This is redundant with pyproject.toml but ensures it's set
pytest_plugins = ("pytest_asyncio",)


@pytest.fixture(scope="session")
def anyio_backend():
    """Set anyio backend to asyncio."""
    return "asyncio"


@pytest.fixture(autouse=True)
def _fresh_config():
    """Never leak a cached global config between tests."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """A small project tree to point sessions at."""
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.py").write_text("def main():\n    return 'hello'\n")
    (tmp_path / "src" / "util.py").write_text("VALUE = 42\n")
    (tmp_path / "README.md").write_text("# Demo\n")
    return tmp_path


@pytest.fixture
def config() -> Config:
    """Config with fast retries so failure paths don't sleep."""
    return Config(
        agent=AgentConfig(
            retry=RetryConfig(max_attempts=3, base_delay=0.001, max_delay=0.01, jitter=0.0),
            subagent_timeout=5.0,
        )
    )


@pytest.fixture
def session(workspace: Path) -> Session:
    return Session.new(cwd=str(workspace), model="test-model")
