"""Tests for the configuration module."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

from codeloop.config import (
    Config,
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
    get_project_config_path,
    get_system_config_path,
    get_user_config_path,
)


class TestDeepMerge:
    """Test the deep merge algorithm."""

    def test_simple_override(self) -> None:
        base = {"a": 1, "b": 2}
        override = {"b": 3, "c": 4}
        assert deep_merge(base, override) == {"a": 1, "b": 3, "c": 4}

    def test_nested_merge(self) -> None:
        """Test that nested dicts are recursively merged."""
        base = {"llm": {"model": "gpt-4o", "temperature": 0.5}}
        override = {"llm": {"temperature": 0.0}}
        result = deep_merge(base, override)
        assert result["llm"]["model"] == "gpt-4o"
        assert result["llm"]["temperature"] == 0.0

    def test_none_does_not_override(self) -> None:
        assert deep_merge({"a": 1}, {"a": None})["a"] == 1

    def test_list_replaced_not_merged(self) -> None:
        base = {"items": [1, 2, 3]}
        override = {"items": [4, 5]}
        assert deep_merge(base, override)["items"] == [4, 5]

    def test_inputs_not_modified(self) -> None:
        base = {"a": {"b": 1}}
        override = {"a": {"b": 2}}
        deep_merge(base, override)
        assert base == {"a": {"b": 1}}

    def test_merge_configs_multiple(self) -> None:
        """Test merging multiple configs in order."""
        result = merge_configs({"a": 1, "b": 2}, {"b": 3}, {"c": 4})
        assert result == {"a": 1, "b": 3, "c": 4}

    def test_project_shell_rules_come_first(self) -> None:
        user = {"sandbox": {"shell_permissions": [{"pattern": "git *", "allow": True}]}}
        project = {"sandbox": {"shell_permissions": [{"pattern": "git push*", "allow": False}]}}

        rules = merge_configs(user, project)["sandbox"]["shell_permissions"]

        assert [r["pattern"] for r in rules] == ["git push*", "git *"]

    def test_auto_approved_tools_accumulate(self) -> None:
        result = merge_configs(
            {"sandbox": {"auto_approve_tools": ["write", "edit"]}},
            {"sandbox": {"auto_approve_tools": ["edit", "bash"]}},
        )
        assert result["sandbox"]["auto_approve_tools"] == ["write", "edit", "bash"]


class TestConfigPaths:
    """Test platform-aware path resolution."""

    def test_windows_system_path(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(sys, "platform", "win32")
        monkeypatch.setenv("PROGRAMDATA", "C:\\ProgramData")

        path = get_system_config_path()
        assert path is not None
        assert "ProgramData" in str(path)
        assert "codeloop" in str(path)

    def test_unix_system_path(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(sys, "platform", "linux")
        assert get_system_config_path() == Path("/etc/codeloop/config.yaml")

    def test_unix_user_path_xdg(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test user config path respects XDG_CONFIG_HOME."""
        monkeypatch.setattr(sys, "platform", "linux")
        monkeypatch.setenv("XDG_CONFIG_HOME", "/home/test/.config-custom")

        path = get_user_config_path()
        assert path == Path("/home/test/.config-custom/codeloop/config.yaml")

    def test_project_config_path(self) -> None:
        path = get_project_config_path("/home/user/myproject")
        assert path == Path("/home/user/myproject/.codeloop/config.yaml")

    def test_get_config_paths_order(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that config paths are in correct order."""
        monkeypatch.setattr(sys, "platform", "linux")
        monkeypatch.setenv("XDG_CONFIG_HOME", "/home/test/.config")

        paths = get_config_paths("/project")
        assert len(paths) == 3
        assert "etc" in paths[0].parts
        assert ".config" in paths[1].parts
        assert paths[2] == Path("/project/.codeloop/config.yaml")


class TestDictToConfig:
    def test_defaults(self) -> None:
        config = dict_to_config({})
        assert config.agent.subagent_max_concurrency == 4
        assert config.agent.kill_grace_period == 2.0
        assert config.agent.retry.max_attempts == 3
        assert config.sandbox.shell_permissions == []

    def test_nested_sections(self) -> None:
        config = dict_to_config(
            {
                "llm": {"model": "gpt-4o", "stream_timeout": 30},
                "agent": {"max_iterations": 7, "retry": {"base_delay": 0.25}},
                "sandbox": {
                    "shell_permissions": [
                        {"pattern": "git status*", "allow": True},
                        {"pattern": "rm *", "allow": False},
                        {"allow": True},
                    ],
                    "auto_approve_tools": ["write", 3],
                },
            }
        )
        assert config.llm.model == "gpt-4o"
        assert config.llm.stream_timeout == 30
        assert config.agent.max_iterations == 7
        assert config.agent.retry.base_delay == 0.25
        assert [(p.pattern, p.allow) for p in config.sandbox.shell_permissions] == [
            ("git status*", True),
            ("rm *", False),
        ]
        assert config.sandbox.auto_approve_tools == ["write"]

    def test_hooks_section(self) -> None:
        config = dict_to_config(
            {
                "hooks": {
                    "safety": False,
                    "pre_tool": [
                        {"matcher": "bash", "command": "./check.sh", "timeout": 5},
                        {"matcher": "write"},
                    ],
                    "post_tool": [{"command": "./audit.sh"}],
                }
            }
        )
        assert config.hooks.safety is False
        [check] = config.hooks.pre_tool
        assert (check.matcher, check.command, check.timeout) == ("bash", "./check.sh", 5)
        [audit] = config.hooks.post_tool
        assert (audit.matcher, audit.timeout) == (".*", 30.0)
        assert dict_to_config({}).hooks.safety is True

    def test_unknown_keys_dropped_from_sections(self) -> None:
        config = dict_to_config({"agent": {"max_iterations": 3, "bogus": True}})
        assert config.agent.max_iterations == 3
        assert not hasattr(config.agent, "bogus")


class TestConfigLoading:
    """Test configuration loading."""

    @pytest.fixture
    def temp_config_dir(self, tmp_path: Path) -> Path:
        config_dir = tmp_path / ".codeloop"
        config_dir.mkdir()
        return config_dir

    def test_load_yaml_config(self, temp_config_dir: Path) -> None:
        (temp_config_dir / "config.yaml").write_text(
            """
llm:
  model: claude-sonnet-4-20250514
agent:
  subagent_max_concurrency: 2
"""
        )
        config = load_config(cwd=str(temp_config_dir.parent))
        assert config.llm.model == "claude-sonnet-4-20250514"
        assert config.agent.subagent_max_concurrency == 2

    def test_env_overrides_project_config(
        self, temp_config_dir: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        (temp_config_dir / "config.yaml").write_text("llm:\n  model: from-file\n")
        monkeypatch.setenv("CODELOOP_MODEL", "from-env")

        config = load_config(cwd=str(temp_config_dir.parent))
        assert config.llm.model == "from-env"

    def test_invalid_yaml_uses_defaults(self, temp_config_dir: Path) -> None:
        (temp_config_dir / "config.yaml").write_text("invalid: yaml: :")

        config = load_config(cwd=str(temp_config_dir.parent))
        assert config.llm.model is None

    def test_missing_file_uses_defaults(self, tmp_path: Path) -> None:
        config = load_config(cwd=str(tmp_path))
        assert isinstance(config, Config)
        assert config.agent.max_iterations == 50

    def test_extra_fields_preserved(self, temp_config_dir: Path) -> None:
        """Test that unknown config sections are preserved in extra."""
        (temp_config_dir / "config.yaml").write_text(
            """
custom_field: custom_value
nested:
  field: value
"""
        )
        config = load_config(cwd=str(temp_config_dir.parent))
        assert config.extra["custom_field"] == "custom_value"
        assert config.extra["nested"]["field"] == "value"

    def test_log_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CODELOOP_LOG", "/tmp/codeloop-test.log")

        config = load_config()
        assert config.logging.file == "/tmp/codeloop-test.log"


class TestSecrets:
    def test_env_wins(self, monkeypatch: pytest.MonkeyPatch) -> None:
        from codeloop.config import clear_secret_cache, fetch_secret

        clear_secret_cache()
        monkeypatch.setenv("ANTHROPIC_API_KEY", "test-key")
        assert fetch_secret("ANTHROPIC_API_KEY") == "test-key"

    def test_secrets_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        from codeloop.config import clear_secret_cache, fetch_secret

        clear_secret_cache()
        monkeypatch.delenv("CODELOOP_TEST_SECRET", raising=False)
        secrets = tmp_path / ".env.secrets"
        secrets.write_text("CODELOOP_TEST_SECRET=from-file\n")

        assert fetch_secret("CODELOOP_TEST_SECRET", secrets_path=secrets) == "from-file"
        clear_secret_cache()

    def test_default(self, monkeypatch: pytest.MonkeyPatch) -> None:
        from codeloop.config import clear_secret_cache, fetch_secret

        clear_secret_cache()
        monkeypatch.delenv("CODELOOP_MISSING_SECRET", raising=False)
        assert fetch_secret("CODELOOP_MISSING_SECRET", default="fallback", secrets_path=Path("/nonexistent")) == "fallback"

    def test_project_file_before_user_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        from codeloop.config import clear_secret_cache, fetch_secret

        project = tmp_path / "project"
        project.mkdir()
        user_dir = tmp_path / "xdg" / "codeloop"
        user_dir.mkdir(parents=True)
        (user_dir / ".env.secrets").write_text("CODELOOP_A=user\nCODELOOP_B=user\n")
        (project / ".env.secrets").write_text("CODELOOP_A=project\n")
        monkeypatch.setattr(sys, "platform", "linux")
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
        monkeypatch.chdir(project)
        monkeypatch.delenv("CODELOOP_A", raising=False)
        monkeypatch.delenv("CODELOOP_B", raising=False)
        clear_secret_cache()

        assert fetch_secret("CODELOOP_A") == "project"
        assert fetch_secret("CODELOOP_B") == "user"
        clear_secret_cache()


class TestConfigCaching:
    """Test config caching behavior."""

    def test_get_config_caches(self) -> None:
        assert get_config() is get_config()

    def test_reset_clears_cache(self) -> None:
        config1 = get_config()
        reset_config()
        assert get_config() is not config1

    def test_project_config_not_cached(self, tmp_path: Path) -> None:
        project_config = load_config(cwd=str(tmp_path))
        assert project_config is not get_config()

    def test_reload_notifies_callbacks(self) -> None:
        seen: list[Config] = []
        unregister = on_config_reload(seen.append)
        try:
            config = reload_config()
        finally:
            unregister()
        assert seen == [config]

        reload_config()
        assert len(seen) == 1
