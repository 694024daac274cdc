"""Sub-agent types: the built-in ``explore`` and ``build`` plus project-defined ones.

A project type is a YAML file in ``<project>/.codeloop/agents/``::

    id: review
    name: Review Agent
    system_prompt: Read the diff and list risky changes.
    tools: [read, grep, glob]
    max_iterations: 10
"""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path

import yaml

from codeloop.agents.schema import AgentType
from codeloop.config.paths import SHORT_NAME
from codeloop.logging import get_logger
from codeloop.prompts import BUILD_PROMPT, EXPLORE_PROMPT

log = get_logger("agents")

READ_ONLY_TOOLS = ["read", "list", "glob", "grep"]
BUILD_TOOLS = [*READ_ONLY_TOOLS, "write", "edit", "bash"]


def builtin_types() -> list[AgentType]:
    return [
        AgentType(id="explore", name="Explore Agent", system_prompt=EXPLORE_PROMPT, tools=list(READ_ONLY_TOOLS)),
        AgentType(id="build", name="Build Agent", system_prompt=BUILD_PROMPT, tools=list(BUILD_TOOLS)),
    ]


class AgentTypeRegistry:
    """Agent types by id. Registering an existing id replaces it."""

    def __init__(self, types: Iterable[AgentType] | None = None) -> None:
        self._types = {t.id: t for t in (builtin_types() if types is None else types)}

    def get(self, type_id: str) -> AgentType | None:
        return self._types.get(type_id)

    def require(self, type_id: str) -> AgentType:
        try:
            return self._types[type_id]
        except KeyError:
            raise KeyError(f"Unknown agent type: {type_id}") from None

    def register(self, agent_type: AgentType) -> None:
        self._types[agent_type.id] = agent_type

    def unregister(self, type_id: str) -> bool:
        return self._types.pop(type_id, None) is not None

    def list_types(self) -> list[AgentType]:
        return list(self._types.values())

    def load_from_directory(self, directory: Path) -> int:
        """Register every ``*.yaml`` type in ``directory``; returns how many loaded.

        Unreadable or invalid files are logged and skipped.
        """
        if not directory.is_dir():
            return 0
        loaded = 0
        for path in sorted(directory.glob("*.yaml")):
            try:
                data = yaml.safe_load(path.read_text(encoding="utf-8"))
                if not isinstance(data, dict):
                    log.warning("Skipping agent type file %s: not a mapping", path)
                    continue
                self.register(AgentType.from_dict(data))
            except (OSError, yaml.YAMLError, KeyError, TypeError) as e:
                log.warning("Skipping agent type file %s: %s", path, e)
                continue
            loaded += 1
        return loaded

    def load_project_types(self, project_root: Path) -> int:
        return self.load_from_directory(project_root / SHORT_NAME / "agents")
