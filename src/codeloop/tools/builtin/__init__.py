"""Built-in tools."""

from codeloop.plan.handler import PLAN_TOOLS
from codeloop.tools.builtin.agents import AGENT_TOOLS
from codeloop.tools.builtin.bash import BASH_TOOL
from codeloop.tools.builtin.files import FILE_TOOLS
from codeloop.tools.registry import ToolRegistry, ToolSpec


def builtin_tools() -> list[ToolSpec]:
    return [*FILE_TOOLS, BASH_TOOL, *AGENT_TOOLS, *PLAN_TOOLS]


def default_registry() -> ToolRegistry:
    """Registry with every built-in tool."""
    return ToolRegistry(builtin_tools())


__all__ = ["AGENT_TOOLS", "BASH_TOOL", "FILE_TOOLS", "PLAN_TOOLS", "builtin_tools", "default_registry"]
