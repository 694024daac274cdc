"""Prompt texts shipped as markdown files beside this module.

``system`` is the main agent prompt, ``explore`` and ``build`` are the
sub-agent prompts and ``summarize`` instructs the context compressor.
"""

from importlib.resources import files

_PACKAGE = files(__name__)


def load_prompt(name: str) -> str:
    return _PACKAGE.joinpath(f"{name}.md").read_text(encoding="utf-8")


def list_prompts() -> list[str]:
    return sorted(entry.name.removesuffix(".md") for entry in _PACKAGE.iterdir() if entry.name.endswith(".md"))


SYSTEM_PROMPT = load_prompt("system")
EXPLORE_PROMPT = load_prompt("explore")
BUILD_PROMPT = load_prompt("build")
SUMMARIZE_PROMPT = load_prompt("summarize")

__all__ = [
    "BUILD_PROMPT",
    "EXPLORE_PROMPT",
    "SUMMARIZE_PROMPT",
    "SYSTEM_PROMPT",
    "list_prompts",
    "load_prompt",
]
