"""Local shell execution."""

from codeloop.terminal.result import ShellResult
from codeloop.terminal.subprocess_executor import SubprocessTerminalExecutor

__all__ = [
    "ShellResult",
    "SubprocessTerminalExecutor",
]
