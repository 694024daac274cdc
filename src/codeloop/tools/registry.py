"""Tool registry: name -> argument model, classification and executor.

The registry is built once and never mutated; lookups need no locking and
one instance can be shared by every session. Sub-agents get their own
narrower registry via ``subset``.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable, Iterator
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ValidationError

from codeloop.config.schema import AgentConfig
from codeloop.errors import ToolError
from codeloop.session.cancellation import CancellationToken
from codeloop.session.render import NullSink, RenderEvent, RenderKind, RenderSink
from codeloop.tools.result import ToolResult

if TYPE_CHECKING:
    from codeloop.agents.orchestrator import SubAgentOrchestrator
    from codeloop.session.model import Session


class ToolClass(Enum):
    """How a tool is gated.

    READ_ONLY tools never need approval and run in Plan mode. MUTATING
    tools need approval in Supervised mode and are refused in Plan mode.
    CONTROL tools edit session state (plan, work mode) only; they never
    need approval and run in Plan mode.
    """

    READ_ONLY = "read_only"
    MUTATING = "mutating"
    CONTROL = "control"


@dataclass
class ToolContext:
    """Everything an executor may touch while it runs."""

    session: Session
    call_id: str
    token: CancellationToken
    config: AgentConfig = field(default_factory=AgentConfig)
    sink: RenderSink = field(default_factory=NullSink)
    orchestrator: SubAgentOrchestrator | None = None

    @property
    def cwd(self) -> Path:
        return Path(self.session.cwd)

    def resolve_path(self, path: str) -> Path:
        """Resolve ``path`` against the session cwd, refusing escapes."""
        root = self.cwd.resolve()
        candidate = Path(path).expanduser()
        resolved = (candidate if candidate.is_absolute() else root / candidate).resolve()
        if resolved != root and root not in resolved.parents:
            raise ToolError(f"Access denied: '{path}' is outside workspace {root}", code="access_denied")
        return resolved

    def emit(self, kind: RenderKind, **payload: Any) -> None:
        self.sink.emit(RenderEvent(kind, self.session.id, {"call_id": self.call_id, **payload}))

    def emit_output(self, text: str) -> None:
        """Stream incremental tool output to the front end."""
        self.emit(RenderKind.TOOL_OUTPUT_DELTA, text=text)


Executor = Callable[[Any, ToolContext], Awaitable[ToolResult]]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    args_model: type[BaseModel]
    classification: ToolClass
    executor: Executor
    parallel: bool = False  # Safe to run concurrently with neighbouring parallel calls

    @property
    def schema(self) -> dict[str, Any]:
        return self.args_model.model_json_schema()

    def definition(self) -> dict[str, Any]:
        """Function-tool definition in the shape providers accept."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.schema,
            },
        }

    def validate(self, arguments: dict[str, Any]) -> BaseModel:
        return self.args_model.model_validate(arguments)

    async def execute(self, arguments: dict[str, Any], ctx: ToolContext) -> ToolResult:
        """Validate ``arguments`` and run the executor.

        Raises:
            ToolError: The arguments do not match ``args_model``, or the
                executor failed.
        """
        try:
            args = self.validate(arguments)
        except ValidationError as e:
            raise ToolError(format_validation_error(e), code="invalid_parameters") from e
        return await self.executor(args, ctx)


def format_validation_error(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        loc = ".".join(str(p) for p in item.get("loc", ())) or "arguments"
        parts.append(f"{loc}: {item.get('msg', 'invalid')}")
    return "Invalid parameters: " + "; ".join(parts)


class ToolRegistry:
    """Immutable catalog of tools."""

    def __init__(self, specs: Iterable[ToolSpec] = ()) -> None:
        tools: dict[str, ToolSpec] = {}
        for spec in specs:
            if spec.name in tools:
                raise ValueError(f"Duplicate tool name: {spec.name}")
            tools[spec.name] = spec
        self._tools = MappingProxyType(tools)

    def lookup(self, name: str) -> ToolSpec | None:
        return self._tools.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[ToolSpec]:
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)

    def names(self) -> list[str]:
        return list(self._tools)

    def definitions(self) -> list[dict[str, Any]]:
        return [spec.definition() for spec in self._tools.values()]

    def subset(self, names: Iterable[str]) -> ToolRegistry:
        """A new registry holding only the named tools that exist here."""
        return ToolRegistry(self._tools[n] for n in names if n in self._tools)

    def without(self, names: Iterable[str]) -> ToolRegistry:
        excluded = set(names)
        return ToolRegistry(s for s in self._tools.values() if s.name not in excluded)

    def extended(self, specs: Iterable[ToolSpec]) -> ToolRegistry:
        return ToolRegistry([*self._tools.values(), *specs])
