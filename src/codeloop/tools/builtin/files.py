"""File tools: read, list, glob, grep, write, edit."""

from __future__ import annotations

import asyncio
import difflib
import fnmatch
import os
import re
from pathlib import Path

from pydantic import BaseModel, Field

from codeloop.errors import ToolError
from codeloop.tools.registry import ToolClass, ToolContext, ToolSpec
from codeloop.tools.result import ToolResult

MAX_LINE_CHARS = 2000
MAX_LISTING = 500
SKIP_DIRS = {".git", "node_modules", "__pycache__", ".venv", "venv", ".mypy_cache", ".pytest_cache"}


def _rel(ctx: ToolContext, path: Path) -> str:
    try:
        return str(path.relative_to(ctx.cwd.resolve()))
    except ValueError:
        return str(path)


# =============================================================================
# read
# =============================================================================


class ReadArgs(BaseModel):
    path: str = Field(description="File path, relative to the working directory")
    offset: int = Field(1, ge=1, description="First line to return (1-based)")
    limit: int = Field(2000, ge=1, le=20_000, description="Maximum number of lines")


def _read_lines(path: Path, offset: int, limit: int) -> tuple[str, int]:
    if not path.exists():
        raise ToolError(f"File not found: {path}")
    if path.is_dir():
        raise ToolError(f"Is a directory, use list instead: {path}")
    with open(path, encoding="utf-8", errors="replace") as f:
        lines = f.read().splitlines()
    selected = lines[offset - 1 : offset - 1 + limit]
    rendered = []
    for number, line in enumerate(selected, start=offset):
        if len(line) > MAX_LINE_CHARS:
            line = line[:MAX_LINE_CHARS] + " [line truncated]"
        rendered.append(f"{number:>6}\t{line}")
    return "\n".join(rendered), len(lines)


async def read_file(args: ReadArgs, ctx: ToolContext) -> ToolResult:
    path = ctx.resolve_path(args.path)
    try:
        text, total = await asyncio.to_thread(_read_lines, path, args.offset, args.limit)
    except OSError as e:
        raise ToolError(f"Cannot read {args.path}: {e}") from e
    result = ToolResult.success(text, path=_rel(ctx, path), total_lines=total)
    if args.offset - 1 + args.limit < total:
        result.warnings.append(
            f"Showing lines {args.offset}-{args.offset + args.limit - 1} of {total}; use offset to read more"
        )
    return result


# =============================================================================
# list
# =============================================================================


class ListArgs(BaseModel):
    path: str = Field(".", description="Directory to list")


def _list_dir(path: Path) -> list[str]:
    if not path.is_dir():
        raise ToolError(f"Not a directory: {path}")
    entries = sorted(path.iterdir(), key=lambda p: (not p.is_dir(), p.name.lower()))
    return [f"{p.name}/" if p.is_dir() else p.name for p in entries]


async def list_dir(args: ListArgs, ctx: ToolContext) -> ToolResult:
    path = ctx.resolve_path(args.path)
    try:
        entries = await asyncio.to_thread(_list_dir, path)
    except OSError as e:
        raise ToolError(f"Cannot list {args.path}: {e}") from e
    result = ToolResult.success("\n".join(entries[:MAX_LISTING]) or "(empty)", count=len(entries))
    if len(entries) > MAX_LISTING:
        result.warnings.append(f"{len(entries) - MAX_LISTING} more entries not shown")
    return result


# =============================================================================
# glob
# =============================================================================


class GlobArgs(BaseModel):
    pattern: str = Field(description="Glob pattern, e.g. 'src/**/*.py'")
    path: str = Field(".", description="Directory to search from")


def _inside(path: Path, workspace: Path) -> bool:
    resolved = path.resolve()
    return resolved == workspace or workspace in resolved.parents


def _glob(root: Path, pattern: str, workspace: Path) -> list[Path]:
    """Files matching ``pattern`` under ``root``.

    Matches are resolved first; any that land outside ``workspace``
    (through ``..`` segments or symlinks) are dropped.
    """
    matches = set()
    for p in root.glob(pattern):
        if not p.is_file() or not _inside(p, workspace):
            continue
        resolved = p.resolve()
        if not SKIP_DIRS.intersection(resolved.relative_to(workspace).parts):
            matches.add(resolved)
    return sorted(matches)


async def glob_files(args: GlobArgs, ctx: ToolContext) -> ToolResult:
    root = ctx.resolve_path(args.path)
    try:
        matches = await asyncio.to_thread(_glob, root, args.pattern, ctx.cwd.resolve())
    except (OSError, ValueError, NotImplementedError) as e:

        raise ToolError(f"Glob failed for '{args.pattern}': {e}") from e
    if not matches:
        return ToolResult.success("No files found", count=0)
    lines = [_rel(ctx, p) for p in matches[:MAX_LISTING]]
    result = ToolResult.success("\n".join(lines), count=len(matches))
    if len(matches) > MAX_LISTING:
        result.warnings.append(f"{len(matches) - MAX_LISTING} more matches not shown")
    return result


# =============================================================================
# grep
# =============================================================================


class GrepArgs(BaseModel):
    pattern: str = Field(description="Regular expression to search for")
    path: str = Field(".", description="File or directory to search")
    include: str | None = Field(None, description="Only search files matching this glob, e.g. '*.py'")
    ignore_case: bool = False
    max_results: int = Field(200, ge=1, le=5000)


def _grep(
    root: Path, regex: re.Pattern[str], include: str | None, max_results: int, workspace: Path
) -> tuple[list[tuple[Path, int, str]], bool]:
    files: list[Path]
    if root.is_file():
        files = [root]
    else:
        files = []
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(d for d in dirnames if d not in SKIP_DIRS)
            for name in sorted(filenames):
                if include is None or fnmatch.fnmatch(name, include):
                    files.append(Path(dirpath) / name)

    hits: list[tuple[Path, int, str]] = []
    for file in files:
        if not _inside(file, workspace):
            continue
        try:
            data = file.read_bytes()
        except OSError:
            continue
        if b"\0" in data[:8192]:
            continue
        for number, line in enumerate(data.decode("utf-8", errors="replace").splitlines(), start=1):
            if regex.search(line):
                hits.append((file, number, line[:MAX_LINE_CHARS]))
                if len(hits) >= max_results:
                    return hits, True
    return hits, False


async def grep_files(args: GrepArgs, ctx: ToolContext) -> ToolResult:
    try:
        regex = re.compile(args.pattern, re.IGNORECASE if args.ignore_case else 0)
    except re.error as e:
        raise ToolError(f"Invalid parameters: bad regex '{args.pattern}': {e}", code="invalid_parameters") from e
    root = ctx.resolve_path(args.path)
    if not root.exists():
        raise ToolError(f"Path not found: {args.path}")
    hits, capped = await asyncio.to_thread(
        _grep, root, regex, args.include, args.max_results, ctx.cwd.resolve()
    )
    if not hits:
        return ToolResult.success("No matches found", count=0)
    text = "\n".join(f"{_rel(ctx, f)}:{n}: {line}" for f, n, line in hits)
    result = ToolResult.success(text, count=len(hits))
    if capped:
        result.warnings.append(f"Stopped after {args.max_results} matches; narrow the pattern")
    return result


# =============================================================================
# write
# =============================================================================


class WriteArgs(BaseModel):
    path: str = Field(description="File to create or overwrite")
    content: str = Field(description="Full file content")


def _write(path: Path, content: str) -> bool:
    created = not path.exists()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return created


async def write_file(args: WriteArgs, ctx: ToolContext) -> ToolResult:
    path = ctx.resolve_path(args.path)
    try:
        created = await asyncio.to_thread(_write, path, args.content)
    except OSError as e:
        raise ToolError(f"Cannot write {args.path}: {e}") from e
    size = len(args.content.encode("utf-8"))
    verb = "Created" if created else "Wrote"
    return ToolResult.success(f"{verb} {_rel(ctx, path)} ({size} bytes)", path=_rel(ctx, path), created=created)


# =============================================================================
# edit
# =============================================================================


class EditArgs(BaseModel):
    path: str = Field(description="File to edit")
    old_string: str = Field(min_length=1, description="Exact text to replace")
    new_string: str = Field(description="Replacement text")
    replace_all: bool = Field(False, description="Replace every occurrence instead of exactly one")


def _edit(path: Path, old: str, new: str, replace_all: bool) -> tuple[int, str]:
    if not path.is_file():
        raise ToolError(f"File not found: {path}")
    before = path.read_text(encoding="utf-8")
    count = before.count(old)
    if count == 0:
        raise ToolError("old_string not found in file")
    if count > 1 and not replace_all:
        raise ToolError(f"old_string appears {count} times; add context or set replace_all")
    after = before.replace(old, new) if replace_all else before.replace(old, new, 1)
    path.write_text(after, encoding="utf-8")
    diff = "".join(
        difflib.unified_diff(
            before.splitlines(keepends=True),
            after.splitlines(keepends=True),
            fromfile=f"a/{path.name}",
            tofile=f"b/{path.name}",
        )
    )
    return (count if replace_all else 1), diff


async def edit_file(args: EditArgs, ctx: ToolContext) -> ToolResult:
    path = ctx.resolve_path(args.path)
    try:
        replaced, diff = await asyncio.to_thread(_edit, path, args.old_string, args.new_string, args.replace_all)
    except OSError as e:
        raise ToolError(f"Cannot edit {args.path}: {e}") from e
    return ToolResult.success(
        f"Replaced {replaced} occurrence(s) in {_rel(ctx, path)}",
        path=_rel(ctx, path),
        diff=diff,
    )


FILE_TOOLS = [
    ToolSpec(
        name="read",
        description="Read a text file with line numbers.",
        args_model=ReadArgs,
        classification=ToolClass.READ_ONLY,
        executor=read_file,
        parallel=True,
    ),
    ToolSpec(
        name="list",
        description="List the entries of a directory.",
        args_model=ListArgs,
        classification=ToolClass.READ_ONLY,
        executor=list_dir,
        parallel=True,
    ),
    ToolSpec(
        name="glob",
        description="Find files by glob pattern, relative to the working directory.",
        args_model=GlobArgs,
        classification=ToolClass.READ_ONLY,
        executor=glob_files,
        parallel=True,
    ),
    ToolSpec(
        name="grep",
        description="Search file contents with a regular expression.",
        args_model=GrepArgs,
        classification=ToolClass.READ_ONLY,
        executor=grep_files,
        parallel=True,
    ),
    ToolSpec(
        name="write",
        description="Create or overwrite a file with the given content.",
        args_model=WriteArgs,
        classification=ToolClass.MUTATING,
        executor=write_file,
    ),
    ToolSpec(
        name="edit",
        description="Replace an exact string in a file.",
        args_model=EditArgs,
        classification=ToolClass.MUTATING,
        executor=edit_file,
    ),
]
