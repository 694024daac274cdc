"""Summarize a session history into a fresh seed session.

The source session is only read. The seed gets a new id, points back at
the source through ``parent_id`` and starts with a single user turn that
carries the summary and the active plan, so the conversation can continue
in a much smaller context.
"""

from __future__ import annotations

from codeloop.config.schema import Config
from codeloop.core.llm.provider import CompletionResult, Message, ProviderClient, Role, StreamConfig
from codeloop.core.llm.providers import get_context_length
from codeloop.core.tokens import count_tokens
from codeloop.errors import ProviderError
from codeloop.logging import get_logger
from codeloop.plan import markdown as plan_markdown
from codeloop.prompts import SUMMARIZE_PROMPT
from codeloop.session.context import read_project_instructions
from codeloop.session.model import Session, ToolCallBlock, ToolResultBlock, Turn
from codeloop.session.truncation import truncate_output

log = get_logger("compression")

CONTINUATION_HEADER = "# Continuation Session"

# Per-result cap inside the transcript; the summary needs the gist, not full logs
TRANSCRIPT_RESULT_CHARS = 2_000
# Tokens kept free for the summarize prompt and message framing
PROMPT_RESERVE_TOKENS = 1_024
# Project instruction files copied into the seed are capped at this size
PROJECT_INSTRUCTIONS_CHARS = 8_000


def _render_block(block: object) -> str:
    if isinstance(block, ToolCallBlock):
        status = block.status.value
        if block.denial_reason:
            status = f"{status}: {block.denial_reason}"
        return f"[tool call {block.id}] {block.tool_name}({block.arguments}) -> {status}"
    if isinstance(block, ToolResultBlock):
        body = block.data if block.ok else block.error
        text, _ = truncate_output(str(body if body is not None else ""), TRANSCRIPT_RESULT_CHARS)
        label = "ok" if block.ok else f"error {block.code or 'tool_error'}"
        return f"[tool result {block.call_id}, {label}]\n{text}"
    return ""


def _render_turn(turn: Turn) -> str:
    lines = [f"## {turn.role.value.capitalize()} (turn {turn.seq})"]
    if turn.text():
        lines.append(turn.text())
    for block in turn.blocks:
        rendered = _render_block(block)
        if rendered:
            lines.append(rendered)
    if turn.status is not None and turn.status.value != "complete":
        lines.append(f"[turn {turn.status.value}{': ' + turn.error if turn.error else ''}]")
    return "\n\n".join(lines)


def render_transcript(session: Session, max_tokens: int | None = None) -> str:
    """Plain-text transcript of the session.

    With ``max_tokens`` the oldest turns are dropped until the rest fits.
    """
    parts = [_render_turn(t) for t in session.turns]
    if max_tokens is not None:
        kept: list[str] = []
        used = 0
        for part in reversed(parts):
            cost = count_tokens(part)
            if kept and used + cost > max_tokens:
                break
            kept.append(part)
            used += cost
        omitted = len(parts) - len(kept)
        parts = list(reversed(kept))
        if omitted:
            parts.insert(0, f"[{omitted} earlier turn(s) omitted]")
    return "\n\n".join(parts)


class ContextCompressor:
    """Builds seed sessions from long ones with one ``complete`` call."""

    def __init__(self, provider: ProviderClient, config: Config | None = None) -> None:
        self.provider = provider
        self.config = config or Config()

    def _transcript_budget(self, session: Session) -> int:
        context_length = get_context_length(self.config.llm.summary_model or session.model)
        return max(1_024, context_length - self.config.agent.summary_max_tokens - PROMPT_RESERVE_TOKENS)

    async def summarize(self, session: Session, hints: str | None = None) -> str:
        """Ask the provider for a summary of ``session``.

        ``hints`` names what the summary must keep, in the user's words.
        """
        transcript = render_transcript(session, self._transcript_budget(session))
        request = f"Summarize this session:\n\n{transcript}"
        if hints:
            request += f"\n\nThe user asked to preserve in particular: {hints}"
        messages = [
            Message(Role.SYSTEM, SUMMARIZE_PROMPT),
            Message(Role.USER, request),
        ]
        config = StreamConfig(
            max_tokens=self.config.agent.summary_max_tokens,
            temperature=0.0,
            model=self.config.llm.summary_model or session.model,
        )
        try:
            result: CompletionResult = await self.provider.complete(messages, config)
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(f"Summarization failed: {type(e).__name__}: {e}") from e
        summary = result.content.strip()
        if not summary:
            raise ProviderError("Summarization returned no text")
        return summary

    def continuation_text(
        self,
        source: Session,
        summary: str,
        *,
        hints: str | None = None,
        direction: str | None = None,
    ) -> str:
        sections = [
            CONTINUATION_HEADER,
            f"Continued from session {source.id}" + (f' ("{source.title}")' if source.title else ""),
        ]
        if direction:
            sections.append(f"## Priority Direction\n\nThe user asked to focus on: {direction}")
        sections.append(f"## Summary\n\n{summary}")
        if hints:
            sections.append(f"## Preservation Notes\n\nThe user emphasized: {hints}")
        instructions = read_project_instructions(source.cwd)
        if instructions is not None:
            name, content = instructions
            text, _ = truncate_output(content, PROJECT_INSTRUCTIONS_CHARS)
            sections.append(f"## Project Instructions ({name})\n\n{text}")
        if source.plan is not None:
            sections.append(f"## Active Plan\n\n{plan_markdown.serialize(source.plan)}")
        return "\n\n".join(sections)

    async def compress(
        self, session: Session, *, hints: str | None = None, direction: str | None = None
    ) -> Session:
        """Return a new seed session. ``session`` is left untouched.

        Args:
            hints: What the summary should preserve.
            direction: What the continued session should focus on next.
        """
        summary = await self.summarize(session, hints)
        seed = Session.new(
            cwd=session.cwd,
            model=session.model,
            permission_mode=session.permission_mode,
            work_mode=session.work_mode,
            thinking_effort=session.thinking_effort,
            title=session.title,
            system_prompt=session.system_prompt,
            parent_id=session.id,
            plan=session.plan.copy() if session.plan is not None else None,
        )
        seed.append_turn(Turn.user(self.continuation_text(session, summary, hints=hints, direction=direction)))
        log.info(
            "Compressed session %s (%d turns) into %s (%d tokens)",
            session.id,
            len(session.turns),
            seed.id,
            count_tokens(seed.turns[0].text()),
        )
        return seed
