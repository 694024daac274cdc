"""Tool output truncation."""

from __future__ import annotations

from typing import Any

MARKER = "[... OUTPUT TRUNCATED: {original} chars -> {kept} chars ...]"


def truncate_output(text: str, max_chars: int) -> tuple[str, bool]:
    """Cut ``text`` to at most ``max_chars`` characters plus a marker.

    The head and the tail are kept, each cut at a line boundary when one is
    close enough, so the end of a log (usually the error) survives.
    """
    if max_chars <= 0 or len(text) <= max_chars:
        return text, False

    head_budget = max_chars * 2 // 3
    tail_budget = max_chars - head_budget

    head = text[:head_budget]
    cut = head.rfind("\n")
    if cut > head_budget // 2:
        head = head[:cut]

    tail = text[len(text) - tail_budget :]
    cut = tail.find("\n")
    if 0 <= cut < tail_budget // 2:
        tail = tail[cut + 1 :]

    kept = len(head) + len(tail)
    marker = MARKER.format(original=len(text), kept=kept)
    return f"{head}\n\n{marker}\n\n{tail}", True


def truncate_data(data: Any, max_chars: int) -> tuple[Any, bool]:
    """Truncate string payloads; anything else passes through."""
    if isinstance(data, str):
        return truncate_output(data, max_chars)
    return data, False
