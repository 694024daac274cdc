"""Token counting with tiktoken."""

from __future__ import annotations

import tiktoken

# Prose averages ~4 chars/token; used when no encoder is available
CHARS_PER_TOKEN = 4.0

_encoder: tiktoken.Encoding | None = None

# Content hash -> token count cache
_token_cache: dict[int, int] = {}


def _get_encoder() -> tiktoken.Encoding:
    """Get cached tiktoken encoder."""
    global _encoder
    if _encoder is None:
        _encoder = tiktoken.get_encoding("o200k_base")
    return _encoder


def count_tokens(text: str) -> int:
    """Count tokens with caching."""
    key = hash(text)
    if key not in _token_cache:
        _token_cache[key] = len(_get_encoder().encode(text, disallowed_special=()))
    return _token_cache[key]


def count_tokens_heuristic(text: str) -> int:
    """Estimate tokens from character count without encoding."""
    return int(len(text) / CHARS_PER_TOKEN)


def tokens_to_chars(tokens: int) -> int:
    """Convert a token budget to an approximate character budget."""
    return int(tokens * CHARS_PER_TOKEN)


def invalidate_cache() -> None:
    _token_cache.clear()
