"""Tests for the token counting module."""

from __future__ import annotations

from codeloop.core import tokens
from codeloop.core.tokens import (
    CHARS_PER_TOKEN,
    count_tokens,
    count_tokens_heuristic,
    invalidate_cache,
    tokens_to_chars,
)


class TestCountTokens:
    def test_empty(self) -> None:
        assert count_tokens("") == 0

    def test_short_text(self) -> None:
        count = count_tokens("Hello, world!")
        assert 1 <= count <= 6

    def test_special_tokens_are_plain_text(self) -> None:
        assert count_tokens("<|endoftext|>") > 0

    def test_results_cached(self) -> None:
        invalidate_cache()
        text = "def main():\n    return 42\n"
        first = count_tokens(text)
        assert hash(text) in tokens._token_cache
        assert count_tokens(text) == first

    def test_invalidate_cache(self) -> None:
        count_tokens("something to cache")
        invalidate_cache()
        assert tokens._token_cache == {}


class TestHeuristics:
    def test_heuristic(self) -> None:
        assert count_tokens_heuristic("x" * 400) == int(400 / CHARS_PER_TOKEN)
        assert count_tokens_heuristic("") == 0

    def test_tokens_to_chars(self) -> None:
        assert tokens_to_chars(100) == 400
        assert tokens_to_chars(0) == 0

    def test_heuristic_close_to_encoder_for_prose(self) -> None:
        text = "The quick brown fox jumps over the lazy dog. " * 20
        assert abs(count_tokens(text) - count_tokens_heuristic(text)) < count_tokens(text)
