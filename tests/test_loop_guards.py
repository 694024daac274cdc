"""Tests for loop guards and output truncation."""

from __future__ import annotations

from codeloop.session.failure import (
    ExplorationBudget,
    RepeatedFailureTracker,
    arguments_hash,
    error_fingerprint,
    failure_signature,
)
from codeloop.session.truncation import truncate_data, truncate_output
from codeloop.tools.registry import ToolClass
from codeloop.tools.result import ToolResult


class TestFingerprints:
    def test_whitespace_and_case_normalized(self) -> None:
        assert error_fingerprint("File  NOT\nfound") == "file not found"
        assert error_fingerprint("   ") == "unknown"

    def test_arguments_hash_ignores_key_order(self) -> None:
        assert arguments_hash({"a": 1, "b": 2}) == arguments_hash({"b": 2, "a": 1})
        assert arguments_hash({"a": 1}) != arguments_hash({"a": 2})

    def test_signature_uses_code(self) -> None:
        signature, code = failure_signature("read", {}, ToolResult.failure("Timed out", "timeout"))
        assert code == "timeout"
        assert signature.startswith("read|timeout|timed out|")

    def test_signature_classifies_missing_code(self) -> None:
        _, code = failure_signature("read", {}, ToolResult(ok=False, error="Access denied: /etc"))
        assert code == "access_denied"


class TestRepeatedFailureTracker:
    def test_threshold(self) -> None:
        tracker = RepeatedFailureTracker(threshold=2)
        failure = ToolResult.failure("boom")
        assert tracker.observe("bash", {"command": "make"}, failure) is None
        diagnostic = tracker.observe("bash", {"command": "make"}, failure)
        assert diagnostic.startswith("Stopping tool loop: 'bash' failed 2 times")

    def test_different_arguments_counted_apart(self) -> None:
        tracker = RepeatedFailureTracker(threshold=2)
        assert tracker.observe("bash", {"command": "a"}, ToolResult.failure("boom")) is None
        assert tracker.observe("bash", {"command": "b"}, ToolResult.failure("boom")) is None

    def test_success_clears(self) -> None:
        tracker = RepeatedFailureTracker(threshold=2)
        tracker.observe("bash", {}, ToolResult.failure("boom"))
        tracker.observe("read", {}, ToolResult.success("ok"))
        assert tracker.counters == {}
        assert tracker.observe("bash", {}, ToolResult.failure("boom")) is None


class TestExplorationBudget:
    def test_soft_then_hard(self) -> None:
        budget = ExplorationBudget(soft_limit=2, hard_limit=3)
        assert budget.observe(ToolClass.READ_ONLY) == (None, None)
        warning, stop = budget.observe(ToolClass.READ_ONLY)
        assert warning is not None and stop is None
        warning, stop = budget.observe(ToolClass.READ_ONLY)
        assert warning is None
        assert "3 consecutive read-only tool calls" in stop

    def test_other_calls_reset(self) -> None:
        budget = ExplorationBudget(soft_limit=2, hard_limit=3)
        budget.observe(ToolClass.READ_ONLY)
        budget.observe(ToolClass.MUTATING)
        assert budget.count == 0
        budget.observe(ToolClass.READ_ONLY)
        budget.observe(ToolClass.CONTROL)
        assert budget.count == 0


class TestTruncation:
    def test_short_text_untouched(self) -> None:
        assert truncate_output("short", 100) == ("short", False)
        assert truncate_output("anything", 0) == ("anything", False)

    def test_keeps_head_and_tail(self) -> None:
        text = "\n".join(f"line {n:03d}" for n in range(200))
        out, truncated = truncate_output(text, 300)

        assert truncated
        assert out.startswith("line 000")
        assert out.endswith("line 199")
        assert f"[... OUTPUT TRUNCATED: {len(text)} chars ->" in out

    def test_cuts_on_line_boundaries(self) -> None:
        text = "\n".join("x" * 9 for _ in range(100))
        out, _ = truncate_output(text, 200)
        head, _, rest = out.partition("\n\n[")
        assert all(line == "x" * 9 for line in head.splitlines())
        tail = rest.rpartition("]\n\n")[2]
        assert all(line == "x" * 9 for line in tail.splitlines())

    def test_non_string_data_passes_through(self) -> None:
        data = {"rows": list(range(1000))}
        assert truncate_data(data, 10) == (data, False)
