"""Tests for the sub-agent orchestrator."""

from __future__ import annotations

import asyncio
from collections import Counter

import pytest

from codeloop.agents import AgentState, AgentType, AgentTypeRegistry, SubAgentOrchestrator, SubAgentTask
from codeloop.agents.handle import SubAgentHandle
from codeloop.core.llm.provider import Message, Role, Stop, StreamError, TextDelta
from codeloop.errors import Cancelled
from codeloop.session.cancellation import CancellationToken
from codeloop.session.render import RenderKind
from codeloop.tools.builtin import default_registry
from tests.utils import Block, CollectingSink, Pause, ScriptedProvider


def task_prompt(messages: list[Message]) -> str:
    return next(m.content for m in messages if m.role is Role.USER)


class PerTaskResponder:
    """Picks a script from the child's task prompt.

    ``plans`` maps a prompt to the scripts for its successive provider
    calls; prompts without an entry answer with a short report.
    """

    def __init__(self, plans: dict[str, list[list]] | None = None, delay: float = 0.0) -> None:
        self.plans = plans or {}
        self.delay = delay
        self.calls: Counter[str] = Counter()

    def __call__(self, messages: list[Message]) -> list:
        prompt = task_prompt(messages)
        attempt = self.calls[prompt]
        self.calls[prompt] += 1
        scripts = self.plans.get(prompt)
        if scripts:
            return scripts[min(attempt, len(scripts) - 1)]
        return [Pause(self.delay), TextDelta(f"Report for {prompt}"), Stop()]


def make(responder, config, **kwargs) -> tuple[SubAgentOrchestrator, ScriptedProvider]:
    provider = ScriptedProvider(responder=responder)
    return SubAgentOrchestrator(provider, default_registry(), config=config, **kwargs), provider


# =============================================================================
# Fan-out
# =============================================================================


class TestFanOut:
    @pytest.mark.asyncio
    async def test_results_in_spawn_order(self, session, config) -> None:
        delays = {"t0": 0.08, "t1": 0.01, "t2": 0.04}
        plans = {p: [[Pause(d), TextDelta(f"found {p}"), Stop()]] for p, d in delays.items()}
        orchestrator, _ = make(PerTaskResponder(plans), config)

        result = await orchestrator.run(
            [SubAgentTask(p) for p in delays], "call_1", CancellationToken(), parent=session
        )

        assert result.ok
        assert [s["name"] for s in result.metadata["subagents"]] == ["t0", "t1", "t2"]
        assert result.data.index("found t0") < result.data.index("found t1") < result.data.index("found t2")
        assert result.data.startswith("## Task 1: t0\n\nfound t0")
        assert result.metadata["succeeded"] == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit", [1, 3])
    async def test_concurrency_bounded(self, session, config, limit: int) -> None:
        config.agent.subagent_max_concurrency = limit
        orchestrator, provider = make(PerTaskResponder(delay=0.02), config)

        result = await orchestrator.run(
            [SubAgentTask(f"task {n}") for n in range(8)], "call_1", CancellationToken(), parent=session
        )

        assert result.metadata["succeeded"] == 8
        assert orchestrator.peak_concurrency == limit
        assert provider.peak <= limit

    @pytest.mark.asyncio
    async def test_overlapping_runs_count_separately(self, session, config) -> None:
        config.agent.subagent_max_concurrency = 3
        orchestrator, _ = make(PerTaskResponder(delay=0.05), config)

        async def later():
            await asyncio.sleep(0.01)
            return await orchestrator.run([SubAgentTask("solo")], "call_b", CancellationToken(), parent=session)

        wide, narrow = await asyncio.gather(
            orchestrator.run([SubAgentTask(f"task {n}") for n in range(3)], "call_a", CancellationToken(), parent=session),
            later(),
        )

        assert wide.metadata["peak_concurrency"] == 3
        assert narrow.metadata["peak_concurrency"] == 1
        assert wide.metadata["succeeded"] == 3
        assert narrow.metadata["succeeded"] == 1

    @pytest.mark.asyncio
    async def test_children_are_isolated(self, session, config) -> None:
        orchestrator, provider = make(PerTaskResponder(), config)
        session.system_prompt = "Parent only."

        result = await orchestrator.run([SubAgentTask("look", name="scout")], "call_1", CancellationToken(), parent=session)

        assert session.turns == []
        [child_call] = provider.calls
        assert [m.role for m in child_call] == [Role.SYSTEM, Role.USER]
        assert "Parent only." not in child_call[0].content
        tools = {t["function"]["name"] for t in provider.configs[0].tools}
        assert tools == {"read", "list", "glob", "grep"}
        assert result.metadata["subagents"][0]["name"] == "scout"
        assert result.metadata["agent_type"] == "explore"

    @pytest.mark.asyncio
    async def test_task_model_reaches_provider(self, session, config) -> None:
        orchestrator, provider = make(PerTaskResponder(), config)

        await orchestrator.run(
            [SubAgentTask("cheap", model="small-model")], "call_1", CancellationToken(), parent=session
        )
        await orchestrator.run([SubAgentTask("default")], "call_2", CancellationToken(), parent=session)

        assert [c.model for c in provider.configs] == ["small-model", "test-model"]

    @pytest.mark.asyncio
    async def test_build_children_get_write_tools(self, session, config) -> None:
        orchestrator, provider = make(PerTaskResponder(), config)
        await orchestrator.run([SubAgentTask("change")], "call_1", CancellationToken(), parent=session, agent_type="build")
        tools = {t["function"]["name"] for t in provider.configs[0].tools}
        assert {"write", "edit", "bash"} <= tools
        assert "explore" not in tools

    @pytest.mark.asyncio
    async def test_events_forwarded_with_tags(self, session, config) -> None:
        sink = CollectingSink()
        orchestrator, _ = make(PerTaskResponder(), config)

        await orchestrator.run(
            [SubAgentTask("a"), SubAgentTask("b")], "call_9", CancellationToken(), parent=session, sink=sink
        )

        deltas = sink.of(RenderKind.TEXT_DELTA)
        assert {e.payload["subagent"] for e in deltas} == {0, 1}
        assert {e.payload["parent_call_id"] for e in deltas} == {"call_9"}
        assert all(e.session_id != session.id for e in deltas)

    @pytest.mark.asyncio
    async def test_unknown_agent_type(self, session, config) -> None:
        orchestrator, _ = make(PerTaskResponder(), config)
        with pytest.raises(KeyError):
            await orchestrator.run([SubAgentTask("x")], "c", CancellationToken(), parent=session, agent_type="nope")


# =============================================================================
# Failures
# =============================================================================


class TestChildFailures:
    @pytest.mark.asyncio
    async def test_timeout_is_a_child_failure(self, session, config) -> None:
        config.agent.subagent_timeout = 0.1
        never = asyncio.Event()
        orchestrator, provider = make(PerTaskResponder({"slow": [[Block(never)]]}), config)

        result = await orchestrator.run(
            [SubAgentTask("fast"), SubAgentTask("slow")], "call_1", CancellationToken(), parent=session
        )

        assert result.ok
        fast, slow = result.metadata["subagents"]
        assert fast["ok"]
        assert not slow["ok"]
        assert slow["error"] == "timed out after 0.1s"
        assert "## Task 2: slow [FAILED]" in result.data
        assert result.warnings == ["Task 2 (slow) failed: timed out after 0.1s"]
        assert provider.live == 0

    @pytest.mark.asyncio
    async def test_transient_failure_retried(self, session, config) -> None:
        config.agent.retry.max_attempts = 1
        config.agent.subagent_retries = 1
        flaky = [[StreamError("overloaded", retryable=True)], [TextDelta("second time lucky"), Stop()]]
        orchestrator, _ = make(PerTaskResponder({"flaky": flaky}), config)

        result = await orchestrator.run([SubAgentTask("flaky")], "call_1", CancellationToken(), parent=session)

        [child] = result.metadata["subagents"]
        assert child["ok"]
        assert child["attempts"] == 2
        assert child["summary"] == "second time lucky"

    @pytest.mark.asyncio
    async def test_permanent_failure_not_retried(self, session, config) -> None:
        config.agent.subagent_retries = 3
        plans = {"broken": [[StreamError("invalid request", status_code=400)]]}
        responder = PerTaskResponder(plans)
        orchestrator, _ = make(responder, config)

        result = await orchestrator.run(
            [SubAgentTask("broken"), SubAgentTask("fine")], "call_1", CancellationToken(), parent=session
        )

        assert result.ok
        assert responder.calls["broken"] == 1
        assert result.metadata["subagents"][0]["error"] == "invalid request"

    @pytest.mark.asyncio
    async def test_all_failed(self, session, config) -> None:
        plans = {p: [[StreamError("invalid request", status_code=400)]] for p in ("a", "b")}
        orchestrator, _ = make(PerTaskResponder(plans), config)

        result = await orchestrator.run([SubAgentTask("a"), SubAgentTask("b")], "call_1", CancellationToken(), parent=session)

        assert not result.ok
        assert result.error == "All 2 sub-agent task(s) failed"
        assert result.metadata["failed"] == 2

    @pytest.mark.asyncio
    async def test_empty_report_is_a_failure(self, session, config) -> None:
        orchestrator, _ = make(PerTaskResponder({"quiet": [[Stop()]]}), config)
        result = await orchestrator.run([SubAgentTask("quiet")], "call_1", CancellationToken(), parent=session)
        assert result.metadata["subagents"][0]["error"] == "finished without a report"


class TestCancellation:
    @pytest.mark.asyncio
    async def test_parent_cancel_stops_every_child(self, session, config) -> None:
        config.agent.subagent_max_concurrency = 2
        never = asyncio.Event()
        plans = {f"t{n}": [[Block(never)]] for n in range(4)}
        orchestrator, provider = make(PerTaskResponder(plans), config)
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.05, token.cancel, "user pressed stop")

        with pytest.raises(Cancelled, match="user pressed stop"):
            await orchestrator.run([SubAgentTask(p) for p in plans], "call_1", token, parent=session)

        assert provider.live == 0
        assert provider.peak == 2


# =============================================================================
# Handles and types
# =============================================================================


class TestHandle:
    def test_lifecycle(self, session) -> None:
        registry = AgentTypeRegistry()
        handle = SubAgentHandle(0, SubAgentTask("Find the lexer\nand more"), registry.require("explore"), "c1", CancellationToken())
        assert handle.name == "Find the lexer"
        assert handle.state is AgentState.SPAWNED

        handle.start(session)
        result = handle.finish(True, summary="found it", iterations=2)

        assert handle.state is AgentState.DONE
        assert result.session_id == session.id
        handle.close()
        assert not handle.token.cancelled

    def test_close_cancels_running_child(self) -> None:
        handle = SubAgentHandle(0, SubAgentTask("x"), AgentTypeRegistry().require("explore"), "c1", CancellationToken())
        handle.close()
        assert handle.token.cancelled


class TestAgentTypeRegistry:
    def test_builtin_types(self) -> None:
        registry = AgentTypeRegistry()
        assert {t.id for t in registry.list_types()} == {"explore", "build"}
        assert "write" not in registry.require("explore").tools

    def test_register_and_unregister(self) -> None:
        registry = AgentTypeRegistry()
        registry.register(AgentType(id="review", name="Reviewer", system_prompt="Review.", tools=["read"]))
        assert registry.get("review").tools == ["read"]
        assert registry.unregister("review")
        assert not registry.unregister("review")

    def test_load_project_types(self, tmp_path) -> None:
        agents_dir = tmp_path / ".codeloop" / "agents"
        agents_dir.mkdir(parents=True)
        (agents_dir / "docs.yaml").write_text(
            "id: docs\nname: Docs Writer\nsystem_prompt: Write docs.\ntools: [read, write]\nmax_iterations: 5\n"
        )
        (agents_dir / "broken.yaml").write_text("name: no id or prompt\n")

        registry = AgentTypeRegistry()
        assert registry.load_project_types(tmp_path) == 1
        docs = registry.require("docs")
        assert docs.max_iterations == 5
        assert docs.to_dict()["tools"] == ["read", "write"]
