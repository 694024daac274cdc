"""Tests for the session loop."""

from __future__ import annotations

import asyncio

import pytest

from codeloop.config.schema import Config
from codeloop.core.llm.provider import Role, StreamError
from codeloop.errors import FatalSessionError, InfrastructureError, StorageError
from codeloop.session.cancellation import CancellationToken
from codeloop.session.loop import SessionLoop
from codeloop.session.model import PermissionMode, Session, Turn, TurnStatus, WorkMode
from codeloop.session.render import RenderKind
from codeloop.session.storage import InMemoryStorage
from codeloop.tools.builtin import default_registry
from tests.utils import Block, CollectingSink, Raise, ScriptedProvider, call, text_script, tool_script

PLAN_ANSWER = """Here is the plan.

# Plan: Add a cache

## Phase 1: Build

- [ ] 1.1 Add the cache module
- [ ] 1.2 Use it in the client
  > Blocked by: 1.1
"""


class FailingStorage(InMemoryStorage):
    """Refuses to store assistant turns."""

    async def append_turn(self, session_id: str, turn: Turn) -> None:
        if turn.role is Role.ASSISTANT:
            raise StorageError(session_id, "disk full")
        await super().append_turn(session_id, turn)


class UnreachableStorage(InMemoryStorage):
    """Fails below the storage layer, before anything is written."""

    async def append_turn(self, session_id: str, turn: Turn) -> None:
        raise InfrastructureError("storage backend unreachable")


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def sink() -> CollectingSink:
    return CollectingSink()


@pytest.fixture
def token() -> CancellationToken:
    return CancellationToken()


def make_loop(provider, storage, config: Config, **kwargs) -> SessionLoop:
    return SessionLoop(provider, default_registry(), storage, config=config, base_prompt="You are a test agent.", **kwargs)


def turn_completes(sink: CollectingSink) -> list[bool]:
    return [e.payload["has_more"] for e in sink.of(RenderKind.TURN_COMPLETE)]


# =============================================================================
# Happy paths
# =============================================================================


class TestRunTurn:
    @pytest.mark.asyncio
    async def test_plain_answer(self, session, storage, sink, token, config) -> None:
        provider = ScriptedProvider(text_script("Hello there", chunks=3))
        await storage.save_session_meta(session)

        result = await make_loop(provider, storage, config).run_turn(session, "hi", sink, token)

        assert result.ok
        assert result.text == "Hello there"
        assert result.iterations == 1
        assert [t.role for t in session.turns] == [Role.USER, Role.ASSISTANT]
        assert [t.seq for t in session.turns] == [1, 2]
        assert len((await storage.load_session(session.id)).turns) == 2
        assert turn_completes(sink) == [False]
        assert sink.events[-1].kind is RenderKind.TURN_COMPLETE

    @pytest.mark.asyncio
    async def test_system_prompt_and_tools_sent(self, session, storage, sink, token, config) -> None:
        provider = ScriptedProvider(text_script("ok"))
        await make_loop(provider, storage, config).run_turn(session, "hi", sink, token)

        first = provider.calls[0]
        assert first[0].role is Role.SYSTEM
        assert first[0].content == "You are a test agent."
        assert first[-1].content == "hi"
        names = {t["function"]["name"] for t in provider.configs[0].tools}
        assert {"read", "bash", "explore", "task_start"} <= names

    @pytest.mark.asyncio
    async def test_session_model_sent_per_call(self, session, storage, sink, token, config) -> None:
        provider = ScriptedProvider(text_script("ok"), text_script("again"))
        loop = make_loop(provider, storage, config)

        await loop.run_turn(session, "hi", sink, token)
        session.model = "other-model"
        await loop.run_turn(session, "again", sink, token)

        assert [c.model for c in provider.configs] == ["test-model", "other-model"]

    @pytest.mark.asyncio
    async def test_tool_round_trip(self, session, storage, sink, token, config) -> None:
        provider = ScriptedProvider(
            tool_script(call("read", "c1", path="src/util.py"), text="Checking."),
            text_script("VALUE is 42."),
        )
        await storage.save_session_meta(session)

        result = await make_loop(provider, storage, config).run_turn(session, "What is VALUE?", sink, token)

        assert result.ok
        assert result.iterations == 2
        assert result.text == "VALUE is 42."
        [tool_message] = provider.last_tool_messages()
        assert tool_message.tool_call_id == "c1"
        assert "VALUE = 42" in tool_message.content
        assert turn_completes(sink) == [True, False]

        stored = await storage.load_session(session.id)
        assert [t.role for t in stored.turns] == [Role.USER, Role.ASSISTANT, Role.ASSISTANT]
        assert stored.turns[1].tool_results()[0].ok

    @pytest.mark.asyncio
    async def test_second_turn_replays_history(self, session, storage, sink, token, config) -> None:
        provider = ScriptedProvider(text_script("first"), text_script("second"))
        loop = make_loop(provider, storage, config)

        await loop.run_turn(session, "one", sink, token)
        await loop.run_turn(session, "two", sink, token)

        contents = [m.content for m in provider.calls[1] if m.role is not Role.SYSTEM]
        assert contents == ["one", "first", "two"]


# =============================================================================
# Provider failures
# =============================================================================


class TestProviderFailures:
    @pytest.mark.asyncio
    async def test_retry_then_success(self, session, storage, sink, token, config) -> None:
        provider = ScriptedProvider([StreamError("overloaded", retryable=True, status_code=529)], text_script("ok"))

        result = await make_loop(provider, storage, config).run_turn(session, "hi", sink, token)

        assert result.ok
        assert len(provider.calls) == 2
        [retry] = sink.of(RenderKind.RETRY)
        assert retry.payload["attempt"] == 2
        assert retry.payload["max_attempts"] == 3
        assert [t.status for t in session.turns] == [TurnStatus.COMPLETE, TurnStatus.COMPLETE]

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, session, storage, sink, token, config) -> None:
        provider = ScriptedProvider(*([StreamError("rate limit", retryable=True, status_code=429)] for _ in range(3)))

        result = await make_loop(provider, storage, config).run_turn(session, "hi", sink, token)

        assert result.status is TurnStatus.FAILED
        assert result.retryable
        assert len(provider.calls) == 3
        assert session.turns[-1].status is TurnStatus.FAILED
        assert [e.payload["kind"] for e in sink.of(RenderKind.ERROR)] == ["provider"]
        assert sink.events[-1].kind is RenderKind.TURN_COMPLETE

    @pytest.mark.asyncio
    async def test_non_retryable_fails_at_once(self, session, storage, sink, token, config) -> None:
        provider = ScriptedProvider([StreamError("invalid api key", status_code=401)])

        result = await make_loop(provider, storage, config).run_turn(session, "hi", sink, token)

        assert result.status is TurnStatus.FAILED
        assert result.error == "invalid api key"
        assert not result.retryable
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_unexpected_provider_exception(self, session, storage, sink, token, config) -> None:
        provider = ScriptedProvider([Raise(ValueError("bad payload"))])

        result = await make_loop(provider, storage, config).run_turn(session, "hi", sink, token)

        assert result.status is TurnStatus.FAILED
        assert result.error == "ValueError: bad payload"

    @pytest.mark.asyncio
    async def test_fatal_error(self, session, storage, sink, token, config) -> None:
        provider = ScriptedProvider([Raise(FatalSessionError("credentials revoked"))])

        result = await make_loop(provider, storage, config).run_turn(session, "hi", sink, token)

        assert result.fatal
        assert result.status is TurnStatus.FAILED
        [error] = sink.of(RenderKind.ERROR)
        assert error.payload["kind"] == "fatal"
        assert session.turns[-1].error == "credentials revoked"


# =============================================================================
# Guards, storage and cancellation
# =============================================================================


class TestStops:
    @pytest.mark.asyncio
    async def test_max_iterations(self, session, storage, sink, token, config) -> None:
        config.agent.max_iterations = 2
        provider = ScriptedProvider(responder=lambda messages: tool_script(call("read", path="README.md")))

        result = await make_loop(provider, storage, config).run_turn(session, "loop forever", sink, token)

        assert result.status is TurnStatus.FAILED
        assert result.error == "Stopped after 2 iterations without a final answer"
        assert len(provider.calls) == 2
        assert turn_completes(sink) == [True, False]

    @pytest.mark.asyncio
    async def test_loop_guard_stop(self, session, storage, sink, token, config) -> None:
        provider = ScriptedProvider(
            tool_script(call("read", "c1", path="missing.py"), call("read", "c2", path="missing.py"), call("bash", "c3", command="ls"))
        )

        result = await make_loop(provider, storage, config).run_turn(session, "read it", sink, token)

        assert result.status is TurnStatus.FAILED
        assert result.error.startswith("Stopping tool loop: 'read' failed 2 times")
        assert [r.code for r in session.turns[-1].tool_results()] == ["tool_error", "tool_error", "skipped"]
        assert sink.of(RenderKind.ERROR)[0].payload["kind"] == "loop_guard"

    @pytest.mark.asyncio
    async def test_infrastructure_error_fails_turn(self, session, sink, token, config) -> None:
        provider = ScriptedProvider(text_script("never reached"))

        result = await make_loop(provider, UnreachableStorage(), config).run_turn(session, "hi", sink, token)

        assert result.status is TurnStatus.FAILED
        assert result.error == "storage backend unreachable"
        assert session.turns[-1].role is Role.ASSISTANT
        assert session.turns[-1].status is TurnStatus.FAILED
        [error] = sink.of(RenderKind.ERROR)
        assert error.payload == {"message": "storage backend unreachable", "kind": "infrastructure"}
        assert sink.events[-1].kind is RenderKind.TURN_COMPLETE
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_storage_failure_fails_turn(self, session, sink, token, config) -> None:
        provider = ScriptedProvider(text_script("ok"))

        result = await make_loop(provider, FailingStorage(), config).run_turn(session, "hi", sink, token)

        assert result.status is TurnStatus.FAILED
        assert "disk full" in result.error
        assert session.turns[-1].status is TurnStatus.FAILED
        assert sink.of(RenderKind.ERROR)[0].payload["kind"] == "storage"

    @pytest.mark.asyncio
    async def test_cancel_mid_stream(self, session, storage, sink, token, config) -> None:
        never = asyncio.Event()
        provider = ScriptedProvider(text_script("Partial answer")[:-1] + [Block(never)])
        await storage.save_session_meta(session)
        asyncio.get_running_loop().call_later(0.05, token.cancel, "user pressed stop")

        result = await make_loop(provider, storage, config).run_turn(session, "hi", sink, token)

        assert result.status is TurnStatus.INTERRUPTED
        assert result.text == "Partial answer"
        stored = await storage.load_session(session.id)
        assert stored.turns[-1].status is TurnStatus.INTERRUPTED
        assert stored.turns[-1].text() == "Partial answer"
        assert sink.events[-1].payload["status"] == "interrupted"

    @pytest.mark.asyncio
    async def test_cancel_during_tool(self, session, storage, sink, token, config) -> None:
        session.permission_mode = PermissionMode.AUTONOMOUS
        provider = ScriptedProvider(tool_script(call("bash", "c1", command="sleep 10")))
        config.agent.kill_grace_period = 0.5
        asyncio.get_running_loop().call_later(0.3, token.cancel)

        result = await make_loop(provider, storage, config).run_turn(session, "wait", sink, token)

        assert result.status is TurnStatus.INTERRUPTED
        [result_block] = session.turns[-1].tool_results()
        assert result_block.code == "cancelled"
        assert len(provider.calls) == 1


class TestPlanDetection:
    @pytest.mark.asyncio
    async def test_plan_mode_answer_becomes_plan(self, session: Session, storage, sink, token, config) -> None:
        session.work_mode = WorkMode.PLAN
        provider = ScriptedProvider(text_script(PLAN_ANSWER))

        result = await make_loop(provider, storage, config).run_turn(session, "plan a cache", sink, token)

        assert result.ok
        assert session.plan is not None
        assert session.plan.title == "Add a cache"
        kinds = sink.kinds()
        assert kinds.index(RenderKind.PLAN_UPDATE) < kinds.index(RenderKind.FINISHED)
        assert kinds[-2:] == [RenderKind.FINISHED, RenderKind.TURN_COMPLETE]
        assert sink.of(RenderKind.FINISHED)[0].payload["reason"] == "plan_ready"
        assert (await storage.load_session(session.id)).plan.id == session.plan.id

    @pytest.mark.asyncio
    async def test_revised_plan_keeps_identity(self, session: Session, storage, sink, token, config) -> None:
        session.work_mode = WorkMode.PLAN
        provider = ScriptedProvider(text_script(PLAN_ANSWER), text_script(PLAN_ANSWER.replace("cache", "store")))
        loop = make_loop(provider, storage, config)

        await loop.run_turn(session, "plan", sink, token)
        first_id = session.plan.id
        await loop.run_turn(session, "revise", sink, token)

        assert session.plan.id == first_id
        assert session.plan.title == "Add a store"

    @pytest.mark.asyncio
    async def test_build_mode_ignores_plans(self, session: Session, storage, sink, token, config) -> None:
        provider = ScriptedProvider(text_script(PLAN_ANSWER))
        await make_loop(provider, storage, config).run_turn(session, "plan", sink, token)

        assert session.plan is None
        assert sink.of(RenderKind.FINISHED) == []
