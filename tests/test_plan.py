"""Tests for the plan model and its markdown form."""

from __future__ import annotations

import pytest

from codeloop.errors import CycleError, PlanError
from codeloop.plan import markdown as plan_markdown
from codeloop.plan.model import Phase, Plan, Task, TaskStatus

PLAN_TEXT = """# Plan: Add retry support

## Phase 1: Research

- [x] 1.1 Read the client module
  > Result: Retries are handled nowhere
- [ ] 1.2 Sketch the policy
  > Context: exponential backoff with jitter

## Phase 2: Implementation

- [ ] 2.1 Write the backoff helper
  > Blocked by: 1.2
  - [ ] 2.1.1 Add jitter
- [ ] 2.2 Wire it into the client
  > Blocked by: 2.1
"""


@pytest.fixture
def plan() -> Plan:
    return plan_markdown.parse(PLAN_TEXT)


# =============================================================================
# Model
# =============================================================================


class TestPlanQueries:
    def test_progress(self, plan: Plan) -> None:
        assert plan.progress() == (1, 5)
        assert not plan.is_complete

    def test_ready_and_blocked(self, plan: Plan) -> None:
        assert [t.id for t in plan.ready_tasks()] == ["1.2", "2.1.1"]
        assert [t.id for t in plan.blocked_tasks()] == ["2.1", "2.2"]
        assert plan.unfinished_blockers("2.2") == ["2.1"]

    def test_require_task_unknown(self, plan: Plan) -> None:
        with pytest.raises(PlanError, match="not found"):
            plan.require_task("9.9")

    def test_empty_plan_is_not_complete(self) -> None:
        assert not Plan(title="Empty").is_complete


class TestPlanMutations:
    def test_start_and_complete_unblocks(self, plan: Plan) -> None:
        plan.start_task("1.2")
        assert plan.require_task("1.2").status is TaskStatus.ACTIVE

        newly_ready = plan.complete_task("1.2", "Policy written down")
        assert [t.id for t in newly_ready] == ["2.1"]
        assert plan.require_task("2.1").status is TaskStatus.PENDING
        assert plan.require_task("1.2").result == "Policy written down"

    def test_cannot_start_blocked_task(self, plan: Plan) -> None:
        with pytest.raises(PlanError, match="blocked by unfinished tasks: 1.2"):
            plan.start_task("2.1")

    def test_cannot_complete_without_start(self, plan: Plan) -> None:
        with pytest.raises(PlanError, match="call task_start before task_complete"):
            plan.complete_task("1.2", "done")

    def test_cannot_restart_done_task(self, plan: Plan) -> None:
        with pytest.raises(PlanError, match="already complete"):
            plan.start_task("1.1")

    def test_add_subtask_numbering(self, plan: Plan) -> None:
        sub = plan.add_subtask("2.1", "Cap the delay", "max 30s")
        assert sub.id == "2.1.2"
        assert sub.context == "max 30s"

    def test_dependency_cycle_rejected(self, plan: Plan) -> None:
        with pytest.raises(CycleError) as exc_info:
            plan.add_dependency("1.2", "2.2")
        assert exc_info.value.cycle[0] == "1.2"
        assert exc_info.value.cycle[-1] == "1.2"
        assert "2.2" not in plan.dependencies.get("1.2", set())

    def test_self_dependency_rejected(self, plan: Plan) -> None:
        with pytest.raises(PlanError, match="itself"):
            plan.add_dependency("1.2", "1.2")

    def test_add_dependency_blocks(self, plan: Plan) -> None:
        plan.add_dependency("2.1.1", "1.2")
        assert plan.require_task("2.1.1").status is TaskStatus.BLOCKED

    def test_check_acyclic_detects_cycle(self) -> None:
        plan = Plan(
            title="Loop",
            phases=[Phase(1, "P", [Task("1.1", "a"), Task("1.2", "b")])],
            dependencies={"1.1": {"1.2"}, "1.2": {"1.1"}},
        )
        with pytest.raises(CycleError):
            plan.check_acyclic()

    def test_copy_keeps_identity_and_is_independent(self, plan: Plan) -> None:
        clone = plan.copy()
        assert clone.id == plan.id
        clone.start_task("1.2")
        assert plan.require_task("1.2").status is TaskStatus.PENDING

    def test_to_dict_read_model(self, plan: Plan) -> None:
        data = plan.to_dict()
        assert data["id"] == plan.id
        assert data["title"] == "Add retry support"
        assert data["progress"] == {"done": 1, "total": 5}
        assert data["phases"][1]["tasks"][0]["subtasks"][0]["id"] == "2.1.1"


# =============================================================================
# Markdown
# =============================================================================


class TestPlanMarkdown:
    def test_parse_structure(self, plan: Plan) -> None:
        assert plan.title == "Add retry support"
        assert [p.name for p in plan.phases] == ["Research", "Implementation"]
        assert plan.require_task("1.1").status is TaskStatus.DONE
        assert plan.require_task("1.1").result == "Retries are handled nowhere"
        assert plan.require_task("1.2").context == "exponential backoff with jitter"
        assert plan.dependencies == {"2.1": {"1.2"}, "2.2": {"2.1"}}

    def test_serialize_then_parse_keeps_plan(self, plan: Plan) -> None:
        plan.start_task("1.2")
        text = plan_markdown.serialize(plan)
        assert f"<!-- plan-id: {plan.id} -->" in text
        assert "- [~] 1.2 Sketch the policy" in text

        again = plan_markdown.parse(text)
        assert again.id == plan.id
        assert again.to_dict() == plan.to_dict()

    def test_to_context_hides_identity(self, plan: Plan) -> None:
        context = plan_markdown.to_context(plan)
        assert "plan-id" not in context
        assert "# Plan: Add retry support" in context

    def test_missing_title(self) -> None:
        with pytest.raises(PlanError):
            plan_markdown.parse("- [ ] 1.1 Orphan task")

    def test_tasks_without_ids_are_numbered(self) -> None:
        plan = plan_markdown.parse("# Plan: Quick\n\n## Phase 1: Do\n\n- [ ] First\n- [ ] Second\n")
        assert [t.id for t in plan.iter_tasks()] == ["1.1", "1.2"]

    def test_cyclic_markdown_rejected(self) -> None:
        text = "# Plan: Bad\n\n## Phase 1: X\n\n- [ ] 1.1 a\n  > Blocked by: 1.2\n- [ ] 1.2 b\n  > Blocked by: 1.1\n"
        with pytest.raises(CycleError):
            plan_markdown.parse(text)


class TestDetectPlan:
    def test_detects_plan_in_response(self) -> None:
        response = "Here is what I propose.\n\n" + PLAN_TEXT + "\nLet me know."
        plan = plan_markdown.detect_plan(response)
        assert plan is not None
        assert plan.title == "Add retry support"

    def test_fenced_plan(self) -> None:
        response = "```\n# Plan: Fenced\n\n## Phase 1: A\n\n- [ ] 1.1 Task\n```"
        plan = plan_markdown.detect_plan(response)
        assert plan is not None
        assert plan.require_task("1.1").description == "Task"

    def test_header_without_tasks(self) -> None:
        assert plan_markdown.detect_plan("# Plan: Nothing yet\n\nStill thinking.") is None

    def test_no_plan(self) -> None:
        assert plan_markdown.detect_plan("Just an answer.") is None
