"""
Unit Tests for the Execution Engine

Drives the engine with scripted capabilities over a real file store to
verify the loop, the completion oracle, user-input round trips, replanning
and the terminal conditions.
"""

import asyncio

import pytest

from cardsmith.core.domain.engine import (
    BUDGET_EXHAUSTED,
    CANCELLED,
    STOPPED_INCOMPLETE,
    TOKEN_BUDGET_EXHAUSTED,
    ExecutionEngine,
)
from cardsmith.core.domain.models import (
    Goal,
    GoalKind,
    GoalStatus,
    MessageType,
    SessionRecord,
    SessionStatus,
    Task,
    TaskStatus,
)
from cardsmith.core.domain.work_items import WorkItemStore
from cardsmith.core.tools.base import Tool, ToolResult
from cardsmith.core.tools.registry import ToolRegistry

from conftest import CHARACTER, WORLDBOOK, ScriptedTool


def planning_handler(calls):
    """PLAN stand-in: one main goal plus an OUTPUT task per missing field."""

    def handle(task, context):
        calls.append(dict(task.parameters))
        store = context.store
        if store.main_goal() is None:
            store.add_goal(context.record.user_request, kind=GoalKind.MAIN)
        for field in context.output.missing_fields():
            if not store.has_pending_task("OUTPUT", field=field):
                store.add_task(f"Write {field}", "OUTPUT", parameters={"field": field})
        return ToolResult.ok({"planned": True})

    return handle


def write_output(task, context):
    context.output.fields[task.parameters["field"]] = {"written": True}
    return ToolResult.ok({"field": task.parameters["field"]})


class HangingTool(Tool):
    @property
    def name(self) -> str:
        return "SEARCH"

    @property
    def description(self) -> str:
        return "Never answers"

    async def execute(self, task, context):
        await asyncio.sleep(10)
        return ToolResult.ok()


async def new_session(session_store, record=None):
    record = record or SessionRecord(user_request="A lighthouse keeper")
    await session_store.create(record)
    return record


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_runs_to_completion(self, session_store):
        plan_calls = []
        registry = ToolRegistry([
            ScriptedTool("PLAN", handler=planning_handler(plan_calls)),
            ScriptedTool("OUTPUT", handler=write_output),
        ])
        events = []
        engine = ExecutionEngine(session_store, registry, event_callback=events.append)
        record = await new_session(session_store)

        outcome = await engine.start(record.id)

        assert outcome.success is True
        assert outcome.status == SessionStatus.COMPLETED
        assert outcome.iterations == 3
        assert set(outcome.output["fields"]) == {"character", "worldbook"}
        assert plan_calls == [{"plan_type": "initial"}]

        stored = await session_store.load(record.id)
        assert stored.status == SessionStatus.COMPLETED
        assert stored.goals[0].status == GoalStatus.COMPLETED
        assert stored.tasks == []
        assert len(stored.archived_tasks) == 3
        assert stored.version > 2
        assert events[-1].event_type == "completed"

    @pytest.mark.asyncio
    async def test_interrupted_executing_task_is_requeued(self, session_store):
        record = SessionRecord(user_request="x")
        record.output.required_fields = ["character"]
        record.tasks.append(
            Task("Write", "OUTPUT", parameters={"field": "character"}, status=TaskStatus.EXECUTING)
        )
        await new_session(session_store, record)
        registry = ToolRegistry([ScriptedTool("OUTPUT", handler=write_output)])

        outcome = await ExecutionEngine(session_store, registry).start(record.id)

        assert outcome.success
        assert outcome.iterations == 1


class TestUserInput:
    def _registry(self, plan_calls, ask_result):
        asked = []

        def plan(task, context):
            if not asked:
                asked.append(True)
                context.store.add_task("Ask tone", "ASK_USER", priority=9)
            return planning_handler(plan_calls)(task, context)

        return ToolRegistry([
            ScriptedTool("PLAN", handler=plan),
            ScriptedTool("ASK_USER", results=[ask_result]),
            ScriptedTool("OUTPUT", handler=write_output),
        ])

    @pytest.mark.asyncio
    async def test_round_trip_does_not_consume_an_iteration(self, session_store):
        ask = ToolResult.ok({"question": "Tone?"}, user_input_required=True, user_prompt="Tone?")
        registry = self._registry([], ask)
        prompts = []

        def callback(prompt, choices):
            prompts.append((prompt, choices))
            return "cozy"

        record = await new_session(session_store)
        outcome = await ExecutionEngine(session_store, registry).start(record.id, callback)

        assert outcome.success
        # PLAN, OUTPUT, OUTPUT; the ASK_USER round trip is free
        assert outcome.iterations == 3
        assert prompts == [("Tone?", None)]
        stored = await session_store.load(record.id)
        replies = [m for m in stored.messages if m.type == MessageType.USER_INPUT]
        assert [m.content for m in replies] == ["cozy"]

    @pytest.mark.asyncio
    async def test_async_callback_and_choices(self, session_store):
        ask = ToolResult.ok(
            {}, user_input_required=True, user_prompt="Era?", choices=["bronze", "steam"]
        )
        registry = self._registry([], ask)

        async def callback(prompt, choices):
            return choices[1]

        record = await new_session(session_store)
        outcome = await ExecutionEngine(session_store, registry).start(record.id, callback)

        stored = await session_store.load(record.id)
        assert outcome.success
        assert stored.user_messages() == ["steam"]

    @pytest.mark.asyncio
    async def test_major_change_enqueues_complete_replan(self, session_store):
        plan_calls = []
        ask = ToolResult.ok({}, user_input_required=True, user_prompt="Anything else?")
        registry = self._registry(plan_calls, ask)

        record = await new_session(session_store)
        outcome = await ExecutionEngine(session_store, registry).start(
            record.id, lambda prompt, choices: "Actually, make her a dwarf smith"
        )

        assert outcome.success
        assert {"plan_type": "complete_replan", "user_input": "Actually, make her a dwarf smith"} in plan_calls
        stored = await session_store.load(record.id)
        replan = next(t for t in stored.archived_tasks if t.parameters.get("plan_type") == "complete_replan")
        assert replan.priority == 10

    @pytest.mark.asyncio
    async def test_empty_reply_is_skipped(self, session_store):
        ask = ToolResult.ok({}, user_input_required=True, user_prompt="Tone?")
        registry = self._registry([], ask)

        record = await new_session(session_store)
        outcome = await ExecutionEngine(session_store, registry).start(record.id, lambda p, c: "  ")

        stored = await session_store.load(record.id)
        assert outcome.success
        assert stored.user_messages() == []

    @pytest.mark.asyncio
    async def test_missing_callback_fails_the_session(self, session_store):
        ask = ToolResult.ok({}, user_input_required=True, user_prompt="Tone?")
        registry = self._registry([], ask)

        record = await new_session(session_store)
        outcome = await ExecutionEngine(session_store, registry).start(record.id)

        assert outcome.success is False
        assert "no input callback" in outcome.error
        stored = await session_store.load(record.id)
        assert stored.status == SessionStatus.FAILED


class TestCompletionOracle:
    @pytest.fixture
    def tools(self):
        return [ScriptedTool(name) for name in ("PLAN", "OUTPUT", "SEARCH")]

    @pytest.fixture
    def finished_record(self):
        record = SessionRecord(user_request="A lighthouse keeper")
        record.output.fields.update(character=CHARACTER, worldbook=WORLDBOOK)
        return record

    @pytest.mark.asyncio
    async def test_complete_output_with_empty_pool_succeeds_without_work(
        self, session_store, tools, finished_record
    ):
        await new_session(session_store, finished_record)

        outcome = await ExecutionEngine(session_store, ToolRegistry(tools)).start(finished_record.id)

        assert outcome.success is True
        assert outcome.status == SessionStatus.COMPLETED
        assert outcome.iterations == 0
        assert all(tool.calls == [] for tool in tools)
        stored = await session_store.load(finished_record.id)
        assert stored.tasks == [] and stored.archived_tasks == []

    @pytest.mark.asyncio
    async def test_repeated_runs_reach_the_same_verdict(self, session_store, tools, finished_record):
        await new_session(session_store, finished_record)
        engine = ExecutionEngine(session_store, ToolRegistry(tools))

        first = await engine.start(finished_record.id)
        second = await engine.start(finished_record.id)

        assert (first.success, first.status, first.iterations) == (True, SessionStatus.COMPLETED, 0)
        assert (second.success, second.status, second.iterations) == (True, SessionStatus.COMPLETED, 0)
        assert all(tool.calls == [] for tool in tools)

    def test_verdict_does_not_change_between_checks(self, tools, finished_record):
        store = WorkItemStore(finished_record)
        engine = ExecutionEngine(None, ToolRegistry(tools))

        first = engine._should_continue(store, 0)
        second = engine._should_continue(store, 0)

        assert first == second
        assert first.keep_going is False and first.reason == "output complete"
        assert finished_record.tasks == []

    def test_completed_main_goal_stops_even_with_missing_output(self, tools):
        record = SessionRecord(user_request="A lighthouse keeper")
        store = WorkItemStore(record)
        main = store.add_goal(record.user_request, kind=GoalKind.MAIN)
        store.update_goal(main.id, status=GoalStatus.COMPLETED)
        engine = ExecutionEngine(None, ToolRegistry(tools))

        decisions = [engine._should_continue(store, 0) for _ in range(2)]

        assert decisions[0] == decisions[1]
        assert decisions[0].keep_going is False
        assert record.tasks == []


class TestTermination:
    @pytest.mark.asyncio
    async def test_iteration_budget_exhausted(self, session_store):
        def endless(task, context):
            context.store.add_task("Search again", "SEARCH")
            return ToolResult.ok()

        registry = ToolRegistry([
            ScriptedTool("PLAN", handler=endless),
            ScriptedTool("SEARCH", handler=endless),
        ])
        record = await new_session(session_store)

        outcome = await ExecutionEngine(session_store, registry, max_iterations=5).start(record.id)

        assert outcome.success is False
        assert outcome.reason == BUDGET_EXHAUSTED
        assert outcome.resumable is True
        assert outcome.iterations == 5
        stored = await session_store.load(record.id)
        assert stored.status == SessionStatus.FAILED
        assert stored.execution.failure_reason == BUDGET_EXHAUSTED

    @pytest.mark.asyncio
    async def test_record_max_iterations_used_by_default(self, session_store):
        def endless(task, context):
            context.store.add_task("Search again", "SEARCH")
            return ToolResult.ok()

        registry = ToolRegistry([
            ScriptedTool("PLAN", handler=endless),
            ScriptedTool("SEARCH", handler=endless),
        ])
        record = SessionRecord(user_request="x")
        record.execution.max_iterations = 2
        await new_session(session_store, record)

        outcome = await ExecutionEngine(session_store, registry).start(record.id)

        assert outcome.iterations == 2

    @pytest.mark.asyncio
    async def test_idle_replans_stop_the_loop(self, session_store):
        plan_calls = []
        registry = ToolRegistry([
            ScriptedTool("PLAN", handler=lambda t, c: plan_calls.append(t.parameters) or ToolResult.ok())
        ])
        record = await new_session(session_store)

        outcome = await ExecutionEngine(session_store, registry).start(record.id)

        assert outcome.reason == STOPPED_INCOMPLETE
        assert outcome.resumable is False
        assert [c["plan_type"] for c in plan_calls] == ["initial", "replan", "replan", "replan"]

    @pytest.mark.asyncio
    async def test_tool_can_stop_the_loop(self, session_store):
        registry = ToolRegistry([
            ScriptedTool("PLAN", results=[ToolResult.ok(should_continue_loop=False)])
        ])
        record = await new_session(session_store)

        outcome = await ExecutionEngine(session_store, registry).start(record.id)

        assert outcome.reason == STOPPED_INCOMPLETE
        assert outcome.iterations == 1

    @pytest.mark.asyncio
    async def test_token_budget_exhausted(self, session_store):
        record = SessionRecord(user_request="x")
        record.execution.token_budget = 100
        record.execution.tokens_used = 150
        await new_session(session_store, record)
        registry = ToolRegistry([ScriptedTool("PLAN")])

        outcome = await ExecutionEngine(session_store, registry).start(record.id)

        assert outcome.reason == TOKEN_BUDGET_EXHAUSTED
        assert outcome.resumable is True
        assert outcome.iterations == 0

    @pytest.mark.asyncio
    async def test_cancel_stops_before_next_iteration(self, session_store):
        registry = ToolRegistry()
        engine = ExecutionEngine(session_store, registry)

        def cancel_during_plan(task, context):
            engine.cancel()
            context.store.add_task("More work", "PLAN")
            return ToolResult.ok()

        registry.register(ScriptedTool("PLAN", handler=cancel_during_plan))
        record = await new_session(session_store)

        outcome = await engine.start(record.id)

        assert outcome.reason == CANCELLED
        assert outcome.resumable is True
        assert outcome.iterations == 1
        stored = await session_store.load(record.id)
        assert [t.description for t in stored.tasks] == ["More work"]

    @pytest.mark.asyncio
    async def test_missing_session_is_reported_not_raised(self, session_store):
        engine = ExecutionEngine(session_store, ToolRegistry())

        outcome = await engine.start("does-not-exist")

        assert outcome.success is False
        assert outcome.status == SessionStatus.FAILED
        assert "Session not found" in outcome.error


class TestFailures:
    @pytest.mark.asyncio
    async def test_unknown_capability_is_a_task_failure(self, session_store):
        record = SessionRecord(user_request="x")
        record.output.required_fields = ["character"]
        store = WorkItemStore(record)
        store.add_goal("x", kind=GoalKind.MAIN)
        store.add_task("Dance", "DANCE", priority=9)
        store.add_task("Write", "OUTPUT", parameters={"field": "character"})
        await new_session(session_store, record)
        registry = ToolRegistry([ScriptedTool("OUTPUT", handler=write_output)])

        outcome = await ExecutionEngine(session_store, registry).start(record.id)

        assert outcome.success
        stored = await session_store.load(record.id)
        assert stored.failure_history.count("DANCE") == 1
        assert any(m.type == MessageType.TOOL_FAILURE for m in stored.messages)

    @pytest.mark.asyncio
    async def test_tool_timeout_records_failure(self, session_store):
        record = SessionRecord(user_request="x")
        record.tasks.append(Task("Search", "SEARCH"))
        await new_session(session_store, record)
        registry = ToolRegistry([HangingTool()])

        outcome = await ExecutionEngine(
            session_store, registry, max_iterations=1, tool_timeout=0.05
        ).start(record.id)

        assert outcome.reason == BUDGET_EXHAUSTED
        stored = await session_store.load(record.id)
        assert stored.failure_history.count("SEARCH") == 1
        assert stored.execution.last_error == "SEARCH timed out after 0.05s"

    @pytest.mark.asyncio
    async def test_failure_analysis_injected_once_per_crossing(self, session_store):
        record = SessionRecord(user_request="x")
        record.failure_history.failure_counts = {"SEARCH": 5, "OUTPUT": 5}
        record.goals.append(Goal("x", kind=GoalKind.MAIN))
        record.tasks.append(Task("Search", "SEARCH"))
        await new_session(session_store, record)

        plan_types = []

        def plan(task, context):
            plan_types.append(task.parameters["plan_type"])
            if task.parameters["plan_type"] == "failure_analysis":
                return ToolResult.ok(should_replan=True)
            context.output.fields.update(character={"c": 1}, worldbook={"w": 1})
            return ToolResult.ok()

        registry = ToolRegistry([
            ScriptedTool("PLAN", handler=plan),
            ScriptedTool("SEARCH", results=[ToolResult.fail("network down")]),
        ])

        outcome = await ExecutionEngine(session_store, registry).start(record.id)

        assert outcome.success
        assert plan_types == ["failure_analysis", "replan"]
        stored = await session_store.load(record.id)
        assert stored.plan_context.analyzed_capabilities == ["OUTPUT", "SEARCH"]
        analysis = next(t for t in stored.archived_tasks if t.parameters.get("plan_type") == "failure_analysis")
        assert analysis.priority == 10
