"""
Unit tests for the ASK_USER, SEARCH, OUTPUT and REFLECT capabilities.
"""

from unittest.mock import AsyncMock

import pytest

from cardsmith.core.domain.models import MessageType, TaskStatus
from cardsmith.core.tools.registry import ToolRegistry
from cardsmith.infrastructure.tools.ask_user_tool import AskUserTool
from cardsmith.infrastructure.tools.output_tool import OutputTool
from cardsmith.infrastructure.tools.reflect_tool import ReflectTool
from cardsmith.infrastructure.tools.search_tool import NO_BACKEND_NOTE, SearchTool

from conftest import CHARACTER, WORLDBOOK, ScriptedTool, satisfied, scripted_llm, unsatisfied


class TestAskUser:
    @pytest.mark.asyncio
    async def test_explicit_question_is_asked_verbatim(self, context, work_items):
        llm = scripted_llm()
        task = work_items.add_task(
            "Ask tone", "ASK_USER", parameters={"question": "Grim or cozy?", "choices": ["grim", "cozy"]}
        )

        result = await AskUserTool(llm).execute_safe(task, context)

        assert result.user_input_required is True
        assert result.user_prompt == "Grim or cozy?"
        assert result.choices == ["grim", "cozy"]
        assert task.status == TaskStatus.COMPLETED
        llm.complete.assert_not_called()

    @pytest.mark.asyncio
    async def test_routes_drafts_and_evaluates(self, context, work_items):
        llm = scripted_llm(
            {"selected_sub_tool": "ask_multiple_choice", "reasoning": "simple choice"},
            {"question": "Which era?", "choices": ["bronze age", "steam age"]},
            satisfied(),
        )
        task = work_items.add_task("Ask era", "ASK_USER", parameters={"topic": "era"})

        result = await AskUserTool(llm).execute_safe(task, context)

        assert result.user_prompt == "Which era?"
        assert result.choices == ["bronze age", "steam age"]
        assert result.payload["question"] == "Which era?"
        outputs = [m for m in context.conversation if m.type == MessageType.AGENT_OUTPUT]
        assert outputs[-1].content == "Which era?"

    @pytest.mark.asyncio
    async def test_choices_parameter_skips_routing(self, context, work_items):
        llm = scripted_llm({"question": "Pick one", "choices": []}, satisfied())
        task = work_items.add_task("Ask", "ASK_USER", parameters={"choices": ["a", "b"]})

        result = await AskUserTool(llm).execute_safe(task, context)

        assert result.choices == ["a", "b"]
        assert llm.complete.await_count == 2

    @pytest.mark.asyncio
    async def test_improves_question(self, context, work_items):
        llm = scripted_llm(
            {"selected_sub_tool": "ask_contextual_questions"},
            {"question": "Tell me everything?"},
            unsatisfied(30),
            {"focus_areas": ["specificity"], "specific_requests": ["one question"]},
            {"question": "What is her greatest fear?"},
            satisfied(),
        )
        task = work_items.add_task("Ask", "ASK_USER")

        result = await AskUserTool(llm).execute_safe(task, context)

        assert result.user_prompt == "What is her greatest fear?"
        assert result.choices is None


class TestSearch:
    @pytest.mark.asyncio
    async def test_uses_backend_and_records_knowledge(self, context, work_items):
        backend = AsyncMock()
        backend.search.return_value = [{"title": "Lighthouses of Brittany", "url": "x"}]
        llm = scripted_llm(
            {"summary": "Keepers lived alone for months.", "inspirations": ["isolation"]},
            satisfied(),
        )
        task = work_items.add_task(
            "Research", "SEARCH", parameters={"query": "lighthouse keepers", "max_results": 3}
        )

        result = await SearchTool(llm, backend=backend).execute_safe(task, context)

        assert result.success
        backend.search.assert_awaited_once_with("lighthouse keepers", 3)
        knowledge = context.output.knowledge[-1]
        assert knowledge["summary"] == "Keepers lived alone for months."
        assert knowledge["query"] == "lighthouse keepers"

    @pytest.mark.asyncio
    async def test_without_backend_model_works_from_own_knowledge(self, context, work_items):
        llm = scripted_llm({"summary": "Notes"}, satisfied())
        task = work_items.add_task("Research", "SEARCH")

        await SearchTool(llm).execute_safe(task, context)

        prompt = llm.complete.await_args_list[0].kwargs["messages"][1]["content"]
        assert NO_BACKEND_NOTE in prompt
        assert context.output.knowledge[-1]["query"] == context.record.user_request


class TestOutput:
    @pytest.mark.asyncio
    async def test_writes_character_field(self, context, work_items):
        llm = scripted_llm(CHARACTER, satisfied())
        task = work_items.add_task("Write", "OUTPUT", parameters={"field": "character"})

        result = await OutputTool(llm).execute_safe(task, context)

        assert result.success
        assert context.output.fields["character"] == CHARACTER
        assert context.output.missing_fields() == ["worldbook"]

    @pytest.mark.asyncio
    async def test_type_alias_and_worldbook(self, context, work_items):
        llm = scripted_llm(WORLDBOOK, satisfied())
        task = work_items.add_task("Write", "OUTPUT", parameters={"type": "worldbook"})

        await OutputTool(llm).execute_safe(task, context)

        assert context.output.fields["worldbook"]["entries"][0]["keys"] == ["lighthouse"]

    @pytest.mark.asyncio
    async def test_unknown_field_is_a_failure(self, context, work_items):
        task = work_items.add_task("Write", "OUTPUT", parameters={"field": "poem"})

        result = await OutputTool(scripted_llm()).execute_safe(task, context)

        assert not result.success
        assert "Invalid value for field" in result.error

    @pytest.mark.asyncio
    async def test_missing_field_is_a_failure(self, context, work_items):
        task = work_items.add_task("Write", "OUTPUT")

        result = await OutputTool(scripted_llm()).execute_safe(task, context)

        assert "OUTPUT requires 'field'" in result.error
        assert work_items.failure_count("OUTPUT") == 1

    @pytest.mark.asyncio
    async def test_incomplete_document_is_a_failure(self, context, work_items):
        incomplete = {k: v for k, v in CHARACTER.items() if k != "first_mes"}
        task = work_items.add_task("Write", "OUTPUT", parameters={"field": "character"})

        result = await OutputTool(scripted_llm(incomplete)).execute_safe(task, context)

        assert not result.success
        assert "character" not in context.output.fields


class TestReflect:
    @pytest.fixture
    def reflect(self):
        registry = ToolRegistry([ScriptedTool("SEARCH"), ScriptedTool("OUTPUT")])
        tool = ReflectTool(registry)
        registry.register(tool)
        return tool

    @pytest.mark.asyncio
    async def test_appends_new_tasks(self, reflect, context, work_items):
        task = work_items.add_task(
            "Reflect",
            "REFLECT",
            parameters={
                "new_tasks": [
                    "Look up tide folklore",
                    {"description": "Write worldbook", "capability": "output",
                     "parameters": {"field": "worldbook"}, "priority": 7},
                ],
                "capability": "search",
            },
        )

        result = await reflect.execute_safe(task, context)

        assert result.payload["tasks_count"] == 2
        search, output = work_items.live_tasks
        assert (search.capability, search.priority) == ("SEARCH", 5)
        assert (output.capability, output.priority) == ("OUTPUT", 7)
        assert output.parameters == {"field": "worldbook"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "params, message",
        [
            ({"new_tasks": []}, "at least one task"),
            ({"new_tasks": "do things"}, "as an array"),
            ({"new_tasks": ["  "], "capability": "SEARCH"}, "non-empty"),
            ({"new_tasks": ["look"]}, "has no capability"),
            ({"new_tasks": ["look"], "capability": "DANCE"}, "unknown capability DANCE"),
        ],
    )
    async def test_invalid_input_is_a_failure(self, reflect, context, work_items, params, message):
        task = work_items.add_task("Reflect", "REFLECT", parameters=params)

        result = await reflect.execute_safe(task, context)

        assert not result.success
        assert message in result.error
        assert work_items.live_tasks == []
