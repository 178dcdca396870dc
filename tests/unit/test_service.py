"""
Unit tests for GenerationService.

Runs whole sessions end to end with scripted capabilities and a file store
in a temporary directory.
"""

import os
import time

import pytest

from cardsmith.application.service import EXPORT_FORMAT_VERSION, GenerationService, _default_title
from cardsmith.application.settings import CardsmithSettings
from cardsmith.core.domain.models import GoalKind, ModelConfig, SessionStatus
from cardsmith.core.tools.base import ToolResult
from cardsmith.core.tools.registry import ToolRegistry

from conftest import CHARACTER, WORLDBOOK, ScriptedTool


def plan(task, context):
    store = context.store
    if store.main_goal() is None:
        store.add_goal(context.record.user_request, kind=GoalKind.MAIN)
    for field in context.output.missing_fields():
        store.add_task(f"Write {field}", "OUTPUT", parameters={"field": field})
    return ToolResult.ok()


def write(task, context):
    field = task.parameters["field"]
    context.output.fields[field] = CHARACTER if field == "character" else WORLDBOOK
    return ToolResult.ok()


@pytest.fixture
def settings(tmp_path):
    return CardsmithSettings(storage_dir=str(tmp_path / "sessions"), api_key="sk-secret")


@pytest.fixture
def service(settings):
    registry = ToolRegistry([ScriptedTool("PLAN", handler=plan), ScriptedTool("OUTPUT", handler=write)])
    return GenerationService(settings=settings, registry=registry)


def keep_searching(task, context):
    context.store.add_task("Look again", "SEARCH")
    return ToolResult.ok()


@pytest.fixture
def stalled_service(settings):
    registry = ToolRegistry([
        ScriptedTool("PLAN", handler=keep_searching),
        ScriptedTool("SEARCH", handler=keep_searching),
    ])
    return GenerationService(settings=settings.model_copy(update={"max_iterations": 2}), registry=registry)


class TestGeneration:
    @pytest.mark.asyncio
    async def test_start_generation_completes(self, service):
        updates = []

        outcome = await service.start_generation(
            "A lighthouse keeper in a drowned world", progress_callback=updates.append
        )

        assert outcome.success
        assert outcome.output["fields"]["character"]["name"] == "Mira"
        assert updates[0].event_type == "started"
        assert updates[-1].event_type == "completed"

        status = await service.get_status(outcome.session_id)
        assert status["status"] == "completed"
        assert status["has_result"] is True
        assert status["missing_outputs"] == []
        assert status["progress"]["archived"] == 3

    @pytest.mark.asyncio
    async def test_session_carries_settings(self, service):
        outcome = await service.start_generation(
            "Sky pirates", title="Pirates", model_config=ModelConfig(model_name="gpt-4.1")
        )

        record = await service.get_session(outcome.session_id)
        assert record.title == "Pirates"
        assert record.llm_config.model_name == "gpt-4.1"
        assert record.plan_context.user_request == "Sky pirates"
        assert record.execution.max_iterations == 50

    @pytest.mark.asyncio
    async def test_empty_request_rejected(self, service):
        with pytest.raises(ValueError):
            await service.start_generation("   ")

    @pytest.mark.asyncio
    async def test_budget_exhaustion_is_resumable(self, stalled_service):
        outcome = await stalled_service.start_generation("Endless research")

        assert not outcome.success
        assert outcome.resumable
        status = await stalled_service.get_status(outcome.session_id)
        assert status["failure_reason"] == "iteration budget exhausted"

        again = await stalled_service.resume_generation(outcome.session_id)
        assert again.iterations == 2

    @pytest.mark.asyncio
    async def test_resume_completed_session_is_noop(self, service):
        outcome = await service.start_generation("Sky pirates")
        before = await service.get_session(outcome.session_id)

        resumed = await service.resume_generation(outcome.session_id)

        assert resumed.success
        assert resumed.status == SessionStatus.COMPLETED
        assert (await service.get_session(outcome.session_id)).version == before.version


class TestInspection:
    @pytest.mark.asyncio
    async def test_list_messages_and_delete(self, service):
        first = await service.start_generation("One")
        second = await service.start_generation("Two")

        listed = {s["id"]: s for s in await service.list_sessions()}
        assert set(listed) == {first.session_id, second.session_id}
        assert listed[first.session_id]["title"] == "One"

        messages = await service.get_messages(first.session_id)
        assert messages[0]["type"] == "system_info"

        assert await service.delete_session(first.session_id) is True
        assert [s["id"] for s in await service.list_sessions()] == [second.session_id]

    @pytest.mark.asyncio
    async def test_export_strips_api_key(self, service):
        outcome = await service.start_generation("Sky pirates")

        exported = await service.export_session(outcome.session_id)

        assert exported["format_version"] == EXPORT_FORMAT_VERSION
        assert exported["session"]["id"] == outcome.session_id
        assert exported["session"]["llm_config"]["api_key"] is None
        assert exported["session"]["output"]["fields"]["worldbook"] == WORLDBOOK

    @pytest.mark.asyncio
    async def test_cleanup_uses_configured_age(self, service):
        old = await service.start_generation("Old")
        recent = await service.start_generation("Recent")
        stale = time.time() - 31 * 24 * 60 * 60
        os.utime(service.store.storage_dir / f"{old.session_id}.json", (stale, stale))

        assert await service.cleanup_sessions(days=40) == 0
        assert await service.cleanup_sessions() == 1
        assert [s["id"] for s in await service.list_sessions()] == [recent.session_id]

    @pytest.mark.asyncio
    async def test_stats(self, service, stalled_service):
        await service.start_generation("Done")
        await stalled_service.start_generation("Stuck")

        stats = await service.get_stats()

        assert stats["total_sessions"] == 2
        assert stats["by_status"]["completed"] == 1
        assert stats["by_status"]["failed"] == 1
        assert stats["total_tasks"] > 0


def test_default_title():
    assert _default_title("Short\nsecond line") == "Short"
    long = "x" * 100
    assert _default_title(long) == "x" * 57 + "..."
