"""Shared fixtures for Cardsmith tests."""

import json
from typing import Any, Callable
from unittest.mock import AsyncMock

import pytest

from cardsmith.core.domain.models import SessionRecord, Task
from cardsmith.core.domain.work_items import WorkItemStore
from cardsmith.core.tools.base import Tool, ToolResult
from cardsmith.core.tools.context import ToolContext
from cardsmith.infrastructure.persistence.file_session_store import FileSessionStore


def llm_reply(payload: Any, tokens: int = 10) -> dict:
    """A successful LLMService.complete result carrying ``payload`` as JSON."""
    content = payload if isinstance(payload, str) else json.dumps(payload)
    return {"success": True, "content": content, "usage": {"total_tokens": tokens}}


def scripted_llm(*payloads: Any) -> AsyncMock:
    """Mock LLM answering successive calls with the given payloads."""
    llm = AsyncMock()
    llm.complete.side_effect = [
        p if isinstance(p, dict) and "success" in p else llm_reply(p) for p in payloads
    ]
    return llm


def satisfied(score: float = 90) -> dict:
    return {
        "is_satisfied": True,
        "quality_score": score,
        "reasoning": "Good enough",
        "improvement_needed": [],
        "next_action": "complete",
    }


def unsatisfied(score: float = 40) -> dict:
    return {
        "is_satisfied": False,
        "quality_score": score,
        "reasoning": "Too vague",
        "improvement_needed": ["more detail"],
        "next_action": "improve",
    }


CHARACTER = {
    "name": "Mira",
    "description": "A lighthouse keeper on a drowned coast.",
    "personality": "Dry, patient, quietly kind.",
    "scenario": "A storm strands a traveller at the lighthouse.",
    "first_mes": "You're late. The sea doesn't wait, and neither does supper.",
    "mes_example": "",
    "creator_notes": "",
    "tags": ["fantasy"],
}

WORLDBOOK = {
    "entries": [
        {"keys": ["lighthouse"], "comment": "", "content": "The last working light.", "order": 100}
    ]
}


class ScriptedTool(Tool):
    """Tool whose results come from a list, a callable, or a fixed result."""

    def __init__(
        self,
        name: str,
        results: list[ToolResult] | None = None,
        handler: Callable[[Task, ToolContext], ToolResult] | None = None,
    ):
        self._name = name
        super().__init__()
        self.results = list(results or [])
        self.handler = handler
        self.calls: list[Task] = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return f"Scripted {self._name} tool"

    async def execute(self, task: Task, context: ToolContext) -> ToolResult:
        self.calls.append(task)
        if self.handler is not None:
            return self.handler(task, context)
        if self.results:
            return self.results.pop(0)
        return ToolResult.ok({"done": True})


@pytest.fixture
def record() -> SessionRecord:
    return SessionRecord(user_request="A lighthouse keeper in a drowned world", title="Test")


@pytest.fixture
def work_items(record) -> WorkItemStore:
    return WorkItemStore(record)


@pytest.fixture
def context(record, work_items) -> ToolContext:
    return ToolContext(record=record, store=work_items)


@pytest.fixture
def session_store(tmp_path) -> FileSessionStore:
    return FileSessionStore(tmp_path / "sessions")
