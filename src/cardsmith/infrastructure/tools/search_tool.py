"""
SEARCH capability.

Collects inspiration and reference material for the character and world.
Raw hits come from an injected search backend when one is configured;
without one the model works from its own knowledge. The digest is refined
by the thinking module and appended to the session's knowledge list.
"""

import json
from typing import Any

from pydantic import BaseModel, Field

from cardsmith.core.domain.models import MessageType, Task, now_iso
from cardsmith.core.interfaces.llm import LLMProviderProtocol
from cardsmith.core.interfaces.search import SearchBackendProtocol
from cardsmith.core.prompts.tool_prompts import SEARCH_PROMPT, SEARCH_SYSTEM_PROMPT
from cardsmith.core.thinking.base import BaseThinking
from cardsmith.core.thinking.schemas import ImprovementInstruction
from cardsmith.core.tools.base import Capability, ReflectiveTool, ToolParameter, ToolResult
from cardsmith.core.tools.context import ToolContext
from cardsmith.infrastructure.tools.llm_calls import ask_model, with_improvement

NO_BACKEND_NOTE = "(no search backend configured - rely on your own knowledge)"


class Reference(BaseModel):
    title: str
    source: str = ""
    note: str = ""


class SearchDigest(BaseModel):
    summary: str = Field(min_length=1)
    inspirations: list[str] = Field(default_factory=list)
    references: list[Reference] = Field(default_factory=list)


class SearchThinking(BaseThinking):
    evaluation_criteria = (
        "The digest is relevant to the requested character and world, accurate about "
        "existing works it mentions, and gives concrete, usable inspiration."
    )


class SearchTool(ReflectiveTool):
    parameters = [
        ToolParameter(name="query", description="What to look up; defaults to the user request"),
        ToolParameter(name="max_results", type="integer", description="Maximum raw hits", default=5),
    ]

    def __init__(
        self,
        llm: LLMProviderProtocol,
        backend: SearchBackendProtocol | None = None,
        thinking: BaseThinking | None = None,
        max_attempts: int = 2,
    ):
        super().__init__(thinking or SearchThinking(llm, Capability.SEARCH.value), max_attempts)
        self.llm = llm
        self.backend = backend

    @property
    def name(self) -> str:
        return Capability.SEARCH.value

    @property
    def description(self) -> str:
        return (
            "Gather reference material and inspiration. Use mainly when the request relates "
            "to existing works or real-world culture that must be portrayed accurately."
        )

    async def do_work(self, task: Task, context: ToolContext) -> dict[str, Any]:
        query = task.parameters.get("query") or context.record.user_request
        hits: list[dict[str, Any]] = []
        if self.backend is not None:
            context.raise_if_cancelled()
            hits = await self.backend.search(query, int(task.parameters.get("max_results", 5)))
            self.logger.info("search_backend_results", query=query[:100], hits=len(hits))

        digest = await ask_model(
            self.llm, SEARCH_SYSTEM_PROMPT, self._prompt(query, hits, context), context, SearchDigest
        )
        return {"query": query, "hits": hits, **digest.model_dump()}

    async def improve(
        self,
        result: dict[str, Any],
        instruction: ImprovementInstruction,
        task: Task,
        context: ToolContext,
    ) -> dict[str, Any]:
        prompt = with_improvement(
            self._prompt(result["query"], result.get("hits", []), context),
            self.thinking.render_result(result),
            instruction,
        )
        digest = await ask_model(self.llm, SEARCH_SYSTEM_PROMPT, prompt, context, SearchDigest)
        return {"query": result["query"], "hits": result.get("hits", []), **digest.model_dump()}

    async def finalize(self, result: dict[str, Any], task: Task, context: ToolContext) -> ToolResult:
        entry = {
            "task_id": task.id,
            "query": result["query"],
            "summary": result["summary"],
            "inspirations": result["inspirations"],
            "references": result["references"],
            "collected_at": now_iso(),
        }
        context.output.knowledge.append(entry)
        context.add_message(
            f"Research on '{result['query'][:80]}': {result['summary']}",
            MessageType.AGENT_OUTPUT,
            task_id=task.id,
            capability=self.name,
        )
        return ToolResult.ok(entry)

    @staticmethod
    def _prompt(query: str, hits: list[dict[str, Any]], context: ToolContext) -> str:
        rendered = json.dumps(hits, ensure_ascii=False, indent=2) if hits else NO_BACKEND_NOTE
        return SEARCH_PROMPT.format(session=context.session_summary(), query=query, hits=rendered)
