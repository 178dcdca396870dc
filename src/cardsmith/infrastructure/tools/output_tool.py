"""
OUTPUT capability.

Produces one required output field (``character`` or ``worldbook``) as a
validated JSON document and stores it in the session output. Completion of
the session is judged on these fields.
"""

import json
from typing import Any

from pydantic import BaseModel, Field

from cardsmith.core.domain.errors import ToolExecutionError
from cardsmith.core.domain.models import MessageType, Task
from cardsmith.core.interfaces.llm import LLMProviderProtocol
from cardsmith.core.prompts.tool_prompts import (
    CHARACTER_PROMPT,
    OUTPUT_SYSTEM_PROMPT,
    WORLDBOOK_PROMPT,
)
from cardsmith.core.thinking.base import BaseThinking
from cardsmith.core.thinking.schemas import ImprovementInstruction
from cardsmith.core.tools.base import Capability, ReflectiveTool, ToolParameter, ToolResult
from cardsmith.core.tools.context import ToolContext
from cardsmith.infrastructure.tools.llm_calls import ask_model, with_improvement

KNOWLEDGE_PREVIEW = 5


class CharacterCard(BaseModel):
    name: str = Field(min_length=1)
    description: str = Field(min_length=1)
    personality: str = Field(min_length=1)
    scenario: str = ""
    first_mes: str = Field(min_length=1)
    mes_example: str = ""
    creator_notes: str = ""
    tags: list[str] = Field(default_factory=list)


class WorldbookEntry(BaseModel):
    keys: list[str] = Field(min_length=1)
    comment: str = ""
    content: str = Field(min_length=1)
    order: int = 100


class Worldbook(BaseModel):
    entries: list[WorldbookEntry] = Field(min_length=1)


OUTPUT_SCHEMAS: dict[str, type[BaseModel]] = {
    "character": CharacterCard,
    "worldbook": Worldbook,
}


class OutputThinking(BaseThinking):
    evaluation_criteria = (
        "Character cards: vivid, consistent personality, a strong opening message, and "
        "everything the user asked for. Worldbooks: entries consistent with the character, "
        "useful trigger keys, no duplicated lore."
    )
    improvement_guidance = "Keep what already works; change only what the evaluation criticised."


class OutputTool(ReflectiveTool):
    parameters = [
        ToolParameter(
            name="field",
            description="Output to produce",
            options=list(OUTPUT_SCHEMAS),
        ),
        ToolParameter(name="type", description="Alias of field", options=list(OUTPUT_SCHEMAS)),
        ToolParameter(name="instructions", description="Extra requirements for this output"),
    ]

    def __init__(
        self,
        llm: LLMProviderProtocol,
        thinking: BaseThinking | None = None,
        max_attempts: int = 3,
    ):
        super().__init__(thinking or OutputThinking(llm, Capability.OUTPUT.value), max_attempts)
        self.llm = llm

    @property
    def name(self) -> str:
        return Capability.OUTPUT.value

    @property
    def description(self) -> str:
        return "Write a required output: the character card or the worldbook."

    @staticmethod
    def _field(task: Task) -> str:
        field = task.parameters.get("field") or task.parameters.get("type")
        if field not in OUTPUT_SCHEMAS:
            raise ToolExecutionError(
                f"OUTPUT requires 'field' to be one of {sorted(OUTPUT_SCHEMAS)}, got {field!r}"
            )
        return field

    async def do_work(self, task: Task, context: ToolContext) -> dict[str, Any]:
        field = self._field(task)
        document = await ask_model(
            self.llm,
            OUTPUT_SYSTEM_PROMPT,
            self._prompt(field, task, context),
            context,
            OUTPUT_SCHEMAS[field],
        )
        return document.model_dump()

    async def improve(
        self,
        result: dict[str, Any],
        instruction: ImprovementInstruction,
        task: Task,
        context: ToolContext,
    ) -> dict[str, Any]:
        field = self._field(task)
        prompt = with_improvement(
            self._prompt(field, task, context), self.thinking.render_result(result), instruction
        )
        document = await ask_model(
            self.llm, OUTPUT_SYSTEM_PROMPT, prompt, context, OUTPUT_SCHEMAS[field]
        )
        return document.model_dump()

    async def finalize(self, result: dict[str, Any], task: Task, context: ToolContext) -> ToolResult:
        field = self._field(task)
        context.output.fields[field] = result
        context.add_message(
            f"The {field} is ready.",
            MessageType.AGENT_OUTPUT,
            task_id=task.id,
            capability=self.name,
            field=field,
        )
        self.logger.info("output_written", field=field, missing=context.output.missing_fields())
        return ToolResult.ok({"field": field, "content": result})

    @staticmethod
    def _prompt(field: str, task: Task, context: ToolContext) -> str:
        knowledge = context.output.knowledge[-KNOWLEDGE_PREVIEW:]
        common = {
            "session": context.session_summary(),
            "knowledge": json.dumps(knowledge, ensure_ascii=False, indent=2) if knowledge else "(none)",
            "instructions": task.parameters.get("instructions") or task.description,
        }
        if field == "worldbook":
            character = context.output.fields.get("character")
            return WORLDBOOK_PROMPT.format(
                character=json.dumps(character, ensure_ascii=False, indent=2) if character else "(not written yet)",
                **common,
            )
        return CHARACTER_PROMPT.format(**common)
