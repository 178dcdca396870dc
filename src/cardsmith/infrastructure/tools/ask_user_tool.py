# ============================================
# ASK USER TOOL (first-class)
# ============================================
"""
ASK_USER drafts a question for the human, refines it with its thinking
module, and hands it to the engine as a user-input request. A task that
already carries a ``question`` parameter is asked verbatim.
"""

from typing import Any

from pydantic import BaseModel, Field

from cardsmith.core.domain.models import MessageType, Task
from cardsmith.core.interfaces.llm import LLMProviderProtocol
from cardsmith.core.prompts.tool_prompts import (
    ASK_USER_SYSTEM_PROMPT,
    CONTEXTUAL_QUESTION_PROMPT,
    MULTIPLE_CHOICE_PROMPT,
)
from cardsmith.core.thinking.base import BaseThinking
from cardsmith.core.thinking.schemas import ImprovementInstruction
from cardsmith.core.tools.base import Capability, ReflectiveTool, ToolParameter, ToolResult
from cardsmith.core.tools.context import ToolContext
from cardsmith.infrastructure.tools.llm_calls import ask_model, with_improvement

CONTEXTUAL = "ask_contextual_questions"
MULTIPLE_CHOICE = "ask_multiple_choice"
SUB_TOOLS = [CONTEXTUAL, MULTIPLE_CHOICE]

_PROMPTS = {
    CONTEXTUAL: CONTEXTUAL_QUESTION_PROMPT,
    MULTIPLE_CHOICE: MULTIPLE_CHOICE_PROMPT,
}


class QuestionDraft(BaseModel):
    question: str = Field(min_length=1)
    choices: list[str] = Field(default_factory=list)
    missing: list[str] = Field(default_factory=list)


class AskUserThinking(BaseThinking):
    evaluation_criteria = (
        "The question targets information that is actually missing, is specific and "
        "easy to answer, asks at most three things, and does not repeat earlier questions."
    )
    improvement_guidance = "Prefer fewer, sharper questions over broad ones."


class AskUserTool(ReflectiveTool):
    """Model-drafted prompt to request missing info from a human."""

    parameters = [
        ToolParameter(name="topic", description="What the agent needs to learn"),
        ToolParameter(name="question", description="Exact question to ask; skips drafting"),
        ToolParameter(name="choices", type="array", description="Answer options for the user"),
    ]

    def __init__(
        self,
        llm: LLMProviderProtocol,
        thinking: BaseThinking | None = None,
        max_attempts: int = 2,
    ):
        super().__init__(thinking or AskUserThinking(llm, Capability.ASK_USER.value), max_attempts)
        self.llm = llm

    @property
    def name(self) -> str:
        return Capability.ASK_USER.value

    @property
    def description(self) -> str:
        return (
            "Ask the user for missing information or a decision. Use when requirements are "
            "unclear or a creative choice should be confirmed."
        )

    async def execute(self, task: Task, context: ToolContext) -> ToolResult:
        question = task.parameters.get("question")
        if question:
            draft = {"question": question, "choices": task.parameters.get("choices") or []}
            return await self.finalize(draft, task, context)
        return await super().execute(task, context)

    async def do_work(self, task: Task, context: ToolContext) -> dict[str, Any]:
        if task.parameters.get("choices"):
            sub_tool = MULTIPLE_CHOICE
        else:
            decision = await self.thinking.route_to_sub_tool(context, SUB_TOOLS)
            sub_tool = decision.selected_sub_tool
        draft = await ask_model(
            self.llm, ASK_USER_SYSTEM_PROMPT, self._prompt(sub_tool, task, context), context, QuestionDraft
        )
        return {"sub_tool": sub_tool, **draft.model_dump()}

    async def improve(
        self,
        result: dict[str, Any],
        instruction: ImprovementInstruction,
        task: Task,
        context: ToolContext,
    ) -> dict[str, Any]:
        sub_tool = result.get("sub_tool", CONTEXTUAL)
        prompt = with_improvement(
            self._prompt(sub_tool, task, context), self.thinking.render_result(result), instruction
        )
        draft = await ask_model(self.llm, ASK_USER_SYSTEM_PROMPT, prompt, context, QuestionDraft)
        return {"sub_tool": sub_tool, **draft.model_dump()}

    async def finalize(self, result: dict[str, Any], task: Task, context: ToolContext) -> ToolResult:
        choices = list(task.parameters.get("choices") or result.get("choices") or [])
        context.add_message(
            result["question"],
            MessageType.AGENT_OUTPUT,
            task_id=task.id,
            capability=self.name,
            choices=choices,
        )
        return ToolResult.ok(
            {"question": result["question"], "choices": choices, "missing": result.get("missing", [])},
            user_input_required=True,
            user_prompt=result["question"],
            choices=choices or None,
        )

    @staticmethod
    def _prompt(sub_tool: str, task: Task, context: ToolContext) -> str:
        template = _PROMPTS.get(sub_tool, CONTEXTUAL_QUESTION_PROMPT)
        topic = task.parameters.get("topic") or task.description
        return template.format(session=context.session_summary(), topic=topic)
