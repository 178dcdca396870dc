"""Structured model calls shared by the built-in capabilities."""

from typing import TypeVar

from pydantic import BaseModel

from cardsmith.core.domain.errors import ThinkingError
from cardsmith.core.interfaces.llm import LLMProviderProtocol
from cardsmith.core.prompts.tool_prompts import IMPROVEMENT_SUFFIX
from cardsmith.core.thinking.parsing import parse_model_response
from cardsmith.core.thinking.schemas import ImprovementInstruction
from cardsmith.core.tools.context import ToolContext

SchemaT = TypeVar("SchemaT", bound=BaseModel)


async def ask_model(
    llm: LLMProviderProtocol,
    system_prompt: str,
    prompt: str,
    context: ToolContext,
    schema: type[SchemaT],
    temperature: float | None = None,
) -> SchemaT:
    """Send one prompt and validate the JSON answer against ``schema``.

    Raises:
        ThinkingError: If the call fails or the answer does not validate
    """
    context.raise_if_cancelled()
    kwargs = {"response_format": {"type": "json_object"}}
    if temperature is not None:
        kwargs["temperature"] = temperature
    result = await llm.complete(
        messages=[
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": prompt},
        ],
        model_config=context.llm_config,
        **kwargs,
    )
    if not result.get("success"):
        raise ThinkingError(f"Model call failed: {result.get('error', 'unknown error')}")
    context.record_usage(result.get("usage"))
    return parse_model_response(result.get("content") or "", schema)


def with_improvement(prompt: str, previous: str, instruction: ImprovementInstruction) -> str:
    return prompt + IMPROVEMENT_SUFFIX.format(
        previous=previous,
        focus_areas="; ".join(instruction.focus_areas) or "(none)",
        specific_requests="; ".join(instruction.specific_requests) or "(none)",
        quality_target=instruction.quality_target,
    )
