"""
Base Thinking Module

Shared skeleton behind every capability's self-evaluation: render a
capability-specific prompt, ask the configured model, and validate the
answer. Evaluation and improvement fail loud with ``ThinkingError``; only
routing tolerates an out-of-range choice by falling back to the first
option, because a bad routing pick must not stop the loop.
"""

from __future__ import annotations

import json
from typing import Any

import structlog

from cardsmith.core.domain.errors import ThinkingError
from cardsmith.core.interfaces.llm import LLMProviderProtocol
from cardsmith.core.prompts.thinking_prompts import (
    EVALUATION_PROMPT,
    IMPROVEMENT_PROMPT,
    ROUTING_PROMPT,
    THINKING_SYSTEM_PROMPT,
)
from cardsmith.core.thinking.parsing import parse_model_response
from cardsmith.core.thinking.schemas import Evaluation, ImprovementInstruction, RoutingDecision
from cardsmith.core.tools.context import ToolContext

FALLBACK_ROUTING_CONFIDENCE = 50.0
RESULT_PREVIEW_CHARS = 4000


class BaseThinking:
    """Evaluation, improvement and routing for one capability.

    Subclasses tune ``evaluation_criteria`` and ``improvement_guidance`` and
    may override ``render_result`` for results that need custom display.
    """

    evaluation_criteria: str = "The result fully and correctly serves the session goal."
    improvement_guidance: str = ""

    def __init__(
        self,
        llm: LLMProviderProtocol,
        capability: str,
        temperature: float = 0.2,
    ):
        self.llm = llm
        self.capability = capability
        self.temperature = temperature
        self.logger = structlog.get_logger().bind(component="thinking", capability=capability)

    def render_result(self, result: Any) -> str:
        if isinstance(result, str):
            text = result
        else:
            text = json.dumps(result, ensure_ascii=False, indent=2, default=str)
        return text[:RESULT_PREVIEW_CHARS]

    async def evaluate(self, result: Any, context: ToolContext, attempt: int) -> Evaluation:
        """Judge a result.

        Raises:
            ThinkingError: If the model call fails or its answer is malformed
        """
        prompt = EVALUATION_PROMPT.format(
            capability=self.capability,
            criteria=self.evaluation_criteria,
            session=context.session_summary(),
            result=self.render_result(result),
            attempt=attempt,
        )
        evaluation = parse_model_response(await self._ask(prompt, context), Evaluation)
        self.logger.info(
            "result_evaluated",
            attempt=attempt,
            quality_score=evaluation.quality_score,
            satisfied=evaluation.is_satisfied,
            next_action=evaluation.next_action,
        )
        return evaluation

    async def generate_improvement(
        self,
        result: Any,
        evaluation: Evaluation,
        context: ToolContext,
    ) -> ImprovementInstruction:
        prompt = IMPROVEMENT_PROMPT.format(
            capability=self.capability,
            session=context.session_summary(),
            result=self.render_result(result),
            score=evaluation.quality_score,
            reasoning=evaluation.reasoning,
            shortcomings="; ".join(evaluation.improvement_needed) or "(none listed)",
            guidance=self.improvement_guidance,
        )
        instruction = parse_model_response(await self._ask(prompt, context), ImprovementInstruction)
        self.logger.debug("improvement_generated", focus_areas=instruction.focus_areas)
        return instruction

    async def route_to_sub_tool(
        self,
        context: ToolContext,
        available: list[str],
    ) -> RoutingDecision:
        """Pick one of ``available`` sub-behaviors.

        An unparsable answer raises ``ThinkingError``; a well-formed answer
        naming an unknown option falls back to the first option.
        """
        if not available:
            raise ThinkingError(f"No sub-behaviors available for {self.capability}")
        if len(available) == 1:
            return RoutingDecision(
                selected_sub_tool=available[0],
                reasoning="Only one sub-behavior available",
                confidence=100,
            )

        prompt = ROUTING_PROMPT.format(
            capability=self.capability,
            session=context.session_summary(),
            options="\n".join(f"- {name}" for name in available),
        )
        decision = parse_model_response(await self._ask(prompt, context), RoutingDecision)

        if decision.selected_sub_tool not in available:
            self.logger.warning(
                "routing_fallback",
                selected=decision.selected_sub_tool,
                fallback=available[0],
            )
            decision = RoutingDecision(
                selected_sub_tool=available[0],
                reasoning=(
                    f'Fallback: Original selection "{decision.selected_sub_tool}" '
                    f"not available. {decision.reasoning}"
                ).strip(),
                confidence=FALLBACK_ROUTING_CONFIDENCE,
            )
        return decision

    async def _ask(self, prompt: str, context: ToolContext) -> str:
        context.raise_if_cancelled()
        result = await self.llm.complete(
            messages=[
                {"role": "system", "content": THINKING_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            model_config=context.llm_config,
            response_format={"type": "json_object"},
            temperature=self.temperature,
        )
        if not result.get("success"):
            raise ThinkingError(
                f"{self.capability} thinking call failed: {result.get('error', 'unknown error')}"
            )
        context.record_usage(result.get("usage"))
        return result.get("content") or ""
