# ============================================
# BASE TOOL INTERFACE
# ============================================
"""
Every capability the engine can invoke is a ``Tool``. Concrete tools only
implement ``execute``; the engine calls ``execute_safe``, which adds the
cross-cutting behavior every capability gets for free:

- a reasoning trace tied to the task before invocation
- parameter validation against the declared parameters
- an optional per-invocation timeout
- task status bookkeeping (completed with payload, or failed with the error)
- catching any error into a recoverable ``ToolResult(success=False)``

``ReflectiveTool`` adds the bounded evaluate/improve refinement cycle driven
by a thinking module.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog

from cardsmith.core.domain.errors import SessionCancelledError, ToolExecutionError
from cardsmith.core.domain.models import MessageType, Task, TaskStatus
from cardsmith.core.thinking.base import BaseThinking
from cardsmith.core.thinking.schemas import Evaluation, ImprovementInstruction
from cardsmith.core.tools.context import ToolContext

DEFAULT_MAX_ATTEMPTS = 3


class Capability(str, Enum):
    """Built-in capability names. Plugins may register any other name."""

    PLAN = "PLAN"
    ASK_USER = "ASK_USER"
    SEARCH = "SEARCH"
    OUTPUT = "OUTPUT"
    REFLECT = "REFLECT"


@dataclass
class ToolParameter:
    name: str
    type: str = "string"
    description: str = ""
    required: bool = False
    default: Any = None
    options: list[Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type,
            "description": self.description,
            "required": self.required,
            "default": self.default,
            "options": self.options,
        }


@dataclass
class ToolResult:
    """Outcome of one capability invocation.

    Attributes:
        success: Whether the capability achieved its work
        payload: Result data stored on the task when successful
        error: Error text when unsuccessful
        user_input_required: The engine must ask the user ``user_prompt``
        user_prompt: Question to put to the user
        choices: Optional answer options for the user
        should_continue_loop: False stops the engine loop
        should_replan: The engine should enqueue a replan task
        reasoning: Why the capability decided what it did
    """

    success: bool
    payload: Any = None
    error: str | None = None
    user_input_required: bool = False
    user_prompt: str | None = None
    choices: list[str] | None = None
    should_continue_loop: bool = True
    should_replan: bool = False
    reasoning: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, payload: Any = None, **flags: Any) -> ToolResult:
        return cls(success=True, payload=payload, **flags)

    @classmethod
    def fail(cls, error: str, **flags: Any) -> ToolResult:
        return cls(success=False, error=error, **flags)


class Tool(ABC):
    """Base class for all tools"""

    parameters: list[ToolParameter] = []

    def __init__(self):
        self.logger = structlog.get_logger().bind(component="tool", tool=self.name)

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @property
    @abstractmethod
    def description(self) -> str:
        pass

    @property
    def parameters_schema(self) -> dict[str, Any]:
        """JSON schema of the task parameters, derived from ``parameters``."""
        properties = {}
        for param in self.parameters:
            prop: dict[str, Any] = {"type": param.type, "description": param.description}
            if param.options:
                prop["enum"] = list(param.options)
            if param.default is not None:
                prop["default"] = param.default
            properties[param.name] = prop
        return {
            "type": "object",
            "properties": properties,
            "required": [p.name for p in self.parameters if p.required],
        }

    def can_execute(self, task: Task) -> bool:
        return task.capability == self.name

    def validate_params(self, params: dict[str, Any]) -> tuple[bool, str | None]:
        """Validate task parameters before execution"""
        for param in self.parameters:
            value = params.get(param.name)
            if param.required and value in (None, ""):
                return False, f"Missing required parameter: {param.name}"
            if value is not None and param.options and value not in param.options:
                return False, f"Invalid value for {param.name}: {value!r}"
        return True, None

    @abstractmethod
    async def execute(self, task: Task, context: ToolContext) -> ToolResult:
        pass

    async def execute_safe(
        self,
        task: Task,
        context: ToolContext,
        timeout: float | None = None,
    ) -> ToolResult:
        """Run ``execute`` with tracing, timeout and task bookkeeping.

        Failures never propagate: they mark the task failed and come back as
        ``ToolResult(success=False)``. Only cancellation is re-raised, after
        returning the task to the pending state.
        """
        self.logger.info(
            "tool_reasoning",
            task_id=task.id,
            description=task.description,
            reasoning=task.reasoning,
        )
        context.add_message(
            f"Working on: {task.description}",
            MessageType.AGENT_THINKING,
            task_id=task.id,
            capability=self.name,
            reasoning=task.reasoning,
        )

        try:
            valid, error = self.validate_params(task.parameters)
            if not valid:
                raise ToolExecutionError(f"Invalid parameters: {error}")
            context.raise_if_cancelled()
            result = await self._execute_within(task, context, timeout)
        except SessionCancelledError:
            if context.store.is_live(task.id):
                context.store.update_task(task.id, status=TaskStatus.PENDING)
            self.logger.info("tool_cancelled", task_id=task.id)
            raise
        except Exception as e:
            result = ToolResult.fail(str(e) or type(e).__name__)
            result.metadata["error_type"] = type(e).__name__

        if not isinstance(result, ToolResult):
            result = ToolResult.fail(f"Tool returned invalid type: {type(result).__name__}")

        if result.success:
            if context.store.is_live(task.id):
                context.store.update_task(
                    task.id, status=TaskStatus.COMPLETED, result=result.payload
                )
            self.logger.info("tool_succeeded", task_id=task.id)
        else:
            self._reflect_on_failure(task, context, result)
        return result

    async def _execute_within(
        self, task: Task, context: ToolContext, timeout: float | None
    ) -> ToolResult:
        if not timeout:
            return await self.execute(task, context)
        deadline = asyncio.timeout(timeout)
        try:
            async with deadline:
                return await self.execute(task, context)
        except TimeoutError:
            # Only our own deadline counts as a timeout; the tool's errors keep their text
            if not deadline.expired():
                raise
            return ToolResult.fail(f"{self.name} timed out after {timeout}s")

    def _reflect_on_failure(self, task: Task, context: ToolContext, result: ToolResult) -> None:
        error = result.error or "Unknown error"
        self.logger.warning("tool_failed", task_id=task.id, error=error[:200])
        context.add_message(
            f"{self.name} failed on '{task.description}': {error}",
            MessageType.TOOL_FAILURE,
            task_id=task.id,
            capability=self.name,
        )
        execution = context.record.execution
        execution.error_count += 1
        execution.last_error = error
        if context.store.is_live(task.id):
            context.store.update_task(
                task.id, status=TaskStatus.FAILED, result={"error": error}, error=error
            )


class ReflectiveTool(Tool):
    """
    A tool that refines its own result.

    ``execute`` runs ``do_work`` then loops: evaluate, and while unsatisfied
    and attempts remain, ask the thinking module for an improvement
    instruction and ``improve``. The best-scoring attempt goes to
    ``finalize``. Thinking failures propagate and become a capability
    failure through ``execute_safe``.
    """

    def __init__(self, thinking: BaseThinking, max_attempts: int = DEFAULT_MAX_ATTEMPTS):
        super().__init__()
        self.thinking = thinking
        self.max_attempts = max_attempts

    @abstractmethod
    async def do_work(self, task: Task, context: ToolContext) -> Any:
        pass

    @abstractmethod
    async def improve(
        self,
        result: Any,
        instruction: ImprovementInstruction,
        task: Task,
        context: ToolContext,
    ) -> Any:
        pass

    @abstractmethod
    async def finalize(self, result: Any, task: Task, context: ToolContext) -> ToolResult:
        pass

    async def evaluate(self, result: Any, context: ToolContext, attempt: int) -> Evaluation:
        return await self.thinking.evaluate(result, context, attempt)

    async def execute(self, task: Task, context: ToolContext) -> ToolResult:
        best = await self.refine(task, context)
        return await self.finalize(best, task, context)

    async def refine(self, task: Task, context: ToolContext) -> Any:
        result = await self.do_work(task, context)
        best, best_score = result, None
        limit = self.max_attempts
        attempt = 0

        while True:
            attempt += 1
            context.raise_if_cancelled()
            evaluation = await self.evaluate(result, context, attempt)
            context.add_message(
                f"Quality {evaluation.quality_score:.0f}/100: {evaluation.reasoning}",
                MessageType.QUALITY_EVALUATION,
                task_id=task.id,
                capability=self.name,
                attempt=attempt,
            )
            if best_score is None or evaluation.quality_score > best_score:
                best, best_score = result, evaluation.quality_score

            if evaluation.is_satisfied or evaluation.next_action == "complete":
                break
            if attempt >= limit:
                self.logger.info("refinement_exhausted", task_id=task.id, best_score=best_score)
                break

            instruction = await self.thinking.generate_improvement(result, evaluation, context)
            limit = min(limit, instruction.max_attempts)
            if attempt >= limit:
                self.logger.info("refinement_exhausted", task_id=task.id, best_score=best_score)
                break
            result = await self.improve(result, instruction, task, context)

        context.output.quality_metrics[self.name] = {
            "score": best_score,
            "attempts": attempt,
            "task_id": task.id,
        }
        return best
