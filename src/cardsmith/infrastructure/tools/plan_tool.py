"""
Planner Tool (PLAN)

Maintains the goal tree and task queue with the language model as oracle.
Modes, selected by the task's ``plan_type`` parameter:

- initial: goal tree plus starter tasks from the user's request
- replan: incremental tasks and a context update from current progress
- complete_replan: withdraw obsolete work after a requirement change,
  then plan again against the updated requirement
- failure_analysis: report critically failing capabilities and suggest
  substitutes; never touches the task pool

Any plan the model answer cannot be parsed into is replaced by a fixed
safety plan, so one bad response never stalls the session.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, Field, field_validator

from cardsmith.core.domain.errors import GoalNotFoundError, ThinkingError
from cardsmith.core.domain.models import (
    FailureRecord,
    GoalKind,
    MessageType,
    Task,
    now_iso,
    parse_task_status,
)
from cardsmith.core.domain.work_items import COMPLETE_REPLAN_REASON, TaskCriteria
from cardsmith.core.interfaces.llm import LLMProviderProtocol
from cardsmith.core.prompts.planner_prompts import (
    INITIAL_PLAN_PROMPT,
    PLANNER_SYSTEM_PROMPT,
    REMOVAL_ANALYSIS_PROMPT,
    REPLAN_PROMPT,
)
from cardsmith.core.thinking.base import BaseThinking
from cardsmith.core.tools.base import Capability, Tool, ToolParameter, ToolResult
from cardsmith.core.tools.context import ToolContext
from cardsmith.core.tools.registry import ToolRegistry
from cardsmith.infrastructure.tools.llm_calls import ask_model

CRITICAL_FAILURE_THRESHOLD = 3
ARCHIVE_PREVIEW = 10


class PlanType(str, Enum):
    INITIAL = "initial"
    REPLAN = "replan"
    COMPLETE_REPLAN = "complete_replan"
    FAILURE_ANALYSIS = "failure_analysis"


# ---- model response shapes ----


class PlannedGoal(BaseModel):
    description: str = Field(min_length=1)
    kind: GoalKind = GoalKind.SUB
    parent: int | None = None

    @field_validator("kind", mode="before")
    @classmethod
    def _lower(cls, value):
        return value.strip().lower() if isinstance(value, str) else value


class PlannedTask(BaseModel):
    description: str = Field(min_length=1)
    capability: str = Field(validation_alias=AliasChoices("tool", "capability"))
    parameters: dict[str, Any] = Field(default_factory=dict)
    priority: int = 5
    dependencies: list[int] = Field(default_factory=list)
    reasoning: str = ""

    @field_validator("priority", mode="before")
    @classmethod
    def _clamp_priority(cls, value):
        return max(1, min(10, int(value)))


class InitialPlan(BaseModel):
    goals: list[PlannedGoal] = Field(default_factory=list)
    tasks: list[PlannedTask] = Field(min_length=1)
    reasoning: str = ""


class IncrementalPlan(BaseModel):
    new_tasks: list[PlannedTask]
    context_updates: dict[str, Any] = Field(default_factory=dict)
    reasoning: str = ""


class RemovalCriterion(BaseModel):
    capability: str | None = Field(default=None, validation_alias=AliasChoices("tool", "capability"))
    status: str | None = None
    description_contains: str | None = None

    @field_validator("status")
    @classmethod
    def _known_status(cls, value):
        return parse_task_status(value).value if value else None

    def is_empty(self) -> bool:
        return not (self.capability or self.status or self.description_contains)


class RemovalAnalysis(BaseModel):
    removal_criteria: list[RemovalCriterion] = Field(default_factory=list)
    goals_to_remove: list[str] = Field(default_factory=list)
    reason: str
    new_focus: str = ""


# ---- failure analysis helpers ----

_FAILURE_PATTERNS = [
    (("timeout", "timed out", "network", "connection"),
     "Network or timeout problems - external services are slow or unreachable"),
    (("parse", "json", "format"),
     "Response parsing problems - model output did not match the expected structure"),
    (("auth", "api key", "apikey", "unauthorized", "401"),
     "Authentication problems - credentials are missing or invalid"),
]

_SUBSTITUTIONS = {
    Capability.SEARCH.value:
        "Stop calling SEARCH - ask the user directly for the reference details (ASK_USER)",
    Capability.OUTPUT.value:
        "Break OUTPUT generation into smaller parts and confirm details with ASK_USER first",
    Capability.ASK_USER.value:
        "Ask clearer, more specific questions and offer OUTPUT examples the user can react to",
}

NO_SUGGESTIONS = "Consider manual intervention or simplified approach"


def identify_failure_patterns(failures: list[FailureRecord]) -> list[str]:
    patterns = []
    for keywords, message in _FAILURE_PATTERNS:
        if any(any(k in f.error.lower() for k in keywords) for f in failures):
            patterns.append(message)
    return patterns


def suggest_alternative(capability: str) -> str:
    return _SUBSTITUTIONS.get(capability, f"Find alternative approach for {capability} functionality")


class PlannerTool(Tool):
    parameters = [
        ToolParameter(
            name="plan_type",
            description="Planning mode; chosen automatically when omitted",
            options=[p.value for p in PlanType],
        ),
        ToolParameter(
            name="user_input",
            description="User reply that triggered a complete replan",
        ),
    ]

    def __init__(
        self,
        llm: LLMProviderProtocol,
        registry: ToolRegistry,
        thinking: BaseThinking | None = None,
    ):
        super().__init__()
        self.llm = llm
        self.registry = registry
        self.thinking = thinking or BaseThinking(llm, self.name)

    @property
    def name(self) -> str:
        return Capability.PLAN.value

    @property
    def description(self) -> str:
        return (
            "Create or update the goal tree and task queue: initial plan, incremental "
            "replan, complete replan after changed requirements, or failure analysis."
        )

    async def execute(self, task: Task, context: ToolContext) -> ToolResult:
        plan_type = task.parameters.get("plan_type")
        if not plan_type:
            decision = await self.thinking.route_to_sub_tool(context, [p.value for p in PlanType])
            plan_type = decision.selected_sub_tool
            self.logger.info("plan_mode_routed", plan_type=plan_type, reasoning=decision.reasoning)

        mode = PlanType(plan_type)
        if mode == PlanType.INITIAL:
            return await self._initial_plan(context, mode)
        if mode == PlanType.REPLAN:
            return await self._replan(context)
        if mode == PlanType.COMPLETE_REPLAN:
            return await self._complete_replan(task, context)
        return self._failure_analysis(context)

    # ---------------- initial ----------------

    async def _initial_plan(self, context: ToolContext, mode: PlanType) -> ToolResult:
        avoid = context.store.critical_capabilities(CRITICAL_FAILURE_THRESHOLD)
        prompt = INITIAL_PLAN_PROMPT.format(
            user_request=context.record.user_request,
            tools=self._tool_catalogue(avoid),
            avoid=", ".join(avoid) or "none",
            required_outputs=", ".join(context.output.required_fields),
        )
        try:
            plan = await ask_model(self.llm, PLANNER_SYSTEM_PROMPT, prompt, context, InitialPlan)
        except ThinkingError as e:
            return self._apply_safety_plan(context, mode, str(e))

        goal_ids = self._add_goals(plan.goals, context)
        task_ids = self._add_tasks(plan.tasks, context, avoid)
        if not task_ids:
            return self._apply_safety_plan(context, mode, "plan contained no usable tasks")

        main = context.store.main_goal()
        context.store.update_plan_context(current_focus=main.description if main else "")
        context.add_message(
            f"Plan created with {len(goal_ids)} goals and {len(task_ids)} tasks. {plan.reasoning}".strip(),
            MessageType.AGENT_OUTPUT,
            capability=self.name,
        )
        self.logger.info("plan_created", goals=len(goal_ids), tasks=len(task_ids))
        return ToolResult.ok(
            {"plan_type": mode.value, "goals": goal_ids, "tasks": task_ids, "fallback": False},
            reasoning=plan.reasoning,
        )

    def _add_goals(self, planned: list[PlannedGoal], context: ToolContext) -> list[str]:
        """Create planned goals, keeping exactly one live main goal."""
        store = context.store
        main = store.main_goal()
        created = []
        for goal in planned:
            # Extra main goals are demoted
            kind = GoalKind.SUB if goal.kind == GoalKind.MAIN and main is not None else goal.kind
            new_goal = store.add_goal(goal.description, kind=kind)
            if kind == GoalKind.MAIN:
                main = new_goal
            created.append(new_goal)

        added_main = None
        if main is None:
            main = added_main = store.add_goal(context.record.user_request, kind=GoalKind.MAIN)

        for index, (goal, new_goal) in enumerate(zip(planned, created)):
            if new_goal is main:
                continue
            parent = goal.parent
            if parent is not None and 0 <= parent < len(created) and parent != index:
                new_goal.parent_id = created[parent].id
            else:
                new_goal.parent_id = main.id

        ids = [g.id for g in created]
        if added_main is not None:
            ids.insert(0, added_main.id)
        return ids

    def _add_tasks(
        self,
        planned: list[PlannedTask],
        context: ToolContext,
        avoid: list[str],
    ) -> list[str]:
        store = context.store
        skipped: set[int] = set()
        capabilities: dict[int, str] = {}

        for index, item in enumerate(planned):
            capability = self.registry.canonical_name(item.capability)
            if capability is None:
                self.logger.warning("planned_task_skipped", capability=item.capability, reason="unknown")
                skipped.add(index)
            elif capability in avoid:
                self.logger.warning("planned_task_skipped", capability=capability, reason="failing")
                skipped.add(index)
            else:
                capabilities[index] = capability

        # Work that waits on a skipped task could never become ready
        cascading = True
        while cascading:
            cascading = False
            for index in list(capabilities):
                if any(dep in skipped for dep in planned[index].dependencies if dep != index):
                    self.logger.warning(
                        "planned_task_skipped",
                        capability=capabilities.pop(index),
                        description=planned[index].description,
                        reason="dependency_skipped",
                    )
                    skipped.add(index)
                    cascading = True

        index_to_task: dict[int, Task] = {}
        for index, capability in capabilities.items():
            item = planned[index]
            index_to_task[index] = store.add_task(
                description=item.description,
                capability=capability,
                parameters=item.parameters,
                priority=item.priority,
                reasoning=item.reasoning,
            )

        for index, task in index_to_task.items():
            task.dependencies = [
                index_to_task[dep].id
                for dep in planned[index].dependencies
                if dep in index_to_task and dep != index
            ]
        return [t.id for t in index_to_task.values()]

    # ---------------- replan ----------------

    async def _replan(self, context: ToolContext) -> ToolResult:
        store = context.store
        avoid = store.critical_capabilities(CRITICAL_FAILURE_THRESHOLD)
        history = context.record.failure_history
        prompt = REPLAN_PROMPT.format(
            session=context.session_summary(),
            live_tasks=self._task_lines(store.live_tasks),
            archived_tasks=self._task_lines(store.archived_tasks[-ARCHIVE_PREVIEW:]),
            failures=json.dumps(history.to_dict(), ensure_ascii=False, indent=2),
            avoid=", ".join(avoid) or "none",
            tools=self._tool_catalogue(avoid),
        )
        try:
            plan = await ask_model(self.llm, PLANNER_SYSTEM_PROMPT, prompt, context, IncrementalPlan)
        except ThinkingError as e:
            return self._apply_safety_plan(context, PlanType.REPLAN, str(e))

        updates = {
            k: v for k, v in plan.context_updates.items()
            if k in ("current_focus", "constraints", "notes")
        }
        if updates:
            store.update_plan_context(**updates)
        task_ids = self._add_tasks(plan.new_tasks, context, avoid)

        context.add_message(
            f"Replanned: {len(task_ids)} new tasks. {plan.reasoning}".strip(),
            MessageType.AGENT_OUTPUT,
            capability=self.name,
        )
        self.logger.info("replan_completed", new_tasks=len(task_ids))
        return ToolResult.ok(
            {"plan_type": PlanType.REPLAN.value, "tasks": task_ids, "fallback": False},
            reasoning=plan.reasoning,
        )

    # ---------------- complete replan ----------------

    async def _complete_replan(self, task: Task, context: ToolContext) -> ToolResult:
        store = context.store
        record = context.record
        user_input = str(task.parameters.get("user_input", "")).strip()
        previous_request = record.user_request

        prompt = REMOVAL_ANALYSIS_PROMPT.format(
            previous_request=previous_request,
            user_input=user_input or "(not provided)",
            goals="\n".join(
                f"- {g.id} [{g.kind.value}/{g.status.value}] {g.description}" for g in record.goals
            ) or "(none)",
            live_tasks=self._task_lines(store.live_tasks),
        )

        def not_this_task(t: Task) -> bool:
            return t.id != task.id

        try:
            analysis = await ask_model(
                self.llm, PLANNER_SYSTEM_PROMPT, prompt, context, RemovalAnalysis
            )
        except ThinkingError as e:
            self.logger.warning("removal_analysis_failed", error=str(e))
            removed = store.remove_tasks_by_criteria(
                lambda t: not_this_task(t) and TaskCriteria(status="pending").matches(t),
                COMPLETE_REPLAN_REASON,
            )
            for goal in store.open_goals():
                store.remove_goal(goal.id, COMPLETE_REPLAN_REASON)
            new_focus = user_input
        else:
            removed = 0
            for criterion in analysis.removal_criteria:
                if criterion.is_empty():
                    continue
                criteria = TaskCriteria(
                    capability=criterion.capability,
                    status=criterion.status,
                    description_contains=criterion.description_contains,
                )
                removed += store.remove_tasks_by_criteria(
                    lambda t, c=criteria: not_this_task(t) and c.matches(t),
                    analysis.reason,
                )
            for goal_id in analysis.goals_to_remove:
                try:
                    store.remove_goal(goal_id, analysis.reason)
                except GoalNotFoundError:
                    self.logger.warning("goal_to_remove_missing", goal_id=goal_id)
            new_focus = analysis.new_focus or user_input

        # The updated requirement gets a fresh main goal
        main = store.main_goal()
        if main is not None:
            store.remove_goal(main.id, COMPLETE_REPLAN_REASON)

        if user_input:
            record.user_request = f"{previous_request}\n\nUpdated requirements: {user_input}"
        store.update_plan_context(user_request=record.user_request, current_focus=new_focus)
        context.add_message(
            f"Requirements changed; withdrew {removed} obsolete tasks and replanning.",
            MessageType.SYSTEM_INFO,
            capability=self.name,
        )

        result = await self._initial_plan(context, PlanType.COMPLETE_REPLAN)
        if isinstance(result.payload, dict):
            result.payload["removed_tasks"] = removed
        return result

    # ---------------- failure analysis ----------------

    def _failure_analysis(self, context: ToolContext) -> ToolResult:
        store = context.store
        history = context.record.failure_history
        critical = store.critical_capabilities(CRITICAL_FAILURE_THRESHOLD)
        patterns = identify_failure_patterns(history.recent_failures)
        suggestions = [suggest_alternative(c) for c in critical] or [NO_SUGGESTIONS]

        analysis = {
            "critical_capabilities": {c: history.count(c) for c in critical},
            "patterns": patterns,
            "suggestions": suggestions,
            "timestamp": now_iso(),
        }
        context.record.plan_context.failure_analyses.append(analysis)
        if critical:
            store.update_plan_context(
                current_focus=f"Work around failing capabilities: {', '.join(critical)}"
            )

        lines = ["Failure analysis:"]
        lines += [f"- {c} failed {n} times" for c, n in analysis["critical_capabilities"].items()]
        lines += [f"- {p}" for p in patterns]
        lines += [f"• {s}" for s in suggestions]
        context.add_message("\n".join(lines), MessageType.SYSTEM_INFO, capability=self.name)
        self.logger.info("failure_analysis_completed", critical=critical, patterns=len(patterns))

        return ToolResult.ok(
            {"plan_type": PlanType.FAILURE_ANALYSIS.value, **analysis},
            should_replan=True,
            reasoning="; ".join(suggestions),
        )

    # ---------------- safety plan ----------------

    def _apply_safety_plan(self, context: ToolContext, mode: PlanType, reason: str) -> ToolResult:
        """Fallback: gather requirements, gather inspiration, produce missing outputs."""
        store = context.store
        self.logger.warning("planning_fallback", plan_type=mode.value, reason=reason[:200])

        if store.main_goal() is None:
            store.add_goal(context.record.user_request, kind=GoalKind.MAIN)

        steps: list[tuple[str, str, dict[str, Any], int]] = [
            (
                Capability.ASK_USER.value,
                "Gather user requirements for the character and world",
                {"topic": "core character concept, setting and tone"},
                10,
            ),
            (
                Capability.SEARCH.value,
                "Search for creative inspiration and reference material",
                {"query": context.record.user_request},
                8,
            ),
        ]
        priority = 6
        for field_name in context.output.missing_fields():
            steps.append(
                (Capability.OUTPUT.value, f"Generate the {field_name}", {"field": field_name}, priority)
            )
            priority = max(1, priority - 1)

        live_descriptions = {t.description for t in store.live_tasks}
        task_ids = []
        for capability, description, parameters, prio in steps:
            if capability not in self.registry or description in live_descriptions:
                continue
            created = store.add_task(
                description=description,
                capability=capability,
                parameters=parameters,
                priority=prio,
                reasoning="Safety plan after an unusable planning response",
            )
            task_ids.append(created.id)

        context.add_message(
            f"Using the default plan ({len(task_ids)} tasks).",
            MessageType.SYSTEM_INFO,
            capability=self.name,
        )
        return ToolResult.ok(
            {"plan_type": mode.value, "tasks": task_ids, "fallback": True, "reason": reason},
            reasoning="Fallback safety plan",
        )

    # ---------------- helpers ----------------

    def _tool_catalogue(self, avoid: list[str]) -> str:
        return self.registry.describe_for_prompt(exclude=avoid)

    @staticmethod
    def _task_lines(tasks: list[Task]) -> str:
        if not tasks:
            return "(none)"
        return "\n".join(
            f"- [{t.status.value}] ({t.capability}, p{t.priority}) {t.description}" for t in tasks
        )
