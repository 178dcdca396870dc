"""
Execution Engine

Drives one generation session through the iterate-select-execute-observe
loop:

1. Ask the work item store for ready tasks. With none ready, a completion
   oracle decides whether to stop, replan or analyse failures.
2. Execute the highest-priority ready task through its tool.
3. If the tool needs the user, block on the input callback, log the reply,
   and enqueue a complete replan when the reply changes the requirements.
   This round trip does not consume an iteration.
4. Honour the tool's replan / stop signals.

The session record is loaded once and persisted (compare-and-swap) after
every mutation. After the loop, the session is Completed if every required
output exists, otherwise Failed with the reason the loop ended.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable

import structlog

from cardsmith.core.domain.errors import (
    ConfigurationError,
    SessionCancelledError,
    UnknownCapabilityError,
)
from cardsmith.core.domain.models import (
    GoalStatus,
    MessageRole,
    MessageType,
    SessionRecord,
    SessionStatus,
    Task,
    TaskStatus,
)
from cardsmith.core.domain.requirements import RequirementChangeDetector
from cardsmith.core.domain.work_items import WorkItemStore
from cardsmith.core.interfaces.state import SessionStoreProtocol
from cardsmith.core.tools.base import Capability, ToolResult
from cardsmith.core.tools.context import CancellationToken, ToolContext
from cardsmith.core.tools.registry import ToolRegistry

MAX_PRIORITY = 10
REPLAN_PRIORITY = 9
FAILURE_ANALYSIS_THRESHOLD = 5
FAILURE_ANALYSIS_MIN_CAPABILITIES = 2
MAX_IDLE_REPLANS = 3

BUDGET_EXHAUSTED = "iteration budget exhausted"
TOKEN_BUDGET_EXHAUSTED = "token budget exhausted"
CANCELLED = "cancelled"
STOPPED_INCOMPLETE = "stopped before output was complete"
RESUMABLE_REASONS = {BUDGET_EXHAUSTED, TOKEN_BUDGET_EXHAUSTED, CANCELLED}

UserInputCallback = Callable[[str, "list[str] | None"], "str | Awaitable[str]"]


@dataclass
class EngineEvent:
    """Progress event emitted to front ends during a run."""

    event_type: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class EngineOutcome:
    """
    Result of ``ExecutionEngine.start``.

    Attributes:
        success: True when every required output was produced
        session_id: The session that ran
        status: Terminal session status
        output: Accumulated output (on success)
        error: Error text for fatal errors and unsuccessful terminations
        reason: Why the loop ended when unsuccessful
        iterations: Loop iterations consumed in this run
        resumable: The session can usefully be started again
    """

    success: bool
    session_id: str
    status: SessionStatus
    output: dict[str, Any] | None = None
    error: str | None = None
    reason: str | None = None
    iterations: int = 0
    resumable: bool = False


@dataclass
class ContinueDecision:
    keep_going: bool
    reason: str
    replan_triggered: bool = False


class ExecutionEngine:
    def __init__(
        self,
        session_store: SessionStoreProtocol,
        registry: ToolRegistry,
        *,
        max_iterations: int | None = None,
        tool_timeout: float | None = None,
        user_input_callback: UserInputCallback | None = None,
        event_callback: Callable[[EngineEvent], None] | None = None,
        change_detector: RequirementChangeDetector | None = None,
    ):
        self.session_store = session_store
        self.registry = registry
        self.max_iterations = max_iterations
        self.tool_timeout = tool_timeout
        self.user_input_callback = user_input_callback
        self.event_callback = event_callback
        self.change_detector = change_detector or RequirementChangeDetector()
        self.cancellation = CancellationToken()
        self.logger = structlog.get_logger().bind(component="execution_engine")

    def cancel(self, reason: str = CANCELLED) -> None:
        """Stop the run before its next iteration."""
        self.cancellation.cancel(reason)
        self.logger.info("cancel_requested", reason=reason)

    async def start(
        self,
        session_id: str,
        user_input_callback: UserInputCallback | None = None,
    ) -> EngineOutcome:
        """Run a session until it completes, exhausts its budget or fails.

        Unexpected errors never escape: they mark the session failed and
        come back as ``EngineOutcome(success=False, error=...)``.
        """
        callback = user_input_callback or self.user_input_callback
        self.logger.info("session_start", session_id=session_id)
        record: SessionRecord | None = None
        try:
            record = await self.session_store.load(session_id)
            return await self._run(record, callback)
        except Exception as e:
            self.logger.error(
                "session_failed", session_id=session_id, error=str(e), error_type=type(e).__name__
            )
            if record is not None:
                await self._mark_fatal(record, str(e))
            self._emit("failed", str(e), session_id=session_id)
            return EngineOutcome(
                success=False,
                session_id=session_id,
                status=SessionStatus.FAILED,
                error=str(e),
                iterations=record.execution.current_iteration if record else 0,
            )

    # ==================== LOOP ====================

    async def _run(self, record: SessionRecord, callback: UserInputCallback | None) -> EngineOutcome:
        store = WorkItemStore(record)
        context = ToolContext(record=record, store=store, cancellation=self.cancellation)
        execution = record.execution
        max_iterations = self.max_iterations or execution.max_iterations
        execution.max_iterations = max_iterations
        execution.current_iteration = 0
        execution.failure_reason = None

        # Tasks left executing by an interrupted run go back to the queue
        for task in list(store.live_tasks):
            if task.status == TaskStatus.EXECUTING:
                store.update_task(task.id, status=TaskStatus.PENDING)

        record.status = SessionStatus.THINKING
        self._bootstrap(store)
        await self._save(record)
        self._emit("started", record.user_request[:100], session_id=record.id)

        iteration = 0
        idle_replans = 0
        reason: str | None = None

        while iteration < max_iterations:
            if self.cancellation.cancelled:
                reason = CANCELLED
                break
            if execution.token_budget and execution.tokens_used >= execution.token_budget:
                reason = TOKEN_BUDGET_EXHAUSTED
                break

            ready = store.get_ready_tasks()
            if not ready:
                decision = self._should_continue(store, idle_replans)
                self.logger.debug(
                    "completion_oracle",
                    keep_going=decision.keep_going,
                    reason=decision.reason,
                )
                if not decision.keep_going:
                    reason = decision.reason
                    break
                idle_replans = idle_replans + 1 if decision.replan_triggered else idle_replans
                iteration = await self._end_iteration(record, iteration)
                continue

            task = ready[0]
            try:
                result = await self._execute_task(task, context)
            except SessionCancelledError:
                reason = CANCELLED
                break

            if task.capability != Capability.PLAN.value:
                idle_replans = 0

            if result.user_input_required:
                await self._handle_user_input(task, result, context, callback)
                continue

            if result.should_replan:
                self._enqueue_replan(store, f"{task.capability} requested a replan")
            if not result.should_continue_loop:
                self.logger.info("loop_stopped_by_tool", task_id=task.id, capability=task.capability)
                reason = STOPPED_INCOMPLETE
                iteration = await self._end_iteration(record, iteration)
                break

            iteration = await self._end_iteration(record, iteration)
        else:
            reason = BUDGET_EXHAUSTED

        return await self._finish(record, store, iteration, reason)

    async def _end_iteration(self, record: SessionRecord, iteration: int) -> int:
        iteration += 1
        record.execution.current_iteration = iteration
        await self._save(record)
        return iteration

    def _bootstrap(self, store: WorkItemStore) -> None:
        record = store.record
        fresh = not record.goals and not record.tasks and not record.archived_tasks
        if fresh and not record.output.is_complete():
            store.add_task(
                description="Create the initial plan",
                capability=Capability.PLAN.value,
                parameters={"plan_type": "initial"},
                priority=MAX_PRIORITY,
                reasoning="New session without a plan",
            )
            record.add_message(
                MessageRole.SYSTEM, "Starting a new generation session.", MessageType.SYSTEM_INFO
            )
            self.logger.info("session_bootstrapped", session_id=record.id)

    async def _finish(
        self,
        record: SessionRecord,
        store: WorkItemStore,
        iterations: int,
        reason: str | None,
    ) -> EngineOutcome:
        if record.output.is_complete():
            main = store.main_goal()
            if main is not None and main.status != GoalStatus.COMPLETED:
                store.update_goal(main.id, status=GoalStatus.COMPLETED)
            record.status = SessionStatus.COMPLETED
            record.add_message(
                MessageRole.SYSTEM, "Generation completed.", MessageType.SYSTEM_INFO
            )
            await self._save(record)
            self.logger.info("session_completed", session_id=record.id, iterations=iterations)
            self._emit("completed", "Generation completed", session_id=record.id)
            return EngineOutcome(
                success=True,
                session_id=record.id,
                status=SessionStatus.COMPLETED,
                output=record.output.to_dict(),
                iterations=iterations,
            )

        reason = reason or STOPPED_INCOMPLETE
        record.status = SessionStatus.FAILED
        record.execution.failure_reason = reason
        record.add_message(
            MessageRole.SYSTEM,
            f"Generation stopped: {reason}. Missing: {', '.join(record.output.missing_fields())}",
            MessageType.SYSTEM_INFO,
        )
        await self._save(record)
        self.logger.warning("session_incomplete", session_id=record.id, reason=reason)
        self._emit("failed", reason, session_id=record.id)
        return EngineOutcome(
            success=False,
            session_id=record.id,
            status=SessionStatus.FAILED,
            error=reason,
            reason=reason,
            iterations=iterations,
            resumable=reason in RESUMABLE_REASONS,
        )

    # ==================== ORACLE ====================

    def _should_continue(self, store: WorkItemStore, idle_replans: int) -> ContinueDecision:
        record = store.record
        main = store.main_goal()
        if main is not None and main.status == GoalStatus.COMPLETED:
            return ContinueDecision(False, "main goal completed")
        if record.output.is_complete():
            return ContinueDecision(False, "output complete")

        blocked = store.pending_tasks()
        if self._maybe_inject_failure_analysis(store):
            return ContinueDecision(True, "failure analysis injected")
        if idle_replans >= MAX_IDLE_REPLANS:
            return ContinueDecision(False, STOPPED_INCOMPLETE)
        if blocked:
            replanned = self._enqueue_replan(store, "Pending tasks are blocked")
            return ContinueDecision(True, "pending tasks remain", replan_triggered=replanned)
        if self._enqueue_replan(store, "No work left but outputs are missing"):
            return ContinueDecision(True, "outputs missing", replan_triggered=True)
        return ContinueDecision(False, STOPPED_INCOMPLETE)

    def _maybe_inject_failure_analysis(self, store: WorkItemStore) -> bool:
        """Enqueue one failure analysis per threshold crossing."""
        critical = store.critical_capabilities(FAILURE_ANALYSIS_THRESHOLD)
        if len(critical) < FAILURE_ANALYSIS_MIN_CAPABILITIES:
            return False
        plan_context = store.record.plan_context
        analyzed = set(plan_context.analyzed_capabilities)
        if set(critical) <= analyzed or Capability.PLAN.value not in self.registry:
            return False

        plan_context.analyzed_capabilities = sorted(analyzed | set(critical))
        store.add_task(
            description="Analyze repeated capability failures",
            capability=Capability.PLAN.value,
            parameters={"plan_type": "failure_analysis"},
            priority=MAX_PRIORITY,
            reasoning=f"Capabilities failing repeatedly: {', '.join(critical)}",
        )
        store.record.add_message(
            MessageRole.SYSTEM,
            f"Repeated failures in {', '.join(critical)}; analysing.",
            MessageType.SYSTEM_INFO,
        )
        self.logger.warning("failure_analysis_injected", capabilities=critical)
        return True

    def _enqueue_replan(self, store: WorkItemStore, reason: str) -> bool:
        if Capability.PLAN.value not in self.registry:
            self.logger.warning("replan_skipped", reason="no planner registered")
            return False
        if store.has_pending_task(Capability.PLAN.value, plan_type="replan"):
            return False
        store.add_task(
            description="Update the plan based on current progress",
            capability=Capability.PLAN.value,
            parameters={"plan_type": "replan"},
            priority=REPLAN_PRIORITY,
            reasoning=reason,
        )
        self._emit("replan", reason)
        return True

    # ==================== EXECUTION ====================

    async def _execute_task(self, task: Task, context: ToolContext) -> ToolResult:
        store = context.store
        record = context.record
        store.update_task(task.id, status=TaskStatus.EXECUTING)
        record.status = SessionStatus.EXECUTING
        main = store.main_goal()
        if main is not None and main.status == GoalStatus.PENDING:
            store.update_goal(main.id, status=GoalStatus.IN_PROGRESS)
        record.add_message(
            MessageRole.AGENT,
            f"{task.capability}: {task.description}",
            MessageType.AGENT_ACTION,
            task_id=task.id,
            capability=task.capability,
        )
        await self._save(record)
        self._emit("task_started", task.description, task_id=task.id, capability=task.capability)

        context.task = task
        try:
            tool = self.registry.resolve(task.capability)
        except UnknownCapabilityError as e:
            result = self._fail_unresolved(task, context, e)
        else:
            result = await tool.execute_safe(task, context, timeout=self.tool_timeout)
        finally:
            context.task = None

        if not result.success:
            self._maybe_inject_failure_analysis(store)
        record.status = SessionStatus.THINKING
        await self._save(record)
        self._emit(
            "task_completed" if result.success else "task_failed",
            task.description if result.success else (result.error or "failed"),
            task_id=task.id,
            capability=task.capability,
        )
        return result

    def _fail_unresolved(
        self, task: Task, context: ToolContext, error: UnknownCapabilityError
    ) -> ToolResult:
        message = str(error)
        self.logger.warning("capability_unresolved", task_id=task.id, capability=task.capability)
        context.add_message(
            message, MessageType.TOOL_FAILURE, task_id=task.id, capability=task.capability
        )
        context.record.execution.error_count += 1
        context.record.execution.last_error = message
        context.store.update_task(
            task.id, status=TaskStatus.FAILED, result={"error": message}, error=message
        )
        return ToolResult.fail(message)

    async def _handle_user_input(
        self,
        task: Task,
        result: ToolResult,
        context: ToolContext,
        callback: UserInputCallback | None,
    ) -> None:
        record = context.record
        store = context.store
        if callback is None:
            raise ConfigurationError("User input required but no input callback was provided")

        prompt = result.user_prompt or "Please provide more information."
        record.status = SessionStatus.WAITING_USER
        await self._save(record)
        self._emit("waiting_user", prompt, task_id=task.id, choices=result.choices)

        reply = callback(prompt, result.choices)
        if inspect.isawaitable(reply):
            reply = await reply
        reply = str(reply or "").strip()

        record.status = SessionStatus.THINKING
        if not reply:
            self.logger.info("empty_user_reply", task_id=task.id)
            record.add_message(MessageRole.SYSTEM, "No answer given.", MessageType.SYSTEM_INFO)
            await self._save(record)
            return

        previous = record.user_messages()
        record.add_message(MessageRole.USER, reply, MessageType.USER_INPUT, task_id=task.id)
        if self.change_detector.is_major_change(reply, previous):
            store.add_task(
                description="Replan for changed requirements",
                capability=Capability.PLAN.value,
                parameters={"plan_type": "complete_replan", "user_input": reply},
                priority=MAX_PRIORITY,
                reasoning="User reply changes the requirements",
            )
            self.logger.info("major_requirement_change", session_id=record.id)
            self._emit("replan", "Requirements changed", complete=True)
        await self._save(record)

    # ==================== PERSISTENCE & EVENTS ====================

    async def _save(self, record: SessionRecord) -> None:
        await self.session_store.save(record)

    async def _mark_fatal(self, record: SessionRecord, error: str) -> None:
        record.status = SessionStatus.FAILED
        record.execution.failure_reason = error
        record.execution.last_error = error
        record.execution.error_count += 1
        try:
            await self.session_store.save(record)
        except Exception as e:
            self.logger.error("session_status_persist_failed", session_id=record.id, error=str(e))

    def _emit(self, event_type: str, message: str, **details: Any) -> None:
        if self.event_callback is not None:
            self.event_callback(EngineEvent(event_type=event_type, message=message, details=details))
