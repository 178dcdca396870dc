"""
Tool execution context.

The engine hands every capability a ``ToolContext``: a view over the live
session record (task pool, goal tree, conversation, output so far and
model-access configuration) plus the cancellation token for the run.
The engine itself never looks inside the model configuration.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

from cardsmith.core.domain.errors import SessionCancelledError
from cardsmith.core.domain.models import (
    Goal,
    Message,
    MessageRole,
    MessageType,
    ModelConfig,
    SessionOutput,
    SessionRecord,
    Task,
)
from cardsmith.core.domain.work_items import WorkItemStore

SUMMARY_MESSAGE_LIMIT = 10
SUMMARY_CONTENT_CHARS = 200


class CancellationToken:
    """Cooperative cancellation flag shared by the engine and its tools."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise SessionCancelledError(self.reason or "cancelled")

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class ToolContext:
    record: SessionRecord
    store: WorkItemStore
    cancellation: CancellationToken = field(default_factory=CancellationToken)
    task: Task | None = None

    @property
    def session_id(self) -> str:
        return self.record.id

    @property
    def goals(self) -> list[Goal]:
        return self.record.goals

    @property
    def live_tasks(self) -> list[Task]:
        return self.record.tasks

    @property
    def conversation(self) -> list[Message]:
        return self.record.messages

    @property
    def output(self) -> SessionOutput:
        return self.record.output

    @property
    def llm_config(self) -> ModelConfig:
        return self.record.llm_config

    def raise_if_cancelled(self) -> None:
        self.cancellation.raise_if_cancelled()

    def add_message(
        self,
        content: str,
        type: MessageType,
        role: MessageRole = MessageRole.AGENT,
        **metadata: Any,
    ) -> Message:
        return self.record.add_message(role, content, type, **metadata)

    def record_usage(self, usage: dict[str, Any] | None) -> None:
        """Add a completion's token usage to the session's running total."""
        if usage:
            self.record.execution.tokens_used += int(usage.get("total_tokens", 0) or 0)

    def conversation_summary(
        self,
        limit: int = SUMMARY_MESSAGE_LIMIT,
        max_chars: int = SUMMARY_CONTENT_CHARS,
    ) -> str:
        lines = []
        for message in self.record.messages[-limit:]:
            content = message.content
            if len(content) > max_chars:
                content = content[:max_chars] + "..."
            lines.append(f"[{message.role.value}/{message.type.value}] {content}")
        return "\n".join(lines) if lines else "(no conversation yet)"

    def session_summary(self) -> str:
        """Compact text description of the session for prompts."""
        plan = self.record.plan_context
        main = self.store.main_goal()
        missing = self.output.missing_fields()
        parts = [
            f"User request: {self.record.user_request}",
            f"Main goal: {main.description if main else '(none)'}",
            f"Current focus: {plan.current_focus or '(none)'}",
            f"Missing outputs: {', '.join(missing) if missing else 'none'}",
            f"Completed outputs: {', '.join(k for k, v in self.output.fields.items() if v) or 'none'}",
            "Recent conversation:",
            self.conversation_summary(),
        ]
        if plan.constraints:
            parts.insert(3, f"Constraints: {'; '.join(plan.constraints)}")
        return "\n".join(parts)
