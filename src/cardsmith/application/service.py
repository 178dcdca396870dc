"""
Application Layer - Generation Service

The service both front ends use to run and inspect generation sessions:

- creates a session record from a user request and runs the engine on it
- resumes stopped sessions
- reports status, messages and aggregate statistics
- deletes and exports sessions

Progress is reported through an optional ``ProgressUpdate`` callback fed
from the engine's events.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

import structlog

from cardsmith.application import factory
from cardsmith.application.settings import CardsmithSettings
from cardsmith.core.domain.engine import EngineEvent, EngineOutcome, UserInputCallback
from cardsmith.core.domain.models import ModelConfig, SessionRecord, SessionStatus
from cardsmith.core.domain.work_items import WorkItemStore
from cardsmith.core.interfaces.llm import LLMProviderProtocol
from cardsmith.core.interfaces.state import SessionStoreProtocol
from cardsmith.core.tools.registry import ToolRegistry

EXPORT_FORMAT_VERSION = "1.0"
TITLE_LENGTH = 60

logger = structlog.get_logger()


@dataclass
class ProgressUpdate:
    """Progress update during a generation run.

    Attributes:
        timestamp: When this update occurred
        event_type: started, task_started, task_completed, task_failed,
            waiting_user, replan, completed or failed
        message: Human-readable message describing the event
        details: Additional structured data about the event
    """

    timestamp: datetime
    event_type: str
    message: str
    details: dict


ProgressCallback = Callable[[ProgressUpdate], None]


class GenerationService:
    def __init__(
        self,
        settings: CardsmithSettings | None = None,
        store: SessionStoreProtocol | None = None,
        registry: ToolRegistry | None = None,
        llm: LLMProviderProtocol | None = None,
    ):
        self.settings = settings or CardsmithSettings()
        self.store = store or factory.build_store(self.settings)
        if registry is None:
            registry = factory.build_registry(llm or factory.build_llm(self.settings))
        self.registry = registry
        self.logger = logger.bind(component="generation_service")

    async def start_generation(
        self,
        user_request: str,
        title: str | None = None,
        model_config: ModelConfig | None = None,
        user_input_callback: UserInputCallback | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> EngineOutcome:
        """Create a session for ``user_request`` and run it to a terminal state."""
        request = user_request.strip()
        if not request:
            raise ValueError("user_request must not be empty")

        record = SessionRecord(
            user_request=request,
            title=title or _default_title(request),
            llm_config=model_config or self.settings.to_model_config(),
        )
        record.output.required_fields = list(self.settings.required_outputs)
        record.execution.max_iterations = self.settings.max_iterations
        record.execution.token_budget = self.settings.token_budget
        record.plan_context.user_request = request
        await self.store.create(record)

        self.logger.info("generation_started", session_id=record.id, title=record.title)
        return await self._run(record.id, user_input_callback, progress_callback)

    async def resume_generation(
        self,
        session_id: str,
        user_input_callback: UserInputCallback | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> EngineOutcome:
        """Run a stopped session again; completed sessions are returned as-is."""
        record = await self.store.load(session_id)
        if record.status == SessionStatus.COMPLETED:
            return EngineOutcome(
                success=True,
                session_id=record.id,
                status=record.status,
                output=record.output.to_dict(),
                iterations=record.execution.current_iteration,
            )
        self.logger.info("generation_resumed", session_id=session_id, status=record.status.value)
        return await self._run(session_id, user_input_callback, progress_callback)

    async def _run(
        self,
        session_id: str,
        user_input_callback: UserInputCallback | None,
        progress_callback: ProgressCallback | None,
    ) -> EngineOutcome:
        def forward(event: EngineEvent) -> None:
            if progress_callback is not None:
                progress_callback(
                    ProgressUpdate(
                        timestamp=event.timestamp,
                        event_type=event.event_type,
                        message=event.message,
                        details=event.details,
                    )
                )

        engine = factory.build_engine(
            self.settings,
            self.store,
            self.registry,
            user_input_callback=user_input_callback,
            event_callback=forward,
        )
        outcome = await engine.start(session_id)
        self.logger.info(
            "generation_finished",
            session_id=session_id,
            success=outcome.success,
            status=outcome.status.value,
            reason=outcome.reason,
        )
        return outcome

    async def get_status(self, session_id: str) -> dict[str, Any]:
        record = await self.store.load(session_id)
        return {
            "id": record.id,
            "title": record.title,
            "status": record.status.value,
            "iteration": record.execution.current_iteration,
            "max_iterations": record.execution.max_iterations,
            "progress": WorkItemStore(record).task_summary(),
            "has_result": record.output.is_complete(),
            "missing_outputs": record.output.missing_fields(),
            "last_error": record.execution.last_error,
            "failure_reason": record.execution.failure_reason,
            "tokens_used": record.execution.tokens_used,
        }

    async def get_session(self, session_id: str) -> SessionRecord:
        return await self.store.load(session_id)

    async def list_sessions(self) -> list[dict[str, Any]]:
        summaries = []
        for session_id in await self.store.list_sessions():
            record = await self.store.load(session_id)
            summaries.append({
                "id": record.id,
                "title": record.title,
                "status": record.status.value,
                "iteration": record.execution.current_iteration,
                "updated_at": record.updated_at,
            })
        return summaries

    async def get_messages(self, session_id: str) -> list[dict[str, Any]]:
        record = await self.store.load(session_id)
        return [m.to_dict() for m in record.messages]

    async def delete_session(self, session_id: str) -> bool:
        deleted = await self.store.delete(session_id)
        self.logger.info("session_deleted", session_id=session_id, deleted=deleted)
        return deleted

    async def cleanup_sessions(self, days: int | None = None) -> int:
        """Delete sessions older than ``days`` (default: ``session_cleanup_days``)."""
        days = self.settings.session_cleanup_days if days is None else days
        removed = self.store.cleanup_old_sessions(days)
        self.logger.info("sessions_cleaned_up", days=days, removed=removed)
        return removed

    async def export_session(self, session_id: str) -> dict[str, Any]:
        record = await self.store.load(session_id)
        data = record.to_dict()
        # Credentials never leave the store
        data["llm_config"] = record.llm_config.to_dict(include_secrets=False)
        return {
            "exported_at": datetime.now().isoformat(),
            "format_version": EXPORT_FORMAT_VERSION,
            "session": data,
        }

    async def get_stats(self) -> dict[str, Any]:
        by_status = {status.value: 0 for status in SessionStatus}
        total_tasks = 0
        total_failures = 0
        session_ids = await self.store.list_sessions()
        for session_id in session_ids:
            record = await self.store.load(session_id)
            by_status[record.status.value] += 1
            total_tasks += len(record.tasks) + len(record.archived_tasks)
            total_failures += sum(record.failure_history.failure_counts.values())
        return {
            "total_sessions": len(session_ids),
            "by_status": by_status,
            "total_tasks": total_tasks,
            "total_failures": total_failures,
        }


def _default_title(request: str) -> str:
    first_line = request.splitlines()[0]
    if len(first_line) <= TITLE_LENGTH:
        return first_line
    return first_line[: TITLE_LENGTH - 3].rstrip() + "..."
