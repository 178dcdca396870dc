"""
Core Domain Models

This module defines the session state that the execution engine drives:
goals, tasks, failure history, the conversation log, the accumulating
output and the persisted session record that bundles them.

Every model serializes to plain JSON-compatible dicts via ``to_dict`` and
is rebuilt with ``from_dict``, so the whole session can be stored as one
document.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

FAILURE_BUFFER_SIZE = 10
DEFAULT_MAX_ITERATIONS = 50
DEFAULT_REQUIRED_FIELDS = ["character", "worldbook"]


def new_id() -> str:
    return str(uuid.uuid4())


def now_iso() -> str:
    return datetime.now().isoformat()


class GoalKind(str, Enum):
    MAIN = "main"
    SUB = "sub"


class GoalStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    OBSOLETE = "obsolete"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.OBSOLETE)


def parse_task_status(value: Any) -> TaskStatus:
    """Parse status strings to TaskStatus, accepting a few common aliases.

    Raises:
        ValueError: If the value names no known status
    """
    if isinstance(value, TaskStatus):
        return value
    text = str(value or "").strip().lower().replace("-", "_").replace(" ", "_")
    alias = {
        "open": "pending",
        "todo": "pending",
        "in_progress": "executing",
        "running": "executing",
        "done": "completed",
        "complete": "completed",
        "fail": "failed",
        "skipped": "obsolete",
    }
    return TaskStatus(alias.get(text, text))


class SessionStatus(str, Enum):
    """Engine states, persisted as the session status."""

    IDLE = "idle"
    THINKING = "thinking"
    EXECUTING = "executing"
    WAITING_USER = "waiting_user"
    COMPLETED = "completed"
    FAILED = "failed"


class MessageRole(str, Enum):
    USER = "user"
    AGENT = "agent"
    SYSTEM = "system"


class MessageType(str, Enum):
    USER_INPUT = "user_input"
    AGENT_THINKING = "agent_thinking"
    AGENT_ACTION = "agent_action"
    AGENT_OUTPUT = "agent_output"
    SYSTEM_INFO = "system_info"
    QUALITY_EVALUATION = "quality_evaluation"
    TOOL_FAILURE = "tool_failure"


class ProviderKind(str, Enum):
    OPENAI = "openai"
    OLLAMA = "ollama"


@dataclass
class Goal:
    """
    A node in the goal tree.

    The parent reference is a back-reference only; goals are never deleted,
    withdrawn goals are re-flagged as failed with the reason in metadata.
    """

    description: str
    kind: GoalKind = GoalKind.SUB
    parent_id: str | None = None
    status: GoalStatus = GoalStatus.PENDING
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=now_iso)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "kind": self.kind.value,
            "parent_id": self.parent_id,
            "status": self.status.value,
            "created_at": self.created_at,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Goal:
        return cls(
            id=data["id"],
            description=data.get("description", ""),
            kind=GoalKind(data.get("kind", GoalKind.SUB.value)),
            parent_id=data.get("parent_id"),
            status=GoalStatus(data.get("status", GoalStatus.PENDING.value)),
            created_at=data.get("created_at") or now_iso(),
            metadata=data.get("metadata") or {},
        )


@dataclass
class Task:
    """
    An executable unit of work bound to a capability.

    A task is ready when it is pending and all of its dependencies are
    archived as completed. Terminal tasks live in the archive only.
    """

    description: str
    capability: str
    parameters: dict[str, Any] = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    status: TaskStatus = TaskStatus.PENDING
    priority: int = 5
    reasoning: str = ""
    result: Any = None
    obsolete_reason: str | None = None
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=now_iso)
    completed_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "capability": self.capability,
            "parameters": self.parameters,
            "dependencies": list(self.dependencies),
            "status": self.status.value,
            "priority": self.priority,
            "reasoning": self.reasoning,
            "result": self.result,
            "obsolete_reason": self.obsolete_reason,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        return cls(
            id=data["id"],
            description=data.get("description", ""),
            capability=data.get("capability", ""),
            parameters=data.get("parameters") or {},
            dependencies=list(data.get("dependencies") or []),
            status=parse_task_status(data.get("status", "pending")),
            priority=int(data.get("priority", 5)),
            reasoning=data.get("reasoning", ""),
            result=data.get("result"),
            obsolete_reason=data.get("obsolete_reason"),
            created_at=data.get("created_at") or now_iso(),
            completed_at=data.get("completed_at"),
        )


@dataclass
class FailureRecord:
    capability: str
    description: str
    error: str
    attempt_count: int
    timestamp: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "capability": self.capability,
            "description": self.description,
            "error": self.error,
            "attempt_count": self.attempt_count,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FailureRecord:
        return cls(
            capability=data["capability"],
            description=data.get("description", ""),
            error=data.get("error", ""),
            attempt_count=int(data.get("attempt_count", 0)),
            timestamp=data.get("timestamp") or now_iso(),
        )


@dataclass
class FailureHistory:
    """Cumulative failure counts per capability plus the last few failures."""

    failure_counts: dict[str, int] = field(default_factory=dict)
    recent_failures: list[FailureRecord] = field(default_factory=list)

    def record(self, capability: str, description: str, error: str) -> FailureRecord:
        count = self.failure_counts.get(capability, 0) + 1
        self.failure_counts[capability] = count
        entry = FailureRecord(
            capability=capability,
            description=description,
            error=error,
            attempt_count=count,
        )
        self.recent_failures.append(entry)
        # Oldest entries are evicted first
        del self.recent_failures[:-FAILURE_BUFFER_SIZE]
        return entry

    def count(self, capability: str) -> int:
        return self.failure_counts.get(capability, 0)

    def capabilities_at_least(self, threshold: int) -> list[str]:
        return sorted(c for c, n in self.failure_counts.items() if n >= threshold)

    def to_dict(self) -> dict[str, Any]:
        return {
            "failure_counts": dict(self.failure_counts),
            "recent_failures": [f.to_dict() for f in self.recent_failures],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> FailureHistory:
        data = data or {}
        return cls(
            failure_counts={k: int(v) for k, v in (data.get("failure_counts") or {}).items()},
            recent_failures=[
                FailureRecord.from_dict(f) for f in data.get("recent_failures") or []
            ][-FAILURE_BUFFER_SIZE:],
        )


@dataclass
class Message:
    role: MessageRole
    content: str
    type: MessageType
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    timestamp: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "type": self.type.value,
            "metadata": self.metadata,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        return cls(
            id=data["id"],
            role=MessageRole(data["role"]),
            content=data.get("content", ""),
            type=MessageType(data["type"]),
            metadata=data.get("metadata") or {},
            timestamp=data.get("timestamp") or now_iso(),
        )


@dataclass
class SessionOutput:
    """
    The accumulating generation artifact.

    Completion means every required field holds a non-empty value; the
    predicate reads state only, so repeated calls agree until a mutation.
    """

    fields: dict[str, Any] = field(default_factory=dict)
    required_fields: list[str] = field(default_factory=lambda: list(DEFAULT_REQUIRED_FIELDS))
    knowledge: list[dict[str, Any]] = field(default_factory=list)
    quality_metrics: dict[str, Any] = field(default_factory=dict)

    def missing_fields(self) -> list[str]:
        return [name for name in self.required_fields if not self.fields.get(name)]

    def is_complete(self) -> bool:
        return not self.missing_fields()

    def to_dict(self) -> dict[str, Any]:
        return {
            "fields": self.fields,
            "required_fields": list(self.required_fields),
            "knowledge": self.knowledge,
            "quality_metrics": self.quality_metrics,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> SessionOutput:
        data = data or {}
        return cls(
            fields=data.get("fields") or {},
            required_fields=list(data.get("required_fields") or DEFAULT_REQUIRED_FIELDS),
            knowledge=data.get("knowledge") or [],
            quality_metrics=data.get("quality_metrics") or {},
        )


@dataclass
class ModelConfig:
    """Model-access configuration forwarded opaquely to capabilities."""

    provider: ProviderKind = ProviderKind.OPENAI
    model_name: str = "gpt-4.1-mini"
    api_key: str | None = None
    base_url: str | None = None
    temperature: float = 0.7
    max_tokens: int | None = None

    def to_dict(self, include_secrets: bool = True) -> dict[str, Any]:
        return {
            "provider": self.provider.value,
            "model_name": self.model_name,
            "api_key": self.api_key if include_secrets else None,
            "base_url": self.base_url,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ModelConfig:
        data = data or {}
        return cls(
            provider=ProviderKind(data.get("provider", ProviderKind.OPENAI.value)),
            model_name=data.get("model_name", "gpt-4.1-mini"),
            api_key=data.get("api_key"),
            base_url=data.get("base_url"),
            temperature=float(data.get("temperature", 0.7)),
            max_tokens=data.get("max_tokens"),
        )


@dataclass
class ExecutionInfo:
    current_iteration: int = 0
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    error_count: int = 0
    last_error: str | None = None
    failure_reason: str | None = None
    tokens_used: int = 0
    token_budget: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_iteration": self.current_iteration,
            "max_iterations": self.max_iterations,
            "error_count": self.error_count,
            "last_error": self.last_error,
            "failure_reason": self.failure_reason,
            "tokens_used": self.tokens_used,
            "token_budget": self.token_budget,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ExecutionInfo:
        data = data or {}
        return cls(
            current_iteration=int(data.get("current_iteration", 0)),
            max_iterations=int(data.get("max_iterations", DEFAULT_MAX_ITERATIONS)),
            error_count=int(data.get("error_count", 0)),
            last_error=data.get("last_error"),
            failure_reason=data.get("failure_reason"),
            tokens_used=int(data.get("tokens_used", 0)),
            token_budget=data.get("token_budget"),
        )


@dataclass
class PlanContext:
    """Planner working memory carried between planning tasks."""

    user_request: str = ""
    current_focus: str = ""
    constraints: list[str] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)
    analyzed_capabilities: list[str] = field(default_factory=list)
    failure_analyses: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_request": self.user_request,
            "current_focus": self.current_focus,
            "constraints": list(self.constraints),
            "notes": list(self.notes),
            "analyzed_capabilities": list(self.analyzed_capabilities),
            "failure_analyses": self.failure_analyses,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> PlanContext:
        data = data or {}
        return cls(
            user_request=data.get("user_request", ""),
            current_focus=data.get("current_focus", ""),
            constraints=list(data.get("constraints") or []),
            notes=list(data.get("notes") or []),
            analyzed_capabilities=list(data.get("analyzed_capabilities") or []),
            failure_analyses=data.get("failure_analyses") or [],
        )


@dataclass
class SessionRecord:
    """
    The single durable unit of session state.

    Attributes:
        id: Session identifier
        title: Human-readable title
        status: Current engine state
        user_request: The original high-level goal
        messages: Append-only conversation log
        goals: Goal tree (flat list, parent back-references)
        tasks: Live (non-terminal) tasks
        archived_tasks: Terminal tasks in archival order
        failure_history: Per-capability failure counters and recent failures
        output: Accumulated generation output
        llm_config: Model-access configuration for capabilities
        execution: Iteration counters, errors and budgets
        plan_context: Planner working memory
        version: Optimistic concurrency version, bumped on every save
    """

    user_request: str
    title: str = ""
    id: str = field(default_factory=new_id)
    status: SessionStatus = SessionStatus.IDLE
    messages: list[Message] = field(default_factory=list)
    goals: list[Goal] = field(default_factory=list)
    tasks: list[Task] = field(default_factory=list)
    archived_tasks: list[Task] = field(default_factory=list)
    failure_history: FailureHistory = field(default_factory=FailureHistory)
    output: SessionOutput = field(default_factory=SessionOutput)
    llm_config: ModelConfig = field(default_factory=ModelConfig)
    execution: ExecutionInfo = field(default_factory=ExecutionInfo)
    plan_context: PlanContext = field(default_factory=PlanContext)
    version: int = 0
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    def add_message(
        self,
        role: MessageRole,
        content: str,
        type: MessageType,
        **metadata: Any,
    ) -> Message:
        message = Message(role=role, content=content, type=type, metadata=metadata)
        self.messages.append(message)
        return message

    def user_messages(self) -> list[str]:
        return [
            m.content
            for m in self.messages
            if m.role == MessageRole.USER and m.type == MessageType.USER_INPUT
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "status": self.status.value,
            "user_request": self.user_request,
            "messages": [m.to_dict() for m in self.messages],
            "goals": [g.to_dict() for g in self.goals],
            "tasks": [t.to_dict() for t in self.tasks],
            "archived_tasks": [t.to_dict() for t in self.archived_tasks],
            "failure_history": self.failure_history.to_dict(),
            "output": self.output.to_dict(),
            "llm_config": self.llm_config.to_dict(),
            "execution": self.execution.to_dict(),
            "plan_context": self.plan_context.to_dict(),
            "version": self.version,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionRecord:
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            status=SessionStatus(data.get("status", SessionStatus.IDLE.value)),
            user_request=data.get("user_request", ""),
            messages=[Message.from_dict(m) for m in data.get("messages") or []],
            goals=[Goal.from_dict(g) for g in data.get("goals") or []],
            tasks=[Task.from_dict(t) for t in data.get("tasks") or []],
            archived_tasks=[Task.from_dict(t) for t in data.get("archived_tasks") or []],
            failure_history=FailureHistory.from_dict(data.get("failure_history")),
            output=SessionOutput.from_dict(data.get("output")),
            llm_config=ModelConfig.from_dict(data.get("llm_config")),
            execution=ExecutionInfo.from_dict(data.get("execution")),
            plan_context=PlanContext.from_dict(data.get("plan_context")),
            version=int(data.get("version", 0)),
            created_at=data.get("created_at") or now_iso(),
            updated_at=data.get("updated_at") or now_iso(),
        )
