"""
Work Item Store

Holds the goals, live tasks, task archive and failure history of one
session. The store mutates an in-memory ``SessionRecord``; persisting the
record is the caller's job (see ``FileSessionStore``).

Invariants kept here:
- the live task list only ever holds non-terminal tasks
- a task archived as completed/failed/obsolete appears in the archive once,
  with ``completed_at`` stamped
- failure counters only move when a task transitions to failed
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

import structlog

from cardsmith.core.domain.errors import GoalNotFoundError, TaskNotFoundError
from cardsmith.core.domain.models import (
    Goal,
    GoalKind,
    GoalStatus,
    SessionRecord,
    Task,
    TaskStatus,
    now_iso,
    parse_task_status,
)

COMPLETE_REPLAN_REASON = "Complete replan triggered"

_TASK_FIELDS = {
    "description",
    "capability",
    "parameters",
    "dependencies",
    "priority",
    "reasoning",
    "result",
    "obsolete_reason",
}


@dataclass
class TaskCriteria:
    """Declarative task filter; every given field must match."""

    capability: str | None = None
    status: TaskStatus | str | None = None
    description_contains: str | None = None

    def matches(self, task: Task) -> bool:
        if self.capability is not None and task.capability != str(self.capability):
            return False
        if self.status is not None and task.status != parse_task_status(self.status):
            return False
        if self.description_contains is not None:
            if self.description_contains.lower() not in task.description.lower():
                return False
        return True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskCriteria:
        return cls(
            capability=data.get("capability") or data.get("tool"),
            status=data.get("status"),
            description_contains=data.get("description_contains"),
        )


TaskPredicate = Callable[[Task], bool]


class WorkItemStore:
    """Goal tree, task pool and failure history for a single session."""

    def __init__(self, record: SessionRecord):
        self.record = record
        self.logger = structlog.get_logger().bind(
            component="work_item_store", session_id=record.id
        )

    # ==================== TASKS ====================

    @property
    def live_tasks(self) -> list[Task]:
        return self.record.tasks

    @property
    def archived_tasks(self) -> list[Task]:
        return self.record.archived_tasks

    def add_task(
        self,
        description: str,
        capability: str,
        parameters: dict[str, Any] | None = None,
        dependencies: list[str] | None = None,
        priority: int = 5,
        reasoning: str = "",
    ) -> Task:
        task = Task(
            description=description,
            capability=str(getattr(capability, "value", capability)),
            parameters=dict(parameters or {}),
            dependencies=list(dependencies or []),
            priority=int(priority),
            reasoning=reasoning,
        )
        self.record.tasks.append(task)
        self.logger.debug(
            "task_added",
            task_id=task.id,
            capability=task.capability,
            priority=task.priority,
        )
        return task

    def get_task(self, task_id: str) -> Task:
        for task in self.record.tasks:
            if task.id == task_id:
                return task
        for task in self.record.archived_tasks:
            if task.id == task_id:
                return task
        raise TaskNotFoundError(task_id)

    def is_live(self, task_id: str) -> bool:
        return any(t.id == task_id for t in self.record.tasks)

    def update_task(self, task_id: str, **patch: Any) -> Task:
        """Apply a patch to a live task.

        Setting a terminal status archives the task. A ``failed`` status also
        records the failure; the error text is taken from ``error`` in the
        patch, then ``result["error"]``.

        Raises:
            TaskNotFoundError: If no live task has this id
        """
        task = next((t for t in self.record.tasks if t.id == task_id), None)
        if task is None:
            raise TaskNotFoundError(task_id)

        error = patch.pop("error", None)
        status = patch.pop("status", None)
        for key, value in patch.items():
            if key not in _TASK_FIELDS:
                raise ValueError(f"Unknown task field: {key}")
            setattr(task, key, value)

        if status is not None:
            task.status = parse_task_status(status)
            if task.status.is_terminal:
                self._archive(task)
                if task.status == TaskStatus.FAILED:
                    self._record_failure(task, error)
        return task

    def _archive(self, task: Task) -> None:
        task.completed_at = now_iso()
        self.record.tasks.remove(task)
        self.record.archived_tasks.append(task)
        self.logger.debug("task_archived", task_id=task.id, status=task.status.value)

    def _record_failure(self, task: Task, error: str | None) -> None:
        if not error and isinstance(task.result, dict):
            error = task.result.get("error")
        entry = self.record.failure_history.record(
            task.capability, task.description, error or "Unknown error"
        )
        self.logger.info(
            "task_failure_recorded",
            task_id=task.id,
            capability=task.capability,
            failure_count=entry.attempt_count,
        )

    def remove_task(self, task_id: str, reason: str) -> Task:
        return self.update_task(task_id, status=TaskStatus.OBSOLETE, obsolete_reason=reason)

    def remove_tasks_by_criteria(
        self,
        criteria: TaskCriteria | TaskPredicate | dict[str, Any],
        reason: str,
    ) -> int:
        """Archive matching live tasks as obsolete and return how many."""
        if isinstance(criteria, dict):
            criteria = TaskCriteria.from_dict(criteria)
        predicate = criteria.matches if isinstance(criteria, TaskCriteria) else criteria

        matching = [t for t in self.record.tasks if predicate(t)]
        for task in matching:
            self.update_task(task.id, status=TaskStatus.OBSOLETE, obsolete_reason=reason)

        if matching:
            self.logger.info("tasks_removed", count=len(matching), reason=reason)
        return len(matching)

    def clear_pending_tasks(self, reason: str = COMPLETE_REPLAN_REASON) -> int:
        return self.remove_tasks_by_criteria(TaskCriteria(status=TaskStatus.PENDING), reason)

    def completed_task_ids(self) -> set[str]:
        return {t.id for t in self.record.archived_tasks if t.status == TaskStatus.COMPLETED}

    def is_ready(self, task: Task, completed_ids: set[str] | None = None) -> bool:
        if task.status != TaskStatus.PENDING:
            return False
        done = self.completed_task_ids() if completed_ids is None else completed_ids
        return all(dep in done for dep in task.dependencies)

    def get_ready_tasks(self) -> list[Task]:
        """Ready tasks, highest priority first, creation order within a priority."""
        done = self.completed_task_ids()
        ready = [t for t in self.record.tasks if self.is_ready(t, done)]
        # sorted() is stable and the live list is kept in creation order
        return sorted(ready, key=lambda t: t.priority, reverse=True)

    def pending_tasks(self) -> list[Task]:
        return [t for t in self.record.tasks if t.status == TaskStatus.PENDING]

    def has_pending_task(self, capability: str, **parameters: Any) -> bool:
        """True if a pending task of this capability carries these parameters."""
        for task in self.pending_tasks():
            if task.capability != capability:
                continue
            if all(task.parameters.get(k) == v for k, v in parameters.items()):
                return True
        return False

    def task_summary(self) -> dict[str, Any]:
        by_capability: dict[str, int] = {}
        for task in self.record.tasks:
            by_capability[task.capability] = by_capability.get(task.capability, 0) + 1
        return {
            "pending": len(self.pending_tasks()),
            "executing": sum(1 for t in self.record.tasks if t.status == TaskStatus.EXECUTING),
            "total_live": len(self.record.tasks),
            "archived": len(self.record.archived_tasks),
            "completed": len(self.completed_task_ids()),
            "by_capability": by_capability,
        }

    # ==================== GOALS ====================

    def add_goal(
        self,
        description: str,
        kind: GoalKind | str = GoalKind.SUB,
        parent_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Goal:
        goal = Goal(
            description=description,
            kind=GoalKind(kind),
            parent_id=parent_id,
            metadata=dict(metadata or {}),
        )
        self.record.goals.append(goal)
        self.logger.debug("goal_added", goal_id=goal.id, kind=goal.kind.value)
        return goal

    def get_goal(self, goal_id: str) -> Goal:
        for goal in self.record.goals:
            if goal.id == goal_id:
                return goal
        raise GoalNotFoundError(goal_id)

    def update_goal(self, goal_id: str, **patch: Any) -> Goal:
        goal = self.get_goal(goal_id)
        if "status" in patch:
            goal.status = GoalStatus(patch.pop("status"))
        if "kind" in patch:
            goal.kind = GoalKind(patch.pop("kind"))
        if "metadata" in patch:
            goal.metadata.update(patch.pop("metadata") or {})
        for key, value in patch.items():
            if key not in ("description", "parent_id"):
                raise ValueError(f"Unknown goal field: {key}")
            setattr(goal, key, value)
        return goal

    def remove_goal(self, goal_id: str, reason: str) -> Goal:
        """Withdraw a goal. Goals are re-flagged as failed, never deleted."""
        goal = self.update_goal(
            goal_id, status=GoalStatus.FAILED, metadata={"obsolete_reason": reason}
        )
        self.logger.info("goal_removed", goal_id=goal_id, reason=reason)
        return goal

    def main_goal(self) -> Goal | None:
        """The current main goal; withdrawn (failed) main goals are skipped."""
        for goal in reversed(self.record.goals):
            if goal.kind == GoalKind.MAIN and goal.status != GoalStatus.FAILED:
                return goal
        return None

    def open_goals(self) -> list[Goal]:
        return [
            g for g in self.record.goals
            if g.status in (GoalStatus.PENDING, GoalStatus.IN_PROGRESS)
        ]

    # ==================== FAILURES & CONTEXT ====================

    def failure_count(self, capability: str) -> int:
        return self.record.failure_history.count(capability)

    def critical_capabilities(self, threshold: int) -> list[str]:
        return self.record.failure_history.capabilities_at_least(threshold)

    def update_plan_context(self, **changes: Any) -> None:
        context = self.record.plan_context
        for key, value in changes.items():
            if not hasattr(context, key):
                raise ValueError(f"Unknown plan context field: {key}")
            setattr(context, key, value)

    def current_plan(self) -> dict[str, Any]:
        return {
            "goals": [g.to_dict() for g in self.record.goals],
            "tasks": [t.to_dict() for t in self.record.tasks],
            "completed_tasks": [t.to_dict() for t in self.record.archived_tasks],
            "context": self.record.plan_context.to_dict(),
        }
