"""
REFLECT capability.

A simple execution unit: appends the tasks named in ``new_tasks`` to the
live pool. Plain strings use the ``capability`` parameter; dict items may
carry their own capability, parameters and priority.
"""

from typing import Any

from cardsmith.core.domain.errors import ToolExecutionError
from cardsmith.core.domain.models import MessageType, Task
from cardsmith.core.tools.base import Capability, Tool, ToolParameter, ToolResult
from cardsmith.core.tools.context import ToolContext
from cardsmith.core.tools.registry import ToolRegistry


class ReflectTool(Tool):
    parameters = [
        ToolParameter(
            name="new_tasks",
            type="array",
            required=True,
            description="Tasks to add: descriptions, or objects with description/capability/parameters/priority",
        ),
        ToolParameter(name="capability", description="Capability for plain-string tasks"),
        ToolParameter(name="priority", type="integer", description="Priority for new tasks", default=5),
    ]

    def __init__(self, registry: ToolRegistry | None = None):
        super().__init__()
        self.registry = registry

    @property
    def name(self) -> str:
        return Capability.REFLECT.value

    @property
    def description(self) -> str:
        return (
            "Add new tasks to the queue when gaps appear in the plan, complex work needs "
            "splitting, or the queue is empty while outputs are still missing."
        )

    async def execute(self, task: Task, context: ToolContext) -> ToolResult:
        entries = self._validate(task.parameters)
        created = []
        for entry in entries:
            new_task = context.store.add_task(
                description=entry["description"],
                capability=entry["capability"],
                parameters=entry.get("parameters") or {},
                priority=entry["priority"],
                reasoning=f"Added by reflection on: {task.description}",
            )
            created.append(new_task.id)

        context.add_message(
            f"Added {len(created)} tasks to the queue.",
            MessageType.AGENT_ACTION,
            task_id=task.id,
            capability=self.name,
        )
        return ToolResult.ok({"new_tasks": created, "tasks_count": len(created)})

    def _validate(self, params: dict[str, Any]) -> list[dict[str, Any]]:
        new_tasks = params.get("new_tasks")
        if not isinstance(new_tasks, list):
            raise ToolExecutionError("REFLECT requires 'new_tasks' as an array")
        if not new_tasks:
            raise ToolExecutionError("REFLECT requires at least one task in 'new_tasks'")

        default_capability = params.get("capability")
        default_priority = int(params.get("priority", 5))
        entries = []
        for index, item in enumerate(new_tasks, start=1):
            if isinstance(item, str):
                item = {"description": item}
            if not isinstance(item, dict) or not str(item.get("description", "")).strip():
                raise ToolExecutionError(f"REFLECT: task {index} must be a non-empty string")

            requested = str(item.get("capability") or item.get("tool") or default_capability or "")
            capability = requested.strip()
            if not capability:
                raise ToolExecutionError(f"REFLECT: task {index} has no capability")
            if self.registry is not None:
                capability = self.registry.canonical_name(capability)
                if capability is None:
                    raise ToolExecutionError(
                        f"REFLECT: task {index} uses unknown capability {requested}"
                    )

            entries.append({
                "description": item["description"].strip(),
                "capability": capability,
                "parameters": item.get("parameters"),
                "priority": int(item.get("priority", default_priority)),
            })
        return entries
